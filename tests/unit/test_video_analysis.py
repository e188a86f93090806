"""
Unit tests for standalone video analysis
"""

import pytest

from kycbuster.core.exceptions import TransportError, ValidationError, VideoTooLargeError
from kycbuster.core.verdicts import EvidenceKind
from kycbuster.core.video_analysis import DEFAULT_MAX_VIDEO_BYTES, VideoAnalysisService
from tests.unit.test_analysis_gateway import MockAnalysisGateway
from tests.unit.test_record_store import add_user, make_session_factory, make_store


@pytest.fixture
def session_factory():
    return make_session_factory()


@pytest.fixture
def store(session_factory):
    return make_store(session_factory)


@pytest.mark.asyncio
async def test_oversized_video_rejected_before_gateway(store, session_factory):
    gateway = MockAnalysisGateway()
    service = VideoAnalysisService(gateway, store)
    user_id = add_user(session_factory)

    with pytest.raises(VideoTooLargeError) as exc_info:
        await service.analyze(user_id, "big.mp4", b"\0" * (DEFAULT_MAX_VIDEO_BYTES + 1))

    assert exc_info.value.message == "Video file is too large. Please upload a video under 20MB."
    assert gateway.calls == []
    assert store.video_history_for_user(user_id) == []


@pytest.mark.asyncio
async def test_video_at_limit_is_accepted(store):
    gateway = MockAnalysisGateway()
    service = VideoAnalysisService(gateway, store, max_bytes=16)

    result = await service.analyze(None, "edge.mp4", b"\0" * 16)

    assert result.record.video_name == "edge.mp4"
    assert gateway.kinds == [EvidenceKind.VIDEO]


@pytest.mark.asyncio
async def test_analysis_is_stored(store, session_factory):
    gateway = MockAnalysisGateway()
    service = VideoAnalysisService(gateway, store)
    user_id = add_user(session_factory)

    result = await service.analyze(user_id, "interview.webm", b"video-bytes", "video/webm")

    assert result.verdict.is_deepfake
    assert result.record.is_deepfake
    assert result.record.risk_level == "high"
    assert result.record.confidence_score == 77
    assert result.record.analysis_payload["detectedAnomalies"] == ["lip sync drift", "edge blending"]
    assert store.video_history_for_user(user_id) == [result.record]
    assert gateway.calls[0]["media"][0].mime_type == "video/webm"


@pytest.mark.asyncio
async def test_empty_video_rejected(store):
    gateway = MockAnalysisGateway()

    with pytest.raises(ValidationError):
        await VideoAnalysisService(gateway, store).analyze(None, "empty.mp4", b"")

    assert gateway.calls == []


@pytest.mark.asyncio
async def test_gateway_failure_stores_nothing(store, session_factory):
    gateway = MockAnalysisGateway({EvidenceKind.VIDEO: TransportError("connection reset")})
    user_id = add_user(session_factory)

    with pytest.raises(TransportError):
        await VideoAnalysisService(gateway, store).analyze(user_id, "clip.mp4", b"video")

    assert store.video_history_for_user(user_id) == []
