"""
Standalone deepfake video analysis.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .analysis_gateway import AnalysisGateway, MediaPart
from .exceptions import ValidationError, VideoTooLargeError
from .record_store import VerificationRecordStore, VideoAnalysisRecord
from .verdicts import VideoVerdict

logger = logging.getLogger(__name__)

DEFAULT_MAX_VIDEO_BYTES = 20 * 1024 * 1024


@dataclass(frozen=True)
class VideoAnalysisResult:
    """Verdict together with the stored record"""
    verdict: VideoVerdict
    record: VideoAnalysisRecord


class VideoAnalysisService:
    """
    Analyzes uploaded videos for deepfake manipulation and appends the
    result to the record store. Oversized payloads are rejected before
    any analysis call is made.
    """

    def __init__(self, gateway: AnalysisGateway, store: VerificationRecordStore,
                 max_bytes: int = DEFAULT_MAX_VIDEO_BYTES):
        self.gateway = gateway
        self.store = store
        self.max_bytes = max_bytes

    def check_size(self, size: int) -> None:
        if size > self.max_bytes:
            raise VideoTooLargeError(size, self.max_bytes)

    async def analyze(self, user_id: Optional[str], video_name: str, payload: bytes,
                      mime_type: str = "video/mp4") -> VideoAnalysisResult:
        """
        Analyze one video and store the verdict.

        Raises:
            VideoTooLargeError: If the payload exceeds the size limit
            GatewayError: If the analysis call fails
            PersistenceError: If the record could not be stored
        """
        if not payload:
            raise ValidationError("Video data is required", error_code="VIDEO_REQUIRED")
        self.check_size(len(payload))

        verdict = await self.gateway.analyze_video(MediaPart(mime_type, payload))

        record = self.store.insert_video_record(VideoAnalysisRecord(
            user_id=user_id,
            video_name=video_name or "Untitled Video",
            is_deepfake=verdict.is_deepfake,
            risk_level=verdict.risk_level,
            confidence_score=round(verdict.confidence_score),
            analysis_payload=verdict.to_payload(),
        ))

        logger.info(
            f"Video '{record.video_name}' analyzed for user {user_id}: "
            f"deepfake={verdict.is_deepfake} risk={verdict.risk_level}"
        )
        return VideoAnalysisResult(verdict=verdict, record=record)
