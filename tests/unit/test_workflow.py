"""
Unit tests for the verification workflow state machine
"""

import asyncio
import itertools

import pytest

from kycbuster.config import KYCConfig
from kycbuster.core.exceptions import (
    AnalysisInProgressError, CaptureCancelledError, GatewayUnconfiguredError,
    InvalidResponseError, PersistenceError, RateLimitedError, RecordNotSavedError,
    ResourceError, ValidationError, WorkflowStateError
)
from kycbuster.core.finalizer import DecisionFinalizer
from kycbuster.core.verdicts import EvidenceKind
from kycbuster.core.workflow import (
    Abandon, Advance, CaptureLiveness, Finalize, GoBack, RecordVoice, Stage,
    SubmitDetails, UploadDocument, VerificationWorkflow, VerifyDocument,
    VerifyLiveness, VerifyVoice
)
from tests.unit.test_analysis_gateway import (
    DECISION_FAKE, DECISION_VERIFIED, DOCUMENT_OK, LIVENESS_SPOOF, VOICE_OK, MockAnalysisGateway
)
from tests.unit.test_capture_sequencer import CountingTickSource, FakeCamera, FakeMicrophone
from tests.unit.test_finalizer import FailingStore
from tests.unit.test_record_store import add_user, make_session_factory, make_store


DOCUMENT_IMAGE = b"\xff\xd8aadhaar-card"


class Harness:
    """Workflow wired to mock collaborators"""

    def __init__(self, gateway=None, store=None, ticks=None, codes=("4821", "7305", "1190")):
        self.session_factory = make_session_factory()
        self.user_id = add_user(self.session_factory)
        self.gateway = gateway or MockAnalysisGateway()
        self.store = store or make_store(self.session_factory)
        self.camera = FakeCamera()
        self.microphone = FakeMicrophone()
        self.ticks = ticks or CountingTickSource()
        codes = itertools.cycle(codes)
        self.workflow = VerificationWorkflow.start(
            self.user_id,
            self.gateway,
            DecisionFinalizer(self.gateway, self.store),
            full_name="Asha Rao",
            config=KYCConfig(analysis_api_key="test-key"),
            ticks=self.ticks,
            camera=self.camera,
            microphone=self.microphone,
            code_generator=lambda: next(codes),
        )

    @property
    def session(self):
        return self.workflow.session

    async def dispatch(self, action):
        return await self.workflow.dispatch(action)

    async def to_document(self):
        await self.dispatch(SubmitDetails("Asha Rao", "1990-04-12", "Bengaluru"))
        await self.dispatch(UploadDocument(DOCUMENT_IMAGE, filename="aadhaar.jpg"))

    async def to_liveness(self):
        await self.to_document()
        await self.dispatch(VerifyDocument())

    async def to_voice(self):
        await self.to_liveness()
        await self.dispatch(CaptureLiveness())
        await self.dispatch(VerifyLiveness())
        await self.dispatch(Advance())


async def wait_until(predicate):
    while not predicate():
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_starts_in_details_with_prefilled_name():
    harness = Harness()

    assert harness.workflow.stage == Stage.DETAILS
    assert harness.session.personal_details.full_name == "Asha Rao"


@pytest.mark.asyncio
async def test_details_are_required():
    harness = Harness()

    with pytest.raises(ValidationError) as exc_info:
        await harness.dispatch(SubmitDetails("Asha Rao", " ", ""))

    assert exc_info.value.details["missing"] == ["dob", "address"]
    assert harness.workflow.stage == Stage.DETAILS
    assert harness.session.last_error is exc_info.value
    assert harness.gateway.calls == []


@pytest.mark.asyncio
async def test_actions_out_of_order_are_rejected():
    harness = Harness()

    with pytest.raises(WorkflowStateError):
        await harness.dispatch(VerifyDocument())

    await harness.to_document()

    with pytest.raises(WorkflowStateError):
        await harness.dispatch(CaptureLiveness())
    with pytest.raises(WorkflowStateError):
        await harness.dispatch(VerifyVoice())
    with pytest.raises(WorkflowStateError):
        await harness.dispatch(Advance())

    assert harness.gateway.calls == []


@pytest.mark.asyncio
async def test_verified_scenario():
    harness = Harness()

    await harness.to_voice()
    assert harness.session.verification_code == "4821"

    await harness.dispatch(RecordVoice())
    session = await harness.dispatch(VerifyVoice())

    assert session.stage == Stage.RESULT
    assert session.final_decision.decision == "verified"
    assert session.final_decision.risk_score < 30
    assert session.record.status == "verified"
    assert session.last_error is None
    assert harness.gateway.kinds == [
        EvidenceKind.DOCUMENT, EvidenceKind.LIVENESS, EvidenceKind.VOICE, EvidenceKind.DECISION
    ]
    assert "4821" in harness.gateway.calls[2]["context"]

    history = harness.store.history_for_user(harness.user_id)
    assert [record.status for record in history] == ["verified"]
    assert history[0].document_evidence["filename"] == "aadhaar.jpg"
    assert history[0].document_evidence["extracted"]["documentNumber"] == "1234 5678 9012"


@pytest.mark.asyncio
async def test_failed_liveness_still_finalizes():
    gateway = MockAnalysisGateway({
        EvidenceKind.LIVENESS: LIVENESS_SPOOF,
        EvidenceKind.DECISION: DECISION_FAKE,
    })
    harness = Harness(gateway=gateway)

    await harness.to_voice()
    await harness.dispatch(RecordVoice())
    session = await harness.dispatch(VerifyVoice())

    assert session.final_decision.decision == "fake"
    assert session.final_decision.risk_score >= 70
    assert harness.store.history_for_user(harness.user_id)[0].status == "fake"


@pytest.mark.asyncio
async def test_malformed_document_response_keeps_image():
    gateway = MockAnalysisGateway({EvidenceKind.DOCUMENT: "{not json"})
    harness = Harness(gateway=gateway)
    await harness.to_document()

    with pytest.raises(InvalidResponseError):
        await harness.dispatch(VerifyDocument())

    assert harness.workflow.stage == Stage.DOCUMENT
    assert harness.session.document_verdict is None
    assert harness.session.document_image.image == DOCUMENT_IMAGE
    assert isinstance(harness.session.last_error, InvalidResponseError)

    gateway.responses[EvidenceKind.DOCUMENT] = DOCUMENT_OK
    await harness.dispatch(VerifyDocument())

    assert harness.workflow.stage == Stage.LIVENESS
    assert harness.gateway.kinds == [EvidenceKind.DOCUMENT, EvidenceKind.DOCUMENT]
    assert harness.gateway.calls[1]["media"][0].data == DOCUMENT_IMAGE
    assert harness.session.last_error is None


@pytest.mark.asyncio
async def test_document_address_backfills_details():
    harness = Harness()

    await harness.to_liveness()

    assert harness.session.personal_details.address == "12 MG Road, Bengaluru"


@pytest.mark.asyncio
async def test_verify_document_requires_upload():
    harness = Harness()
    await harness.dispatch(SubmitDetails("Asha Rao", "1990-04-12", "Bengaluru"))

    with pytest.raises(ValidationError):
        await harness.dispatch(VerifyDocument())

    assert harness.gateway.calls == []


@pytest.mark.asyncio
async def test_one_analysis_in_flight_per_stage():
    harness = Harness()
    gate = asyncio.Event()
    harness.gateway.gates[EvidenceKind.DOCUMENT] = gate
    await harness.to_document()

    first = asyncio.create_task(harness.dispatch(VerifyDocument()))
    await wait_until(lambda: harness.workflow.in_flight(Stage.DOCUMENT))

    with pytest.raises(AnalysisInProgressError):
        await harness.dispatch(VerifyDocument())
    with pytest.raises(AnalysisInProgressError):
        await harness.dispatch(GoBack())

    gate.set()
    await first

    assert len(harness.gateway.calls) == 1
    assert harness.workflow.stage == Stage.LIVENESS


@pytest.mark.asyncio
async def test_unconfigured_gateway_blocks_workflow():
    gateway = MockAnalysisGateway({EvidenceKind.DOCUMENT: GatewayUnconfiguredError()})
    harness = Harness(gateway=gateway)
    await harness.to_document()

    with pytest.raises(GatewayUnconfiguredError):
        await harness.dispatch(VerifyDocument())

    assert harness.workflow.is_blocked

    with pytest.raises(GatewayUnconfiguredError):
        await harness.dispatch(VerifyDocument())

    assert len(harness.gateway.calls) == 1
    assert harness.workflow.stage == Stage.DOCUMENT


@pytest.mark.asyncio
async def test_liveness_requires_verdict_before_advancing():
    harness = Harness()
    await harness.to_liveness()

    with pytest.raises(ValidationError):
        await harness.dispatch(VerifyLiveness())

    await harness.dispatch(CaptureLiveness())
    assert harness.session.liveness_capture.step_ids == [
        "look-straight", "blink", "smile", "turn-head", "move-forward"
    ]
    assert not harness.camera.is_active

    with pytest.raises(WorkflowStateError):
        await harness.dispatch(Advance())

    await harness.dispatch(VerifyLiveness())
    assert harness.workflow.stage == Stage.LIVENESS

    await harness.dispatch(Advance())
    assert harness.workflow.stage == Stage.VOICE
    assert len(harness.gateway.calls[1]["media"]) == 6


@pytest.mark.asyncio
async def test_capture_without_camera():
    harness = Harness()
    harness.workflow.camera = None
    await harness.to_liveness()

    with pytest.raises(ResourceError):
        await harness.dispatch(CaptureLiveness())

    assert harness.workflow.stage == Stage.LIVENESS


@pytest.mark.asyncio
async def test_go_back_discards_only_stage_evidence():
    harness = Harness()
    await harness.to_liveness()
    await harness.dispatch(CaptureLiveness())
    await harness.dispatch(VerifyLiveness())

    await harness.dispatch(GoBack())

    assert harness.workflow.stage == Stage.DOCUMENT
    assert harness.session.liveness_capture is None
    assert harness.session.liveness_verdict is None
    assert harness.session.document_verdict is not None

    await harness.dispatch(GoBack())

    assert harness.workflow.stage == Stage.DETAILS
    assert harness.session.document_verdict is None
    assert harness.session.document_image.image == DOCUMENT_IMAGE
    assert harness.session.personal_details.dob == "1990-04-12"

    with pytest.raises(WorkflowStateError):
        await harness.dispatch(GoBack())


@pytest.mark.asyncio
async def test_go_back_during_capture_releases_camera():
    harness = Harness(ticks=CountingTickSource(block_after=7))
    await harness.to_liveness()

    capture = asyncio.create_task(harness.dispatch(CaptureLiveness()))
    await harness.ticks.blocked.wait()
    assert harness.camera.is_active

    await harness.dispatch(GoBack())
    assert not harness.camera.is_active
    assert harness.workflow.stage == Stage.DOCUMENT

    with pytest.raises(CaptureCancelledError):
        await capture

    assert harness.session.liveness_capture is None
    assert harness.gateway.kinds == [EvidenceKind.DOCUMENT]


@pytest.mark.asyncio
async def test_voice_code_reused_across_failed_attempts():
    gateway = MockAnalysisGateway()
    harness = Harness(gateway=gateway)
    await harness.to_voice()

    gateway.responses[EvidenceKind.VOICE] = [RateLimitedError(), VOICE_OK]
    await harness.dispatch(RecordVoice())

    with pytest.raises(RateLimitedError):
        await harness.dispatch(VerifyVoice())

    assert harness.workflow.stage == Stage.VOICE
    assert harness.session.verification_code == "4821"
    assert harness.session.voice_sample is not None

    await harness.dispatch(VerifyVoice())

    voice_calls = [call for call in gateway.calls if call["kind"] == EvidenceKind.VOICE]
    assert all("4821" in call["context"] for call in voice_calls)
    assert harness.workflow.stage == Stage.RESULT


@pytest.mark.asyncio
async def test_new_code_on_reentering_voice():
    harness = Harness()
    await harness.to_voice()
    await harness.dispatch(RecordVoice())

    await harness.dispatch(GoBack())

    assert harness.workflow.stage == Stage.LIVENESS
    assert harness.session.verification_code is None
    assert harness.session.voice_sample is None
    assert harness.session.liveness_verdict is not None

    await harness.dispatch(Advance())
    assert harness.session.verification_code == "7305"


@pytest.mark.asyncio
async def test_voice_analysis_in_flight_blocks_go_back():
    harness = Harness()
    gate = asyncio.Event()
    harness.gateway.gates[EvidenceKind.VOICE] = gate
    await harness.to_voice()
    await harness.dispatch(RecordVoice())

    verify = asyncio.create_task(harness.dispatch(VerifyVoice()))
    await wait_until(lambda: harness.workflow.in_flight(Stage.VOICE))

    with pytest.raises(AnalysisInProgressError):
        await harness.dispatch(GoBack())
    assert harness.session.verification_code == "4821"

    gate.set()
    await verify
    assert harness.workflow.stage == Stage.RESULT


@pytest.mark.asyncio
async def test_second_voice_verification_rejected_while_deciding():
    harness = Harness()
    gate = asyncio.Event()
    harness.gateway.gates[EvidenceKind.DECISION] = gate
    await harness.to_voice()
    await harness.dispatch(RecordVoice())

    verify = asyncio.create_task(harness.dispatch(VerifyVoice()))
    await wait_until(lambda: harness.workflow.in_flight(Stage.RESULT))

    with pytest.raises(AnalysisInProgressError):
        await harness.dispatch(VerifyVoice())
    with pytest.raises(AnalysisInProgressError):
        await harness.dispatch(RecordVoice())
    with pytest.raises(AnalysisInProgressError):
        await harness.dispatch(Finalize())
    assert harness.gateway.kinds.count(EvidenceKind.VOICE) == 1

    gate.set()
    await verify

    assert harness.workflow.stage == Stage.RESULT
    assert harness.session.last_error is None
    assert harness.session.voice_verdict.to_payload() == harness.session.record.voice_verdict
    assert harness.gateway.kinds.count(EvidenceKind.DECISION) == 1
    assert len(harness.store.history_for_user(harness.user_id)) == 1


@pytest.mark.asyncio
async def test_malformed_user_id_rejected_at_start():
    gateway = MockAnalysisGateway()
    store = make_store()

    with pytest.raises(ValidationError) as exc_info:
        VerificationWorkflow.start("alice", gateway, DecisionFinalizer(gateway, store))

    assert exc_info.value.error_code == "INVALID_USER_ID"
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_go_back_during_recording_releases_microphone():
    harness = Harness()
    await harness.to_voice()
    harness.ticks.block_after = harness.ticks.units

    recording = asyncio.create_task(harness.dispatch(RecordVoice()))
    await harness.ticks.blocked.wait()
    assert harness.microphone.is_active

    await harness.dispatch(GoBack())
    assert not harness.microphone.is_active

    with pytest.raises(CaptureCancelledError):
        await recording
    assert harness.session.voice_sample is None


@pytest.mark.asyncio
async def test_verify_voice_requires_recording():
    harness = Harness()
    await harness.to_voice()

    with pytest.raises(ValidationError):
        await harness.dispatch(VerifyVoice())

    assert EvidenceKind.VOICE not in harness.gateway.kinds


@pytest.mark.asyncio
async def test_record_not_saved_keeps_voice_stage():
    harness = Harness(store=FailingStore())
    await harness.to_voice()
    await harness.dispatch(RecordVoice())

    with pytest.raises(RecordNotSavedError) as exc_info:
        await harness.dispatch(VerifyVoice())

    assert isinstance(exc_info.value, PersistenceError)
    assert harness.workflow.stage == Stage.VOICE
    assert harness.session.voice_verdict is not None
    assert harness.session.record is None


@pytest.mark.asyncio
async def test_finalize_retry_after_bad_decision():
    gateway = MockAnalysisGateway({
        EvidenceKind.DECISION: ["{\"decision\": \"verified\"}", DECISION_VERIFIED]
    })
    harness = Harness(gateway=gateway)
    await harness.to_voice()
    await harness.dispatch(RecordVoice())

    with pytest.raises(InvalidResponseError):
        await harness.dispatch(VerifyVoice())

    assert harness.workflow.stage == Stage.VOICE
    assert harness.store.history_for_user(harness.user_id) == []

    await harness.dispatch(Finalize(idempotency_key="retry-1"))

    assert harness.workflow.stage == Stage.RESULT
    assert len(harness.store.history_for_user(harness.user_id)) == 1
    assert gateway.kinds.count(EvidenceKind.VOICE) == 1
    assert gateway.kinds.count(EvidenceKind.DECISION) == 2


@pytest.mark.asyncio
async def test_result_is_terminal():
    harness = Harness()
    await harness.to_voice()
    await harness.dispatch(RecordVoice())
    await harness.dispatch(VerifyVoice())

    with pytest.raises(WorkflowStateError):
        await harness.dispatch(Advance())
    with pytest.raises(WorkflowStateError):
        await harness.dispatch(GoBack())
    with pytest.raises(WorkflowStateError):
        await harness.dispatch(Finalize())


@pytest.mark.asyncio
async def test_abandon_discards_session():
    harness = Harness()
    await harness.to_liveness()

    await harness.dispatch(Abandon())

    assert harness.workflow.is_abandoned
    assert harness.session.document_image is None
    assert harness.session.document_verdict is None
    assert not harness.camera.is_active

    with pytest.raises(WorkflowStateError):
        await harness.dispatch(CaptureLiveness())
    assert harness.store.history_for_user(harness.user_id) == []
