"""
Verification Workflow

Session state machine for the five stage KYC flow:

    DETAILS -> DOCUMENT -> LIVENESS -> VOICE -> RESULT

A VerificationSession is owned by exactly one VerificationWorkflow and is
only changed through ``dispatch``. Evidence for a stage must exist before
the next stage can be entered, failures keep the session in its current
stage, and RESULT is reached only through the decision finalizer.
"""

import hashlib
import logging
import secrets
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from ..config import KYCConfig
from .analysis_gateway import AnalysisGateway, MediaPart
from .capture import (
    AsyncioTickSource, CameraSource, CaptureSequencer, LivenessCapture,
    MicrophoneSource, SequencerState, TickSource, VoiceRecorder, VoiceSample
)
from .exceptions import (
    AnalysisInProgressError, GatewayUnconfiguredError, KYCError,
    ResourceError, ValidationError, WorkflowStateError
)
from .finalizer import DecisionFinalizer
from .record_store import VerificationRecord
from .verdicts import DocumentVerdict, FinalDecision, LivenessVerdict, VoiceVerdict

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    """Workflow stages in order"""
    DETAILS = "details"
    DOCUMENT = "document"
    LIVENESS = "liveness"
    VOICE = "voice"
    RESULT = "result"


STAGE_ORDER: List[Stage] = [Stage.DETAILS, Stage.DOCUMENT, Stage.LIVENESS, Stage.VOICE, Stage.RESULT]


@dataclass
class PersonalDetails:
    """Applicant supplied identity details"""
    full_name: str = ""
    dob: str = ""
    address: str = ""

    def missing_fields(self) -> List[str]:
        return [
            name for name, value in (
                ("fullName", self.full_name), ("dob", self.dob), ("address", self.address)
            )
            if not value or not value.strip()
        ]

    def to_dict(self) -> Dict[str, str]:
        return {"fullName": self.full_name, "dob": self.dob, "address": self.address}


@dataclass(frozen=True)
class UploadedDocument:
    """Identity document image as uploaded"""
    image: bytes
    mime_type: str = "image/jpeg"
    filename: Optional[str] = None

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.image).hexdigest()

    def as_media(self) -> MediaPart:
        return MediaPart(self.mime_type, self.image)


@dataclass
class VerificationSession:
    """Transient state of one verification run"""
    user_id: Optional[str]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    stage: Stage = Stage.DETAILS
    personal_details: PersonalDetails = field(default_factory=PersonalDetails)
    document_image: Optional[UploadedDocument] = None
    document_verdict: Optional[DocumentVerdict] = None
    liveness_capture: Optional[LivenessCapture] = None
    liveness_verdict: Optional[LivenessVerdict] = None
    voice_sample: Optional[VoiceSample] = None
    voice_verdict: Optional[VoiceVerdict] = None
    verification_code: Optional[str] = None
    final_decision: Optional[FinalDecision] = None
    record: Optional[VerificationRecord] = None
    last_error: Optional[KYCError] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if self.user_id is None:
            return
        try:
            self.user_id = str(uuid.UUID(str(self.user_id)))
        except ValueError:
            raise ValidationError(f"Invalid user id: {self.user_id}",
                                  error_code="INVALID_USER_ID") from None

    def document_evidence(self) -> Dict[str, Any]:
        """Document evidence persisted with the final record."""
        evidence: Dict[str, Any] = {"personalDetails": self.personal_details.to_dict()}
        if self.document_image is not None:
            evidence["imageSha256"] = self.document_image.sha256
            evidence["mimeType"] = self.document_image.mime_type
            evidence["filename"] = self.document_image.filename
        if self.document_verdict is not None:
            evidence["extracted"] = self.document_verdict.extracted_fields()
        return evidence


# Actions -------------------------------------------------------------------

@dataclass(frozen=True)
class SubmitDetails:
    full_name: str
    dob: str
    address: str


@dataclass(frozen=True)
class UploadDocument:
    image: bytes
    mime_type: str = "image/jpeg"
    filename: Optional[str] = None


@dataclass(frozen=True)
class VerifyDocument:
    pass


@dataclass(frozen=True)
class CaptureLiveness:
    camera: Optional[CameraSource] = None
    listener: Optional[Callable[[SequencerState], None]] = None


@dataclass(frozen=True)
class VerifyLiveness:
    pass


@dataclass(frozen=True)
class RecordVoice:
    microphone: Optional[MicrophoneSource] = None


@dataclass(frozen=True)
class VerifyVoice:
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class Finalize:
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class Advance:
    pass


@dataclass(frozen=True)
class GoBack:
    pass


@dataclass(frozen=True)
class Abandon:
    pass


def generate_verification_code() -> str:
    """Random four digit code between 1000 and 9999."""
    return str(1000 + secrets.randbelow(9000))


class VerificationWorkflow:
    """
    Controller owning one verification session.

    Args:
        session: Session to drive
        gateway: Analysis gateway for stage verdicts
        finalizer: Decision finalizer committing the record
        config: Timing configuration
        ticks: Tick source for capture timing
        camera: Default camera for liveness capture
        microphone: Default microphone for voice recording
        code_generator: Source of voice verification codes
    """

    def __init__(
        self,
        session: VerificationSession,
        gateway: AnalysisGateway,
        finalizer: DecisionFinalizer,
        config: Optional[KYCConfig] = None,
        ticks: Optional[TickSource] = None,
        camera: Optional[CameraSource] = None,
        microphone: Optional[MicrophoneSource] = None,
        code_generator: Callable[[], str] = generate_verification_code,
    ):
        self.session = session
        self.gateway = gateway
        self.finalizer = finalizer
        self.config = config or KYCConfig()
        self.ticks = ticks or AsyncioTickSource(self.config.tick_seconds)
        self.camera = camera
        self.microphone = microphone
        self.code_generator = code_generator

        self._in_flight: Set[Stage] = set()
        self._blocked: Optional[GatewayUnconfiguredError] = None
        self._active_capture: Optional[CaptureSequencer] = None
        self._active_recorder: Optional[VoiceRecorder] = None
        self._abandoned = False

        self._handlers = {
            SubmitDetails: self._submit_details,
            UploadDocument: self._upload_document,
            VerifyDocument: self._verify_document,
            CaptureLiveness: self._capture_liveness,
            VerifyLiveness: self._verify_liveness,
            RecordVoice: self._record_voice,
            VerifyVoice: self._verify_voice,
            Finalize: self._finalize,
            Advance: self._advance,
            GoBack: self._go_back,
            Abandon: self._abandon,
        }

    @classmethod
    def start(cls, user_id: Optional[str], gateway: AnalysisGateway,
              finalizer: DecisionFinalizer, full_name: Optional[str] = None,
              **kwargs) -> "VerificationWorkflow":
        """Create a workflow with a fresh session in the DETAILS stage."""
        session = VerificationSession(
            user_id=user_id,
            personal_details=PersonalDetails(full_name=full_name or "")
        )
        logger.info(f"Started verification session {session.id} for user {user_id}")
        return cls(session, gateway, finalizer, **kwargs)

    @property
    def stage(self) -> Stage:
        return self.session.stage

    @property
    def is_abandoned(self) -> bool:
        return self._abandoned

    @property
    def is_blocked(self) -> bool:
        return self._blocked is not None

    def in_flight(self, stage: Stage) -> bool:
        return stage in self._in_flight

    async def dispatch(self, action) -> VerificationSession:
        """
        Apply one action to the session.

        Raises:
            WorkflowStateError: If the action is not valid in the current stage
            KYCError: Stage specific failures; the session stays in its stage
        """
        handler = self._handlers.get(type(action))
        if handler is None:
            raise ValidationError(f"Unknown workflow action: {type(action).__name__}")

        if self._abandoned:
            raise WorkflowStateError(type(action).__name__, self.session.stage.value,
                                     "session was abandoned")

        try:
            await handler(action)
        except KYCError as e:
            self.session.last_error = e
            logger.warning(
                f"Session {self.session.id}: {type(action).__name__} failed in "
                f"{self.session.stage.value}: [{e.error_code}] {e.message}"
            )
            raise

        self.session.last_error = None
        return self.session

    # Stage handlers --------------------------------------------------------

    async def _submit_details(self, action: SubmitDetails) -> None:
        self._require_stage(action, Stage.DETAILS)

        details = PersonalDetails(
            full_name=(action.full_name or "").strip(),
            dob=(action.dob or "").strip(),
            address=(action.address or "").strip(),
        )
        missing = details.missing_fields()
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                error_code="MISSING_PERSONAL_DETAILS",
                details={"missing": missing}
            )

        self.session.personal_details = details
        self._enter(Stage.DOCUMENT)

    async def _upload_document(self, action: UploadDocument) -> None:
        self._require_stage(action, Stage.DOCUMENT)
        self._require_idle(Stage.DOCUMENT)

        if not action.image:
            raise ValidationError("Document image is empty", error_code="EMPTY_DOCUMENT")

        self.session.document_image = UploadedDocument(action.image, action.mime_type, action.filename)
        self.session.document_verdict = None

    async def _verify_document(self, action: VerifyDocument) -> None:
        self._require_stage(action, Stage.DOCUMENT)
        if self.session.document_image is None:
            raise ValidationError("Upload a document image first", error_code="DOCUMENT_REQUIRED")

        async with self._analysis(Stage.DOCUMENT):
            verdict = await self.gateway.analyze_document(
                self.session.personal_details.to_dict(), self.session.document_image.as_media()
            )

        self.session.document_verdict = verdict
        if verdict.address:
            self.session.personal_details.address = verdict.address
        self._enter(Stage.LIVENESS)

    async def _capture_liveness(self, action: CaptureLiveness) -> None:
        self._require_stage(action, Stage.LIVENESS)
        self._require_idle(Stage.LIVENESS)
        if self._active_capture is not None:
            raise ValidationError("A liveness capture is already running",
                                  error_code="CAPTURE_IN_PROGRESS")

        camera = action.camera or self.camera
        if camera is None:
            raise ResourceError("No camera available", error_code="CAMERA_UNAVAILABLE")

        self.session.liveness_capture = None
        self.session.liveness_verdict = None

        sequencer = CaptureSequencer(
            camera, self.ticks,
            countdown_ticks=self.config.countdown_ticks,
            confirmation_ticks=self.config.confirmation_ticks,
            listener=action.listener,
        )
        self._active_capture = sequencer
        try:
            capture = await sequencer.run()
        finally:
            self._active_capture = None

        self.session.liveness_capture = capture

    async def _verify_liveness(self, action: VerifyLiveness) -> None:
        self._require_stage(action, Stage.LIVENESS)
        self._require_evidence(action, document=True)
        if self.session.liveness_capture is None:
            raise ValidationError("Complete the liveness capture first",
                                  error_code="LIVENESS_CAPTURE_REQUIRED")

        frames = [
            MediaPart(frame.mime_type, frame.image)
            for frame in self.session.liveness_capture.frames
        ]
        async with self._analysis(Stage.LIVENESS):
            verdict = await self.gateway.analyze_liveness(self.session.document_image.as_media(), frames)

        self.session.liveness_verdict = verdict

    async def _record_voice(self, action: RecordVoice) -> None:
        self._require_stage(action, Stage.VOICE)
        self._require_idle(Stage.VOICE)
        self._require_idle(Stage.RESULT)
        if self._active_recorder is not None:
            raise ValidationError("A voice recording is already running",
                                  error_code="RECORDING_IN_PROGRESS")

        microphone = action.microphone or self.microphone
        if microphone is None:
            raise ResourceError("Could not access microphone. Please check permissions.",
                                error_code="MICROPHONE_UNAVAILABLE")

        self.session.voice_sample = None
        self.session.voice_verdict = None

        recorder = VoiceRecorder(microphone, self.ticks, self.config.voice_recording_ticks)
        self._active_recorder = recorder
        try:
            sample = await recorder.record()
        finally:
            self._active_recorder = None

        self.session.voice_sample = sample

    async def _verify_voice(self, action: VerifyVoice) -> None:
        self._require_stage(action, Stage.VOICE)
        self._require_evidence(action, document=True, liveness=True)
        self._require_idle(Stage.RESULT)
        if self._active_recorder is not None:
            raise ValidationError("Wait for the recording to finish",
                                  error_code="RECORDING_IN_PROGRESS")
        if self.session.voice_sample is None:
            raise ValidationError("No audio recorded. Please try again.",
                                  error_code="VOICE_SAMPLE_REQUIRED")

        sample = self.session.voice_sample
        # The voice guard stays held until the decision is recorded.
        async with self._analysis(Stage.VOICE):
            verdict = await self.gateway.analyze_voice(
                self.session.verification_code, MediaPart(sample.mime_type, sample.audio)
            )
            self.session.voice_verdict = verdict
            await self._commit_decision(action.idempotency_key)

    async def _finalize(self, action: Finalize) -> None:
        self._require_stage(action, Stage.VOICE)
        self._require_idle(Stage.VOICE)
        self._require_evidence(action, document=True, liveness=True, voice=True)
        await self._commit_decision(action.idempotency_key)

    async def _commit_decision(self, idempotency_key: Optional[str]) -> None:
        async with self._analysis(Stage.RESULT):
            result = await self.finalizer.finalize(
                self.session.user_id,
                self.session.document_evidence(),
                self.session.document_verdict,
                self.session.liveness_verdict,
                self.session.voice_verdict,
                idempotency_key=idempotency_key,
            )

        self.session.final_decision = result.decision
        self.session.record = result.record
        self._enter(Stage.RESULT)

    async def _advance(self, action: Advance) -> None:
        stage = self.session.stage
        self._require_idle(stage)

        if stage is Stage.DETAILS:
            missing = self.session.personal_details.missing_fields()
            if missing:
                raise ValidationError(
                    f"Missing required fields: {', '.join(missing)}",
                    error_code="MISSING_PERSONAL_DETAILS",
                    details={"missing": missing}
                )
            self._enter(Stage.DOCUMENT)
        elif stage is Stage.DOCUMENT:
            self._require_evidence(action, document=True)
            self._enter(Stage.LIVENESS)
        elif stage is Stage.LIVENESS:
            self._require_evidence(action, document=True, liveness=True)
            self._enter(Stage.VOICE)
        elif stage is Stage.VOICE:
            await self._finalize(Finalize())
        else:
            raise WorkflowStateError("Advance", stage.value, "verification is complete")

    async def _go_back(self, action: GoBack) -> None:
        stage = self.session.stage
        if stage not in (Stage.DOCUMENT, Stage.LIVENESS, Stage.VOICE):
            raise WorkflowStateError("GoBack", stage.value)
        if self._in_flight:
            raise AnalysisInProgressError(stage.value)

        self._release_devices()

        if stage is Stage.DOCUMENT:
            # the uploaded image is kept for re-verification
            self.session.document_verdict = None
        elif stage is Stage.LIVENESS:
            self.session.liveness_capture = None
            self.session.liveness_verdict = None
        else:
            self.session.voice_sample = None
            self.session.voice_verdict = None
            self.session.verification_code = None

        self.session.stage = STAGE_ORDER[STAGE_ORDER.index(stage) - 1]
        logger.info(f"Session {self.session.id} moved back to {self.session.stage.value}")

    async def _abandon(self, action: Abandon) -> None:
        self._release_devices()
        self._abandoned = True

        session = self.session
        session.document_image = None
        session.document_verdict = None
        session.liveness_capture = None
        session.liveness_verdict = None
        session.voice_sample = None
        session.voice_verdict = None
        session.verification_code = None
        logger.info(f"Session {session.id} abandoned in stage {session.stage.value}")

    # Helpers ---------------------------------------------------------------

    def _enter(self, stage: Stage) -> None:
        if stage is Stage.VOICE:
            self.session.verification_code = self.code_generator()
        self.session.stage = stage
        logger.info(f"Session {self.session.id} entered {stage.value}")

    def _require_stage(self, action, stage: Stage) -> None:
        if self.session.stage is not stage:
            raise WorkflowStateError(
                type(action).__name__, self.session.stage.value,
                f"expected stage '{stage.value}'"
            )

    def _require_idle(self, stage: Stage) -> None:
        if stage in self._in_flight:
            raise AnalysisInProgressError(stage.value)

    def _require_evidence(self, action, document: bool = False, liveness: bool = False,
                          voice: bool = False) -> None:
        session = self.session
        missing = []
        if document and (session.document_image is None or session.document_verdict is None):
            missing.append("document")
        if liveness and session.liveness_verdict is None:
            missing.append("liveness")
        if voice and session.voice_verdict is None:
            missing.append("voice")
        if missing:
            raise WorkflowStateError(
                type(action).__name__, session.stage.value,
                f"missing {', '.join(missing)} evidence"
            )

    @asynccontextmanager
    async def _analysis(self, stage: Stage):
        """Guard one outstanding analysis call per stage."""
        if self._blocked is not None:
            raise self._blocked
        if stage in self._in_flight:
            raise AnalysisInProgressError(stage.value)

        self._in_flight.add(stage)
        try:
            yield
        except GatewayUnconfiguredError as e:
            self._blocked = e
            logger.error(f"Analysis capability is not configured, session {self.session.id} blocked")
            raise
        finally:
            self._in_flight.discard(stage)

    def _release_devices(self) -> None:
        if self._active_capture is not None:
            self._active_capture.cancel()
            self._active_capture = None
        if self._active_recorder is not None:
            self._active_recorder.cancel()
            self._active_recorder = None
