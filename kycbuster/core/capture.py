"""
Liveness capture sequencing

Drives the timed five-pose liveness protocol and the fixed voice
recording window. Timing comes from an injected tick source so the
protocol runs identically against a wall clock or a test clock, and
device handles are released synchronously on cancel.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

from .exceptions import CaptureCancelledError, ResourceError, ValidationError

logger = logging.getLogger(__name__)


class TickSource(Protocol):
    """Cancellable timer capability"""

    async def tick(self, units: float = 1) -> None:
        ...


class AsyncioTickSource:
    """Wall clock tick source; one unit is ``unit_seconds`` long."""

    def __init__(self, unit_seconds: float = 1.0):
        self.unit_seconds = unit_seconds

    async def tick(self, units: float = 1) -> None:
        await asyncio.sleep(units * self.unit_seconds)


class CameraSource(ABC):
    """Live camera handle"""

    @property
    @abstractmethod
    def is_active(self) -> bool:
        pass

    @abstractmethod
    def start(self) -> None:
        """Acquire the camera. Raises ResourceError when unavailable."""
        pass

    @abstractmethod
    def capture_frame(self) -> bytes:
        """Grab one JPEG encoded frame."""
        pass

    @abstractmethod
    def stop(self) -> None:
        """Release the camera. Must be safe to call more than once."""
        pass


class MicrophoneSource(ABC):
    """Live microphone handle"""

    mime_type: str = "audio/webm"

    @property
    @abstractmethod
    def is_active(self) -> bool:
        pass

    @abstractmethod
    def start(self) -> None:
        """Acquire the microphone and begin recording."""
        pass

    @abstractmethod
    def stop(self) -> bytes:
        """Stop recording, release the microphone and return the audio."""
        pass


@dataclass(frozen=True)
class LivenessStep:
    """One pose instruction of the liveness protocol"""
    id: str
    instruction: str
    feedback: str


LIVENESS_STEPS: Tuple[LivenessStep, ...] = (
    LivenessStep("look-straight", "Look straight into the camera", "Position captured"),
    LivenessStep("blink", "Blink your eyes twice", "Blink captured"),
    LivenessStep("smile", "Smile naturally", "Expression captured"),
    LivenessStep("turn-head", "Turn head left and right", "Movement captured"),
    LivenessStep("move-forward", "Move slightly forward", "Depth captured"),
)


@dataclass(frozen=True)
class CapturedFrame:
    """A single captured frame and the step it belongs to"""
    step_index: int
    step_id: str
    image: bytes
    mime_type: str = "image/jpeg"


@dataclass(frozen=True)
class LivenessCapture:
    """A complete, ordered liveness capture"""
    frames: Tuple[CapturedFrame, ...]

    def __post_init__(self):
        expected = [step.id for step in LIVENESS_STEPS]
        actual = [frame.step_id for frame in self.frames]
        if actual != expected:
            raise ValidationError(
                "Liveness capture must contain exactly one frame per step in order",
                error_code="INCOMPLETE_LIVENESS_CAPTURE",
                details={"expected": expected, "actual": actual}
            )

    @property
    def step_ids(self) -> List[str]:
        return [frame.step_id for frame in self.frames]


@dataclass(frozen=True)
class VoiceSample:
    """Recorded voice payload"""
    audio: bytes
    mime_type: str = "audio/webm"


class SequencerPhase(str, Enum):
    """Capture sequencer phases"""
    IDLE = "idle"
    COUNTDOWN = "countdown"
    CONFIRMING = "confirming"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class SequencerState:
    """Observable sequencer state"""
    phase: SequencerPhase = SequencerPhase.IDLE
    step_index: int = -1
    countdown: int = 0
    status: str = ""


class CaptureSequencer:
    """
    Runs the liveness capture protocol.

    For every step: show the instruction, count down, capture one frame at
    zero, then hold a short confirmation. The camera is stopped after the
    last step. A sequencer instance runs once.
    """

    def __init__(
        self,
        camera: CameraSource,
        ticks: TickSource,
        steps: Sequence[LivenessStep] = LIVENESS_STEPS,
        countdown_ticks: int = 3,
        confirmation_ticks: int = 1,
        listener: Optional[Callable[[SequencerState], None]] = None,
    ):
        self.camera = camera
        self.ticks = ticks
        self.steps = tuple(steps)
        self.countdown_ticks = countdown_ticks
        self.confirmation_ticks = confirmation_ticks
        self.listener = listener
        self._state = SequencerState()
        self._frames: List[CapturedFrame] = []
        self._cancel_requested = False
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> SequencerState:
        return self._state

    @property
    def captured_count(self) -> int:
        return len(self._frames)

    @property
    def is_running(self) -> bool:
        return self._state.phase in (SequencerPhase.COUNTDOWN, SequencerPhase.CONFIRMING)

    async def run(self) -> LivenessCapture:
        """
        Execute the full protocol.

        Returns:
            The completed capture

        Raises:
            CaptureCancelledError: If cancel() was called before completion
            ResourceError: If the camera is unavailable or fails mid-sequence
        """
        if self._state.phase is not SequencerPhase.IDLE:
            raise ValidationError("Capture sequencer has already been used",
                                  error_code="SEQUENCER_ALREADY_USED")

        self._task = asyncio.current_task()
        self._update(status="Get ready...")

        try:
            self.camera.start()

            for index, step in enumerate(self.steps):
                self._update(
                    phase=SequencerPhase.COUNTDOWN,
                    step_index=index,
                    countdown=self.countdown_ticks,
                    status=step.instruction
                )
                while self._state.countdown > 0:
                    await self.ticks.tick(1)
                    self._check_cancelled()
                    self._update(countdown=self._state.countdown - 1)

                image = self.camera.capture_frame()
                self._frames.append(CapturedFrame(index, step.id, image))
                self._update(phase=SequencerPhase.CONFIRMING, status=step.feedback)

                await self.ticks.tick(self.confirmation_ticks)
                self._check_cancelled()

            self._release_camera()
            capture = LivenessCapture(tuple(self._frames))
            self._update(
                phase=SequencerPhase.COMPLETE, step_index=-1, countdown=0,
                status="All frames captured"
            )
            logger.info(f"Liveness capture completed with {len(capture.frames)} frames")
            return capture

        except asyncio.CancelledError:
            self._abort(SequencerPhase.CANCELLED)
            if self._cancel_requested:
                raise CaptureCancelledError("Liveness capture was cancelled") from None
            raise
        except CaptureCancelledError:
            self._abort(SequencerPhase.CANCELLED)
            raise
        except ResourceError as e:
            logger.error(f"Liveness capture failed at step {self._state.step_index}: {e}")
            self._abort(SequencerPhase.FAILED)
            raise
        except Exception:
            logger.exception(f"Unexpected camera error at step {self._state.step_index}")
            self._abort(SequencerPhase.FAILED)
            raise

    def cancel(self) -> None:
        """Abort the sequence, release the camera and drop partial frames."""
        if self._state.phase in (SequencerPhase.COMPLETE, SequencerPhase.CANCELLED,
                                 SequencerPhase.FAILED):
            return

        self._cancel_requested = True
        self._abort(SequencerPhase.CANCELLED)

        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _check_cancelled(self) -> None:
        if self._cancel_requested:
            raise CaptureCancelledError("Liveness capture was cancelled")

    def _abort(self, phase: SequencerPhase) -> None:
        discarded = len(self._frames)
        self._frames.clear()
        self._release_camera()
        if self._state.phase is not phase:
            self._update(phase=phase, countdown=0)
            logger.info(f"Liveness capture {phase.value}, discarded {discarded} frames")

    def _release_camera(self) -> None:
        if self.camera.is_active:
            self.camera.stop()

    def _update(self, **changes) -> None:
        self._state = replace(self._state, **changes)
        if self.listener is not None:
            self.listener(self._state)


class VoiceRecorder:
    """Records a fixed-length voice sample from the microphone."""

    def __init__(self, microphone: MicrophoneSource, ticks: TickSource,
                 window_ticks: int = 5):
        self.microphone = microphone
        self.ticks = ticks
        self.window_ticks = window_ticks
        self._cancel_requested = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_recording(self) -> bool:
        return self.microphone.is_active

    async def record(self) -> VoiceSample:
        """
        Record one voice sample.

        Raises:
            CaptureCancelledError: If cancel() was called while recording
            ResourceError: If the microphone fails or nothing was recorded
        """
        self._task = asyncio.current_task()
        self._cancel_requested = False

        try:
            self.microphone.start()
            await self.ticks.tick(self.window_ticks)
            if self._cancel_requested:
                raise CaptureCancelledError("Voice recording was cancelled")
            audio = self.microphone.stop()
        except asyncio.CancelledError:
            self._release()
            if self._cancel_requested:
                raise CaptureCancelledError("Voice recording was cancelled") from None
            raise
        except Exception:
            self._release()
            raise

        if not audio:
            raise ResourceError("No audio recorded. Please try again.",
                                error_code="EMPTY_RECORDING")
        return VoiceSample(audio=audio, mime_type=self.microphone.mime_type)

    def cancel(self) -> None:
        """Stop recording, release the microphone and drop the audio."""
        self._cancel_requested = True
        self._release()
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _release(self) -> None:
        if self.microphone.is_active:
            self.microphone.stop()
