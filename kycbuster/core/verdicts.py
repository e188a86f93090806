"""
Analysis verdict models

Closed set of verdict variants returned by the analysis capability, one
per evidence kind. Parsing is strict: a missing or out of range risk
bearing field fails the parse instead of falling back to a default.
"""

import json
from abc import ABC, abstractmethod
from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Type, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictBool
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .exceptions import InvalidResponseError


Score = Annotated[float, Field(ge=0, le=100, strict=True)]
CategoricalRisk = Literal["low", "medium", "high"]


class EvidenceKind(str, Enum):
    """Evidence kinds understood by the analysis capability"""
    DOCUMENT = "document"
    LIVENESS = "liveness"
    VOICE = "voice"
    VIDEO = "video"
    DECISION = "decision"


class WireModel(BaseModel):
    """Frozen model with camelCase wire names"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    def to_payload(self) -> Dict[str, Any]:
        """Serialize with wire (camelCase) field names."""
        return self.model_dump(by_alias=True, mode="json")


class VerdictModel(WireModel, ABC):
    """Common interface of all verdict variants"""

    kind: ClassVar[EvidenceKind]

    @property
    @abstractmethod
    def passed(self) -> bool:
        ...

    @property
    @abstractmethod
    def confidence_value(self) -> float:
        ...

    @property
    @abstractmethod
    def risk_indicator(self) -> Union[str, float]:
        ...

    @property
    @abstractmethod
    def reasoning_text(self) -> str:
        ...


class DocumentVerdict(VerdictModel):
    """Identity document OCR and tamper analysis"""

    kind: ClassVar[EvidenceKind] = EvidenceKind.DOCUMENT

    name: Optional[str] = None
    document_number: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("documentNumber", "aadhaarNumber", "document_number"),
    )
    dob: Optional[str] = None
    address: Optional[str] = None
    is_tampered: StrictBool
    confidence: Score
    reasoning: str

    @property
    def passed(self) -> bool:
        return not self.is_tampered

    @property
    def confidence_value(self) -> float:
        return self.confidence

    @property
    def risk_indicator(self) -> str:
        return "high" if self.is_tampered else "low"

    @property
    def reasoning_text(self) -> str:
        return self.reasoning

    def extracted_fields(self) -> Dict[str, Optional[str]]:
        """Identity fields read from the document."""
        return {
            "name": self.name,
            "documentNumber": self.document_number,
            "dob": self.dob,
            "address": self.address,
        }


class DetectedMovements(WireModel):
    """Per-instruction movement findings"""

    blink: StrictBool = False
    smile: StrictBool = False
    head_turn: StrictBool = False
    depth_change: StrictBool = False


class LivenessVerdict(VerdictModel):
    """Face liveness, anti-spoofing and document face match"""

    kind: ClassVar[EvidenceKind] = EvidenceKind.LIVENESS

    is_live: StrictBool
    human_detected: StrictBool
    confidence: Score
    risk_level: CategoricalRisk
    detected_movements: Optional[DetectedMovements] = None
    match_score: Score
    reasoning: str
    explanation: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.is_live and self.human_detected

    @property
    def confidence_value(self) -> float:
        return self.confidence

    @property
    def risk_indicator(self) -> str:
        return self.risk_level

    @property
    def reasoning_text(self) -> str:
        return self.reasoning


class VoiceVerdict(VerdictModel):
    """Spoken code check and synthetic voice detection"""

    kind: ClassVar[EvidenceKind] = EvidenceKind.VOICE

    matches_text: StrictBool
    code_verified: StrictBool
    is_natural: StrictBool
    risk_level: Score
    confidence: Score
    reasoning: str
    transcript: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.code_verified and self.is_natural

    @property
    def confidence_value(self) -> float:
        return self.confidence

    @property
    def risk_indicator(self) -> float:
        return self.risk_level

    @property
    def reasoning_text(self) -> str:
        return self.reasoning


class FrameFinding(WireModel):
    """Issue observed at one point of a video"""

    timestamp: str
    issue: str


class VideoVerdict(VerdictModel):
    """Standalone deepfake video analysis"""

    kind: ClassVar[EvidenceKind] = EvidenceKind.VIDEO

    is_deepfake: StrictBool
    confidence_score: Score
    risk_level: CategoricalRisk
    detected_anomalies: List[str]
    explanation: str
    frame_analysis: List[FrameFinding] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.is_deepfake

    @property
    def confidence_value(self) -> float:
        return self.confidence_score

    @property
    def risk_indicator(self) -> str:
        return self.risk_level

    @property
    def reasoning_text(self) -> str:
        return self.explanation


class FinalDecision(VerdictModel):
    """Aggregated verification decision"""

    kind: ClassVar[EvidenceKind] = EvidenceKind.DECISION

    decision: Literal["verified", "suspicious", "fake"]
    risk_score: Score
    confidence_score: Score
    explanation: str

    @property
    def passed(self) -> bool:
        return self.decision == "verified"

    @property
    def confidence_value(self) -> float:
        return self.confidence_score

    @property
    def risk_indicator(self) -> float:
        return self.risk_score

    @property
    def reasoning_text(self) -> str:
        return self.explanation


AnalysisVerdict = Union[DocumentVerdict, LivenessVerdict, VoiceVerdict, VideoVerdict, FinalDecision]

VERDICT_TYPES: Dict[EvidenceKind, Type[VerdictModel]] = {
    EvidenceKind.DOCUMENT: DocumentVerdict,
    EvidenceKind.LIVENESS: LivenessVerdict,
    EvidenceKind.VOICE: VoiceVerdict,
    EvidenceKind.VIDEO: VideoVerdict,
    EvidenceKind.DECISION: FinalDecision,
}


def parse_verdict(kind: EvidenceKind, raw: Union[str, bytes, Dict[str, Any]]) -> AnalysisVerdict:
    """
    Parse a raw analyzer response into the verdict variant for ``kind``.

    Args:
        kind: Evidence kind the response was requested for
        raw: JSON text or an already decoded object

    Returns:
        The verdict model instance

    Raises:
        InvalidResponseError: If the payload is not JSON or violates the shape
    """
    verdict_type = VERDICT_TYPES[kind]

    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise InvalidResponseError(
                f"{kind.value} analysis returned malformed JSON",
                details={"error": str(e)}
            )

    if not isinstance(raw, dict):
        raise InvalidResponseError(
            f"{kind.value} analysis returned {type(raw).__name__}, expected an object"
        )

    try:
        return verdict_type.model_validate(raw)
    except PydanticValidationError as e:
        raise InvalidResponseError(
            f"{kind.value} analysis response has an unexpected shape",
            details={"errors": e.errors(include_url=False, include_input=False)}
        )
