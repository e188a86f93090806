"""
Analysis Gateway

Uniform call/response contract to the external analysis capability for
each evidence kind. Implementations send a context text plus media parts
and hand the raw response to the strict verdict parser. The gateway never
persists anything.
"""

import base64
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..config import KYCConfig
from .exceptions import (
    GatewayError, GatewayUnconfiguredError, RateLimitedError,
    InvalidResponseError, TransportError
)
from .verdicts import (
    EvidenceKind, DocumentVerdict, LivenessVerdict, VoiceVerdict,
    VideoVerdict, FinalDecision, parse_verdict
)

logger = logging.getLogger(__name__)


LIVENESS_INSTRUCTIONS = (
    "Look straight",
    "Blink eyes",
    "Smile",
    "Turn head",
    "Move forward",
)


@dataclass(frozen=True)
class MediaPart:
    """Binary payload sent inline with an analysis request"""
    mime_type: str
    data: bytes

    def to_inline_data(self) -> Dict[str, Any]:
        return {
            "inlineData": {
                "mimeType": self.mime_type,
                "data": base64.b64encode(self.data).decode("ascii"),
            }
        }


def expected_voice_phrase(verification_code: str) -> str:
    """Phrase the user must speak during voice verification."""
    return f"My verification code is {verification_code}"


class AnalysisGateway(ABC):
    """
    Abstract gateway to the analysis capability.

    Subclasses implement ``_request`` for a concrete transport; the
    public methods build the per-kind context and parse the verdict.
    """

    def __init__(self, config: KYCConfig):
        self.config = config

    async def analyze_document(self, personal_details: Dict[str, str],
                               document: MediaPart) -> DocumentVerdict:
        """Extract identity fields and check a document image for tampering."""
        context = (
            "Analyze this identity document image. Extract the holder name, "
            "document number, date of birth and address. Compare them with the "
            f"details supplied by the applicant: {json.dumps(personal_details)}. "
            "Check for tampering, substituted fonts and inconsistent layout. "
            "Return a JSON object with: { name, documentNumber, dob, address, "
            "isTampered: boolean, confidence: number (0-100), reasoning: string }."
        )
        return await self._analyze(EvidenceKind.DOCUMENT, context, [document])

    async def analyze_liveness(self, document: MediaPart,
                               frames: Sequence[MediaPart]) -> LivenessVerdict:
        """Check liveness across the capture frames and match them to the document photo."""
        steps = "\n".join(
            f"  {i}. {label}" for i, label in enumerate(LIVENESS_INSTRUCTIONS, start=1)
        )
        context = (
            "Analyze these images for face liveness, spoofing and identity match.\n"
            "Image 1 is the applicant's identity document. Images 2-"
            f"{len(frames) + 1} are live frames captured while the applicant "
            f"followed these instructions:\n{steps}\n"
            "1. Face match: compare the document face with the live frames and "
            "give a match score (0-100).\n"
            "2. Liveness: verify each instruction was followed (blink, smile, "
            "head turn, depth change).\n"
            "3. Spoofing: look for photo-of-photo moire, screen replay borders, "
            "synthetic face artifacts and masks.\n"
            "Return a JSON object with: { isLive: boolean, humanDetected: boolean, "
            "confidence: number (0-100), riskLevel: \"low\" | \"medium\" | \"high\", "
            "detectedMovements: { blink, smile, headTurn, depthChange }, "
            "matchScore: number (0-100), reasoning: string, explanation: string }."
        )
        return await self._analyze(EvidenceKind.LIVENESS, context, [document, *frames])

    async def analyze_voice(self, verification_code: str,
                            audio: MediaPart) -> VoiceVerdict:
        """Check the spoken verification code and look for synthetic speech."""
        context = (
            "Analyze this audio for voice liveness and deepfake detection.\n"
            f"Expected phrase: \"{expected_voice_phrase(verification_code)}\". "
            f"The speaker must say the code {verification_code}.\n"
            "1. Transcribe the audio and check the code.\n"
            "2. Look for cloned or synthetic voice: robotic cadence, frequency "
            "artifacts, missing breathing.\n"
            "3. Look for replay: room-within-a-room acoustics or speaker playback.\n"
            "Return a JSON object with: { matchesText: boolean, codeVerified: boolean, "
            "isNatural: boolean, riskLevel: number (0-100), reasoning: string, "
            "transcript: string, confidence: number (0-100) }."
        )
        return await self._analyze(EvidenceKind.VOICE, context, [audio])

    async def analyze_video(self, video: MediaPart) -> VideoVerdict:
        """Look for deepfake manipulation in a standalone video clip."""
        context = (
            "Analyze this video for deepfake manipulation and synthetic content.\n"
            "1. Visual artifacts: lighting, blinking, lip sync, blending at face edges.\n"
            "2. Temporal consistency: jitter, flicker, sudden feature changes.\n"
            "3. Background warping around the subject.\n"
            "4. Audio-visual sync if audio is present.\n"
            "Return a JSON object with: { isDeepfake: boolean, confidenceScore: "
            "number (0-100), riskLevel: \"low\" | \"medium\" | \"high\", "
            "detectedAnomalies: string[], explanation: string, "
            "frameAnalysis: { timestamp: string, issue: string }[] }."
        )
        return await self._analyze(
            EvidenceKind.VIDEO, context, [video], model=self.config.video_model
        )

    async def aggregate(self, document_verdict: DocumentVerdict,
                        liveness_verdict: LivenessVerdict,
                        voice_verdict: VoiceVerdict) -> FinalDecision:
        """Combine the three stage verdicts into one decision."""
        context = (
            "Finalize the KYC decision from these component analyses:\n"
            f"Document analysis: {json.dumps(document_verdict.to_payload())}\n"
            f"Face liveness analysis: {json.dumps(liveness_verdict.to_payload())}\n"
            f"Voice analysis: {json.dumps(voice_verdict.to_payload())}\n"
            "Give a final decision (verified, suspicious, fake), a total risk "
            "score (0-100), a confidence score (0-100) and a detailed explanation.\n"
            "Return JSON: { decision, riskScore, confidenceScore, explanation }."
        )
        return await self._analyze(EvidenceKind.DECISION, context, [])

    async def _analyze(self, kind: EvidenceKind, context: str,
                       media: List[MediaPart], model: Optional[str] = None):
        raw = await self._request(kind, context, media, model or self.config.analysis_model)
        verdict = parse_verdict(kind, raw)
        logger.info(
            f"{kind.value} analysis completed: passed={verdict.passed} "
            f"confidence={verdict.confidence_value}"
        )
        return verdict

    @abstractmethod
    async def _request(self, kind: EvidenceKind, context: str,
                       media: List[MediaPart], model: str) -> str:
        """
        Send one request to the analysis capability.

        Returns:
            The raw JSON text produced by the capability

        Raises:
            GatewayError: On any transport, quota or configuration failure
        """
        pass


class GeminiAnalysisGateway(AnalysisGateway):
    """Gateway speaking the Generative Language ``generateContent`` REST API"""

    def __init__(self, config: KYCConfig,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(config)
        self.api_key = config.analysis_api_key
        self.base_url = config.analysis_base_url.rstrip("/")
        self.timeout = config.analysis_timeout_seconds
        self._transport = transport

    async def _request(self, kind: EvidenceKind, context: str,
                       media: List[MediaPart], model: str) -> str:
        if not self.api_key:
            raise GatewayUnconfiguredError()

        body = {
            "contents": [{
                "parts": [{"text": context}] + [part.to_inline_data() for part in media]
            }],
            "generationConfig": {"responseMimeType": "application/json"},
        }
        url = f"{self.base_url}/models/{model}:generateContent"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    url, json=body, headers={"x-goog-api-key": self.api_key}
                )
        except httpx.TimeoutException as e:
            raise TransportError(
                f"{kind.value} analysis timed out after {self.timeout}s",
                details={"error": str(e)}
            )
        except httpx.HTTPError as e:
            raise TransportError(
                f"{kind.value} analysis request failed: {e}",
                details={"error": str(e)}
            )

        if response.status_code >= 400:
            raise self._map_error_response(kind, response)

        return self._extract_text(kind, response)

    def _map_error_response(self, kind: EvidenceKind, response: httpx.Response) -> GatewayError:
        text = response.text
        details = {"status_code": response.status_code}

        if (response.status_code == 429 or "RESOURCE_EXHAUSTED" in text
                or "Quota exceeded" in text):
            return RateLimitedError(details=details)

        if response.status_code in (401, 403) or "API key not valid" in text:
            return GatewayUnconfiguredError(
                "Invalid API key. Please check your configuration.", details=details
            )

        logger.error(f"{kind.value} analysis failed with HTTP {response.status_code}")
        return TransportError(
            f"{kind.value} analysis failed with HTTP {response.status_code}",
            details=details
        )

    def _extract_text(self, kind: EvidenceKind, response: httpx.Response) -> str:
        try:
            payload = response.json()
            parts = payload["candidates"][0]["content"]["parts"]
            text = "".join(part.get("text", "") for part in parts)
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise InvalidResponseError(
                f"{kind.value} analysis response has no candidate text",
                details={"error": str(e)}
            )

        if not text.strip():
            raise InvalidResponseError(f"{kind.value} analysis returned an empty response")
        return text
