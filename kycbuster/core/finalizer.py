"""
Decision Finalizer

Aggregates the document, liveness and voice verdicts into one decision
with a single analysis call and commits exactly one verification record
when, and only when, that call returns a valid decision.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .analysis_gateway import AnalysisGateway
from .exceptions import PersistenceError, RecordNotSavedError
from .record_store import VerificationRecord, VerificationRecordStore
from .verdicts import DocumentVerdict, FinalDecision, LivenessVerdict, VoiceVerdict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FinalizeResult:
    """Outcome of a successful finalize call"""
    decision: FinalDecision
    record: VerificationRecord


def build_record(user_id: Optional[str], document_evidence: Optional[Dict[str, Any]],
                 document_verdict: DocumentVerdict, liveness_verdict: LivenessVerdict,
                 voice_verdict: VoiceVerdict, decision: FinalDecision,
                 idempotency_key: Optional[str] = None) -> VerificationRecord:
    """Map verdicts and a decision onto a record ready for insertion."""
    return VerificationRecord(
        user_id=user_id,
        status=decision.decision,
        document_evidence=document_evidence,
        document_verdict=document_verdict.to_payload(),
        liveness_verdict=liveness_verdict.to_payload(),
        voice_verdict=voice_verdict.to_payload(),
        final_decision=decision.to_payload(),
        risk_score=round(decision.risk_score),
        confidence_score=round(decision.confidence_score),
        idempotency_key=idempotency_key,
    )


class DecisionFinalizer:
    """Runs the aggregation call and writes the verification record."""

    def __init__(self, gateway: AnalysisGateway, store: VerificationRecordStore):
        self.gateway = gateway
        self.store = store

    async def finalize(
        self,
        user_id: Optional[str],
        document_evidence: Optional[Dict[str, Any]],
        document_verdict: DocumentVerdict,
        liveness_verdict: LivenessVerdict,
        voice_verdict: VoiceVerdict,
        idempotency_key: Optional[str] = None,
    ) -> FinalizeResult:
        """
        Aggregate the three verdicts and persist the decision.

        The decision content never prevents persistence; only gateway or
        storage failures do. Each successful call inserts a new record
        unless ``idempotency_key`` matches an earlier one.

        Raises:
            GatewayError: If the aggregation call fails or returns a bad shape
            RecordNotSavedError: If a decision exists but could not be stored
        """
        decision = await self.gateway.aggregate(document_verdict, liveness_verdict, voice_verdict)

        record = build_record(
            user_id, document_evidence, document_verdict, liveness_verdict,
            voice_verdict, decision, idempotency_key
        )

        try:
            stored = self.store.insert_record(record)
        except PersistenceError as e:
            logger.error(f"Decision '{decision.decision}' for user {user_id} could not be saved: {e}")
            raise RecordNotSavedError(details={"decision": decision.decision, **e.details})

        logger.info(
            f"Finalized verification for user {user_id}: {decision.decision} "
            f"(risk {decision.risk_score}, confidence {decision.confidence_score})"
        )
        return FinalizeResult(decision=decision, record=stored)
