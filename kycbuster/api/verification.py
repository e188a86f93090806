"""
Verification API Endpoints

Persists finalized verification decisions and serves per-user history.
"""

import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..auth.jwt_auth import get_current_user
from ..core.exceptions import PersistenceError
from ..core.finalizer import build_record
from ..core.record_store import VerificationRecordStore
from ..core.verdicts import DocumentVerdict, FinalDecision, LivenessVerdict, VoiceVerdict
from ..models.user import User
from .dependencies import get_record_store

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/kyc", tags=["verification"])


class FinalizeRequest(BaseModel):
    """Verdicts and decision of a completed verification session"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    document_verdict: DocumentVerdict
    liveness_verdict: LivenessVerdict
    voice_verdict: VoiceVerdict
    final_decision: FinalDecision
    user_id: Optional[str] = None
    document_evidence: Optional[Dict[str, Any]] = None
    idempotency_key: Optional[str] = None


def _resolve_user_id(requested: Optional[str], current_user: User) -> str:
    if requested is None or requested == str(current_user.id):
        return str(current_user.id)
    if current_user.is_admin:
        try:
            return str(uuid.UUID(requested))
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid user id: {requested}"
            )
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Cannot finalize a verification for another user"
    )


@router.post("/finalize")
async def finalize_verification(
    request: FinalizeRequest,
    current_user: User = Depends(get_current_user),
    store: VerificationRecordStore = Depends(get_record_store)
):
    """
    Store the final decision of a verification session.

    Exactly one record is appended per call unless ``idempotencyKey``
    repeats an earlier call.
    """
    user_id = _resolve_user_id(request.user_id, current_user)

    record = build_record(
        user_id,
        request.document_evidence,
        request.document_verdict,
        request.liveness_verdict,
        request.voice_verdict,
        request.final_decision,
        idempotency_key=request.idempotency_key,
    )

    try:
        stored = store.insert_record(record)
    except PersistenceError as e:
        logger.error(f"Finalize failed for user {user_id}: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Finalization failed"}
        )

    logger.info(f"Verification {stored.id} finalized for user {user_id} as {stored.status}")
    return {"finalDecision": stored.final_decision, "recordId": stored.id}


@router.get("/history")
async def verification_history(
    current_user: User = Depends(get_current_user),
    store: VerificationRecordStore = Depends(get_record_store)
):
    """Verification records of the caller, newest first."""
    try:
        records = store.history_for_user(str(current_user.id))
    except PersistenceError as e:
        logger.error(f"History lookup failed for user {current_user.id}: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Failed to fetch history"}
        )

    return [record.to_dict() for record in records]
