"""
Admin API Endpoints
"""

import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from ..auth.jwt_auth import require_admin
from ..config import KYCConfig
from ..core.exceptions import PersistenceError
from ..core.record_store import VerificationRecordStore
from ..models.user import User
from .dependencies import get_config, get_record_store

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/stats")
async def admin_stats(
    admin: User = Depends(require_admin),
    store: VerificationRecordStore = Depends(get_record_store),
    config: KYCConfig = Depends(get_config)
):
    """Verification counts by status and the latest activity across users."""
    try:
        stats = store.aggregate_stats(recent_limit=config.recent_activity_limit)
    except PersistenceError as e:
        logger.error(f"Admin stats failed: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Failed to compute statistics"}
        )

    return stats.to_dict()


@router.get("/users")
async def admin_users(
    admin: User = Depends(require_admin),
    store: VerificationRecordStore = Depends(get_record_store)
):
    """Applicants with the status, risk score and date of their latest verification."""
    try:
        users = store.users_with_latest_status()
    except PersistenceError as e:
        logger.error(f"Admin user listing failed: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Failed to fetch users"}
        )

    return [summary.to_dict() for summary in users]
