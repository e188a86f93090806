"""
Video Analysis API Endpoints

Stores client side deepfake analyses, runs server side analysis of
uploaded clips and serves per-user video history.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..auth.jwt_auth import get_current_user
from ..core.exceptions import (
    GatewayError, GatewayUnconfiguredError, PersistenceError, RateLimitedError,
    VideoTooLargeError
)
from ..core.record_store import VerificationRecordStore, VideoAnalysisRecord
from ..core.verdicts import CategoricalRisk
from ..core.video_analysis import VideoAnalysisService
from ..models.user import User
from .dependencies import get_record_store, get_video_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/video", tags=["video"])


class VideoAnalysisRequest(BaseModel):
    """Result of a video analysis performed by the client"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    video_name: str = "Untitled Video"
    is_deepfake: bool
    risk_level: CategoricalRisk
    confidence_score: int = Field(ge=0, le=100)
    analysis_payload: Optional[Dict[str, Any]] = None


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.post("/analyze")
async def save_video_analysis(
    request: VideoAnalysisRequest,
    current_user: User = Depends(get_current_user),
    store: VerificationRecordStore = Depends(get_record_store)
):
    """Append a video analysis result for the caller."""
    try:
        store.insert_video_record(VideoAnalysisRecord(
            user_id=str(current_user.id),
            video_name=request.video_name,
            is_deepfake=request.is_deepfake,
            risk_level=request.risk_level,
            confidence_score=request.confidence_score,
            analysis_payload=request.analysis_payload,
        ))
    except PersistenceError as e:
        logger.error(f"Saving video analysis failed for user {current_user.id}: {e}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to save analysis")

    return {"success": True}


@router.post("/upload")
async def analyze_uploaded_video(
    video: UploadFile = File(..., description="Video clip to analyze"),
    current_user: User = Depends(get_current_user),
    service: VideoAnalysisService = Depends(get_video_service)
):
    """
    Analyze an uploaded video for deepfake manipulation.

    Oversized files are rejected before any analysis call is made.
    """
    if not video.content_type or not video.content_type.startswith("video/"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="File must be a video"
        )

    try:
        if video.size is not None:
            service.check_size(video.size)

        payload = await video.read()
        result = await service.analyze(
            str(current_user.id), video.filename, payload, video.content_type
        )
    except VideoTooLargeError as e:
        return _error(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, e.message)
    except RateLimitedError as e:
        return _error(status.HTTP_429_TOO_MANY_REQUESTS, e.message)
    except GatewayUnconfiguredError as e:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, e.message)
    except GatewayError as e:
        logger.error(f"Video analysis failed for user {current_user.id}: {e}")
        return _error(status.HTTP_502_BAD_GATEWAY, e.message)
    except PersistenceError as e:
        logger.error(f"Saving video analysis failed for user {current_user.id}: {e}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to save analysis")

    return {
        "success": True,
        "analysis": result.verdict.to_payload(),
        "record": result.record.to_dict(),
    }


@router.get("/history")
async def video_history(
    current_user: User = Depends(get_current_user),
    store: VerificationRecordStore = Depends(get_record_store)
):
    """Video analyses of the caller, newest first."""
    try:
        records = store.video_history_for_user(str(current_user.id))
    except PersistenceError as e:
        logger.error(f"Video history lookup failed for user {current_user.id}: {e}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to fetch video history")

    return [record.to_dict() for record in records]
