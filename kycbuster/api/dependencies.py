"""
Shared FastAPI dependencies for the verification API
"""

from functools import lru_cache

from fastapi import Depends

from ..config import KYCConfig
from ..core.analysis_gateway import AnalysisGateway, GeminiAnalysisGateway
from ..core.record_store import VerificationRecordStore
from ..core.video_analysis import VideoAnalysisService
from ..database import SessionLocal


@lru_cache()
def get_config() -> KYCConfig:
    """Process wide configuration read from the environment"""
    return KYCConfig.from_env()


def get_analysis_gateway(config: KYCConfig = Depends(get_config)) -> AnalysisGateway:
    return GeminiAnalysisGateway(config)


def get_record_store() -> VerificationRecordStore:
    return VerificationRecordStore(SessionLocal)


def get_video_service(
    gateway: AnalysisGateway = Depends(get_analysis_gateway),
    store: VerificationRecordStore = Depends(get_record_store),
    config: KYCConfig = Depends(get_config)
) -> VideoAnalysisService:
    return VideoAnalysisService(gateway, store, max_bytes=config.max_video_bytes)
