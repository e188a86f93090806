"""
Database Models Package

Persistence schema for the KYC verification core.
"""

from .base import Base
from .user import User, UserRole
from .kyc_record import KYCRecord, KYCStatus
from .video_analysis import VideoAnalysis

__all__ = [
    "Base",
    "User",
    "UserRole",
    "KYCRecord",
    "KYCStatus",
    "VideoAnalysis",
]
