"""
Runtime configuration for the KYC verification service.
"""

import os
from dataclasses import dataclass
from typing import Optional


DEFAULT_ANALYSIS_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


@dataclass
class KYCConfig:
    """Verification workflow configuration"""
    # Analysis capability
    analysis_api_key: Optional[str] = None
    analysis_base_url: str = DEFAULT_ANALYSIS_BASE_URL
    analysis_model: str = "gemini-3-flash-preview"
    video_model: str = "gemini-2.5-flash"
    analysis_timeout_seconds: float = 60.0

    # Capture timing
    tick_seconds: float = 1.0
    countdown_ticks: int = 3
    confirmation_ticks: int = 1
    voice_recording_ticks: int = 5

    # Limits
    max_video_bytes: int = 20 * 1024 * 1024
    recent_activity_limit: int = 10

    @classmethod
    def from_env(cls) -> "KYCConfig":
        """Build configuration from environment variables."""
        return cls(
            analysis_api_key=os.getenv("GEMINI_API_KEY") or None,
            analysis_base_url=os.getenv("KYC_ANALYSIS_BASE_URL", DEFAULT_ANALYSIS_BASE_URL),
            analysis_model=os.getenv("KYC_ANALYSIS_MODEL", "gemini-3-flash-preview"),
            video_model=os.getenv("KYC_VIDEO_MODEL", "gemini-2.5-flash"),
            analysis_timeout_seconds=float(os.getenv("KYC_ANALYSIS_TIMEOUT", "60")),
            tick_seconds=float(os.getenv("KYC_TICK_SECONDS", "1.0")),
            max_video_bytes=int(os.getenv("KYC_MAX_VIDEO_BYTES", str(20 * 1024 * 1024))),
            recent_activity_limit=int(os.getenv("KYC_RECENT_ACTIVITY_LIMIT", "10")),
        )
