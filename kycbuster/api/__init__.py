"""
HTTP routers for the verification API
"""

from . import admin, verification, video

__all__ = ["admin", "verification", "video"]
