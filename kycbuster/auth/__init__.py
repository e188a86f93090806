"""
Authentication module for the verification API
"""

from .jwt_auth import JWTAuthenticator, get_current_user, require_admin, create_access_token
from .models import TokenData

__all__ = [
    "JWTAuthenticator",
    "get_current_user",
    "require_admin",
    "create_access_token",
    "TokenData",
]
