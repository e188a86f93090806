"""
Authentication related Pydantic models
"""

from typing import Optional
from pydantic import BaseModel


class TokenData(BaseModel):
    """Token payload data"""
    user_id: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
