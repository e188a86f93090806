"""
User model. Credentials are owned by the authentication service; the
verification core only needs identity, display name and role.
"""

from sqlalchemy import Column, String, Boolean
from sqlalchemy.orm import relationship

from .base import BaseModel


class UserRole:
    """User roles."""
    USER = "user"
    ADMIN = "admin"


class User(BaseModel):
    """Platform user."""

    __tablename__ = "users"

    email = Column(String(255), unique=True, nullable=False, doc="User email address")
    full_name = Column(String(255), nullable=True, doc="Display name")
    role = Column(String(20), default=UserRole.USER, nullable=False, doc="User role (user, admin)")
    is_active = Column(Boolean, default=True, nullable=False, doc="Whether user account is active")

    kyc_records = relationship("KYCRecord", back_populates="user")
    video_analyses = relationship("VideoAnalysis", back_populates="user")

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def __repr__(self) -> str:
        return f"<User(email='{self.email}', role='{self.role}')>"
