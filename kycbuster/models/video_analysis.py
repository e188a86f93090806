"""
Standalone deepfake video analysis record.
"""

from sqlalchemy import Column, String, Integer, Text, Boolean, ForeignKey, Uuid, Index
from sqlalchemy.orm import relationship

from .base import BaseModel, append_only


@append_only
class VideoAnalysis(BaseModel):
    """Append-only video analysis record."""

    __tablename__ = "video_analyses"

    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id"),
        nullable=True,
        index=True,
        doc="User who submitted the video"
    )
    video_name = Column(String(500), nullable=False, doc="Original file name")
    is_deepfake = Column(Boolean, nullable=False, doc="Whether manipulation was detected")
    risk_level = Column(String(10), nullable=False, doc="low, medium or high")
    confidence_score = Column(Integer, nullable=True, doc="Confidence score 0-100")
    analysis_data = Column(Text, nullable=True, doc="Full verdict payload (JSON)")

    user = relationship("User", back_populates="video_analyses")

    __table_args__ = (
        Index("ix_video_analyses_user_time", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<VideoAnalysis(id={self.id}, video='{self.video_name}')>"
