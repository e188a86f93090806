"""
KYC record model: one finalized verification decision.

JSON valued columns are stored as serialized text and decoded by the
record store on read.
"""

from sqlalchemy import Column, String, Integer, Text, ForeignKey, Uuid, Index
from sqlalchemy.orm import relationship

from .base import BaseModel, append_only


class KYCStatus:
    """Verification record status."""
    PENDING = "pending"
    VERIFIED = "verified"
    SUSPICIOUS = "suspicious"
    FAKE = "fake"

    ALL = (PENDING, VERIFIED, SUSPICIOUS, FAKE)


@append_only
class KYCRecord(BaseModel):
    """Append-only verification record."""

    __tablename__ = "kyc_records"

    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id"),
        nullable=True,
        index=True,
        doc="User the verification belongs to"
    )
    status = Column(String(20), default=KYCStatus.PENDING, nullable=False, doc="Final status")

    # Evidence
    document_data = Column(Text, nullable=True, doc="Document evidence (JSON)")
    document_analysis = Column(Text, nullable=True, doc="Document verdict (JSON)")
    liveness_analysis = Column(Text, nullable=True, doc="Liveness verdict (JSON)")
    voice_analysis = Column(Text, nullable=True, doc="Voice verdict (JSON)")

    # Decision
    final_decision = Column(Text, nullable=True, doc="Final decision (JSON)")
    risk_score = Column(Integer, nullable=True, doc="Risk score 0-100")
    confidence_score = Column(Integer, nullable=True, doc="Confidence score 0-100")

    idempotency_key = Column(String(255), unique=True, nullable=True, doc="Client supplied finalize key")

    user = relationship("User", back_populates="kyc_records")

    __table_args__ = (
        Index("ix_kyc_records_user_time", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<KYCRecord(id={self.id}, status='{self.status}')>"
