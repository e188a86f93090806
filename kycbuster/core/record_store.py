"""
Verification Record Store

Append-only persistence for finalized verification records and
standalone video analyses, plus per-user history and cross-user
aggregate statistics. Every write is a single insert keyed by a fresh
UUID; nothing is ever updated or deleted.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import KYCRecord, KYCStatus, User, UserRole, VideoAnalysis
from ..models.base import utcnow
from .exceptions import PersistenceError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationRecord:
    """A finalized verification decision with its evidence"""
    user_id: Optional[str]
    status: str
    document_evidence: Optional[Dict[str, Any]] = None
    document_verdict: Optional[Dict[str, Any]] = None
    liveness_verdict: Optional[Dict[str, Any]] = None
    voice_verdict: Optional[Dict[str, Any]] = None
    final_decision: Optional[Dict[str, Any]] = None
    risk_score: Optional[int] = None
    confidence_score: Optional[int] = None
    idempotency_key: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "status": self.status,
            "documentEvidence": self.document_evidence,
            "documentVerdict": self.document_verdict,
            "livenessVerdict": self.liveness_verdict,
            "voiceVerdict": self.voice_verdict,
            "finalDecision": self.final_decision,
            "riskScore": self.risk_score,
            "confidenceScore": self.confidence_score,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class VideoAnalysisRecord:
    """Result of one standalone deepfake video analysis"""
    user_id: Optional[str]
    video_name: str
    is_deepfake: bool
    risk_level: str
    confidence_score: Optional[int] = None
    analysis_payload: Optional[Dict[str, Any]] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "videoName": self.video_name,
            "isDeepfake": self.is_deepfake,
            "riskLevel": self.risk_level,
            "confidenceScore": self.confidence_score,
            "analysisPayload": self.analysis_payload,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class RecentActivity:
    """One row of the cross-user activity feed"""
    record_id: str
    full_name: Optional[str]
    status: str
    risk_score: Optional[int]
    created_at: datetime


@dataclass(frozen=True)
class UserSummary:
    """A user with the outcome of their latest verification, if any"""
    user_id: str
    email: str
    full_name: Optional[str]
    status: Optional[str] = None
    risk_score: Optional[int] = None
    verified_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.user_id,
            "email": self.email,
            "fullName": self.full_name,
            "status": self.status,
            "riskScore": self.risk_score,
            "kycDate": self.verified_at.isoformat() if self.verified_at else None,
        }


@dataclass(frozen=True)
class AggregateStats:
    """Read-only snapshot of verification activity"""
    status_counts: Dict[str, int]
    total_users: int
    total_records: int
    total_videos: int
    video_deepfakes: int
    recent_activity: List[RecentActivity] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stats": {
                "total": self.total_users,
                "records": self.total_records,
                **self.status_counts,
                "totalVideos": self.total_videos,
                "videoDeepfakes": self.video_deepfakes,
            },
            "recentActivity": [
                {
                    "id": item.record_id,
                    "fullName": item.full_name,
                    "status": item.status,
                    "riskScore": item.risk_score,
                    "createdAt": item.created_at.isoformat(),
                }
                for item in self.recent_activity
            ],
        }


def _dumps(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _loads(value: Optional[str]) -> Optional[Dict[str, Any]]:
    return json.loads(value) if value is not None else None


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _to_uuid(user_id: Optional[str]) -> Optional[uuid.UUID]:
    if user_id is None:
        return None
    try:
        return uuid.UUID(str(user_id))
    except ValueError:
        raise ValidationError(f"Invalid user id: {user_id}", error_code="INVALID_USER_ID")


def _owner_uuid(user_id: Optional[str]) -> Optional[uuid.UUID]:
    try:
        return _to_uuid(user_id)
    except ValidationError:
        raise PersistenceError("Record owner is not a valid user id",
                               details={"userId": user_id}) from None


class VerificationRecordStore:
    """
    Append-only store for verification and video analysis records.

    Args:
        session_factory: Callable returning a new SQLAlchemy session
        clock: Source of creation timestamps
    """

    def __init__(self, session_factory: Callable[[], Session],
                 clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def insert_record(self, record: VerificationRecord) -> VerificationRecord:
        """
        Append one verification record.

        When the record carries an idempotency key that was already used,
        the previously stored record is returned instead of a new one.
        """
        row = KYCRecord(
            id=uuid.uuid4(),
            user_id=_owner_uuid(record.user_id),
            status=record.status,
            document_data=_dumps(record.document_evidence),
            document_analysis=_dumps(record.document_verdict),
            liveness_analysis=_dumps(record.liveness_verdict),
            voice_analysis=_dumps(record.voice_verdict),
            final_decision=_dumps(record.final_decision),
            risk_score=record.risk_score,
            confidence_score=record.confidence_score,
            idempotency_key=record.idempotency_key,
            created_at=self.clock(),
        )

        try:
            with self.session_factory() as db:
                if record.idempotency_key:
                    existing = self._find_by_key(db, record.idempotency_key)
                    if existing is not None:
                        logger.info(f"Finalize key {record.idempotency_key} already recorded as {existing.id}")
                        return existing

                db.add(row)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    existing = self._find_by_key(db, record.idempotency_key) if record.idempotency_key else None
                    if existing is None:
                        raise
                    return existing

                stored = self._to_record(row)
        except SQLAlchemyError as e:
            logger.error(f"Failed to insert verification record: {e}")
            raise PersistenceError(
                "Failed to store verification record", details={"error": str(e)}
            )

        logger.info(f"Stored verification record {stored.id} with status {stored.status}")
        return stored

    def history_for_user(self, user_id: str) -> List[VerificationRecord]:
        """All verification records of a user, newest first."""
        try:
            with self.session_factory() as db:
                rows = (
                    db.query(KYCRecord)
                    .filter(KYCRecord.user_id == _to_uuid(user_id))
                    .order_by(KYCRecord.created_at.desc())
                    .all()
                )
                return [self._to_record(row) for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"Failed to fetch history for user {user_id}: {e}")
            raise PersistenceError("Failed to fetch history", details={"error": str(e)})

    def insert_video_record(self, record: VideoAnalysisRecord) -> VideoAnalysisRecord:
        """Append one video analysis record."""
        row = VideoAnalysis(
            id=uuid.uuid4(),
            user_id=_owner_uuid(record.user_id),
            video_name=record.video_name,
            is_deepfake=record.is_deepfake,
            risk_level=record.risk_level,
            confidence_score=record.confidence_score,
            analysis_data=_dumps(record.analysis_payload),
            created_at=self.clock(),
        )

        try:
            with self.session_factory() as db:
                db.add(row)
                db.commit()
                stored = self._to_video_record(row)
        except SQLAlchemyError as e:
            logger.error(f"Failed to insert video analysis: {e}")
            raise PersistenceError("Failed to save analysis", details={"error": str(e)})

        return stored

    def video_history_for_user(self, user_id: str) -> List[VideoAnalysisRecord]:
        """All video analyses of a user, newest first."""
        try:
            with self.session_factory() as db:
                rows = (
                    db.query(VideoAnalysis)
                    .filter(VideoAnalysis.user_id == _to_uuid(user_id))
                    .order_by(VideoAnalysis.created_at.desc())
                    .all()
                )
                return [self._to_video_record(row) for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"Failed to fetch video history for user {user_id}: {e}")
            raise PersistenceError("Failed to fetch video history", details={"error": str(e)})

    def aggregate_stats(self, recent_limit: int = 10) -> AggregateStats:
        """Counts by status across all users plus the latest records."""
        try:
            with self.session_factory() as db:
                counts = dict(
                    db.query(KYCRecord.status, func.count(KYCRecord.id))
                    .group_by(KYCRecord.status)
                    .all()
                )
                total_users = (
                    db.query(func.count(User.id)).filter(User.role == UserRole.USER).scalar()
                )
                total_videos = db.query(func.count(VideoAnalysis.id)).scalar()
                video_deepfakes = (
                    db.query(func.count(VideoAnalysis.id))
                    .filter(VideoAnalysis.is_deepfake.is_(True))
                    .scalar()
                )
                recent = (
                    db.query(KYCRecord, User.full_name)
                    .outerjoin(User, KYCRecord.user_id == User.id)
                    .order_by(KYCRecord.created_at.desc())
                    .limit(recent_limit)
                    .all()
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to compute admin stats: {e}")
            raise PersistenceError("Failed to compute statistics", details={"error": str(e)})

        return AggregateStats(
            status_counts={status: counts.get(status, 0) for status in KYCStatus.ALL},
            total_users=total_users or 0,
            total_records=sum(counts.values()),
            total_videos=total_videos or 0,
            video_deepfakes=video_deepfakes or 0,
            recent_activity=[
                RecentActivity(
                    record_id=str(row.id),
                    full_name=full_name,
                    status=row.status,
                    risk_score=row.risk_score,
                    created_at=_as_utc(row.created_at),
                )
                for row, full_name in recent
            ],
        )

    def users_with_latest_status(self) -> List[UserSummary]:
        """Every non-admin user joined with their most recent verification."""
        try:
            with self.session_factory() as db:
                latest = (
                    db.query(KYCRecord.user_id, func.max(KYCRecord.created_at).label("latest_at"))
                    .group_by(KYCRecord.user_id)
                    .subquery()
                )
                rows = (
                    db.query(User, KYCRecord)
                    .outerjoin(latest, latest.c.user_id == User.id)
                    .outerjoin(
                        KYCRecord,
                        (KYCRecord.user_id == User.id)
                        & (KYCRecord.created_at == latest.c.latest_at)
                    )
                    .filter(User.role == UserRole.USER)
                    .order_by(User.created_at.desc(), User.email)
                    .all()
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to list users: {e}")
            raise PersistenceError("Failed to fetch users", details={"error": str(e)})

        summaries: Dict[str, UserSummary] = {}
        for user, record in rows:
            key = str(user.id)
            if key in summaries:
                continue
            summaries[key] = UserSummary(
                user_id=key,
                email=user.email,
                full_name=user.full_name,
                status=record.status if record is not None else None,
                risk_score=record.risk_score if record is not None else None,
                verified_at=_as_utc(record.created_at) if record is not None else None,
            )
        return list(summaries.values())

    def _find_by_key(self, db: Session, key: str) -> Optional[VerificationRecord]:
        row = db.query(KYCRecord).filter(KYCRecord.idempotency_key == key).first()
        return self._to_record(row) if row is not None else None

    @staticmethod
    def _to_record(row: KYCRecord) -> VerificationRecord:
        return VerificationRecord(
            id=str(row.id),
            user_id=str(row.user_id) if row.user_id else None,
            status=row.status,
            document_evidence=_loads(row.document_data),
            document_verdict=_loads(row.document_analysis),
            liveness_verdict=_loads(row.liveness_analysis),
            voice_verdict=_loads(row.voice_analysis),
            final_decision=_loads(row.final_decision),
            risk_score=row.risk_score,
            confidence_score=row.confidence_score,
            idempotency_key=row.idempotency_key,
            created_at=_as_utc(row.created_at),
        )

    @staticmethod
    def _to_video_record(row: VideoAnalysis) -> VideoAnalysisRecord:
        return VideoAnalysisRecord(
            id=str(row.id),
            user_id=str(row.user_id) if row.user_id else None,
            video_name=row.video_name,
            is_deepfake=row.is_deepfake,
            risk_level=row.risk_level,
            confidence_score=row.confidence_score,
            analysis_payload=_loads(row.analysis_data),
            created_at=_as_utc(row.created_at),
        )
