"""
Base database model with common fields and functionality.
"""

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Column, DateTime, Uuid, event
from sqlalchemy.orm import declarative_base

from ..core.exceptions import ImmutableRecordError


Base = declarative_base()


def utcnow() -> datetime:
    """Timezone aware UTC now."""
    return datetime.now(timezone.utc)


class CreatedAtMixin:
    """Mixin to add a created_at timestamp."""

    created_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True,
        doc="When the record was created"
    )


class UUIDMixin:
    """Mixin to add UUID primary key."""

    id = Column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        unique=True,
        nullable=False,
        doc="Unique identifier"
    )


class BaseModel(Base, UUIDMixin, CreatedAtMixin):
    """Base model class with common functionality."""

    __abstract__ = True

    def to_dict(self) -> dict[str, Any]:
        """Convert model instance to dictionary."""
        return {
            column.key: getattr(self, column.key)
            for column in self.__table__.columns
        }

    def __repr__(self) -> str:
        """String representation of the model."""
        class_name = self.__class__.__name__
        return f"<{class_name}(id={self.id})>"


def append_only(cls):
    """Refuse ORM level updates and deletes for an audit table."""

    def _refuse(mapper, connection, target):
        raise ImmutableRecordError(cls.__tablename__)

    event.listen(cls, "before_update", _refuse)
    event.listen(cls, "before_delete", _refuse)
    return cls
