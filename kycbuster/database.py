"""
Database configuration and session management.
"""

import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Database URL from environment
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./kyc.db")


def build_engine(url: str = DATABASE_URL):
    """Create an engine, sharing one connection for in-memory SQLite."""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs = {"pool_pre_ping": True}
    return create_engine(
        url,
        echo=os.getenv("DB_ECHO", "false").lower() == "true",
        **kwargs
    )


# Create engine
engine = build_engine()

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Get database session dependency for FastAPI."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables(bind=None):
    """Create all database tables."""
    from .models import Base
    Base.metadata.create_all(bind=bind or engine)


def drop_tables(bind=None):
    """Drop all database tables."""
    from .models import Base
    Base.metadata.drop_all(bind=bind or engine)
