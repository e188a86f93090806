"""
KYC verification service - main FastAPI application
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from . import __version__
from .api import admin, verification, video
from .api.dependencies import get_config
from .config import KYCConfig
from .database import create_tables, engine

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("KYC_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    configure_logging()
    logger.info("Starting KYC verification service...")
    create_tables()
    yield
    logger.info("Shutting down KYC verification service...")


app = FastAPI(
    title="KYC Verification Service",
    description="""
    Multi-stage identity verification:
    document check, face liveness, voice liveness and an aggregated
    decision persisted to an append-only audit trail.
    """,
    version=__version__,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in os.getenv(
            "KYC_CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000"
        ).split(",")
        if origin.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "KYC Verification Service",
        "version": __version__,
        "status": "operational",
        "docs": "/api/docs"
    }


@app.get("/health")
async def health_check(config: KYCConfig = Depends(get_config)):
    """Health check endpoint"""
    health_status = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
        "checks": {}
    }

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        health_status["checks"]["database"] = {"status": "healthy"}
    except SQLAlchemyError as e:
        health_status["checks"]["database"] = {"status": "unhealthy", "error": str(e)}

    if config.analysis_api_key:
        health_status["checks"]["analysis"] = {"status": "healthy"}
    else:
        health_status["checks"]["analysis"] = {
            "status": "degraded",
            "reason": "api_key_missing"
        }

    checks = health_status["checks"].values()
    if any(check["status"] == "unhealthy" for check in checks):
        health_status["status"] = "unhealthy"
        raise HTTPException(status_code=503, detail=health_status)
    elif any(check["status"] == "degraded" for check in checks):
        health_status["status"] = "degraded"

    return health_status


app.include_router(verification.router, prefix="/api")
app.include_router(video.router, prefix="/api")
app.include_router(admin.router, prefix="/api")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "kycbuster.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("ENVIRONMENT") == "development"
    )
