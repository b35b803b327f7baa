import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from src.credentials.encryption import validate_encryption_ready
from src.database.session import get_db_session
from src.platform.errors import AppError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok", "service": "credential-vault"}


@router.get("/api/health/readiness")
async def readiness(db=Depends(get_db_session)):
    """Readiness check: database reachable and encryption key usable."""
    checks = {"database": "ok", "encryption": "ok"}

    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("Readiness database check failed", extra={"error_type": type(e).__name__})
        checks["database"] = "error"

    try:
        validate_encryption_ready()
    except AppError as e:
        logger.error("Readiness encryption check failed", extra={"error_code": e.code})
        checks["encryption"] = "error"

    ready = all(value == "ok" for value in checks.values())
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ready" if ready else "not_ready", "checks": checks},
    )
