"""
Database engine and session management.

Usage:
    from src.database.session import get_db_session

    @router.post("/things")
    async def create_thing(db: Session = Depends(get_db_session)):
        ...
"""

import logging
import os
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def normalize_database_url(database_url: str) -> str:
    """Heroku/Render style postgres:// URLs are not accepted by SQLAlchemy."""
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql://", 1)
    return database_url


def get_engine() -> Engine:
    """Get or lazily create the process-wide engine from DATABASE_URL."""
    global _engine
    if _engine is None:
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError("DATABASE_URL environment variable is required")
        _engine = create_engine(normalize_database_url(database_url), pool_pre_ping=True)
        logger.info("Database engine initialized")
    return _engine


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _session_factory


def get_db_session() -> Generator[Session, None, None]:
    """
    FastAPI dependency yielding a request-scoped session.

    The session is rolled back if the request raised and always closed.
    """
    session = get_session_factory()()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
