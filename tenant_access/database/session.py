"""
Database engine and session dependency.

Configuration (environment):
- DATABASE_URL: SQLAlchemy URL; Heroku/Render style postgres:// is accepted
- DB_POOL_SIZE / DB_MAX_OVERFLOW: pool sizing for server databases

Usage:
    from tenant_access.database.session import get_db_session

    @router.get("/tenants/{tenant_id}")
    def read_tenant(tenant_id: str, db: Session = Depends(get_db_session)):
        return db.get(Tenant, tenant_id)
"""

import os
import logging
from threading import Lock
from typing import Any, Dict, Generator, Optional

from fastapi import HTTPException, status
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from tenant_access.db_base import Base

logger = logging.getLogger(__name__)

DEFAULT_POOL_SIZE = 5
DEFAULT_MAX_OVERFLOW = 10
POOL_RECYCLE_SECONDS = 1800

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None
_engine_lock = Lock()


def database_url_from_env() -> str:
    """
    Read DATABASE_URL and normalise the scheme.

    Raises ValueError when the variable is unset or empty.
    """
    url = (os.getenv("DATABASE_URL") or "").strip()
    if not url:
        raise ValueError("DATABASE_URL environment variable is not set")
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def engine_options(url: str) -> Dict[str, Any]:
    """create_engine() keyword arguments for the given URL."""
    if url.startswith("sqlite"):
        # Request handlers run in a threadpool
        return {"connect_args": {"check_same_thread": False}}

    return {
        "pool_size": int(os.getenv("DB_POOL_SIZE", DEFAULT_POOL_SIZE)),
        "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", DEFAULT_MAX_OVERFLOW)),
        "pool_pre_ping": True,
        "pool_recycle": POOL_RECYCLE_SECONDS,
    }


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        with _engine_lock:
            if _engine is None:
                url = database_url_from_env()
                _engine = create_engine(url, **engine_options(url))
                logger.info("Database engine created", extra={"dialect": _engine.dialect.name})
    return _engine


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _session_factory


def create_tables() -> None:
    """Create any missing tables for the registered models."""
    import tenant_access.models  # noqa: F401

    Base.metadata.create_all(bind=get_engine())


def get_db_session() -> Generator[Session, None, None]:
    """
    FastAPI dependency yielding one session per request.

    Raises 503 when DATABASE_URL is missing or the engine cannot be built
    from it.
    """
    try:
        factory = get_session_factory()
    except ValueError as e:
        logger.error("Database not configured", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured",
        )
    except SQLAlchemyError as e:
        logger.critical(
            "DATABASE_UNAVAILABLE - cannot create engine",
            extra={
                "alert_type": "database_unavailable",
                "error_type": type(e).__name__,
                "error_detail": str(e),
            },
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        )

    session = factory()
    try:
        yield session
    finally:
        session.close()


def reset_engine() -> None:
    """
    Dispose the engine and forget the session factory (for testing).

    WARNING: Only use in tests!
    """
    global _engine, _session_factory
    with _engine_lock:
        if _engine is not None:
            _engine.dispose()
        _engine = None
        _session_factory = None
