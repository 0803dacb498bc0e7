"""Database configuration for the promoter dashboard."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_SQLITE_PATH = Path("data/promodesk.db")
DEFAULT_SQLITE_PATH.parent.mkdir(parents=True, exist_ok=True)

DATABASE_URL = os.getenv("PROMODESK_DATABASE_URL", f"sqlite:///{DEFAULT_SQLITE_PATH}")

ADMIN_USERNAME = os.getenv("PROMODESK_ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("PROMODESK_ADMIN_PASSWORD", "admin")


def _create_engine(url: str):
    """Create a SQLAlchemy engine for the given URL, handling sqlite connect args."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, future=True)


# Fall back to the local SQLite file in development when the configured
# database (usually PostgreSQL) is unreachable.
try:
    engine = _create_engine(DATABASE_URL)
    with engine.connect() as _conn:  # type: ignore[var-annotated]
        pass
except Exception as e:  # pragma: no cover - environment dependent
    env = os.getenv("ENVIRONMENT", "development").lower()
    logger.warning("[database] Could not connect to database at %r: %s", DATABASE_URL, e)
    if env == "development":
        fallback = f"sqlite:///{DEFAULT_SQLITE_PATH}"
        logger.warning("[database] Falling back to SQLite for local development at %s", fallback)
        DATABASE_URL = fallback
        engine = _create_engine(DATABASE_URL)
    else:
        raise

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a database session."""

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def init_db() -> None:
    """Ensure database tables exist and the seed admin account is registered."""

    from promodesk import models  # noqa: F401  (import ensures model metadata is registered)
    from promodesk.auth import Admin, User

    Base.metadata.create_all(bind=engine, checkfirst=True)

    session = SessionLocal()
    try:
        user = session.query(User).filter(User.username == ADMIN_USERNAME).first()
        if user is None:
            user = User.create_user(ADMIN_USERNAME, ADMIN_PASSWORD)
            session.add(user)
            session.flush()
            logger.info("[init_db] Created default admin user %r", ADMIN_USERNAME)
        if user.admin_entry is None:
            session.add(Admin(user_id=user.id))
            logger.info("[init_db] Registered %r in admins table", ADMIN_USERNAME)
        session.commit()
    except Exception:
        session.rollback()
        logger.exception("[init_db] Error seeding admin user")
        raise
    finally:
        session.close()
