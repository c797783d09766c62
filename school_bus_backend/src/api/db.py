import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool


def _require_env(name: str) -> str:
    """Read a required environment variable or raise a clear error."""
    value = os.getenv(name)
    if not value:
        raise RuntimeError(
            f"Missing required environment variable: {name}. "
            "Please set it in the school_bus_backend container .env."
        )
    return value


def _normalize_database_url(url: str) -> str:
    """
    Normalize DATABASE_URL to a SQLAlchemy-compatible URL.

    Notes:
    - Some platforms provide 'postgres://...' which SQLAlchemy expects as
      'postgresql://...'.
    """
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def _engine_kwargs(url: str) -> dict:
    """
    Engine options per backend.

    - Postgres: every statement and every pool checkout is bounded by
      STORE_TIMEOUT_SECONDS.
    - SQLite needs cross-thread access; an in-memory database must share one connection.
    """
    if not url.startswith("sqlite"):
        opts: dict = {"pool_pre_ping": True, "pool_timeout": STORE_TIMEOUT_SECONDS}
        if url.startswith("postgresql"):
            statement_ms = int(STORE_TIMEOUT_SECONDS * 1000)
            opts["connect_args"] = {"options": f"-c statement_timeout={statement_ms}"}
        return opts
    kwargs: dict = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return kwargs


DATABASE_URL = _normalize_database_url(_require_env("DATABASE_URL"))
AUTO_CREATE_TABLES = os.getenv("AUTO_CREATE_TABLES", "true").lower() in ("1", "true", "yes")
STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS", "5"))

engine = create_engine(DATABASE_URL, **_engine_kwargs(DATABASE_URL))

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def init_db() -> None:
    """Create any missing tables for the registered models."""
    # Importing the models registers them on Base.metadata.
    from src.api.models import bus, location, student, user  # noqa: F401
    from src.api.models.base import Base

    Base.metadata.create_all(bind=engine)


# PUBLIC_INTERFACE
def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a SQLAlchemy session and ensures closure."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager for scripts/background jobs needing a managed session."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
