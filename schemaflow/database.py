from __future__ import annotations

from threading import Lock
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from schemaflow.config import get_settings

Base = declarative_base()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, future=True)

_engine_lock = Lock()
_history_engine: Engine | None = None
_current_history_url: str | None = None


def create_engine_with_fallback(url: str) -> Engine:
    engine_kwargs: dict[str, object] = {"future": True}
    if url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if url in {"sqlite://", "sqlite:///:memory:"}:
            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs["pool_pre_ping"] = True

    try:
        return create_engine(url, **engine_kwargs)
    except ModuleNotFoundError as exc:
        if "psycopg2" in str(exc) and "psycopg2" in url:
            fallback_url = url.replace("psycopg2", "psycopg")
            try:
                __import__("psycopg")
            except ModuleNotFoundError:
                raise
            return create_engine(fallback_url, future=True, pool_pre_ping=True)
        raise


def get_history_engine(new_url: str | None = None) -> Engine:
    """Return the engine bound to the history ledger, creating it on first use."""

    global _history_engine, _current_history_url
    target_url = new_url or get_settings().history_database_url

    with _engine_lock:
        if _history_engine is not None and target_url == _current_history_url:
            return _history_engine

        engine = create_engine_with_fallback(target_url)
        SessionLocal.configure(bind=engine)

        if _history_engine is not None:
            _history_engine.dispose()

        _history_engine = engine
        _current_history_url = target_url
        return engine


def init_history_schema(engine: Engine | None = None) -> None:
    """Create the ledger tables when they do not exist yet (development convenience)."""

    import schemaflow.models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_history_engine())


def get_db() -> Generator[Session, None, None]:
    get_history_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
