"""Engine and session lifecycle.

One process-wide engine, created by :func:`init_db` and swapped under a lock.
The database file comes from ``COMPASS_DB_PATH`` unless a path is passed in.
"""
from __future__ import annotations

import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from compass.models import Base

DATA_DIR = Path(__file__).parent / "data"

_lock = threading.Lock()
_engine: Engine | None = None
_factory: sessionmaker[Session] | None = None


def resolve_db_path(db_path: str | Path | None = None) -> Path:
    if db_path is None:
        db_path = os.environ.get("COMPASS_DB_PATH") or DATA_DIR / "compass.db"
    return Path(db_path)


def _sqlite_foreign_keys(dbapi_connection, _record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_db(db_path: str | Path | None = None) -> Engine:
    """(Re)create the engine for *db_path* and make sure every table exists."""
    global _engine, _factory
    path = resolve_db_path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})
    event.listen(engine, "connect", _sqlite_foreign_keys)
    Base.metadata.create_all(engine)
    with _lock:
        if _engine is not None:
            _engine.dispose()
        _engine = engine
        _factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine


def get_session() -> Session:
    with _lock:
        factory = _factory
    if factory is None:
        raise RuntimeError("init_db() has not been called")
    return factory()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Session for startup hooks and scripts; commits on success."""
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_generator() -> Generator[Session, None, None]:
    """Per-request session for FastAPI ``Depends()``; routes commit themselves."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
