from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from esgagent.config import get_settings
from esgagent.models import Base

_lock = threading.Lock()
_engine = None
_SessionLocal = None


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            db_path = get_settings().database_path
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{db_path}"
        _engine = create_engine(url, connect_args={"check_same_thread": False})
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (MCP server, background jobs, scripts)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
