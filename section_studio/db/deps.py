from collections.abc import Callable, Generator

from sqlalchemy.orm import Session

from section_studio.db.base import SessionLocal


def get_session() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> Callable[[], Session]:
    """Factory for sessions owned by a streaming job, which outlives the request scope."""
    return SessionLocal
