from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from section_studio.config import settings


def _engine_kwargs() -> dict:
    if settings.uses_sqlite:
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_POOL_MAX_OVERFLOW,
        "pool_timeout": settings.DB_POOL_TIMEOUT,
    }


engine = create_engine(settings.DATABASE_URL, future=True, **_engine_kwargs())
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


class Base(DeclarativeBase):
    pass


def init_db() -> None:
    # Registers the mapped classes on Base.metadata before creating tables.
    from section_studio.db import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
