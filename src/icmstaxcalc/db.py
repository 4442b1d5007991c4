from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from . import config

# ---------- Engine / Session ----------

def make_engine(url: str | None = None, **kwargs) -> Engine:
    # echo=False to keep tests quiet
    return create_engine(url or config.DB_URL, future=True, echo=False, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


# Default engine for callers that don't bring their own
engine: Engine = make_engine()
SessionLocal = make_session_factory(engine)

# ---------- Init helpers ----------

def init_db(bind: Engine | None = None) -> None:
    """
    Create ORM tables (no-ops on existing ones).
    """
    # Import models here to avoid circular imports
    from .models import Base

    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def db_session(factory: sessionmaker | None = None) -> Iterator[Session]:
    """One unit of work: commit on success, roll back on any exception."""
    db = (factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except BaseException:
        db.rollback()
        raise
    finally:
        db.close()
