"""Session factories and the transaction helper.

Three kinds of callers open sessions:
- HTTP routes, through the get_db() dependency (one session per request)
- The answer worker and the sweeper, which take a sessionmaker so they can
  keep each finalization in its own short transaction
- Tests, which build a factory over their own engine

expire_on_commit is off: services return DTOs built from rows after the
admitting commit, and the worker reads question fields after closing the
session that loaded them.
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from tutor.db.engine import get_engine

_default_factory: sessionmaker[Session] | None = None


def create_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """sessionmaker bound to engine, or to the process engine when None."""
    return sessionmaker(
        bind=engine if engine is not None else get_engine(),
        autoflush=False,
        expire_on_commit=False,
    )


def get_session_factory() -> sessionmaker[Session]:
    """Process-wide factory over the configured DATABASE_URL, built on first use."""
    global _default_factory
    if _default_factory is None:
        _default_factory = create_session_factory()
    return _default_factory


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency: a session closed when the request finishes."""
    with get_session_factory()() as db:
        yield db


@contextmanager
def transaction(db: Session) -> Generator[None, None, None]:
    """Commit the enclosed writes, or roll them all back on any exception.

    Reservation, the question insert and the follow-up slot claim rely on
    this to succeed or fail together:

        with transaction(db):
            ledger.reserve(db, user_id, {UsageKind.QUESTIONS: 1})
            db.add(question)
    """
    try:
        yield
        db.commit()
    except Exception:
        db.rollback()
        raise
