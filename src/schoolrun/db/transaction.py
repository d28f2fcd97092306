"""Commit-or-rollback scopes for the engine's write paths.

A state transition and the rows that record it (transaction log entry,
idempotency record, stop status) are written in one scope, so readers
see either all of them or none.
"""

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy.orm import Session, sessionmaker


@contextmanager
def transaction(session: Session) -> Generator[Session]:
    """Commit ``session`` when the block exits cleanly, roll back when it raises."""
    try:
        yield session
    except BaseException:
        session.rollback()
        raise
    session.commit()


@contextmanager
def unit_of_work(session_maker: sessionmaker[Any]) -> Generator[Session]:
    """Fresh session whose block is one transaction; closed on exit either way."""
    with session_maker() as session, transaction(session):
        yield session
