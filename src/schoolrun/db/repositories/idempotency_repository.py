"""Idempotency record repository."""

from datetime import datetime

from sqlalchemy import delete
from sqlalchemy.orm import Session

from ..schema import IdempotencyRecord
from ..utils import as_utc


class IdempotencyRepository:
    """Keyed cache of operation results backed by a unique primary key.

    ``insert`` flushes immediately; a concurrent writer holding the same
    key makes it raise ``IntegrityError``.
    """

    def __init__(self, session: Session):
        self.session = session

    def get_active(self, key: str, now: datetime) -> str | None:
        """Cached result for key, or None when absent or expired."""
        row = self.session.get(IdempotencyRecord, key, populate_existing=True)
        if row is None or as_utc(row.expires_at) <= now:
            return None
        return row.cached_result

    def insert(self, key: str, cached_result: str, expires_at: datetime) -> None:
        self.session.add(
            IdempotencyRecord(key=key, cached_result=cached_result, expires_at=expires_at)
        )
        self.session.flush()

    def delete_expired(self, key: str, now: datetime) -> int:
        """Drop the record for key if it has expired so the key can be reused."""
        result = self.session.execute(
            delete(IdempotencyRecord).where(
                IdempotencyRecord.key == key,
                IdempotencyRecord.expires_at <= now,
            )
        )
        return result.rowcount

    def purge_expired(self, now: datetime) -> int:
        result = self.session.execute(
            delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= now)
        )
        return result.rowcount
