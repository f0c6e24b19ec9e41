"""Durable backing for the audit log: a single JSON blob per storage key."""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ordertrail.models.audit import AuditLogBlob


class DurableIOFailure(Exception):
    """The audit log could not be saved or loaded."""

    def __init__(self, message: str, key: Optional[str] = None):
        self.message = message
        self.key = key
        super().__init__(self.message)


class AuditStorage:
    """Best-effort key/value persistence for the serialized audit log."""

    def read(self) -> Optional[str]:
        raise NotImplementedError

    def write(self, blob: str) -> None:
        raise NotImplementedError


class SqlAuditStorage(AuditStorage):
    """Keeps the blob in the audit_log_blobs table, one short session per call."""

    def __init__(self, session_factory: sessionmaker, key: str):
        self.session_factory = session_factory
        self.key = key

    def read(self) -> Optional[str]:
        try:
            with self.session_factory() as db:
                row = db.get(AuditLogBlob, self.key)
                return row.payload if row else None
        except SQLAlchemyError as e:
            raise DurableIOFailure(f"Could not read audit log: {e}", key=self.key) from e

    def write(self, blob: str) -> None:
        try:
            with self.session_factory() as db:
                row = db.get(AuditLogBlob, self.key)
                now = datetime.now(timezone.utc)
                if row is None:
                    db.add(AuditLogBlob(key=self.key, payload=blob, updated_at=now))
                else:
                    row.payload = blob
                    row.updated_at = now
                db.commit()
        except SQLAlchemyError as e:
            raise DurableIOFailure(f"Could not write audit log: {e}", key=self.key) from e
