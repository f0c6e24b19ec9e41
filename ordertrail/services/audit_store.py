"""
Append-only, size-bounded audit log.

Entries are kept most-recent-first. When the log grows past max_entries the
oldest entries are evicted first, by creation order regardless of entity.
After every mutation the whole log is written to durable storage; failures
there are logged and swallowed because the mutation being recorded must never
be blocked by its own audit trail.

The store is shared between the event loop and FastAPI's worker threads.
In-memory state is guarded by one lock; durable writes are serialized by a
second one and always write the newest state, so an older blob never lands
after a newer one. With a ``writer`` executor the durable write runs off the
caller's thread and ``log`` only appends in memory.
"""
import copy
import json
import logging
import threading
import uuid
from concurrent.futures import Executor, Future
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ordertrail.models.audit import Actor, AuditEntry, coerce_entity_type
from ordertrail.models.enums import AuditAction, AuditEntityType
from ordertrail.services.audit_storage import AuditStorage, DurableIOFailure
from ordertrail.services.diff_engine import compute_changes, ensure_serializable

logger = logging.getLogger(__name__)

ID_PREFIX = "so_audit_"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditStore:
    """In-memory audit log with best-effort durable persistence."""

    def __init__(
        self,
        storage: Optional[AuditStorage] = None,
        max_entries: int = 10000,
        clock: Callable[[], datetime] = _utcnow,
        writer: Optional[Executor] = None
    ):
        if max_entries < 1:
            raise ValueError(f"max_entries must be positive, got {max_entries}")
        self.storage = storage
        self.max_entries = max_entries
        self.clock = clock
        self.writer = writer
        self._entries: List[AuditEntry] = []
        self._sequence = 0
        self._lock = threading.RLock()
        self._write_lock = threading.Lock()
        self._write_queued = False
        self._last_write: Optional[Future] = None
        self.load()

    @property
    def entries(self) -> Tuple[AuditEntry, ...]:
        """Snapshot of the log, most-recent-first."""
        with self._lock:
            return tuple(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def log(
        self,
        entity_type: Union[AuditEntityType, str],
        entity_id: Any,
        action: Union[AuditAction, str],
        *,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None
    ) -> AuditEntry:
        """
        Record one mutation and return the frozen entry.

        changes is computed only when both snapshots are supplied. A DiffError
        (cyclic or non-JSON value in a snapshot or in metadata) propagates and
        leaves the log untouched.
        """
        action = AuditAction(action)
        if old_values is not None and new_values is not None:
            changes = tuple(compute_changes(old_values, new_values))
        else:
            ensure_serializable(old_values, "old_values")
            ensure_serializable(new_values, "new_values")
            changes = None
        ensure_serializable(metadata, "metadata")

        with self._lock:
            entry = AuditEntry(
                id=self._next_id(),
                entity_type=coerce_entity_type(entity_type),
                entity_id=str(entity_id),
                action=action,
                actor_id=actor.id if actor else None,
                actor_name=actor.name if actor else None,
                timestamp=_aware(self.clock()),
                old_values=copy.deepcopy(old_values),
                new_values=copy.deepcopy(new_values),
                changes=changes,
                metadata=copy.deepcopy(metadata)
            )

            self._entries.insert(0, entry)
            if len(self._entries) > self.max_entries:
                evicted = len(self._entries) - self.max_entries
                del self._entries[self.max_entries:]
                logger.debug("Evicted %d oldest audit entries (max_entries=%d)", evicted, self.max_entries)

        self._save()
        return entry

    def get_entity_history(
        self,
        entity_type: Union[AuditEntityType, str],
        entity_id: Any
    ) -> List[AuditEntry]:
        """All entries for one entity, most-recent-first."""
        entity_type = coerce_entity_type(entity_type)
        entity_id = str(entity_id)
        return [
            entry for entry in self.entries
            if entry.entity_type == entity_type and entry.entity_id == entity_id
        ]

    def cleanup(self, older_than: datetime) -> int:
        """Remove entries strictly older than the cutoff. Returns how many were removed."""
        older_than = _aware(older_than)

        with self._lock:
            initial_count = len(self._entries)
            self._entries = [entry for entry in self._entries if entry.timestamp >= older_than]
            removed = initial_count - len(self._entries)

        if removed > 0:
            logger.info("Removed %d audit entries older than %s", removed, older_than.isoformat())
            self._save()
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries = []
        self._save()

    def load(self) -> None:
        """
        Replace the in-memory log with what durable storage holds.

        Corrupt or unreadable storage leaves an empty log: audit data is
        diagnostic, not authoritative.
        """
        with self._lock:
            self._entries = []
            self._sequence = 0
            if self.storage is None:
                return

            try:
                blob = self.storage.read()
                if not blob:
                    return
                data = json.loads(blob)
                entries = [AuditEntry.model_validate(raw) for raw in data["entries"]]
            except DurableIOFailure as e:
                logger.warning("Audit log unavailable, starting empty: %s", e.message)
                return
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Audit log is corrupt, starting empty: %s", e)
                return

            # Stored newest-first; keep that order and honour the current capacity
            self._entries = entries[:self.max_entries]
            self._sequence = max((_sequence_of(entry.id) for entry in entries), default=0)
            if self._sequence < len(entries):
                self._sequence = len(entries)

    def flush(self) -> None:
        """Block until every queued durable write has finished."""
        with self._lock:
            pending = self._last_write
        if pending is not None:
            pending.result()

    def _save(self) -> None:
        if self.storage is None:
            return
        if self.writer is None:
            self._write()
            return

        with self._lock:
            # A queued write that has not started yet will pick up this change
            if self._write_queued:
                return
            self._write_queued = True
            self._last_write = self.writer.submit(self._write)

    def _write(self) -> None:
        with self._write_lock:
            with self._lock:
                self._write_queued = False
                entries = tuple(self._entries)
            try:
                blob = json.dumps({
                    "entries": [entry.model_dump(mode="json") for entry in entries],
                    "lastUpdated": _utcnow().isoformat()
                })
                self.storage.write(blob)
            except DurableIOFailure as e:
                logger.warning("Failed to save audit log: %s", e.message)
            except (TypeError, ValueError) as e:
                logger.warning("Failed to serialize audit log: %s", e)

    def _next_id(self) -> str:
        self._sequence += 1
        # Zero-padded so lexical order of ids is creation order
        return f"{ID_PREFIX}{self._sequence:012d}_{uuid.uuid4().hex[:9]}"


def _aware(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def _sequence_of(entry_id: str) -> int:
    if not entry_id.startswith(ID_PREFIX):
        return 0
    try:
        return int(entry_id[len(ID_PREFIX):].split("_", 1)[0])
    except ValueError:
        return 0
