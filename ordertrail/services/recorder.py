"""
Explicit audit recording around persistence calls.

Call sites that write to the authoritative store go through AuditedRecorder
instead of being wrapped implicitly. An entry is only written once the
persist call has succeeded; if it raises, the error propagates and nothing is
recorded.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from ordertrail.models.audit import Actor, AuditEntry
from ordertrail.models.enums import AuditAction, AuditEntityType
from ordertrail.services.audit_store import AuditStore

logger = logging.getLogger(__name__)

Snapshot = Optional[Dict[str, Any]]
LoadSnapshot = Callable[[str], Awaitable[Snapshot]]
EntityType = Union[AuditEntityType, str]


class AuditedRecorder:
    """Composes a persist coroutine with an AuditStore.log call."""

    def __init__(self, store: AuditStore):
        self.store = store

    async def create(
        self,
        entity_type: EntityType,
        persist: Callable[..., Awaitable[Dict[str, Any]]],
        *args,
        actor: Optional[Actor] = None,
        **kwargs
    ) -> Dict[str, Any]:
        """Persist a new entity and record CREATE with every field as added."""
        result = await persist(*args, **kwargs)
        self._record(AuditAction.CREATE, entity_type, str(result["id"]), {}, result, persist, actor)
        return result

    async def update(
        self,
        entity_type: EntityType,
        entity_id: Any,
        load: LoadSnapshot,
        persist: Callable[..., Awaitable[Dict[str, Any]]],
        *args,
        actor: Optional[Actor] = None,
        **kwargs
    ) -> Dict[str, Any]:
        """Persist changes to an entity and record UPDATE with its field diff."""
        return await self.action(
            AuditAction.UPDATE, entity_type, entity_id, load, persist, *args, actor=actor, **kwargs
        )

    async def delete(
        self,
        entity_type: EntityType,
        entity_id: Any,
        load: LoadSnapshot,
        persist: Callable[..., Awaitable[Any]],
        *args,
        actor: Optional[Actor] = None,
        **kwargs
    ) -> Any:
        """Delete an entity and record DELETE with its last known snapshot."""
        entity_id = str(entity_id)
        old_values = await self._load_quietly(load, entity_id)
        result = await persist(entity_id, *args, **kwargs)
        self._record(AuditAction.DELETE, entity_type, entity_id, old_values, None, persist, actor)
        return result

    async def action(
        self,
        action: AuditAction,
        entity_type: EntityType,
        entity_id: Any,
        load: LoadSnapshot,
        persist: Callable[..., Awaitable[Dict[str, Any]]],
        *args,
        actor: Optional[Actor] = None,
        **kwargs
    ) -> Dict[str, Any]:
        """Run any persisted action and record it with before/after snapshots."""
        entity_id = str(entity_id)
        old_values = await self._load_quietly(load, entity_id)
        result = await persist(entity_id, *args, **kwargs)
        self._record(action, entity_type, entity_id, old_values, result, persist, actor)
        return result

    def _record(
        self,
        action: AuditAction,
        entity_type: EntityType,
        entity_id: str,
        old_values: Snapshot,
        new_values: Snapshot,
        persist: Callable,
        actor: Optional[Actor]
    ) -> AuditEntry:
        return self.store.log(
            entity_type,
            entity_id,
            action,
            old_values=old_values,
            new_values=new_values,
            metadata={"method": getattr(persist, "__name__", "persist")},
            actor=actor
        )

    async def _load_quietly(self, load: LoadSnapshot, entity_id: str) -> Snapshot:
        # A missing "before" snapshot must not block the write; the entry is
        # then recorded without old_values.
        try:
            return await load(entity_id)
        except Exception as e:
            logger.warning("Could not load snapshot of %s before write: %s", entity_id, e)
            return None
