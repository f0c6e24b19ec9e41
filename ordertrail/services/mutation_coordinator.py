"""
Optimistic stage moves over the local cache.

Every move goes IDLE -> SNAPSHOTTING -> APPLIED -> COMMITTED | ROLLED_BACK.
The cache rewrite happens synchronously before the only suspension point (the
remote write), so readers see either the old stage or the new one, never a mix.

Moves for the same entity are serialized in issue order; a second move does
not snapshot until the first has committed or rolled back, otherwise a
rollback could restore over a newer optimistic write. Moves for different
entities run concurrently.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from ordertrail.models.audit import Actor, AuditEntry
from ordertrail.models.enums import AuditAction, AuditEntityType, MoveState
from ordertrail.services.audit_store import AuditStore
from ordertrail.services.stage_cache import StageCache

logger = logging.getLogger(__name__)

# persist_stage_move(entity_id, stage_id) or, for moves that change funnel,
# persist_stage_move(entity_id, stage_id, funnel_id=...)
PersistStageMove = Callable[..., Awaitable[Optional[bool]]]
CurrentActor = Callable[[], Optional[Actor]]


class PersistenceFailure(Exception):
    """
    The authoritative write of a stage move failed.

    The cache has already been restored and no audit entry was written.
    """

    def __init__(self, message: str, entity_id: str, target_stage_id: str):
        self.message = message
        self.entity_id = entity_id
        self.target_stage_id = target_stage_id
        super().__init__(self.message)


@dataclass(frozen=True)
class MoveResult:
    entity_id: str
    from_stage_id: Optional[str]
    to_stage_id: str
    state: MoveState
    audit_entry: AuditEntry


class _EntityLock:
    def __init__(self):
        self.lock = asyncio.Lock()
        self.pending = 0


class OptimisticMutationCoordinator:
    """Applies stage moves to the cache first and reconciles with the remote store."""

    def __init__(
        self,
        cache: StageCache,
        store: AuditStore,
        persist_stage_move: PersistStageMove,
        current_actor: Optional[CurrentActor] = None,
        entity_type=AuditEntityType.SERVICE_ORDER,
        persist_timeout: Optional[float] = None
    ):
        self.cache = cache
        self.store = store
        self.persist_stage_move = persist_stage_move
        self.current_actor = current_actor or (lambda: None)
        self.entity_type = entity_type
        self.persist_timeout = persist_timeout
        self._locks: Dict[str, _EntityLock] = {}
        self._states: Dict[str, MoveState] = {}
        self._tasks: Set[asyncio.Task] = set()

    def state_of(self, entity_id: Any) -> MoveState:
        """State of the latest move for the entity (IDLE when none is running)."""
        return self._states.get(str(entity_id), MoveState.IDLE)

    async def move_to_stage(
        self,
        entity_id: Any,
        target_stage_id: Any,
        *,
        funnel_id: Optional[str] = None,
        reason: Optional[str] = None,
        actor: Optional[Actor] = None
    ) -> MoveResult:
        """
        Move an entity to another stage.

        actor overrides current_actor() for attribution of the audit entry.

        Raises PersistenceFailure after rolling the cache back if the remote
        write fails. Cancelling the caller does not cancel the move: it still
        commits or rolls back.
        """
        entity_id = str(entity_id)
        target_stage_id = str(target_stage_id)

        # Queue position is taken now, in issue order
        slot = self._locks.setdefault(entity_id, _EntityLock())
        slot.pending += 1

        task = asyncio.ensure_future(self._run(slot, entity_id, target_stage_id, funnel_id, reason, actor))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(_retrieve_outcome)
        return await asyncio.shield(task)

    async def drain(self) -> None:
        """Wait until every in-flight move has settled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(
        self,
        slot: _EntityLock,
        entity_id: str,
        target_stage_id: str,
        funnel_id: Optional[str],
        reason: Optional[str],
        actor: Optional[Actor]
    ) -> MoveResult:
        try:
            async with slot.lock:
                return await self._move(entity_id, target_stage_id, funnel_id, reason, actor)
        finally:
            slot.pending -= 1
            if slot.pending == 0 and self._locks.get(entity_id) is slot:
                del self._locks[entity_id]

    async def _move(
        self,
        entity_id: str,
        target_stage_id: str,
        funnel_id: Optional[str],
        reason: Optional[str],
        actor: Optional[Actor]
    ) -> MoveResult:
        self._states[entity_id] = MoveState.SNAPSHOTTING
        snapshot = self.cache.snapshot(entity_id)
        from_stage_id = snapshot.stage_id()

        self.cache.apply_stage(entity_id, target_stage_id, funnel_id)
        self._states[entity_id] = MoveState.APPLIED

        try:
            persisted = await self._persist(entity_id, target_stage_id, funnel_id)
            if persisted is False:
                raise PersistenceFailure(
                    f"Remote store refused to move {entity_id} to stage {target_stage_id}",
                    entity_id=entity_id,
                    target_stage_id=target_stage_id
                )
        except BaseException as e:
            # Cancellation of the move itself rolls back too, then propagates
            self.cache.restore(snapshot)
            self._states[entity_id] = MoveState.ROLLED_BACK
            logger.warning(
                "Stage move of %s to %s rolled back: %r", entity_id, target_stage_id, e
            )
            if isinstance(e, PersistenceFailure) or not isinstance(e, Exception):
                raise
            raise PersistenceFailure(
                f"Failed to move {entity_id} to stage {target_stage_id}: {e}",
                entity_id=entity_id,
                target_stage_id=target_stage_id
            ) from e

        self.cache.mark_stale(*snapshot.list_keys)
        entry = self.store.log(
            self.entity_type,
            entity_id,
            AuditAction.STATUS_CHANGE,
            old_values={"stage_id": from_stage_id},
            new_values=_new_stage_values(target_stage_id, funnel_id),
            metadata={"operation": "move_to_stage", "reason": reason},
            actor=actor or self.current_actor()
        )
        self._states[entity_id] = MoveState.COMMITTED
        logger.info("Service order %s moved from stage %s to %s", entity_id, from_stage_id, target_stage_id)

        return MoveResult(
            entity_id=entity_id,
            from_stage_id=from_stage_id,
            to_stage_id=target_stage_id,
            state=MoveState.COMMITTED,
            audit_entry=entry
        )

    async def _persist(self, entity_id: str, target_stage_id: str, funnel_id: Optional[str]) -> Optional[bool]:
        if funnel_id is None:
            call = self.persist_stage_move(entity_id, target_stage_id)
        else:
            call = self.persist_stage_move(entity_id, target_stage_id, funnel_id=funnel_id)
        if self.persist_timeout is not None:
            return await asyncio.wait_for(call, timeout=self.persist_timeout)
        return await call


def _new_stage_values(target_stage_id: str, funnel_id: Optional[str]) -> dict:
    values = {"stage_id": target_stage_id}
    if funnel_id is not None:
        values["funnel_id"] = funnel_id
    return values


def _retrieve_outcome(task: asyncio.Task) -> None:
    # The caller may have been cancelled and will never read the result
    if not task.cancelled():
        task.exception()
