"""Process-wide wiring of the change-tracking components."""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from sqlalchemy.orm import sessionmaker

from ordertrail.config import Settings
from ordertrail.services.audit_query import AuditQuery
from ordertrail.services.audit_storage import SqlAuditStorage
from ordertrail.services.audit_store import AuditStore
from ordertrail.services.mutation_coordinator import OptimisticMutationCoordinator
from ordertrail.services.recorder import AuditedRecorder
from ordertrail.services.service_orders import ServiceOrderRepository
from ordertrail.services.stage_cache import StageCache
from ordertrail.services.stage_timeline import StageTimelineReconstructor

logger = logging.getLogger(__name__)


class ChangeTracker:
    """
    One instance per process.

    The audit log, the cache and the per-entity move locks are shared state,
    so every request must go through the same instance.
    """

    def __init__(self, session_factory: sessionmaker, settings: Settings):
        self.settings = settings
        self.orders = ServiceOrderRepository(session_factory)
        # One writer thread keeps durable audit writes off the event loop and in order
        self.audit_writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit-writer")
        self.store = AuditStore(
            storage=SqlAuditStorage(session_factory, settings.audit_storage_key),
            max_entries=settings.audit_max_entries,
            writer=self.audit_writer
        )
        self.query = AuditQuery(self.store)
        self.timeline = StageTimelineReconstructor(self.store)
        self.recorder = AuditedRecorder(self.store)
        self.cache = StageCache()
        self.coordinator = OptimisticMutationCoordinator(
            cache=self.cache,
            store=self.store,
            persist_stage_move=self.orders.persist_stage_move,
            persist_timeout=settings.persist_timeout_seconds
        )
        logger.info("Change tracker ready with %d audit entries loaded", len(self.store))

    @property
    def list_key(self) -> str:
        return self.settings.service_order_list_key

    async def refresh_orders(self, force: bool = False) -> list:
        """Serve the cached order list, reloading it when missing or stale."""
        rows: Optional[list] = self.cache.get_list(self.list_key)
        if rows is None or force or self.cache.is_stale(self.list_key):
            rows = await self.orders.load_all()
            self.cache.set_list(self.list_key, rows)
        return rows

    async def order_detail(self, order_id: str) -> Optional[dict]:
        """Cached detail record, filled from the store on first access."""
        detail = self.cache.get_detail(order_id)
        if detail is None:
            detail = await self.orders.load_snapshot(order_id)
            if detail is not None:
                self.cache.set_detail(order_id, detail)
        return detail

    async def close(self) -> None:
        """Let in-flight moves settle, then flush the audit log to durable storage."""
        await self.coordinator.drain()
        self.store.flush()
        self.audit_writer.shutdown(wait=True)
        logger.info("Change tracker closed with %d audit entries", len(self.store))
