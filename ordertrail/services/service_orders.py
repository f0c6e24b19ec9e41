"""
Authoritative service-order store.

The change-tracking core only needs two things from here: a snapshot of an
order and the stage-move write. Every method opens its own short session so it
can be called from worker threads while the event loop keeps serving.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from ordertrail.models.domain import ServiceOrder, utcnow
from ordertrail.models.enums import TERMINAL_STATUSES, ServiceOrderStatus

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "description", "client_id", "priority")


class ServiceOrderNotFound(LookupError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Service order {order_id} not found")


class ServiceOrderRepository:
    """Reads and writes service orders through SQLAlchemy sessions."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get_snapshot(self, order_id: str) -> Optional[Dict[str, Any]]:
        with self.session_factory() as db:
            order = db.get(ServiceOrder, str(order_id))
            return order.to_snapshot() if order else None

    def list_snapshots(self) -> List[Dict[str, Any]]:
        with self.session_factory() as db:
            orders = db.query(ServiceOrder).order_by(ServiceOrder.created_at.desc()).all()
            return [order.to_snapshot() for order in orders]

    def create(
        self,
        order_id: str,
        title: str,
        stage_id: str,
        funnel_id: Optional[str] = None,
        description: Optional[str] = None,
        client_id: Optional[str] = None,
        priority: int = 0
    ) -> Dict[str, Any]:
        with self.session_factory() as db:
            order = ServiceOrder(
                id=order_id,
                title=title,
                description=description,
                client_id=client_id,
                funnel_id=funnel_id,
                stage_id=stage_id,
                status=ServiceOrderStatus.PENDING,
                priority=priority
            )
            db.add(order)
            db.commit()
            db.refresh(order)
            return order.to_snapshot()

    def update(self, order_id: str, **fields) -> Dict[str, Any]:
        """Apply editable field changes. Stage and status have their own paths."""
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Fields cannot be edited directly: {', '.join(sorted(unknown))}")

        with self.session_factory() as db:
            order = self._require(db, order_id)
            for name, value in fields.items():
                setattr(order, name, value)
            order.updated_at = utcnow()
            db.commit()
            db.refresh(order)
            return order.to_snapshot()

    def set_status(self, order_id: str, status: ServiceOrderStatus) -> Dict[str, Any]:
        with self.session_factory() as db:
            order = self._require(db, order_id)
            order.status = status
            order.updated_at = utcnow()
            db.commit()
            db.refresh(order)
            return order.to_snapshot()

    def move_stage(self, order_id: str, stage_id: str, funnel_id: Optional[str] = None) -> bool:
        """
        Write the new stage, and the funnel when one is given.

        Returns False when the order does not exist or has reached a terminal
        status: a cancelled, completed or closed order sits in no stage until
        it is restored.
        """
        with self.session_factory() as db:
            order = db.get(ServiceOrder, str(order_id))
            if order is None:
                logger.warning("Stage move for unknown service order %s", order_id)
                return False
            if order.status.value in TERMINAL_STATUSES:
                logger.warning("Stage move refused for service order %s in status %s", order_id, order.status.value)
                return False
            order.stage_id = stage_id
            if funnel_id is not None:
                order.funnel_id = funnel_id
            order.updated_at = utcnow()
            db.commit()
            return True

    # Async adapters for the event loop

    async def load_snapshot(self, order_id: str) -> Optional[Dict[str, Any]]:
        return await run_in_threadpool(self.get_snapshot, order_id)

    async def load_all(self) -> List[Dict[str, Any]]:
        return await run_in_threadpool(self.list_snapshots)

    async def persist_stage_move(self, order_id: str, stage_id: str, funnel_id: Optional[str] = None) -> bool:
        return await run_in_threadpool(self.move_stage, order_id, stage_id, funnel_id)

    def _require(self, db, order_id: str) -> ServiceOrder:
        order = db.get(ServiceOrder, str(order_id))
        if order is None:
            raise ServiceOrderNotFound(str(order_id))
        return order
