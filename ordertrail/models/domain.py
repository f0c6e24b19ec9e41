"""Domain models - the service order as the authoritative store sees it, and derived stage visits."""
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import Column, DateTime, Integer, String, Enum as SQLEnum

from ordertrail.database import Base
from ordertrail.models.enums import ServiceOrderStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ServiceOrder(Base):
    """
    A service order progresses through the stages of one funnel.

    Invariants enforced here:
    - stage_id always names the stage the order currently sits in
    - Stage moves go through ServiceOrderRepository.persist_stage_move
    """
    __tablename__ = "service_orders"

    id = Column(String, primary_key=True, index=True)
    title = Column(String, nullable=False)
    description = Column(String, nullable=True)
    client_id = Column(String, nullable=True)
    funnel_id = Column(String, nullable=True)
    stage_id = Column(String, nullable=False, index=True)
    status = Column(SQLEnum(ServiceOrderStatus), nullable=False, default=ServiceOrderStatus.PENDING)
    priority = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_snapshot(self) -> dict:
        """Plain field map used for cache rows and audit snapshots."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "client_id": self.client_id,
            "funnel_id": self.funnel_id,
            "stage_id": self.stage_id,
            "status": self.status.value if self.status else None,
            "priority": self.priority,
        }


class StageVisit(BaseModel):
    """
    Interval during which an entity occupied one stage. Derived, never stored.

    duration_minutes is set iff exited_at is, floored to whole minutes.
    """
    model_config = ConfigDict(frozen=True)

    stage_id: str
    funnel_id: Optional[str] = None
    entered_at: datetime
    exited_at: Optional[datetime] = None
    duration_minutes: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.exited_at is None
