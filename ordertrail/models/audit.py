"""
Audit trail records.

AuditEntry and FieldChange are immutable value objects held by the in-memory
AuditStore. AuditLogBlob is the durable side: one row per storage key holding
the JSON-serialized log, written best-effort after every mutation of the store.
"""
from datetime import datetime
from typing import Any, Dict, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy import Column, DateTime, String, Text

from ordertrail.database import Base
from ordertrail.models.enums import AuditAction, AuditEntityType, ChangeType


class Actor(BaseModel):
    """Whoever performed a change. Absent actor means a system change."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str


class FieldChange(BaseModel):
    """One field's difference between an old and a new snapshot."""
    model_config = ConfigDict(frozen=True)

    field: str
    old_value: Any = None
    new_value: Any = None
    change_type: ChangeType


class AuditEntry(BaseModel):
    """
    Immutable record of one mutation to one entity.

    Invariants:
    - Never edited after creation
    - changes is set iff both old_values and new_values were supplied
    - changes only names fields from the union of both snapshots' keys
    """
    model_config = ConfigDict(frozen=True)

    id: str
    entity_type: Union[AuditEntityType, str]
    entity_id: str
    action: AuditAction
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None
    timestamp: datetime
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    changes: Optional[Tuple[FieldChange, ...]] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("entity_type", mode="before")
    @classmethod
    def _known_entity_type(cls, value):
        return coerce_entity_type(value)

    @property
    def is_system(self) -> bool:
        return self.actor_id is None and self.actor_name is None


class AuditLogBlob(Base):
    """
    Key/value row backing the audit log between restarts.

    Not transactional with the store: a failed write leaves the previous blob.
    """
    __tablename__ = "audit_log_blobs"

    key = Column(String, primary_key=True)
    payload = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


def coerce_entity_type(value):
    """Map a raw tag onto AuditEntityType when it names a known type."""
    if isinstance(value, AuditEntityType):
        return value
    try:
        return AuditEntityType(value)
    except ValueError:
        return value


def entity_type_value(value) -> str:
    """Plain string form of an entity type tag."""
    if isinstance(value, AuditEntityType):
        return value.value
    return str(value)
