"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ordertrail.models.audit import AuditEntry
from ordertrail.models.enums import AuditAction, MoveState, ServiceOrderStatus


# Audit schemas
class AuditEntryCreate(BaseModel):
    entity_type: str = Field(..., min_length=1)
    entity_id: str = Field(..., min_length=1)
    action: AuditAction
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None


class AuditHistoryItem(BaseModel):
    """An entry plus its human-readable rendering."""
    entry: AuditEntry
    description: str
    change_lines: List[str] = []


class CleanupResponse(BaseModel):
    removed: int


# Service order schemas
class ServiceOrderCreate(BaseModel):
    id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=200)
    stage_id: str = Field(..., min_length=1)
    funnel_id: Optional[str] = None
    description: Optional[str] = None
    client_id: Optional[str] = None
    priority: int = 0


class ServiceOrderUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    client_id: Optional[str] = None
    priority: Optional[int] = None


class ServiceOrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    description: Optional[str]
    client_id: Optional[str]
    funnel_id: Optional[str]
    stage_id: str
    status: ServiceOrderStatus
    priority: int


# Stage move schemas
class StageMoveRequest(BaseModel):
    stage_id: str = Field(..., min_length=1)
    funnel_id: Optional[str] = None
    reason: Optional[str] = Field(None, max_length=500)


class StageMoveResponse(BaseModel):
    entity_id: str
    from_stage_id: Optional[str]
    to_stage_id: str
    state: MoveState
    audit_entry_id: str
    moved_at: datetime


# Error response
class MoveFailureResponse(BaseModel):
    """Response when the authoritative store rejected a stage move."""
    message: str
    entity_id: str
    target_stage_id: str
