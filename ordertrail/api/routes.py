"""API routes for the change-tracking core."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from starlette.concurrency import run_in_threadpool

from ordertrail.api.schemas import (
    AuditEntryCreate,
    AuditHistoryItem,
    CleanupResponse,
    MoveFailureResponse,
    ServiceOrderCreate,
    ServiceOrderResponse,
    ServiceOrderUpdate,
    StageMoveRequest,
    StageMoveResponse
)
from ordertrail.models.audit import Actor, AuditEntry
from ordertrail.models.domain import StageVisit
from ordertrail.models.enums import AuditAction, AuditEntityType, ExportFormat, ServiceOrderStatus
from ordertrail.services.audit_query import AuditSummary
from ordertrail.services.diff_engine import DiffError
from ordertrail.services.formatting import AuditFormatter
from ordertrail.services.mutation_coordinator import PersistenceFailure
from ordertrail.services.service_orders import ServiceOrderNotFound
from ordertrail.services.tracker import ChangeTracker

router = APIRouter()

SERVICE_ORDER = AuditEntityType.SERVICE_ORDER

EXPORT_MEDIA_TYPES = {
    ExportFormat.JSON: "application/json",
    ExportFormat.CSV: "text/csv",
}


def get_tracker(request: Request) -> ChangeTracker:
    return request.app.state.tracker


def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_name: Optional[str] = Header(None)
) -> Optional[Actor]:
    """Acting user from request headers. No headers means a system change."""
    if not x_actor_id:
        return None
    return Actor(id=x_actor_id, name=x_actor_name or x_actor_id)


# Audit endpoints
@router.post("/audit/entries", response_model=AuditEntry, status_code=status.HTTP_201_CREATED)
def log_entry(
    entry_data: AuditEntryCreate,
    tracker: ChangeTracker = Depends(get_tracker),
    actor: Optional[Actor] = Depends(get_actor)
):
    """Record a mutation performed elsewhere."""
    try:
        return tracker.store.log(
            entry_data.entity_type,
            entry_data.entity_id,
            entry_data.action,
            old_values=entry_data.old_values,
            new_values=entry_data.new_values,
            metadata=entry_data.metadata,
            actor=actor
        )
    except DiffError as e:
        raise HTTPException(status_code=400, detail=e.message)


@router.get("/audit/entries", response_model=List[AuditEntry])
def search_entries(request: Request, tracker: ChangeTracker = Depends(get_tracker)):
    """
    Search the audit log. Every query parameter is an optional filter.
    Malformed values match nothing rather than failing the request.
    """
    return tracker.query.search(dict(request.query_params))


@router.delete("/audit/entries", response_model=CleanupResponse)
def cleanup_entries(older_than: datetime, tracker: ChangeTracker = Depends(get_tracker)):
    """Remove entries strictly older than the cutoff."""
    return CleanupResponse(removed=tracker.store.cleanup(older_than))


@router.get("/audit/summary", response_model=AuditSummary)
def get_summary(request: Request, tracker: ChangeTracker = Depends(get_tracker)):
    """Per-action, per-entity-type and per-actor counts over the filtered entries."""
    return tracker.query.get_summary(dict(request.query_params))


@router.get("/audit/export")
def export_entries(request: Request, tracker: ChangeTracker = Depends(get_tracker)):
    """Export filtered entries as JSON (default) or CSV."""
    params = dict(request.query_params)
    raw_format = params.pop("format", ExportFormat.JSON.value)
    try:
        export_format = ExportFormat(raw_format)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unsupported export format: {raw_format}")

    body = tracker.query.export(params, export_format)
    return Response(content=body, media_type=EXPORT_MEDIA_TYPES[export_format])


@router.get("/audit/{entity_type}/{entity_id}/history", response_model=List[AuditHistoryItem])
def get_entity_history(entity_type: str, entity_id: str, tracker: ChangeTracker = Depends(get_tracker)):
    """Full history of one entity, most recent first."""
    return [
        AuditHistoryItem(
            entry=entry,
            description=AuditFormatter.format_entry(entry),
            change_lines=AuditFormatter.format_changes(entry.changes or [])
        )
        for entry in tracker.store.get_entity_history(entity_type, entity_id)
    ]


# Service order endpoints
@router.post("/service-orders", response_model=ServiceOrderResponse, status_code=status.HTTP_201_CREATED)
async def create_service_order(
    order_data: ServiceOrderCreate,
    tracker: ChangeTracker = Depends(get_tracker),
    actor: Optional[Actor] = Depends(get_actor)
):
    """Create a service order in its initial stage. Recorded as CREATE."""
    if await tracker.orders.load_snapshot(order_data.id) is not None:
        raise HTTPException(status_code=409, detail="Service order already exists")

    async def create_order(**fields):
        return await run_in_threadpool(tracker.orders.create, **fields)

    order = await tracker.recorder.create(
        SERVICE_ORDER, create_order, actor=actor, order_id=order_data.id,
        **order_data.model_dump(exclude={"id"})
    )
    tracker.cache.set_detail(order["id"], order)
    tracker.cache.mark_stale(tracker.list_key)
    return order


@router.get("/service-orders", response_model=List[ServiceOrderResponse])
async def list_service_orders(tracker: ChangeTracker = Depends(get_tracker)):
    """List service orders from the local cache, refreshed when stale."""
    return await tracker.refresh_orders()


@router.get("/service-orders/{order_id}", response_model=ServiceOrderResponse)
async def get_service_order(order_id: str, tracker: ChangeTracker = Depends(get_tracker)):
    order = await tracker.order_detail(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Service order not found")
    return order


@router.patch("/service-orders/{order_id}", response_model=ServiceOrderResponse)
async def update_service_order(
    order_id: str,
    update_data: ServiceOrderUpdate,
    tracker: ChangeTracker = Depends(get_tracker),
    actor: Optional[Actor] = Depends(get_actor)
):
    """Edit a service order. Recorded as UPDATE with a field diff."""
    async def update_order(entity_id, **fields):
        return await run_in_threadpool(tracker.orders.update, entity_id, **fields)

    try:
        order = await tracker.recorder.update(
            SERVICE_ORDER, order_id, tracker.orders.load_snapshot, update_order,
            actor=actor, **update_data.model_dump(exclude_unset=True)
        )
    except ServiceOrderNotFound:
        raise HTTPException(status_code=404, detail="Service order not found")

    tracker.cache.set_detail(order_id, order)
    tracker.cache.mark_stale(tracker.list_key)
    return order


@router.post("/service-orders/{order_id}/cancel", response_model=ServiceOrderResponse)
async def cancel_service_order(
    order_id: str,
    tracker: ChangeTracker = Depends(get_tracker),
    actor: Optional[Actor] = Depends(get_actor)
):
    """Cancel a service order. Closes its current stage visit."""
    return await _change_status(tracker, order_id, AuditAction.CANCEL, ServiceOrderStatus.CANCELLED, actor)


@router.post("/service-orders/{order_id}/restore", response_model=ServiceOrderResponse)
async def restore_service_order(
    order_id: str,
    tracker: ChangeTracker = Depends(get_tracker),
    actor: Optional[Actor] = Depends(get_actor)
):
    """Bring a cancelled service order back into its last stage."""
    return await _change_status(tracker, order_id, AuditAction.RESTORE, ServiceOrderStatus.IN_PROGRESS, actor)


@router.post(
    "/service-orders/{order_id}/move",
    response_model=StageMoveResponse,
    responses={409: {"model": MoveFailureResponse, "description": "Remote store rejected the move"}}
)
async def move_service_order(
    order_id: str,
    move_data: StageMoveRequest,
    tracker: ChangeTracker = Depends(get_tracker),
    actor: Optional[Actor] = Depends(get_actor)
):
    """
    Move a service order to another stage.

    The cached views change immediately; if the remote write fails they are
    restored and the move is reported as 409 with no audit entry.
    """
    if await tracker.order_detail(order_id) is None:
        raise HTTPException(status_code=404, detail="Service order not found")

    try:
        result = await tracker.coordinator.move_to_stage(
            order_id,
            move_data.stage_id,
            funnel_id=move_data.funnel_id,
            reason=move_data.reason,
            actor=actor
        )
    except PersistenceFailure as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": e.message,
                "entity_id": e.entity_id,
                "target_stage_id": e.target_stage_id
            }
        )

    return StageMoveResponse(
        entity_id=result.entity_id,
        from_stage_id=result.from_stage_id,
        to_stage_id=result.to_stage_id,
        state=result.state,
        audit_entry_id=result.audit_entry.id,
        moved_at=result.audit_entry.timestamp
    )


@router.get("/service-orders/{order_id}/timeline", response_model=List[StageVisit])
def get_stage_timeline(order_id: str, tracker: ChangeTracker = Depends(get_tracker)):
    """Stage visits of a service order, oldest first, replayed from its history."""
    return tracker.timeline.reconstruct(order_id)


async def _change_status(
    tracker: ChangeTracker,
    order_id: str,
    action: AuditAction,
    new_status: ServiceOrderStatus,
    actor: Optional[Actor]
) -> dict:
    async def set_status(entity_id):
        return await run_in_threadpool(tracker.orders.set_status, entity_id, new_status)

    try:
        order = await tracker.recorder.action(
            action, SERVICE_ORDER, order_id, tracker.orders.load_snapshot, set_status, actor=actor
        )
    except ServiceOrderNotFound:
        raise HTTPException(status_code=404, detail="Service order not found")

    tracker.cache.set_detail(order_id, order)
    tracker.cache.mark_stale(tracker.list_key)
    return order
