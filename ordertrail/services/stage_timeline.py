"""
Stage timeline reconstruction.

The timeline is never stored. It is replayed from an entity's audit history
every time it is requested, so it always agrees with the log.

Replay rules:
- The CREATE entry's new_values.stage_id opens the first visit
- Any later entry whose new_values.stage_id names a different stage closes the
  open visit at that entry's timestamp and opens the next one
- CANCEL / DELETE entries, or a status in TERMINAL_STATUSES, close the open
  visit without opening another
- RESTORE (or any stage event) after a terminal event reopens a visit

Without a CREATE stage the timeline begins at the first stage event: the
earlier stage's entry time is unknown and is not guessed. No stage
information at all gives an empty timeline.
"""
from datetime import datetime
from typing import Any, List, Optional, Union

from ordertrail.models.audit import AuditEntry
from ordertrail.models.domain import StageVisit
from ordertrail.models.enums import AuditAction, AuditEntityType, TERMINAL_STATUSES
from ordertrail.services.audit_store import AuditStore

STAGE_FIELD = "stage_id"
FUNNEL_FIELD = "funnel_id"
STATUS_FIELD = "status"

TERMINAL_ACTIONS = frozenset({AuditAction.CANCEL, AuditAction.DELETE})


def duration_minutes(entered_at: datetime, exited_at: datetime) -> int:
    """Whole minutes between two instants, floored."""
    return int((exited_at - entered_at).total_seconds() // 60)


class _OpenVisit:
    def __init__(self, stage_id: str, funnel_id: Optional[str], entered_at: datetime):
        self.stage_id = stage_id
        self.funnel_id = funnel_id
        self.entered_at = entered_at

    def close(self, exited_at: datetime) -> StageVisit:
        return StageVisit(
            stage_id=self.stage_id,
            funnel_id=self.funnel_id,
            entered_at=self.entered_at,
            exited_at=exited_at,
            duration_minutes=duration_minutes(self.entered_at, exited_at)
        )

    def as_open(self) -> StageVisit:
        return StageVisit(
            stage_id=self.stage_id,
            funnel_id=self.funnel_id,
            entered_at=self.entered_at
        )


class StageTimelineReconstructor:
    """Derives ordered StageVisit records from an entity's audit history."""

    def __init__(self, store: AuditStore):
        self.store = store

    def reconstruct(
        self,
        entity_id: Any,
        entity_type: Union[AuditEntityType, str] = AuditEntityType.SERVICE_ORDER
    ) -> List[StageVisit]:
        """Stage visits of one entity, oldest-first. At most the last one is open."""
        history = self.store.get_entity_history(entity_type, entity_id)
        return replay(reversed(history))


def replay(entries) -> List[StageVisit]:
    """Replay oldest-first entries into stage visits."""
    visits: List[StageVisit] = []
    current: Optional[_OpenVisit] = None
    last_stage: Optional[str] = None
    last_funnel: Optional[str] = None

    for entry in entries:
        new_values = entry.new_values or {}
        stage_id = _stage_of(new_values)
        if FUNNEL_FIELD in new_values and new_values[FUNNEL_FIELD] is not None:
            last_funnel = str(new_values[FUNNEL_FIELD])

        if _is_terminal(entry):
            if current is not None:
                visits.append(current.close(entry.timestamp))
                current = None
            if stage_id is not None:
                last_stage = stage_id
            continue

        if entry.action == AuditAction.RESTORE and stage_id is None:
            stage_id = last_stage

        if stage_id is None:
            continue

        if current is not None:
            if current.stage_id == stage_id:
                continue
            visits.append(current.close(entry.timestamp))

        current = _OpenVisit(stage_id, last_funnel, entry.timestamp)
        last_stage = stage_id

    if current is not None:
        visits.append(current.as_open())
    return visits


def _stage_of(values: dict) -> Optional[str]:
    stage_id = values.get(STAGE_FIELD)
    if stage_id is None:
        return None
    return str(stage_id)


def _is_terminal(entry: AuditEntry) -> bool:
    if entry.action in TERMINAL_ACTIONS:
        return True
    status = (entry.new_values or {}).get(STATUS_FIELD)
    return isinstance(status, str) and status.lower() in TERMINAL_STATUSES
