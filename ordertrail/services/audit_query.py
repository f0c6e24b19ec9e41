"""
Read side of the audit log: filtering, pagination, aggregation and export.

Every query path is total. A filter that cannot be parsed (bad date, unknown
action, negative offset) matches nothing instead of raising, so UI query
paths never fail on user input.
"""
import csv
import io
import json
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ordertrail.models.audit import AuditEntry, coerce_entity_type, entity_type_value
from ordertrail.models.enums import AuditAction, AuditEntityType, ExportFormat
from ordertrail.services.audit_store import AuditStore

logger = logging.getLogger(__name__)

RECENT_ACTIVITY_SIZE = 10
CSV_HEADERS = ["ID", "EntityType", "EntityId", "Action", "Actor", "Timestamp", "Changes"]
SYSTEM_ACTOR_LABEL = "System"


class AuditFilter(BaseModel):
    """Conjunctive filter over audit entries. Every field is optional."""
    model_config = ConfigDict(extra="ignore")

    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    action: Optional[AuditAction] = None
    actor_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    # 0 or None means no limit
    limit: Optional[int] = Field(None, ge=0)
    offset: Optional[int] = Field(None, ge=0)

    @field_validator("*", mode="before")
    @classmethod
    def _blank_is_unset(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("entity_type", mode="before")
    @classmethod
    def _entity_type_tag(cls, value):
        if value is None:
            return None
        return entity_type_value(value)

    @field_validator("start_date", "end_date")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class AuditSummary(BaseModel):
    total_entries: int
    action_counts: Dict[str, int]
    entity_type_counts: Dict[str, int]
    actor_counts: Dict[str, int]
    recent_activity: List[AuditEntry]


FilterInput = Union[AuditFilter, Mapping, None]


def parse_filter(raw: FilterInput) -> Optional[AuditFilter]:
    """Normalize raw filter input. Returns None when it cannot be parsed."""
    if raw is None:
        return AuditFilter()
    if isinstance(raw, AuditFilter):
        return raw
    if not isinstance(raw, Mapping):
        logger.debug("Ignoring audit filter of unsupported type %s", type(raw).__name__)
        return None
    try:
        return AuditFilter.model_validate(dict(raw))
    except ValidationError as e:
        logger.debug("Malformed audit filter %r: %s", raw, e)
        return None


class AuditQuery:
    """Queries over an AuditStore's entries."""

    def __init__(self, store: AuditStore):
        self.store = store

    def search(self, filter: FilterInput = None) -> List[AuditEntry]:
        """
        Entries matching every set field, most-recent-first.

        Date bounds are inclusive. Pagination runs last: offset, then limit.
        """
        criteria = parse_filter(filter)
        if criteria is None:
            return []

        entity_type = coerce_entity_type(criteria.entity_type) if criteria.entity_type else None
        results = []
        for entry in self.store.entries:
            if entity_type is not None and entry.entity_type != entity_type:
                continue
            if criteria.entity_id is not None and entry.entity_id != criteria.entity_id:
                continue
            if criteria.action is not None and entry.action != criteria.action:
                continue
            if criteria.actor_id is not None and entry.actor_id != criteria.actor_id:
                continue
            if criteria.start_date is not None and entry.timestamp < criteria.start_date:
                continue
            if criteria.end_date is not None and entry.timestamp > criteria.end_date:
                continue
            results.append(entry)

        if criteria.offset:
            results = results[criteria.offset:]
        if criteria.limit:
            results = results[:criteria.limit]
        return results

    def get_summary(self, filter: FilterInput = None) -> AuditSummary:
        """Aggregate counts over the entries the filter selects."""
        entries = self.search(filter)

        action_counts = {action.value: 0 for action in AuditAction}
        entity_type_counts = {entity_type.value: 0 for entity_type in AuditEntityType}
        actor_counts: Dict[str, int] = {}

        for entry in entries:
            action_counts[entry.action.value] += 1
            tag = entity_type_value(entry.entity_type)
            entity_type_counts[tag] = entity_type_counts.get(tag, 0) + 1

            actor = entry.actor_name or entry.actor_id
            if actor:
                actor_counts[actor] = actor_counts.get(actor, 0) + 1

        return AuditSummary(
            total_entries=len(entries),
            action_counts=action_counts,
            entity_type_counts=entity_type_counts,
            actor_counts=actor_counts,
            recent_activity=entries[:RECENT_ACTIVITY_SIZE]
        )

    def export(
        self,
        filter: FilterInput = None,
        format: Union[ExportFormat, str] = ExportFormat.JSON
    ) -> str:
        """Serialize matching entries as a JSON array or a fully quoted CSV table."""
        export_format = ExportFormat(format)
        entries = self.search(filter)

        if export_format == ExportFormat.CSV:
            return _to_csv(entries)
        return json.dumps([entry.model_dump(mode="json") for entry in entries], indent=2)


def format_change_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


def _changes_cell(entry: AuditEntry) -> str:
    if not entry.changes:
        return ""
    return "; ".join(
        f"{change.field}: {format_change_value(change.old_value)} → {format_change_value(change.new_value)}"
        for change in entry.changes
    )


def _to_csv(entries: List[AuditEntry]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for entry in entries:
        writer.writerow([
            entry.id,
            entity_type_value(entry.entity_type),
            entry.entity_id,
            entry.action.value,
            entry.actor_name or SYSTEM_ACTOR_LABEL,
            entry.timestamp.isoformat(),
            _changes_cell(entry),
        ])
    return buffer.getvalue().rstrip("\n")
