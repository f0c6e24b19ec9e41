"""Human-readable rendering of audit entries."""
from typing import List

from ordertrail.models.audit import AuditEntry, FieldChange, entity_type_value
from ordertrail.models.enums import AuditAction, AuditEntityType, ChangeType

ACTION_LABELS = {
    AuditAction.CREATE: "created",
    AuditAction.UPDATE: "updated",
    AuditAction.DELETE: "deleted",
    AuditAction.STATUS_CHANGE: "changed the status of",
    AuditAction.PRIORITY_CHANGE: "changed the priority of",
    AuditAction.ASSIGN_USER: "assigned a user to",
    AuditAction.UNASSIGN_USER: "removed a user from",
    AuditAction.ADD_SERVICE: "added a service to",
    AuditAction.REMOVE_SERVICE: "removed a service from",
    AuditAction.ADD_PRODUCT: "added a product to",
    AuditAction.REMOVE_PRODUCT: "removed a product from",
    AuditAction.CANCEL: "cancelled",
    AuditAction.RESTORE: "restored",
}

ENTITY_TYPE_LABELS = {
    AuditEntityType.SERVICE_ORDER.value: "service order",
    AuditEntityType.SERVICE_ORDER_SERVICE.value: "service order service",
    AuditEntityType.SERVICE_ORDER_PRODUCT.value: "service order product",
}

FIELD_LABELS = {
    "title": "Title",
    "description": "Description",
    "status": "Status",
    "priority": "Priority",
    "stage_id": "Stage",
    "funnel_id": "Funnel",
    "due_date": "Due date",
    "start_date": "Start date",
    "end_date": "End date",
    "assigned_user_id": "Assigned user",
    "client_id": "Client",
    "aircraft_id": "Aircraft",
    "total_amount": "Total amount",
    "notes": "Notes",
    "services": "Services",
    "products": "Products",
}

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M"


class AuditFormatter:
    """Formats entries and field changes for history views."""

    @staticmethod
    def format_entry(entry: AuditEntry) -> str:
        actor = entry.actor_name or "System"
        action = AuditFormatter.format_action(entry.action)
        entity = AuditFormatter.format_entity_type(entry.entity_type)
        return f"{actor} {action} {entity} at {entry.timestamp.strftime(TIMESTAMP_FORMAT)}"

    @staticmethod
    def format_action(action: AuditAction) -> str:
        return ACTION_LABELS.get(action, str(action))

    @staticmethod
    def format_entity_type(entity_type) -> str:
        tag = entity_type_value(entity_type)
        return ENTITY_TYPE_LABELS.get(tag, tag)

    @staticmethod
    def format_field_name(field: str) -> str:
        return FIELD_LABELS.get(field, field)

    @staticmethod
    def format_changes(changes: List[FieldChange]) -> List[str]:
        lines = []
        for change in changes or []:
            field = AuditFormatter.format_field_name(change.field)
            if change.change_type == ChangeType.ADDED:
                lines.append(f'{field}: added "{change.new_value}"')
            elif change.change_type == ChangeType.REMOVED:
                lines.append(f'{field}: removed "{change.old_value}"')
            else:
                lines.append(f'{field}: changed from "{change.old_value}" to "{change.new_value}"')
        return lines
