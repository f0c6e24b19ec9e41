"""Enums for the change-tracking core - these define the valid values for actions, entity types and states."""
from enum import Enum


class AuditAction(str, Enum):
    """Every kind of mutation an audit entry can describe."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    STATUS_CHANGE = "STATUS_CHANGE"
    PRIORITY_CHANGE = "PRIORITY_CHANGE"
    ASSIGN_USER = "ASSIGN_USER"
    UNASSIGN_USER = "UNASSIGN_USER"
    ADD_SERVICE = "ADD_SERVICE"
    REMOVE_SERVICE = "REMOVE_SERVICE"
    ADD_PRODUCT = "ADD_PRODUCT"
    REMOVE_PRODUCT = "REMOVE_PRODUCT"
    CANCEL = "CANCEL"
    RESTORE = "RESTORE"


class AuditEntityType(str, Enum):
    """Entity types known out of the box. Deployments may log other tags."""
    SERVICE_ORDER = "SERVICE_ORDER"
    SERVICE_ORDER_SERVICE = "SERVICE_ORDER_SERVICE"
    SERVICE_ORDER_PRODUCT = "SERVICE_ORDER_PRODUCT"


class ChangeType(str, Enum):
    """How a single field differs between two snapshots."""
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


class ServiceOrderStatus(str, Enum):
    """Lifecycle status of a service order."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    CLOSED = "closed"


# Statuses that end the current stage visit
TERMINAL_STATUSES = frozenset({
    ServiceOrderStatus.COMPLETED.value,
    ServiceOrderStatus.CANCELLED.value,
    ServiceOrderStatus.CLOSED.value,
})


class MoveState(str, Enum):
    """States of one in-flight optimistic stage move."""
    IDLE = "idle"
    SNAPSHOTTING = "snapshotting"
    APPLIED = "applied"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class ExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"
