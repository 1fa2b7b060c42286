"""Daemon error definitions."""

from typing import Optional, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for classification."""
    LOW = "low"           # Caller mistake, nothing changed
    MEDIUM = "medium"     # Single task or connection affected
    HIGH = "high"         # Invariant violated, needs attention
    CRITICAL = "critical" # Daemon cannot start or continue


class ErrorCategory(Enum):
    """Error categories for routing and handling."""
    STARTUP = "startup"           # Config, TLS material, socket bind
    PROTOCOL = "protocol"         # Malformed frame, unknown request, auth
    DOMAIN = "domain"             # Unknown id, invalid transition
    EXECUTION = "execution"       # Child process could not be run
    INTERNAL = "internal"         # Invariant violation


class QueueError(Exception):
    """Base exception for all daemon errors."""

    kind = "internal"

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.LOW,
        category: ErrorCategory = ErrorCategory.DOMAIN,
        context: Optional[dict[str, Any]] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.category = category
        self.context = context or {}
        self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for logging/responses."""
        return {
            "type": self.__class__.__name__,
            "kind": self.kind,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "context": self.context,
            "retryable": self.retryable,
        }


class ConfigError(QueueError):
    """Fatal startup error: config, secret, TLS material or socket."""

    kind = "config"

    def __init__(self, message: str, config_path: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        kwargs.setdefault("category", ErrorCategory.STARTUP)
        super().__init__(message, **kwargs)
        self.context["config_path"] = config_path


class ProtocolError(QueueError):
    """Malformed or unexpected message on a client connection."""

    kind = "protocol"

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        kwargs.setdefault("category", ErrorCategory.PROTOCOL)
        super().__init__(message, **kwargs)


class AuthenticationError(ProtocolError):
    """Client presented a wrong or no shared secret."""

    kind = "authentication_failed"


class UnknownTaskError(QueueError):
    """Referenced task id does not exist."""

    kind = "unknown_task"

    def __init__(self, task_id: int, **kwargs):
        super().__init__(f"Task {task_id} does not exist", **kwargs)
        self.context["task_id"] = task_id


class UnknownGroupError(QueueError):
    """Referenced group does not exist."""

    kind = "unknown_group"

    def __init__(self, group: str, **kwargs):
        super().__init__(f"Group '{group}' does not exist", **kwargs)
        self.context["group"] = group


class GroupExistsError(QueueError):
    """Group with that name already exists."""

    kind = "group_exists"

    def __init__(self, group: str, **kwargs):
        super().__init__(f"Group '{group}' already exists", **kwargs)
        self.context["group"] = group


class GroupHasTasksError(QueueError):
    """Group still owns tasks and cannot be removed."""

    kind = "group_has_tasks"

    def __init__(self, group: str, task_ids: list[int], **kwargs):
        super().__init__(
            f"Group '{group}' still has tasks: {', '.join(map(str, task_ids))}",
            **kwargs,
        )
        self.context["group"] = group
        self.context["task_ids"] = task_ids


class InvalidGroupOperationError(QueueError):
    """Group operation rejected (default group, bad slot count)."""

    kind = "invalid_group_operation"

    def __init__(self, message: str, group: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.context["group"] = group


class InvalidTransitionError(QueueError):
    """Task status change not allowed by the state machine."""

    kind = "invalid_transition"

    def __init__(self, task_id: int, current: str, target: str, **kwargs):
        super().__init__(
            f"Task {task_id} cannot go from {current} to {target}",
            **kwargs,
        )
        self.context["task_id"] = task_id
        self.context["current"] = current
        self.context["target"] = target


class SpawnError(QueueError):
    """Child process could not be started."""

    kind = "spawn_failed"

    def __init__(self, message: str, task_id: Optional[int] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        kwargs.setdefault("category", ErrorCategory.EXECUTION)
        super().__init__(message, **kwargs)
        self.context["task_id"] = task_id


class SlotAllocationError(QueueError):
    """No free worker slot although the group is below its limit."""

    kind = "slot_allocation"

    def __init__(self, group: str, occupied: list[int], slots: int, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.INTERNAL)
        kwargs.setdefault("retryable", True)
        super().__init__(
            f"No free worker slot in group '{group}' "
            f"(occupied {occupied}, slots {slots})",
            **kwargs,
        )
        self.context["group"] = group
        self.context["occupied"] = occupied
        self.context["slots"] = slots
