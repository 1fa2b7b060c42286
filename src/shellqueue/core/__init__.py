"""Core daemon components."""

from .config import ConfigLoader, Settings, DEFAULT_GROUP
from .state import StateStore, DaemonState, Task, Group, TaskStatus
from .persistence import SnapshotStore
from .logs import TaskLogs
from .errors import (
    QueueError,
    ConfigError,
    ProtocolError,
    AuthenticationError,
    UnknownTaskError,
    UnknownGroupError,
    GroupExistsError,
    GroupHasTasksError,
    InvalidGroupOperationError,
    InvalidTransitionError,
    SpawnError,
    SlotAllocationError,
)

__all__ = [
    "ConfigLoader",
    "Settings",
    "DEFAULT_GROUP",
    "StateStore",
    "DaemonState",
    "Task",
    "Group",
    "TaskStatus",
    "SnapshotStore",
    "TaskLogs",
    "QueueError",
    "ConfigError",
    "ProtocolError",
    "AuthenticationError",
    "UnknownTaskError",
    "UnknownGroupError",
    "GroupExistsError",
    "GroupHasTasksError",
    "InvalidGroupOperationError",
    "InvalidTransitionError",
    "SpawnError",
    "SlotAllocationError",
]
