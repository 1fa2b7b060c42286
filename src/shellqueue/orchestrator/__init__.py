"""Scheduling, process supervision and daemon lifecycle."""

from .scheduler import TaskScheduler
from .supervisor import ProcessSupervisor, ProcessHandle, ExitStatus
from .callbacks import CallbackRunner
from .daemon import Daemon, DaemonState

__all__ = [
    "TaskScheduler",
    "ProcessSupervisor",
    "ProcessHandle",
    "ExitStatus",
    "CallbackRunner",
    "Daemon",
    "DaemonState",
]
