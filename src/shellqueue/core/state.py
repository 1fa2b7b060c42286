"""In-memory task and group store.

All daemon state lives in one ``DaemonState`` document owned by a
``StateStore``. Mutations are plain synchronous methods; callers that
combine several of them (a request plus the scheduler pass it triggers)
hold ``store.lock`` for the whole unit so no other coroutine observes a
partially applied change.
"""

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from .config import DEFAULT_GROUP
from .errors import (
    GroupExistsError,
    GroupHasTasksError,
    InvalidGroupOperationError,
    InvalidTransitionError,
    SlotAllocationError,
    UnknownGroupError,
    UnknownTaskError,
)


logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    """Task lifecycle states."""
    QUEUED = "queued"
    STASHED = "stashed"
    RUNNING = "running"
    PAUSED = "paused"
    DONE = "done"
    KILLED = "killed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.KILLED, TaskStatus.FAILED})
SLOT_STATUSES = frozenset({TaskStatus.RUNNING, TaskStatus.PAUSED})

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.RUNNING, TaskStatus.STASHED}),
    TaskStatus.STASHED: frozenset({TaskStatus.QUEUED}),
    TaskStatus.RUNNING: frozenset({
        TaskStatus.PAUSED, TaskStatus.DONE, TaskStatus.KILLED, TaskStatus.FAILED,
    }),
    TaskStatus.PAUSED: frozenset({
        TaskStatus.RUNNING, TaskStatus.DONE, TaskStatus.KILLED, TaskStatus.FAILED,
    }),
    TaskStatus.DONE: frozenset(),
    TaskStatus.KILLED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


def is_valid_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class Task(BaseModel):
    """A queued shell command and its execution record."""
    id: int
    command: str
    group: str = DEFAULT_GROUP
    status: TaskStatus = TaskStatus.QUEUED
    priority_immediate: bool = False
    env: dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None
    label: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    enqueued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    # Running
    worker_slot: Optional[int] = None
    pid: Optional[int] = None

    # Terminal
    exit_code: Optional[int] = None
    signal: Optional[int] = None
    failure_reason: Optional[str] = None

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def occupies_slot(self) -> bool:
        return self.status in SLOT_STATUSES

    def succeeded(self) -> bool:
        return self.status == TaskStatus.DONE and self.exit_code == 0

    def result_label(self) -> str:
        """Short human readable outcome, used by the completion hook."""
        if self.status == TaskStatus.DONE:
            return "success" if self.exit_code == 0 else f"failed ({self.exit_code})"
        if self.status == TaskStatus.KILLED:
            return "killed"
        if self.status == TaskStatus.FAILED:
            return f"failed to spawn: {self.failure_reason}"
        return self.status.value


class Group(BaseModel):
    """A named concurrency domain with its own queue."""
    name: str
    parallel_slots: int = Field(default=1, ge=1)
    paused: bool = False
    pending_queue: list[int] = Field(default_factory=list)


class DaemonState(BaseModel):
    """Everything the daemon knows; the unit of snapshots."""
    tasks: dict[int, Task] = Field(default_factory=dict)
    groups: dict[str, Group] = Field(default_factory=dict)
    next_id: int = 0


class StateStore:
    """Single point of mutation for tasks and groups."""

    def __init__(self, state: Optional[DaemonState] = None, default_slots: int = 1):
        self._state = state if state is not None else DaemonState()
        self.lock = asyncio.Lock()

        if DEFAULT_GROUP not in self._state.groups:
            self._state.groups[DEFAULT_GROUP] = Group(
                name=DEFAULT_GROUP, parallel_slots=default_slots
            )

    @classmethod
    def restore(cls, state: DaemonState, default_slots: int = 1) -> "StateStore":
        """
        Build a store from a persisted snapshot.

        Processes are never re-attached: tasks that were running or paused
        when the snapshot was taken are marked failed and free their slots.
        """
        now = utcnow()
        for task in state.tasks.values():
            if task.occupies_slot():
                task.status = TaskStatus.FAILED
                task.failure_reason = "daemon restarted"
                task.finished_at = now
                task.pid = None
                logger.warning("task_orphaned_on_restore", task_id=task.id)

        # Rebuild queues from task statuses so a stale queue can't hold
        # ids that are no longer queued.
        for group in state.groups.values():
            group.pending_queue = [
                task_id for task_id in group.pending_queue
                if task_id in state.tasks
                and state.tasks[task_id].status == TaskStatus.QUEUED
            ]
        for task in sorted(state.tasks.values(), key=lambda t: t.id):
            if task.status != TaskStatus.QUEUED:
                continue
            group = state.groups.get(task.group)
            if group is None:
                group = Group(name=task.group)
                state.groups[task.group] = group
            if task.id not in group.pending_queue:
                group.pending_queue.append(task.id)

        if state.tasks:
            state.next_id = max(state.next_id, max(state.tasks) + 1)

        return cls(state, default_slots=default_slots)

    # ==================== Lookup ====================

    @property
    def state(self) -> DaemonState:
        return self._state

    def get_task(self, task_id: int) -> Task:
        task = self._state.tasks.get(task_id)
        if task is None:
            raise UnknownTaskError(task_id)
        return task

    def get_group(self, name: str) -> Group:
        group = self._state.groups.get(name)
        if group is None:
            raise UnknownGroupError(name)
        return group

    def tasks_in_group(self, name: str) -> list[Task]:
        return [t for t in self._state.tasks.values() if t.group == name]

    def task_ids(self) -> list[int]:
        return sorted(self._state.tasks)

    def running_count(self, name: str) -> int:
        return sum(
            1 for t in self._state.tasks.values()
            if t.group == name and t.status == TaskStatus.RUNNING
        )

    def occupied_slots(self, name: str) -> list[int]:
        """Worker slot indices held by running or paused tasks of a group."""
        return sorted(
            t.worker_slot for t in self._state.tasks.values()
            if t.group == name and t.occupies_slot() and t.worker_slot is not None
        )

    def free_slot_count(self, name: str) -> int:
        group = self.get_group(name)
        occupied = sum(
            1 for t in self._state.tasks.values()
            if t.group == name and t.occupies_slot()
        )
        return max(0, group.parallel_slots - occupied)

    def allocate_slot(self, name: str) -> int:
        """Lowest unused worker slot index in ``[0, parallel_slots)``."""
        group = self.get_group(name)
        occupied = self.occupied_slots(name)
        taken = set(occupied)
        for index in range(group.parallel_slots):
            if index not in taken:
                return index
        raise SlotAllocationError(name, occupied, group.parallel_slots)

    # ==================== Tasks ====================

    def add_task(
        self,
        command: str,
        group: str = DEFAULT_GROUP,
        priority_immediate: bool = False,
        env: Optional[dict[str, str]] = None,
        stashed: bool = False,
        cwd: Optional[str] = None,
        label: Optional[str] = None,
    ) -> int:
        """Create a queued (or stashed) task and return its id."""
        target = self.get_group(group)

        task_id = self._state.next_id
        self._state.next_id += 1

        task = Task(
            id=task_id,
            command=command,
            group=group,
            status=TaskStatus.STASHED if stashed else TaskStatus.QUEUED,
            priority_immediate=priority_immediate,
            env=dict(env or {}),
            cwd=cwd,
            label=label,
        )
        self._state.tasks[task_id] = task

        if not stashed:
            task.enqueued_at = task.created_at
            self._enqueue(target, task)

        logger.debug(
            "task_added",
            task_id=task_id,
            group=group,
            stashed=stashed,
            priority_immediate=priority_immediate,
        )
        return task_id

    def check_transition(self, task_id: int, new_status: TaskStatus) -> Task:
        """Raise unless the task may move to ``new_status``."""
        task = self.get_task(task_id)
        if not is_valid_transition(task.status, new_status):
            raise InvalidTransitionError(task_id, task.status.value, new_status.value)
        return task

    def set_status(
        self,
        task_id: int,
        new_status: TaskStatus,
        *,
        worker_slot: Optional[int] = None,
        exit_code: Optional[int] = None,
        signal: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Task:
        """Apply a validated state machine transition."""
        task = self.check_transition(task_id, new_status)
        previous = task.status
        group = self.get_group(task.group)
        now = utcnow()

        if previous == TaskStatus.QUEUED:
            self._dequeue(group, task_id)

        if new_status == TaskStatus.QUEUED:
            task.enqueued_at = now
            self._enqueue(group, task)

        elif new_status == TaskStatus.RUNNING and previous == TaskStatus.QUEUED:
            if worker_slot is None:
                worker_slot = self.allocate_slot(task.group)
            task.worker_slot = worker_slot
            task.started_at = now
            task.pid = None

        elif new_status in TERMINAL_STATUSES:
            task.finished_at = now
            task.exit_code = exit_code
            task.signal = signal
            task.failure_reason = reason

        task.status = new_status
        logger.debug(
            "task_status_changed",
            task_id=task_id,
            previous=previous.value,
            status=new_status.value,
        )
        return task

    def attach_pid(self, task_id: int, pid: int) -> None:
        task = self.get_task(task_id)
        task.pid = pid

    def remove_task(self, task_id: int) -> Task:
        """Delete a task that is not currently holding a slot."""
        task = self.get_task(task_id)
        if task.occupies_slot():
            raise InvalidTransitionError(task_id, task.status.value, "removed")

        if task.status == TaskStatus.QUEUED:
            self._dequeue(self.get_group(task.group), task_id)

        del self._state.tasks[task_id]
        logger.debug("task_removed", task_id=task_id)
        return task

    def edit_task(
        self,
        task_id: int,
        command: Optional[str] = None,
        label: Optional[str] = None,
    ) -> Task:
        """Change a task that has not started yet."""
        task = self.get_task(task_id)
        if task.status not in (TaskStatus.QUEUED, TaskStatus.STASHED):
            raise InvalidTransitionError(task_id, task.status.value, "edited")

        if command is not None:
            task.command = command
        if label is not None:
            task.label = label
        return task

    def terminal_task_ids(self, group: Optional[str] = None) -> list[int]:
        if group is not None:
            self.get_group(group)
        return sorted(
            t.id for t in self._state.tasks.values()
            if t.is_terminal() and (group is None or t.group == group)
        )

    # ==================== Groups ====================

    def add_group(self, name: str, parallel_slots: int = 1) -> Group:
        if name in self._state.groups:
            raise GroupExistsError(name)
        if parallel_slots < 1:
            raise InvalidGroupOperationError(
                "A group needs at least one slot", group=name
            )
        group = Group(name=name, parallel_slots=parallel_slots)
        self._state.groups[name] = group
        logger.info("group_added", group=name, parallel_slots=parallel_slots)
        return group

    def remove_group(self, name: str) -> None:
        if name == DEFAULT_GROUP:
            raise InvalidGroupOperationError(
                "The default group cannot be removed", group=name
            )
        self.get_group(name)
        remaining = sorted(t.id for t in self.tasks_in_group(name))
        if remaining:
            raise GroupHasTasksError(name, remaining)
        del self._state.groups[name]
        logger.info("group_removed", group=name)

    def set_group_slots(self, name: str, parallel_slots: int) -> Group:
        group = self.get_group(name)
        if parallel_slots < 1:
            raise InvalidGroupOperationError(
                "A group needs at least one slot", group=name
            )
        occupied = self.occupied_slots(name)
        if occupied and max(occupied) >= parallel_slots:
            raise InvalidGroupOperationError(
                f"Group '{name}' has tasks in slots {occupied}; "
                f"cannot shrink to {parallel_slots}",
                group=name,
            )
        group.parallel_slots = parallel_slots
        logger.info("group_slots_changed", group=name, parallel_slots=parallel_slots)
        return group

    def set_group_paused(self, name: str, paused: bool) -> Group:
        group = self.get_group(name)
        group.paused = paused
        logger.info("group_paused" if paused else "group_resumed", group=name)
        return group

    # ==================== Snapshots ====================

    def snapshot(self) -> DaemonState:
        """Consistent deep copy of all state."""
        return self._state.model_copy(deep=True)

    async def read_snapshot(self) -> DaemonState:
        async with self.lock:
            return self.snapshot()

    # ==================== Internal ====================

    def _enqueue(self, group: Group, task: Task) -> None:
        queue = group.pending_queue
        if not task.priority_immediate:
            queue.append(task.id)
            return

        # Immediate tasks go in front, after immediate tasks queued earlier.
        index = 0
        while index < len(queue) and self._state.tasks[queue[index]].priority_immediate:
            index += 1
        queue.insert(index, task.id)

    def _dequeue(self, group: Group, task_id: int) -> None:
        try:
            group.pending_queue.remove(task_id)
        except ValueError:
            logger.error("task_missing_from_queue", task_id=task_id, group=group.name)
