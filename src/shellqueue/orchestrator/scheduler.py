"""Slot-based task scheduling.

Every public coroutine here is one atomic unit: it takes ``store.lock``,
validates all of its targets, applies the change and runs a dispatch pass
before releasing the lock. Process exits come back through
``handle_exit`` and follow the same path, so client requests and
completions are linearized.
"""

import asyncio
from typing import Awaitable, Callable, Iterable, Optional

import structlog

from ..core.config import DaemonConfig, DEFAULT_GROUP
from ..core.errors import InvalidTransitionError, SlotAllocationError, SpawnError
from ..core.logs import TaskLogs
from ..core.state import StateStore, Task, TaskStatus
from .supervisor import ExitStatus, ProcessSupervisor


logger = structlog.get_logger()


CompletionHook = Callable[[Task], Awaitable[None]]


class TaskScheduler:
    """
    Moves queued tasks into free worker slots.

    Features:
    - Per-group slot limits and pause flags
    - FIFO dispatch with immediate tasks at the queue head
    - Lowest-free worker slot assignment
    - Failure policies (pause group / pause all)
    """

    RETRY_DELAY_SECONDS = 0.5

    def __init__(
        self,
        store: StateStore,
        config: DaemonConfig,
        logs: TaskLogs,
        on_complete: Optional[CompletionHook] = None,
    ):
        self.store = store
        self.config = config
        self.logs = logs
        self.supervisor: Optional[ProcessSupervisor] = None
        self._on_complete = on_complete

        self._kill_requested: set[int] = set()
        self._background: set[asyncio.Task] = set()
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._shutdown = False

        # Internal invariant violations seen by dispatch()
        self.allocation_failures = 0

    def attach_supervisor(self, supervisor: ProcessSupervisor) -> None:
        self.supervisor = supervisor

    # ==================== Dispatch ====================

    def dispatch(self) -> list[int]:
        """
        Promote queued tasks into free slots. Caller holds ``store.lock``.

        Idempotent: with no free slot or no pending task it changes nothing.
        Spawning is handed off to background tasks; this never waits on it.
        """
        started: list[int] = []
        if self._shutdown:
            return started

        for group in list(self.store.state.groups.values()):
            if group.paused:
                continue

            while group.pending_queue and self.store.free_slot_count(group.name) > 0:
                task_id = group.pending_queue[0]
                try:
                    slot = self.store.allocate_slot(group.name)
                except SlotAllocationError as e:
                    # The task stays at the head of its queue.
                    self.allocation_failures += 1
                    logger.error("slot_allocation_failed", task_id=task_id, **e.context)
                    self._schedule_retry()
                    break

                task = self.store.set_status(task_id, TaskStatus.RUNNING, worker_slot=slot)
                started.append(task_id)
                logger.info(
                    "task_started",
                    task_id=task_id,
                    group=group.name,
                    worker_slot=slot,
                )
                self._in_background(self._start_process(task.model_copy(deep=True)))

        return started

    async def run_pass(self) -> list[int]:
        async with self.store.lock:
            return self.dispatch()

    def _schedule_retry(self) -> None:
        if self._retry_handle is not None or self._shutdown:
            return

        def retry() -> None:
            self._retry_handle = None
            self._in_background(self.run_pass())

        loop = asyncio.get_running_loop()
        self._retry_handle = loop.call_later(self.RETRY_DELAY_SECONDS, retry)

    async def _start_process(self, task: Task) -> None:
        if self.supervisor is None:
            raise RuntimeError("Scheduler has no process supervisor attached")

        try:
            handle = await self.supervisor.spawn(task)
        except SpawnError as e:
            logger.error("task_spawn_failed", task_id=task.id, error=e.message)
            async with self.store.lock:
                self._kill_requested.discard(task.id)
                failed = self.store.set_status(
                    task.id, TaskStatus.FAILED, reason=e.message
                )
                finished = failed.model_copy(deep=True)
                self._apply_failure_policy(finished)
                self.dispatch()
            self._notify(finished)
            return

        async with self.store.lock:
            current = self.store.get_task(task.id)
            if not current.occupies_slot():
                return
            self.store.attach_pid(task.id, handle.pid)

            # Requests that arrived while the process was being spawned.
            if task.id in self._kill_requested:
                self.supervisor.kill(task.id)
            elif current.status == TaskStatus.PAUSED:
                self.supervisor.pause(task.id)

    # ==================== Completion ====================

    async def handle_exit(self, task_id: int, status: ExitStatus) -> None:
        """Record a child's exit and refill the freed slot."""
        async with self.store.lock:
            task = self.store.get_task(task_id)
            if task.is_terminal():
                logger.warning("exit_for_finished_task", task_id=task_id)
                return

            kill_requested = task_id in self._kill_requested
            self._kill_requested.discard(task_id)

            if kill_requested or status.signaled:
                self.store.set_status(
                    task_id,
                    TaskStatus.KILLED,
                    exit_code=status.exit_code,
                    signal=status.signal,
                )
            else:
                self.store.set_status(
                    task_id, TaskStatus.DONE, exit_code=status.exit_code
                )

            finished = self.store.get_task(task_id).model_copy(deep=True)
            logger.info(
                "task_finished",
                task_id=task_id,
                status=finished.status.value,
                exit_code=finished.exit_code,
                signal=finished.signal,
            )

            if not kill_requested:
                self._apply_failure_policy(finished)
            self.dispatch()

        self._notify(finished)

    def _apply_failure_policy(self, task: Task) -> None:
        if task.succeeded():
            return

        if self.config.pause_all_on_failure:
            for name in self.store.state.groups:
                self.store.set_group_paused(name, True)
            logger.warning("all_groups_paused_on_failure", task_id=task.id)
        elif self.config.pause_group_on_failure:
            self.store.set_group_paused(task.group, True)
            logger.warning("group_paused_on_failure", task_id=task.id, group=task.group)

    def _notify(self, task: Task) -> None:
        if self._on_complete is not None:
            self._in_background(self._on_complete(task))

    # ==================== Task operations ====================

    async def add_task(
        self,
        command: str,
        group: str = DEFAULT_GROUP,
        priority_immediate: bool = False,
        env: Optional[dict[str, str]] = None,
        stashed: bool = False,
        cwd: Optional[str] = None,
        label: Optional[str] = None,
    ) -> Task:
        async with self.store.lock:
            task_id = self.store.add_task(
                command,
                group=group,
                priority_immediate=priority_immediate,
                env=env,
                stashed=stashed,
                cwd=cwd,
                label=label,
            )
            self.dispatch()
            return self.store.get_task(task_id).model_copy(deep=True)

    async def pause_tasks(self, task_ids: Iterable[int]) -> list[int]:
        """Suspend running tasks. Returns ids whose signal did not land."""
        async with self.store.lock:
            ids = self._check_all(task_ids, TaskStatus.PAUSED)
            return self._pause_locked(ids)

    async def resume_tasks(self, task_ids: Iterable[int]) -> list[int]:
        """Continue paused tasks. Returns ids whose signal did not land."""
        async with self.store.lock:
            ids = self._check_all(task_ids, TaskStatus.RUNNING, only_from=TaskStatus.PAUSED)
            return self._resume_locked(ids)

    async def kill_tasks(self, task_ids: Iterable[int]) -> list[int]:
        """Request termination of running or paused tasks."""
        async with self.store.lock:
            ids = self._check_all(task_ids, TaskStatus.KILLED)
            self._kill_locked(ids)
            return ids

    async def stash_tasks(self, task_ids: Iterable[int]) -> list[int]:
        async with self.store.lock:
            ids = self._check_all(task_ids, TaskStatus.STASHED)
            for task_id in ids:
                self.store.set_status(task_id, TaskStatus.STASHED)
            return ids

    async def enqueue_tasks(self, task_ids: Iterable[int]) -> list[int]:
        async with self.store.lock:
            ids = self._check_all(task_ids, TaskStatus.QUEUED)
            for task_id in ids:
                self.store.set_status(task_id, TaskStatus.QUEUED)
            self.dispatch()
            return ids

    async def start_tasks(self, task_ids: Iterable[int]) -> list[int]:
        """Enqueue stashed tasks and resume paused ones."""
        async with self.store.lock:
            ids = list(dict.fromkeys(task_ids))
            for task_id in ids:
                task = self.store.get_task(task_id)
                if task.status not in (TaskStatus.STASHED, TaskStatus.PAUSED):
                    raise InvalidTransitionError(task_id, task.status.value, "started")

            paused = [i for i in ids if self.store.get_task(i).status == TaskStatus.PAUSED]
            for task_id in ids:
                if task_id not in paused:
                    self.store.set_status(task_id, TaskStatus.QUEUED)
            self._resume_locked(paused)
            self.dispatch()
            return ids

    async def remove_tasks(self, task_ids: Iterable[int]) -> list[int]:
        async with self.store.lock:
            ids = list(dict.fromkeys(task_ids))
            for task_id in ids:
                task = self.store.get_task(task_id)
                if task.occupies_slot():
                    raise InvalidTransitionError(task_id, task.status.value, "removed")
            for task_id in ids:
                self.store.remove_task(task_id)
                self.logs.remove(task_id)
            return ids

    async def edit_task(
        self,
        task_id: int,
        command: Optional[str] = None,
        label: Optional[str] = None,
    ) -> Task:
        async with self.store.lock:
            return self.store.edit_task(task_id, command=command, label=label).model_copy()

    async def restart_tasks(self, task_ids: Iterable[int], stashed: bool = False) -> list[int]:
        """Re-add finished tasks as new tasks. The originals stay finished."""
        async with self.store.lock:
            ids = list(dict.fromkeys(task_ids))
            originals = []
            for task_id in ids:
                task = self.store.get_task(task_id)
                if not task.is_terminal():
                    raise InvalidTransitionError(task_id, task.status.value, "restarted")
                originals.append(task)

            new_ids = [
                self.store.add_task(
                    task.command,
                    group=task.group,
                    priority_immediate=task.priority_immediate,
                    env=task.env,
                    stashed=stashed,
                    cwd=task.cwd,
                    label=task.label,
                )
                for task in originals
            ]
            self.dispatch()
            return new_ids

    async def clean(self, group: Optional[str] = None) -> list[int]:
        """Remove every finished task (optionally of one group)."""
        async with self.store.lock:
            ids = self.store.terminal_task_ids(group)
            for task_id in ids:
                self.store.remove_task(task_id)
                self.logs.remove(task_id)
            return ids

    # ==================== Group operations ====================

    async def add_group(self, name: str, parallel_slots: int = 1) -> None:
        async with self.store.lock:
            self.store.add_group(name, parallel_slots)

    async def remove_group(self, name: str) -> None:
        async with self.store.lock:
            self.store.remove_group(name)

    async def set_group_slots(self, name: str, parallel_slots: int) -> None:
        async with self.store.lock:
            self.store.set_group_slots(name, parallel_slots)
            self.dispatch()

    async def pause_group(self, name: str) -> None:
        """Stop new dispatches; running tasks keep running."""
        async with self.store.lock:
            self.store.set_group_paused(name, True)

    async def resume_group(
        self, name: str, resume_tasks: bool = False
    ) -> tuple[list[int], list[int]]:
        """
        Allow dispatches again, optionally continuing paused tasks.

        Returns the resumed ids and those whose signal did not land.
        """
        async with self.store.lock:
            self.store.set_group_paused(name, False)
            resumed: list[int] = []
            unreached: list[int] = []
            if resume_tasks:
                resumed = self._ids_in_group(name, {TaskStatus.PAUSED})
                unreached = self._resume_locked(resumed)
            self.dispatch()
            return resumed, unreached

    async def kill_group(self, name: str) -> list[int]:
        async with self.store.lock:
            ids = self._ids_in_group(name, {TaskStatus.RUNNING, TaskStatus.PAUSED})
            self._kill_locked(ids)
            return ids

    async def stash_group(self, name: str) -> list[int]:
        async with self.store.lock:
            ids = self._ids_in_group(name, {TaskStatus.QUEUED})
            for task_id in ids:
                self.store.set_status(task_id, TaskStatus.STASHED)
            return ids

    async def enqueue_group(self, name: str) -> list[int]:
        async with self.store.lock:
            ids = self._ids_in_group(name, {TaskStatus.STASHED})
            for task_id in ids:
                self.store.set_status(task_id, TaskStatus.QUEUED)
            self.dispatch()
            return ids

    # ==================== Lifecycle ====================

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Stop dispatching and let in-flight spawns settle."""
        self._shutdown = True
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

        pending = list(self._background)
        if pending:
            _, still_pending = await asyncio.wait(pending, timeout=timeout)
            for task in still_pending:
                task.cancel()

    # ==================== Internal ====================

    def _check_all(
        self,
        task_ids: Iterable[int],
        target: TaskStatus,
        only_from: Optional[TaskStatus] = None,
    ) -> list[int]:
        """Validate every transition before any is applied."""
        ids = list(dict.fromkeys(task_ids))
        for task_id in ids:
            task = self.store.check_transition(task_id, target)
            if only_from is not None and task.status != only_from:
                raise InvalidTransitionError(task_id, task.status.value, target.value)
        return ids

    def _ids_in_group(self, name: str, statuses: set[TaskStatus]) -> list[int]:
        self.store.get_group(name)
        return sorted(t.id for t in self.store.tasks_in_group(name) if t.status in statuses)

    def _pause_locked(self, ids: list[int]) -> list[int]:
        unreached = []
        for task_id in ids:
            self.store.set_status(task_id, TaskStatus.PAUSED)
            if self.supervisor is not None and self.supervisor.is_alive(task_id):
                if not self.supervisor.pause(task_id):
                    unreached.append(task_id)
        return unreached

    def _resume_locked(self, ids: list[int]) -> list[int]:
        unreached = []
        for task_id in ids:
            self.store.set_status(task_id, TaskStatus.RUNNING)
            if self.supervisor is not None and self.supervisor.is_alive(task_id):
                if not self.supervisor.resume(task_id):
                    unreached.append(task_id)
        return unreached

    def _kill_locked(self, ids: list[int]) -> None:
        for task_id in ids:
            self._kill_requested.add(task_id)
            if self.supervisor is not None and self.supervisor.is_alive(task_id):
                self.supervisor.kill(task_id)
            logger.info("task_kill_requested", task_id=task_id)

    def _in_background(self, coro: Awaitable) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "background_task_error",
                error=str(task.exception()),
                error_type=type(task.exception()).__name__,
            )
