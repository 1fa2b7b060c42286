"""
Process Supervisor - owns the child process of every running task.

Spawns commands through the configured shell in their own process group,
forwards pause/resume/kill as signals to that group, and reports each
exit back through an async callback.
"""

import asyncio
import os
import signal
from dataclasses import dataclass
from typing import Awaitable, BinaryIO, Callable, Mapping, Optional
from enum import Enum

import structlog

from ..core.config import DaemonConfig
from ..core.errors import SpawnError
from ..core.logs import TaskLogs
from ..core.state import Task


logger = structlog.get_logger()


WORKER_ID_VARIABLE = "SHELLQUEUE_WORKER_ID"
GROUP_VARIABLE = "SHELLQUEUE_GROUP"


class ProcessState(Enum):
    """Supervisor view of a child process."""
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    EXITED = "exited"


@dataclass
class ExitStatus:
    """How a child process ended."""
    exit_code: Optional[int] = None
    signal: Optional[int] = None

    @classmethod
    def from_returncode(cls, returncode: int) -> "ExitStatus":
        if returncode < 0:
            return cls(signal=-returncode)
        return cls(exit_code=returncode)

    @property
    def signaled(self) -> bool:
        return self.signal is not None


ExitCallback = Callable[[int, ExitStatus], Awaitable[None]]


class ProcessHandle:
    """
    A spawned child process and its process group.

    Signals are the only way to affect the process. The supervisor's
    watcher awaits ``wait()`` so every child is reaped.
    """

    def __init__(
        self,
        task_id: int,
        process: asyncio.subprocess.Process,
        log_file: BinaryIO,
    ):
        self.task_id = task_id
        self.process = process
        self.state = ProcessState.RUNNING
        self._log_file: Optional[BinaryIO] = log_file

        try:
            self.pgid = os.getpgid(process.pid)
        except ProcessLookupError:
            self.pgid = process.pid

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def send_signal(self, sig: int) -> bool:
        """Signal the whole process group. False if nothing was reached."""
        try:
            os.killpg(self.pgid, sig)
            return True
        except (ProcessLookupError, PermissionError) as e:
            logger.warning(
                "signal_failed",
                task_id=self.task_id,
                pgid=self.pgid,
                signal=signal.Signals(sig).name,
                error=str(e),
            )
            return False

    async def wait(self) -> int:
        return await self.process.wait()

    def close(self) -> None:
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None


class ProcessSupervisor:
    """
    Runs one OS process per running task.

    Responsibilities:
    - Spawn with a sanitized environment and captured output
    - Suspend, continue and terminate process groups
    - Escalate termination to SIGKILL after a grace period
    - Report exits asynchronously through ``on_exit``
    """

    def __init__(
        self,
        config: DaemonConfig,
        logs: TaskLogs,
        on_exit: ExitCallback,
        base_environment: Optional[Mapping[str, str]] = None,
    ):
        self.config = config
        self.logs = logs
        self._on_exit = on_exit
        self._base_environment = base_environment

        self._handles: dict[int, ProcessHandle] = {}
        self._watchers: dict[int, asyncio.Task] = {}
        self._kills: dict[int, asyncio.Task] = {}

    # ==================== Spawning ====================

    def build_environment(self, task: Task) -> dict[str, str]:
        """Child environment: allowed daemon variables, then the task's own."""
        source = os.environ if self._base_environment is None else self._base_environment
        env = {
            name: source[name]
            for name in self.config.env_passthrough
            if name in source
        }
        env.update(task.env)
        env.setdefault("PATH", os.defpath)
        env[WORKER_ID_VARIABLE] = str(task.worker_slot)
        env[GROUP_VARIABLE] = task.group
        return env

    async def spawn(self, task: Task) -> ProcessHandle:
        """
        Start the task's command.

        Raises:
            SpawnError: if the shell, working directory or log file is unusable
        """
        try:
            log_file = self.logs.open_for_task(task.id)
        except OSError as e:
            raise SpawnError(f"Cannot open log file: {e}", task_id=task.id)

        try:
            process = await asyncio.create_subprocess_exec(
                self.config.shell,
                "-c",
                task.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log_file,
                stderr=asyncio.subprocess.STDOUT,
                cwd=task.cwd,
                env=self.build_environment(task),
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            log_file.close()
            raise SpawnError(f"Cannot spawn '{self.config.shell}': {e}", task_id=task.id)

        handle = ProcessHandle(task.id, process, log_file)
        self._handles[task.id] = handle
        self._watchers[task.id] = asyncio.create_task(self._watch(handle))

        logger.info(
            "process_spawned",
            task_id=task.id,
            pid=handle.pid,
            group=task.group,
            worker_slot=task.worker_slot,
        )
        return handle

    # ==================== Control ====================

    def is_alive(self, task_id: int) -> bool:
        return task_id in self._handles

    def pause(self, task_id: int) -> bool:
        handle = self._handles.get(task_id)
        if handle is None:
            logger.warning("pause_without_process", task_id=task_id)
            return False
        if handle.send_signal(signal.SIGSTOP):
            handle.state = ProcessState.PAUSED
            return True
        return False

    def resume(self, task_id: int) -> bool:
        handle = self._handles.get(task_id)
        if handle is None:
            logger.warning("resume_without_process", task_id=task_id)
            return False
        if handle.send_signal(signal.SIGCONT):
            handle.state = ProcessState.RUNNING
            return True
        return False

    def kill(self, task_id: int) -> bool:
        """
        Start terminating the task's process group.

        Returns immediately; the exit is reported through ``on_exit``.
        """
        handle = self._handles.get(task_id)
        if handle is None:
            logger.warning("kill_without_process", task_id=task_id)
            return False
        if task_id in self._kills:
            return True

        self._kills[task_id] = asyncio.create_task(self._terminate(handle))
        return True

    async def _terminate(self, handle: ProcessHandle) -> None:
        """SIGTERM the group, then SIGKILL if it outlives the grace period."""
        grace = self.config.kill_grace_seconds
        was_paused = handle.state == ProcessState.PAUSED
        handle.state = ProcessState.STOPPING

        try:
            handle.send_signal(signal.SIGTERM)
            if was_paused:
                # Stopped processes only act on SIGTERM once continued.
                handle.send_signal(signal.SIGCONT)

            try:
                await asyncio.wait_for(handle.wait(), timeout=grace)
                return
            except asyncio.TimeoutError:
                logger.warning(
                    "kill_grace_expired",
                    task_id=handle.task_id,
                    grace_seconds=grace,
                )

            handle.send_signal(signal.SIGKILL)
            await handle.wait()
        finally:
            self._kills.pop(handle.task_id, None)

    # ==================== Exit handling ====================

    async def _watch(self, handle: ProcessHandle) -> None:
        returncode = await handle.wait()
        handle.state = ProcessState.EXITED
        handle.close()
        self._handles.pop(handle.task_id, None)
        self._watchers.pop(handle.task_id, None)

        status = ExitStatus.from_returncode(returncode)
        logger.info(
            "process_exited",
            task_id=handle.task_id,
            pid=handle.pid,
            exit_code=status.exit_code,
            signal=status.signal,
        )

        try:
            await self._on_exit(handle.task_id, status)
        except Exception:
            logger.exception("exit_callback_error", task_id=handle.task_id)

    async def detach_all(self) -> list[int]:
        """
        Stop supervising without touching the processes.

        Used at daemon shutdown: children keep running and are reparented
        by the OS. Returns the ids of the tasks that were still running.
        """
        task_ids = sorted(self._handles)
        for task in list(self._watchers.values()) + list(self._kills.values()):
            task.cancel()
        pending = list(self._watchers.values()) + list(self._kills.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for handle in self._handles.values():
            handle.close()

        self._handles.clear()
        self._watchers.clear()
        self._kills.clear()

        if task_ids:
            logger.warning("processes_detached", task_ids=task_ids)
        return task_ids
