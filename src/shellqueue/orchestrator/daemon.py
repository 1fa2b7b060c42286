"""
Daemon - wires the components together and owns their lifecycle.

Startup restores the last snapshot, prepares TLS material and the shared
secret, and opens the control socket. Shutdown stops accepting requests,
persists a final snapshot and leaves running children alone.
"""

import asyncio
import os
import time
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

import structlog

from ..core.config import Settings
from ..core.errors import ConfigError
from ..core.logs import TaskLogs
from ..core.persistence import SnapshotStore
from ..core.state import StateStore
from ..network.gateway import Gateway
from ..network.secret import ensure_shared_secret
from ..network.tls import ensure_certificate, server_context
from .callbacks import CallbackRunner
from .scheduler import TaskScheduler
from .supervisor import ProcessSupervisor


logger = structlog.get_logger()


def read_pid_file(path: Path) -> Optional[int]:
    """The pid recorded at ``path``, or None if absent or unreadable."""
    try:
        return int(path.read_text().strip())
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning("pid_file_unreadable", path=str(path), error=str(e))
        return None


def process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return True


class DaemonState(Enum):
    """Daemon operational states."""
    INITIALIZING = "initializing"
    RUNNING = "running"
    DRAINING = "draining"  # Not accepting requests, persisting state
    SHUTDOWN = "shutdown"


class Daemon:
    """
    The task queue daemon.

    Responsibilities:
    - Restore state and start components in dependency order
    - Persist snapshots periodically and on shutdown
    - Serve the control socket until shutdown is requested
    """

    def __init__(
        self,
        settings: Settings,
        base_environment: Optional[Mapping[str, str]] = None,
    ):
        self.settings = settings
        self.config = settings.daemon
        self._base_environment = base_environment

        self._state = DaemonState.INITIALIZING
        self._start_time: Optional[float] = None

        # Components (initialized in start())
        self.store: Optional[StateStore] = None
        self.logs: Optional[TaskLogs] = None
        self.snapshots: Optional[SnapshotStore] = None
        self.scheduler: Optional[TaskScheduler] = None
        self.supervisor: Optional[ProcessSupervisor] = None
        self.gateway: Optional[Gateway] = None

        self._snapshot_task: Optional[asyncio.Task] = None
        self._owns_pid_file = False
        self._shutdown_event = asyncio.Event()

    @property
    def state(self) -> DaemonState:
        return self._state

    async def start(self) -> None:
        """
        Start every component.

        Raises:
            ConfigError: on unusable TLS material, secret, snapshot or socket
        """
        logger.info("daemon_starting")
        shared = self.settings.shared

        try:
            shared.base_path().mkdir(parents=True, exist_ok=True)
            shared.runtime_path().mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"Cannot create daemon directories: {e}")

        self._claim_pid_file()

        # Security material
        secret = ensure_shared_secret(shared.secret_path())
        ensure_certificate(shared.cert_path(), shared.key_path())
        ssl_context = server_context(shared.cert_path(), shared.key_path())

        # State
        self.snapshots = SnapshotStore(shared.state_db_path())
        await self.snapshots.initialize()
        restored = await self.snapshots.load()
        if restored is not None:
            self.store = StateStore.restore(restored, self.config.default_parallel_tasks)
        else:
            self.store = StateStore(default_slots=self.config.default_parallel_tasks)

        for name, slots in self.config.groups.items():
            if name not in self.store.state.groups:
                self.store.add_group(name, slots)

        self.logs = TaskLogs(shared.task_log_directory())
        self.logs.ensure_directory()
        self._remove_orphaned_logs()

        # Execution
        self.scheduler = TaskScheduler(
            self.store,
            self.config,
            self.logs,
            on_complete=CallbackRunner(self.config, self.logs),
        )
        self.supervisor = ProcessSupervisor(
            self.config,
            self.logs,
            on_exit=self.scheduler.handle_exit,
            base_environment=self._base_environment,
        )
        self.scheduler.attach_supervisor(self.supervisor)

        # Persist the restored state before anything can change it
        await self.snapshots.save(await self.store.read_snapshot())

        self.gateway = Gateway(
            self.settings,
            self.scheduler,
            self.logs,
            secret,
            ssl_context,
            on_shutdown=self.request_shutdown,
        )
        await self.gateway.start()

        self._state = DaemonState.RUNNING
        self._start_time = time.time()
        self._snapshot_task = asyncio.create_task(self._snapshot_loop())

        started = await self.scheduler.run_pass()
        logger.info(
            "daemon_started",
            tasks=len(self.store.state.tasks),
            groups=sorted(self.store.state.groups),
            dispatched=started,
        )

    async def stop(self) -> None:
        """Gracefully stop. Child processes keep running."""
        if self._state == DaemonState.SHUTDOWN:
            return

        logger.info("daemon_stopping")
        self._state = DaemonState.DRAINING
        self._shutdown_event.set()
        timeout = self.config.shutdown_timeout_seconds

        if self.gateway:
            await self.gateway.stop(timeout=timeout)

        if self._snapshot_task:
            self._snapshot_task.cancel()
            try:
                await self._snapshot_task
            except asyncio.CancelledError:
                pass

        if self.scheduler:
            await self.scheduler.shutdown(timeout=timeout)

        if self.supervisor:
            await self.supervisor.detach_all()

        if self.snapshots:
            if self.store:
                try:
                    await self.snapshots.save(await self.store.read_snapshot())
                except Exception:
                    logger.exception("final_snapshot_failed")
            await self.snapshots.close()

        if self._owns_pid_file:
            self._remove_pid_file()

        self._state = DaemonState.SHUTDOWN
        logger.info("daemon_stopped")

    async def run(self) -> None:
        """Run until shutdown is requested."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        logger.info("shutdown_requested")
        self._shutdown_event.set()

    # ==================== Background ====================

    async def _snapshot_loop(self) -> None:
        interval = self.config.snapshot_interval_seconds

        while not self._shutdown_event.is_set():
            try:
                await asyncio.sleep(interval)
                await self.snapshots.save(await self.store.read_snapshot())
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("snapshot_error")

    # ==================== Files ====================

    def _remove_orphaned_logs(self) -> None:
        known = set(self.store.state.tasks)
        orphaned = [task_id for task_id in self.logs.existing_ids() if task_id not in known]
        for task_id in orphaned:
            self.logs.remove(task_id)
        if orphaned:
            logger.info("orphaned_logs_removed", task_ids=orphaned)

    def _claim_pid_file(self) -> None:
        """
        Record our pid, refusing to start over a live daemon.

        A pid file naming a dead process is left over from a crash and is
        replaced.
        """
        path = self.settings.shared.pid_file_path()
        existing = read_pid_file(path)
        if existing is not None:
            if process_alive(existing):
                raise ConfigError(
                    f"Another daemon is running (pid {existing})",
                    config_path=str(path),
                )
            logger.warning("stale_pid_file_removed", pid=existing)

        try:
            path.write_text(str(os.getpid()))
        except OSError as e:
            raise ConfigError(f"Cannot write pid file: {e}", config_path=str(path))
        self._owns_pid_file = True

    def _remove_pid_file(self) -> None:
        try:
            self.settings.shared.pid_file_path().unlink()
        except FileNotFoundError:
            pass

    # ==================== Status ====================

    async def get_status(self) -> dict[str, Any]:
        """Daemon status for diagnostics."""
        status: dict[str, Any] = {
            "state": self._state.value,
            "uptime_seconds": time.time() - self._start_time if self._start_time else 0,
            "sessions": self.gateway.active_sessions if self.gateway else 0,
        }
        if self.store is not None:
            snapshot = await self.store.read_snapshot()
            status["tasks"] = len(snapshot.tasks)
            status["groups"] = {
                name: {
                    "parallel_slots": group.parallel_slots,
                    "paused": group.paused,
                    "queued": len(group.pending_queue),
                    "running": sum(
                        1 for t in snapshot.tasks.values()
                        if t.group == name and t.occupies_slot()
                    ),
                }
                for name, group in snapshot.groups.items()
            }
        if self.scheduler is not None:
            status["allocation_failures"] = self.scheduler.allocation_failures
        return status
