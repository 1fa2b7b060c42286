"""Shared fixtures: a daemon running in the test's event loop."""

import asyncio
import os
import shutil
import signal
import sys
import tempfile

import pytest
import pytest_asyncio

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from shellqueue.core.config import DaemonConfig, Settings, SharedConfig
from shellqueue.core.state import TaskStatus
from shellqueue.network.client import Client
from shellqueue.orchestrator.daemon import Daemon


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temporary directory."""
    # Unix socket paths are length limited; keep the runtime dir short.
    runtime = tempfile.mkdtemp(prefix="sq-")
    yield Settings(
        shared=SharedConfig(directory=str(tmp_path / "data"), runtime_directory=runtime),
        daemon=DaemonConfig(
            kill_grace_seconds=1.0,
            snapshot_interval_seconds=60.0,
            shutdown_timeout_seconds=2.0,
            auth_timeout_seconds=2.0,
            log_poll_interval_seconds=0.05,
        ),
    )
    shutil.rmtree(runtime, ignore_errors=True)


def kill_leftovers(daemon: Daemon) -> None:
    """Children outlive the daemon; tests must not leak them."""
    if daemon.store is None:
        return
    for task in daemon.store.state.tasks.values():
        if task.status in (TaskStatus.RUNNING, TaskStatus.PAUSED) and task.pid:
            try:
                os.killpg(task.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                pass


@pytest_asyncio.fixture
async def daemon(settings):
    """A started daemon, stopped after the test."""
    instance = Daemon(settings)
    await instance.start()
    yield instance
    kill_leftovers(instance)
    await instance.stop()


@pytest_asyncio.fixture
async def client(daemon, settings):
    """An authenticated client connected to the daemon."""
    connection = Client(settings)
    await connection.connect()
    yield connection
    await connection.close()


async def wait_for_status(client: Client, task_id: int, *wanted: TaskStatus, timeout: float = 10.0):
    """Poll until the task reaches one of ``wanted``; return the task."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        snapshot = await client.status()
        task = snapshot.tasks.get(task_id)
        if task is not None and task.status in wanted:
            return task
        if asyncio.get_running_loop().time() > deadline:
            state = task.status if task is not None else "missing"
            raise AssertionError(f"task {task_id} is {state}, wanted {wanted}")
        await asyncio.sleep(0.05)
