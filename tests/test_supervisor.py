"""Tests for the process supervisor against real shell processes."""

import asyncio
import os
import signal
import sys
from pathlib import Path

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from shellqueue.core.config import DaemonConfig
from shellqueue.core.errors import SpawnError
from shellqueue.core.logs import TaskLogs
from shellqueue.core.state import Task, TaskStatus
from shellqueue.orchestrator.supervisor import ExitStatus, ProcessState, ProcessSupervisor


pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")


def make_task(task_id: int, command: str, **fields) -> Task:
    fields.setdefault("worker_slot", 0)
    return Task(id=task_id, command=command, status=TaskStatus.RUNNING, **fields)


def process_state(pid: int) -> str:
    """Single-letter state from /proc, e.g. 'S' or 'T'."""
    stat = Path(f"/proc/{pid}/stat").read_text()
    return stat.rsplit(")", 1)[1].split()[0]


@pytest.fixture
def exits():
    return asyncio.Queue()


@pytest.fixture
def make_supervisor(tmp_path, exits):
    """Supervisor writing logs under tmp_path and reporting exits to a queue."""

    async def on_exit(task_id: int, status: ExitStatus) -> None:
        await exits.put((task_id, status))

    def factory(base_environment=None, **config):
        config.setdefault("kill_grace_seconds", 1.0)
        return ProcessSupervisor(
            DaemonConfig(**config),
            TaskLogs(tmp_path / "logs"),
            on_exit=on_exit,
            base_environment=base_environment,
        )

    return factory


async def next_exit(exits, timeout=10.0):
    return await asyncio.wait_for(exits.get(), timeout=timeout)


class TestSpawn:
    """Test starting processes."""

    @pytest.mark.asyncio
    async def test_exit_code_reported(self, make_supervisor, exits):
        supervisor = make_supervisor()
        await supervisor.spawn(make_task(1, "exit 3"))

        task_id, status = await next_exit(exits)
        assert task_id == 1
        assert status == ExitStatus(exit_code=3)
        assert not supervisor.is_alive(1)

    @pytest.mark.asyncio
    async def test_output_is_combined(self, make_supervisor, exits):
        """Stdout and stderr land in the same log file."""
        supervisor = make_supervisor()
        await supervisor.spawn(make_task(2, "echo out; echo err >&2"))
        await next_exit(exits)

        log = supervisor.logs.path_for(2).read_text()
        assert "out" in log
        assert "err" in log

    @pytest.mark.asyncio
    async def test_environment_is_sanitized(self, make_supervisor, exits):
        """Only allowed daemon variables leak; task env and worker id are set."""
        supervisor = make_supervisor(
            base_environment={"PATH": os.environ.get("PATH", os.defpath), "DAEMON_SECRET": "x"},
        )
        task = make_task(
            3,
            'echo "$FOO|$DAEMON_SECRET|$SHELLQUEUE_WORKER_ID|$SHELLQUEUE_GROUP"',
            env={"FOO": "bar"},
            worker_slot=2,
            group="build",
        )
        await supervisor.spawn(task)
        await next_exit(exits)

        assert supervisor.logs.path_for(3).read_text().strip() == "bar||2|build"

    @pytest.mark.asyncio
    async def test_task_env_cannot_override_worker_id(self, make_supervisor):
        supervisor = make_supervisor(base_environment={})
        task = make_task(4, "true", env={"SHELLQUEUE_WORKER_ID": "99"}, worker_slot=1)

        env = supervisor.build_environment(task)
        assert env["SHELLQUEUE_WORKER_ID"] == "1"
        assert env["PATH"] == os.defpath

    @pytest.mark.asyncio
    async def test_working_directory(self, make_supervisor, exits, tmp_path):
        supervisor = make_supervisor()
        workdir = tmp_path / "work"
        workdir.mkdir()
        await supervisor.spawn(make_task(5, "pwd", cwd=str(workdir)))
        await next_exit(exits)

        logged = Path(supervisor.logs.path_for(5).read_text().strip())
        assert logged.resolve() == workdir.resolve()

    @pytest.mark.asyncio
    async def test_missing_shell_is_spawn_error(self, make_supervisor):
        supervisor = make_supervisor(shell="/nonexistent/shell")

        with pytest.raises(SpawnError):
            await supervisor.spawn(make_task(6, "true"))
        assert not supervisor.is_alive(6)

    @pytest.mark.asyncio
    async def test_missing_cwd_is_spawn_error(self, make_supervisor, tmp_path):
        supervisor = make_supervisor()

        with pytest.raises(SpawnError):
            await supervisor.spawn(make_task(7, "true", cwd=str(tmp_path / "missing")))


class TestSignals:
    """Test pause, resume and kill."""

    @pytest.mark.asyncio
    @pytest.mark.skipif(not Path("/proc/self/stat").exists(), reason="needs /proc")
    async def test_pause_and_resume(self, make_supervisor, exits):
        """A paused process is stopped, not killed."""
        supervisor = make_supervisor()
        handle = await supervisor.spawn(make_task(10, "sleep 30"))
        await asyncio.sleep(0.1)

        assert supervisor.pause(10)
        await asyncio.sleep(0.2)
        assert handle.state == ProcessState.PAUSED
        assert process_state(handle.pid) == "T"

        assert supervisor.resume(10)
        await asyncio.sleep(0.2)
        assert process_state(handle.pid) != "T"

        supervisor.kill(10)
        await next_exit(exits)

    @pytest.mark.asyncio
    async def test_kill_terminates(self, make_supervisor, exits):
        supervisor = make_supervisor()
        await supervisor.spawn(make_task(11, "sleep 30"))
        await asyncio.sleep(0.1)

        assert supervisor.kill(11)
        task_id, status = await next_exit(exits)
        assert task_id == 11
        assert status.signaled

    @pytest.mark.asyncio
    async def test_kill_paused_process(self, make_supervisor, exits):
        """A stopped process still dies on kill."""
        supervisor = make_supervisor()
        await supervisor.spawn(make_task(12, "sleep 30"))
        await asyncio.sleep(0.1)
        supervisor.pause(12)

        supervisor.kill(12)
        _, status = await next_exit(exits)
        assert status.signaled

    @pytest.mark.asyncio
    async def test_kill_escalates_to_sigkill(self, make_supervisor, exits):
        """A process ignoring SIGTERM is killed after the grace period."""
        supervisor = make_supervisor(kill_grace_seconds=0.3)
        await supervisor.spawn(make_task(13, "trap '' TERM; sleep 30"))
        await asyncio.sleep(0.3)

        supervisor.kill(13)
        _, status = await next_exit(exits)
        assert status.signal == signal.SIGKILL

    @pytest.mark.asyncio
    async def test_signals_to_unknown_task(self, make_supervisor):
        supervisor = make_supervisor()
        assert not supervisor.pause(99)
        assert not supervisor.resume(99)
        assert not supervisor.kill(99)

    @pytest.mark.asyncio
    async def test_detach_leaves_process_running(self, make_supervisor, exits):
        """Detaching stops supervision but does not kill the child."""
        supervisor = make_supervisor()
        handle = await supervisor.spawn(make_task(14, "sleep 30"))
        pgid = handle.pgid

        try:
            assert await supervisor.detach_all() == [14]
            assert not supervisor.is_alive(14)
            os.kill(handle.pid, 0)
            assert exits.empty()
        finally:
            os.killpg(pgid, signal.SIGKILL)
            await handle.process.wait()
