"""End-to-end tests: a real daemon driven over its TLS control socket."""

import asyncio
import os
import struct
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from conftest import kill_leftovers, wait_for_status

from shellqueue import __version__
from shellqueue.core.config import DEFAULT_GROUP
from shellqueue.core.errors import AuthenticationError, ConfigError
from shellqueue.core.state import TaskStatus
from shellqueue.network.client import Client, RequestFailed
from shellqueue.network.protocol import AddRequest, ErrorResponse, FramedConnection, StatusAction
from shellqueue.network.tls import SERVER_NAME, client_context
from shellqueue.orchestrator.daemon import Daemon, DaemonState


pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX daemon")

DONE = TaskStatus.DONE
RUNNING = TaskStatus.RUNNING
QUEUED = TaskStatus.QUEUED


class TestConnection:
    """Test the handshake and authentication."""

    @pytest.mark.asyncio
    async def test_hello_after_authentication(self, client):
        assert client.daemon_version == __version__

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, daemon, settings):
        """A wrong secret gets an auth failure and changes nothing."""
        intruder = Client(settings, secret=b"not the secret")
        with pytest.raises(AuthenticationError):
            await intruder.connect()

        snapshot = await daemon.store.read_snapshot()
        assert snapshot.tasks == {}

    @pytest.mark.asyncio
    async def test_requests_after_failed_auth_are_ignored(self, daemon, settings):
        """The connection is closed before any request is read."""
        shared = settings.shared
        reader, writer = await asyncio.open_unix_connection(
            str(shared.socket_path()),
            ssl=client_context(shared.cert_path()),
            server_hostname=SERVER_NAME,
        )
        connection = FramedConnection(reader, writer, settings.daemon.max_message_bytes)
        await connection.send(b"wrong")
        try:
            await connection.send_message(AddRequest(command="touch /tmp/never"))
        except (ConnectionError, OSError):
            pass

        reply = await connection.receive_response()
        assert isinstance(reply, ErrorResponse)
        assert reply.kind == "authentication_failed"
        assert await connection.receive() is None
        await connection.close()

        await asyncio.sleep(0.1)
        assert (await daemon.store.read_snapshot()).tasks == {}

    @pytest.mark.asyncio
    async def test_oversized_secret_frame_rejected(self, daemon, settings):
        """Before authentication only a small frame is accepted."""
        shared = settings.shared
        reader, writer = await asyncio.open_unix_connection(
            str(shared.socket_path()),
            ssl=client_context(shared.cert_path()),
            server_hostname=SERVER_NAME,
        )
        connection = FramedConnection(reader, writer, settings.daemon.max_message_bytes)
        # Announce a 1 MiB secret; the header alone must be refused.
        writer.write(struct.pack(">Q", 1024 * 1024))
        await writer.drain()

        reply = await connection.receive_response()
        assert isinstance(reply, ErrorResponse)
        assert reply.kind == "authentication_failed"
        assert await connection.receive() is None
        await connection.close()

    @pytest.mark.asyncio
    async def test_large_request_after_authentication(self, client):
        """The full message limit applies once authenticated."""
        command = "true # " + "x" * 16 * 1024
        added = await client.add(command)
        snapshot = await client.status()
        assert snapshot.tasks[added.task_id].command == command

    @pytest.mark.asyncio
    async def test_malformed_request_closes_connection(self, client, daemon):
        """Garbage after authentication is a protocol error."""
        await client._connection.send(b"{ not json")
        reply = await client._connection.receive_response()

        assert isinstance(reply, ErrorResponse)
        assert reply.kind == "protocol"
        assert await client._connection.receive() is None


class TestScheduling:
    """Scenario tests for groups, slots and ordering."""

    @pytest.mark.asyncio
    async def test_single_slot_group_runs_in_order(self, client):
        """With one slot the second task waits for the first."""
        await client.add_group("g", 1)
        first = await client.add("sleep 0.5; echo first", group="g")
        second = await client.add("echo second", group="g")

        assert first.status == RUNNING
        assert second.status == QUEUED

        finished = await wait_for_status(client, second.task_id, DONE)
        earlier = (await client.status()).tasks[first.task_id]
        assert earlier.status == DONE
        assert earlier.finished_at <= finished.started_at

    @pytest.mark.asyncio
    async def test_worker_ids_within_slots(self, client):
        """Concurrent tasks see distinct worker ids below the slot count."""
        await client.add_group("pair", 2)
        ids = [
            (await client.add("echo $SHELLQUEUE_WORKER_ID; sleep 0.3", group="pair")).task_id
            for _ in range(4)
        ]
        for task_id in ids:
            await wait_for_status(client, task_id, DONE)

        workers = [(await client.read_log(task_id)).strip() for task_id in ids]
        assert workers[:2] in (["0", "1"], ["1", "0"])
        assert set(workers) <= {"0", "1"}

    @pytest.mark.asyncio
    async def test_paused_group_holds_tasks(self, client):
        """A task added to a paused group waits until the group resumes."""
        await client.add_group("g", 1)
        await client.pause_group("g")
        task = await client.add("true", group="g")

        await asyncio.sleep(0.3)
        assert (await client.status()).tasks[task.task_id].status == QUEUED

        await client.resume_group("g")
        await wait_for_status(client, task.task_id, DONE)

    @pytest.mark.asyncio
    async def test_start_immediately_jumps_queue(self, client):
        blocker = await client.add("sleep 0.3")
        later = await client.add("true")
        urgent = await client.add("true", start_immediately=True)

        await wait_for_status(client, blocker.task_id, DONE)
        started = await wait_for_status(client, urgent.task_id, RUNNING, DONE)
        waiting = (await client.status()).tasks[later.task_id]
        assert waiting.started_at is None or waiting.started_at >= started.started_at

    @pytest.mark.asyncio
    async def test_exit_code_recorded(self, client):
        task = await client.add("exit 4")
        finished = await wait_for_status(client, task.task_id, DONE)
        assert finished.exit_code == 4

    @pytest.mark.asyncio
    async def test_spawn_failure_does_not_block_group(self, client, tmp_path):
        broken = await client.add("true", cwd=str(tmp_path / "missing"))
        good = await client.add("true")

        failed = await wait_for_status(client, broken.task_id, TaskStatus.FAILED)
        assert failed.failure_reason
        await wait_for_status(client, good.task_id, DONE)


class TestTaskCommands:
    """Test task control through the socket."""

    @pytest.mark.asyncio
    async def test_kill_running_task(self, client):
        task = await client.add("sleep 30")
        await wait_for_status(client, task.task_id, RUNNING)

        ack = await client.kill([task.task_id])
        assert ack.task_ids == [task.task_id]
        await wait_for_status(client, task.task_id, TaskStatus.KILLED)

    @pytest.mark.asyncio
    async def test_pause_and_resume_task(self, client):
        task = await client.add("sleep 0.5")
        await wait_for_status(client, task.task_id, RUNNING)

        await client.pause([task.task_id])
        await asyncio.sleep(0.8)
        assert (await client.status()).tasks[task.task_id].status == TaskStatus.PAUSED

        await client.resume([task.task_id])
        await wait_for_status(client, task.task_id, DONE)

    @pytest.mark.asyncio
    async def test_stash_then_start(self, client):
        task = await client.add("true", stashed=True)
        await asyncio.sleep(0.2)
        assert (await client.status()).tasks[task.task_id].status == TaskStatus.STASHED

        await client.start([task.task_id])
        await wait_for_status(client, task.task_id, DONE)

    @pytest.mark.asyncio
    async def test_unknown_task(self, client):
        with pytest.raises(RequestFailed) as exc_info:
            await client.kill([404])
        assert exc_info.value.kind == "unknown_task"

    @pytest.mark.asyncio
    async def test_invalid_transition_changes_nothing(self, client):
        """Killing a queued task with a running one is rejected as a whole."""
        running = await client.add("sleep 30")
        queued = await client.add("true")
        await wait_for_status(client, running.task_id, RUNNING)

        with pytest.raises(RequestFailed) as exc_info:
            await client.kill([running.task_id, queued.task_id])
        assert exc_info.value.kind == "invalid_transition"

        await asyncio.sleep(0.2)
        assert (await client.status()).tasks[running.task_id].status == RUNNING
        await client.kill([running.task_id])

    @pytest.mark.asyncio
    async def test_edit_restart_remove_clean(self, client):
        task = await client.add("echo one", stashed=True)
        await client.edit(task.task_id, command="echo two", label="edited")
        await client.start([task.task_id])
        await wait_for_status(client, task.task_id, DONE)
        assert await client.read_log(task.task_id) == "two\n"

        restarted = await client.restart([task.task_id])
        new_id = restarted.task_ids[0]
        assert new_id != task.task_id
        await wait_for_status(client, new_id, DONE)

        await client.remove([task.task_id])
        cleaned = await client.clean()
        assert cleaned.task_ids == [new_id]
        assert (await client.status()).tasks == {}

    @pytest.mark.asyncio
    async def test_group_wide_kill(self, client):
        await client.add_group("batch", 2)
        ids = [(await client.add("sleep 30", group="batch")).task_id for _ in range(2)]
        for task_id in ids:
            await wait_for_status(client, task_id, RUNNING)

        ack = await client.set_status(StatusAction.KILL, group="batch")
        assert sorted(ack.task_ids) == ids
        for task_id in ids:
            await wait_for_status(client, task_id, TaskStatus.KILLED)


class TestGroupCommands:
    """Test group management through the socket."""

    @pytest.mark.asyncio
    async def test_group_lifecycle(self, client):
        await client.add_group("docs", 2)
        with pytest.raises(RequestFailed) as exc_info:
            await client.add_group("docs", 1)
        assert exc_info.value.kind == "group_exists"

        await client.set_group_slots("docs", 3)
        assert (await client.status()).groups["docs"].parallel_slots == 3

        await client.remove_group("docs")
        assert "docs" not in (await client.status()).groups

    @pytest.mark.asyncio
    async def test_remove_group_with_tasks(self, client):
        await client.add_group("busy", 1)
        await client.add("true", group="busy", stashed=True)

        with pytest.raises(RequestFailed) as exc_info:
            await client.remove_group("busy")
        assert exc_info.value.kind == "group_has_tasks"

    @pytest.mark.asyncio
    async def test_default_group_protected(self, client):
        with pytest.raises(RequestFailed) as exc_info:
            await client.remove_group(DEFAULT_GROUP)
        assert exc_info.value.kind == "invalid_group_operation"

    @pytest.mark.asyncio
    async def test_add_to_unknown_group(self, client):
        with pytest.raises(RequestFailed) as exc_info:
            await client.add("true", group="nowhere")
        assert exc_info.value.kind == "unknown_group"


class TestLogStream:
    """Test streaming task output."""

    @pytest.mark.asyncio
    async def test_follow_running_task(self, client):
        """The stream delivers all output and ends with the final status."""
        task = await client.add("echo a; sleep 0.3; echo b")
        output = await client.read_log(task.task_id)

        assert output == "a\nb\n"
        assert client.last_stream_status == DONE

    @pytest.mark.asyncio
    async def test_last_lines_of_finished_task(self, client):
        task = await client.add("printf 'one\\ntwo\\nthree\\n'")
        await wait_for_status(client, task.task_id, DONE)

        assert await client.read_log(task.task_id, lines=2) == "two\nthree\n"

    @pytest.mark.asyncio
    async def test_stream_unknown_task(self, client):
        with pytest.raises(RequestFailed) as exc_info:
            await client.read_log(12345)
        assert exc_info.value.kind == "unknown_task"

    @pytest.mark.asyncio
    async def test_disconnect_does_not_affect_task(self, client, daemon, settings):
        """Dropping a stream leaves the task running."""
        task = await client.add("sleep 0.5; echo done")

        watcher = Client(settings)
        await watcher.connect()
        stream = watcher.stream_log(task.task_id)
        reader = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0.1)
        reader.cancel()
        await watcher.close()

        await wait_for_status(client, task.task_id, DONE)
        assert await client.read_log(task.task_id) == "done\n"


class TestLifecycle:
    """Test shutdown and restart behavior."""

    @pytest.mark.asyncio
    async def test_shutdown_request(self, client, daemon):
        runner = asyncio.ensure_future(daemon.run())
        ack = await client.shutdown()
        assert "shutting down" in ack.message

        await asyncio.wait_for(runner, timeout=5)

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, settings):
        """Queued tasks come back; running ones are marked failed."""
        first = Daemon(settings)
        await first.start()
        try:
            async with Client(settings) as client:
                await client.add_group("g", 1)
                running = await client.add("sleep 30", group="g")
                queued = await client.add("true", group="g", stashed=True)
                await wait_for_status(client, running.task_id, RUNNING)
        finally:
            # Stop first: a child killed while supervised would be recorded as killed.
            await first.stop()
            kill_leftovers(first)
        assert first.state == DaemonState.SHUTDOWN
        assert not settings.shared.pid_file_path().exists()

        second = Daemon(settings)
        await second.start()
        try:
            async with Client(settings) as client:
                snapshot = await client.status()
                assert "g" in snapshot.groups
                orphan = snapshot.tasks[running.task_id]
                assert orphan.status == TaskStatus.FAILED
                assert orphan.failure_reason == "daemon restarted"
                assert snapshot.tasks[queued.task_id].status == TaskStatus.STASHED

                fresh = await client.add("true", group="g")
                assert fresh.task_id > queued.task_id
                await wait_for_status(client, fresh.task_id, DONE)
        finally:
            kill_leftovers(second)
            await second.stop()

    @pytest.mark.asyncio
    async def test_refuses_to_start_over_live_daemon(self, daemon, client, settings):
        """A second daemon on the same directory leaves the first untouched."""
        task = await client.add("sleep 30")
        await wait_for_status(client, task.task_id, RUNNING)

        intruder = Daemon(settings)
        with pytest.raises(ConfigError, match="Another daemon is running"):
            await intruder.start()
        await intruder.stop()

        assert settings.shared.pid_file_path().read_text() == str(os.getpid())
        assert settings.shared.socket_path().exists()
        async with Client(settings) as other:
            snapshot = await other.status()
        assert snapshot.tasks[task.task_id].status == RUNNING

    @pytest.mark.asyncio
    async def test_stale_pid_file_replaced(self, settings):
        """A pid file left by a dead daemon does not block startup."""
        exited = await asyncio.create_subprocess_exec("true")
        await exited.wait()
        pid_file = settings.shared.pid_file_path()
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        pid_file.write_text(str(exited.pid))

        instance = Daemon(settings)
        await instance.start()
        try:
            assert pid_file.read_text() == str(os.getpid())
        finally:
            await instance.stop()
        assert not pid_file.exists()

    @pytest.mark.asyncio
    async def test_daemon_status(self, daemon, client):
        await client.add("true")
        status = await daemon.get_status()

        assert status["state"] == "running"
        assert status["tasks"] == 1
        assert DEFAULT_GROUP in status["groups"]
