"""
Protocol Gateway - the daemon's control socket.

Accepts local connections over TLS, authenticates each one with the
shared secret, then serves framed requests against the scheduler until
the client disconnects.
"""

import asyncio
import codecs
import itertools
import os
import ssl
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

import structlog

from .. import __version__
from ..core.config import Settings
from ..core.errors import ConfigError, ProtocolError, QueueError
from ..core.logs import TaskLogs
from ..core.state import StateStore, TaskStatus
from .protocol import (
    AckResponse,
    AddedResponse,
    AddRequest,
    CleanRequest,
    EditRequest,
    ErrorResponse,
    READ_CHUNK_SIZE,
    SECRET_FRAME_LIMIT,
    FramedConnection,
    GroupAction,
    GroupRequest,
    HelloResponse,
    LogChunkResponse,
    RemoveRequest,
    RestartRequest,
    SetStatusRequest,
    ShutdownRequest,
    StatusAction,
    StatusRequest,
    StatusResponse,
    StreamEndResponse,
    StreamLogRequest,
    TaskSelection,
)
from .secret import secrets_match

if TYPE_CHECKING:
    from ..orchestrator.scheduler import TaskScheduler


logger = structlog.get_logger()


class SessionState(Enum):
    """Per-connection lifecycle."""
    ACCEPTED = "accepted"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class ConnectionSession:
    """State owned by one client connection."""

    def __init__(self, session_id: int, connection: FramedConnection):
        self.id = session_id
        self.connection = connection
        self.state = SessionState.ACCEPTED

    @property
    def authenticated(self) -> bool:
        return self.state == SessionState.AUTHENTICATED


# Statuses during which a log stream keeps waiting for more output.
_STREAM_WAIT_STATUSES = frozenset({TaskStatus.QUEUED, TaskStatus.RUNNING, TaskStatus.PAUSED})


class Gateway:
    """
    Serves the control protocol.

    Responsibilities:
    - Listen on a unix socket (or loopback TCP) with TLS
    - Reject connections that do not present the shared secret
    - Translate each request into one scheduler operation
    - Answer every request with exactly one response, or a bounded
      stream of log chunks followed by an end marker
    """

    def __init__(
        self,
        settings: Settings,
        scheduler: "TaskScheduler",
        logs: TaskLogs,
        secret: bytes,
        ssl_context: ssl.SSLContext,
        on_shutdown: Optional[Callable[[], None]] = None,
    ):
        self.settings = settings
        self.config = settings.daemon
        self.scheduler = scheduler
        self.store: StateStore = scheduler.store
        self.logs = logs
        self._secret = secret
        self._ssl_context = ssl_context
        self._on_shutdown = on_shutdown

        self._server: Optional[asyncio.AbstractServer] = None
        self._sessions: set[asyncio.Task] = set()
        self._session_ids = itertools.count(1)

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """
        Bind the control socket.

        Raises:
            ConfigError: if the socket cannot be bound
        """
        shared = self.settings.shared
        try:
            if shared.use_unix_socket:
                path = shared.socket_path()
                path.parent.mkdir(parents=True, exist_ok=True)
                if path.exists():
                    path.unlink()
                self._server = await asyncio.start_unix_server(
                    self._handle_connection,
                    path=str(path),
                    ssl=self._ssl_context,
                    ssl_handshake_timeout=self.config.auth_timeout_seconds,
                )
                os.chmod(path, 0o600)
                logger.info("gateway_listening", socket=str(path))
            else:
                self._server = await asyncio.start_server(
                    self._handle_connection,
                    host=shared.host,
                    port=shared.port,
                    ssl=self._ssl_context,
                    ssl_handshake_timeout=self.config.auth_timeout_seconds,
                )
                logger.info("gateway_listening", host=shared.host, port=shared.port)
        except OSError as e:
            raise ConfigError(f"Cannot bind control socket: {e}")

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop accepting, give open sessions ``timeout`` seconds, then cut them."""
        if self._server is None:
            return

        self._server.close()

        sessions = list(self._sessions)
        if sessions:
            _, pending = await asyncio.wait(sessions, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning("sessions_cancelled", count=len(pending))

        await self._server.wait_closed()
        self._server = None

        shared = self.settings.shared
        if shared.use_unix_socket:
            try:
                shared.socket_path().unlink()
            except FileNotFoundError:
                pass

        logger.info("gateway_stopped")

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    # ==================== Connection handling ====================

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        current = asyncio.current_task()
        if current is not None:
            self._sessions.add(current)

        connection = FramedConnection(reader, writer, self.config.max_message_bytes)
        session = ConnectionSession(next(self._session_ids), connection)
        logger.debug("connection_accepted", session=session.id)

        try:
            if await self._authenticate(session):
                await self._serve(session)
        except ProtocolError as e:
            logger.warning("protocol_error", session=session.id, error=e.message)
            await self._send_quietly(session, ErrorResponse(kind=e.kind, message=e.message))
        except (ConnectionError, ssl.SSLError, asyncio.IncompleteReadError) as e:
            logger.debug("connection_lost", session=session.id, error=str(e))
        except asyncio.CancelledError:
            logger.debug("connection_cancelled", session=session.id)
            raise
        except Exception:
            logger.exception("session_error", session=session.id)
            await self._send_quietly(
                session, ErrorResponse(kind="internal", message="Internal daemon error")
            )
        finally:
            session.state = SessionState.CLOSED
            await connection.close()
            if current is not None:
                self._sessions.discard(current)
            logger.debug("connection_closed", session=session.id)

    async def _authenticate(self, session: ConnectionSession) -> bool:
        session.state = SessionState.AUTHENTICATING
        decoder = session.connection.decoder
        decoder.max_size = SECRET_FRAME_LIMIT
        try:
            presented = await asyncio.wait_for(
                session.connection.receive(),
                timeout=self.config.auth_timeout_seconds,
            )
        except (asyncio.TimeoutError, ProtocolError) as e:
            logger.warning("authentication_failed", session=session.id, reason=str(e) or "timeout")
            await self._reject(session)
            return False

        if presented is None:
            return False

        if not secrets_match(self._secret, presented):
            logger.warning("authentication_failed", session=session.id, reason="wrong secret")
            await self._reject(session)
            return False

        session.state = SessionState.AUTHENTICATED
        decoder.max_size = self.config.max_message_bytes
        await session.connection.send_message(HelloResponse(version=__version__))
        logger.debug("connection_authenticated", session=session.id)
        return True

    async def _reject(self, session: ConnectionSession) -> None:
        await self._send_quietly(
            session,
            ErrorResponse(kind="authentication_failed", message="Authentication failed"),
        )

    async def _send_quietly(self, session: ConnectionSession, response) -> None:
        try:
            await session.connection.send_message(response)
        except (ConnectionError, ssl.SSLError, OSError):
            pass

    async def _serve(self, session: ConnectionSession) -> None:
        """Answer requests until the client goes away."""
        while True:
            request = await session.connection.receive_request()
            if request is None:
                return

            logger.debug("request_received", session=session.id, request=request.type)
            if isinstance(request, StreamLogRequest):
                if not await self._stream_log(session, request):
                    return
                continue

            try:
                response = await self._dispatch(request)
            except QueueError as e:
                if isinstance(e, ProtocolError):
                    raise
                logger.info("request_rejected", session=session.id, kind=e.kind, error=e.message)
                response = ErrorResponse(kind=e.kind, message=e.message)

            await session.connection.send_message(response)

            if isinstance(request, ShutdownRequest) and self._on_shutdown is not None:
                self._on_shutdown()

    # ==================== Request dispatch ====================

    async def _dispatch(self, request):
        """One request, one response. Domain errors propagate as QueueError."""
        if isinstance(request, AddRequest):
            task = await self.scheduler.add_task(
                request.command,
                group=request.group,
                priority_immediate=request.start_immediately,
                env=request.env,
                stashed=request.stashed,
                cwd=request.cwd,
                label=request.label,
            )
            return AddedResponse(task_id=task.id, group=task.group, status=task.status)

        elif isinstance(request, SetStatusRequest):
            ids, unreached = await self._set_status(request.selection, request.action)
            if unreached:
                return AckResponse(
                    message=f"{request.action.value}: signal did not reach tasks {unreached}",
                    task_ids=ids,
                    unreached=unreached,
                )
            return AckResponse(message=f"{request.action.value}: ok", task_ids=ids)

        elif isinstance(request, RemoveRequest):
            ids = await self.scheduler.remove_tasks(request.task_ids)
            return AckResponse(message="Tasks removed", task_ids=ids)

        elif isinstance(request, EditRequest):
            task = await self.scheduler.edit_task(
                request.task_id, command=request.command, label=request.label
            )
            return AckResponse(message="Task edited", task_ids=[task.id])

        elif isinstance(request, RestartRequest):
            ids = await self.scheduler.restart_tasks(request.task_ids, stashed=request.stashed)
            return AckResponse(message="Tasks restarted", task_ids=ids)

        elif isinstance(request, CleanRequest):
            ids = await self.scheduler.clean(request.group)
            return AckResponse(message="Finished tasks removed", task_ids=ids)

        elif isinstance(request, StatusRequest):
            snapshot = await self.store.read_snapshot()
            return StatusResponse(tasks=snapshot.tasks, groups=snapshot.groups)

        elif isinstance(request, GroupRequest):
            return await self._group(request)

        elif isinstance(request, ShutdownRequest):
            return AckResponse(message="Daemon is shutting down")

        raise ProtocolError(f"Unsupported request: {type(request).__name__}")

    async def _set_status(
        self, selection: TaskSelection, action: StatusAction
    ) -> tuple[list[int], list[int]]:
        """Apply ``action``; returns affected ids and ids the signal missed."""
        if selection.task_ids:
            ids = selection.task_ids
            if action == StatusAction.START:
                return await self.scheduler.start_tasks(ids), []
            elif action == StatusAction.PAUSE:
                return ids, await self.scheduler.pause_tasks(ids)
            elif action == StatusAction.RESUME:
                return ids, await self.scheduler.resume_tasks(ids)
            elif action == StatusAction.KILL:
                return await self.scheduler.kill_tasks(ids), []
            elif action == StatusAction.STASH:
                return await self.scheduler.stash_tasks(ids), []
            elif action == StatusAction.ENQUEUE:
                return await self.scheduler.enqueue_tasks(ids), []
            raise ProtocolError(f"Unsupported action: {action}")

        if selection.group is not None:
            groups = [selection.group]
        else:
            snapshot = await self.store.read_snapshot()
            groups = sorted(snapshot.groups)

        affected: list[int] = []
        unreached: list[int] = []
        for name in groups:
            ids, missed = await self._set_group_status(name, action)
            affected.extend(ids)
            unreached.extend(missed)
        return affected, unreached

    async def _set_group_status(
        self, name: str, action: StatusAction
    ) -> tuple[list[int], list[int]]:
        if action == StatusAction.START:
            return await self.scheduler.resume_group(name, resume_tasks=True)
        elif action == StatusAction.PAUSE:
            await self.scheduler.pause_group(name)
            return [], []
        elif action == StatusAction.RESUME:
            resumed, _ = await self.scheduler.resume_group(name)
            return resumed, []
        elif action == StatusAction.KILL:
            return await self.scheduler.kill_group(name), []
        elif action == StatusAction.STASH:
            return await self.scheduler.stash_group(name), []
        elif action == StatusAction.ENQUEUE:
            return await self.scheduler.enqueue_group(name), []
        raise ProtocolError(f"Unsupported action: {action}")

    async def _group(self, request: GroupRequest) -> AckResponse:
        if request.action == GroupAction.ADD:
            await self.scheduler.add_group(request.name, request.parallel_slots or 1)
            return AckResponse(message=f"Group '{request.name}' added")
        elif request.action == GroupAction.REMOVE:
            await self.scheduler.remove_group(request.name)
            return AckResponse(message=f"Group '{request.name}' removed")
        elif request.action == GroupAction.EDIT:
            await self.scheduler.set_group_slots(request.name, request.parallel_slots)
            return AckResponse(
                message=f"Group '{request.name}' now has {request.parallel_slots} slots"
            )
        raise ProtocolError(f"Unsupported group action: {request.action}")

    # ==================== Log streaming ====================

    async def _stream_log(self, session: ConnectionSession, request: StreamLogRequest) -> bool:
        """
        Send the task's output until it is exhausted and the task is done.

        Returns False when the client disconnected mid-stream; the task
        itself is never affected.
        """
        connection = session.connection
        task_id = request.task_id

        try:
            async with self.store.lock:
                self.store.get_task(task_id)
        except QueueError as e:
            await connection.send_message(ErrorResponse(kind=e.kind, message=e.message))
            return True

        offset = 0
        if request.lines is not None:
            offset = self.logs.tail_offset(task_id, request.lines)

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        # Watches the peer; early bytes are kept for the next request.
        incoming = asyncio.ensure_future(connection.reader.read(READ_CHUNK_SIZE))
        try:
            while True:
                # Status first: once a finished status is seen, the file is final.
                try:
                    async with self.store.lock:
                        status = self.store.get_task(task_id).status
                except QueueError as e:
                    await connection.send_message(ErrorResponse(kind=e.kind, message=e.message))
                    return True

                chunk = self.logs.read_from(task_id, offset)
                if chunk:
                    offset += len(chunk)
                    text = decoder.decode(chunk)
                    if text:
                        await connection.send_message(LogChunkResponse(task_id=task_id, data=text))
                    continue

                if status not in _STREAM_WAIT_STATUSES:
                    break

                done, _ = await asyncio.wait(
                    {incoming}, timeout=self.config.log_poll_interval_seconds
                )
                if not done:
                    continue

                data = b"" if incoming.exception() is not None else incoming.result()
                if not data:
                    logger.debug("log_stream_cancelled", session=session.id, task_id=task_id)
                    return False
                connection.decoder.feed(data)
                incoming = asyncio.ensure_future(connection.reader.read(READ_CHUNK_SIZE))
        finally:
            if not incoming.done():
                incoming.cancel()
            elif not incoming.cancelled() and incoming.exception() is None:
                connection.decoder.feed(incoming.result())

        tail = decoder.decode(b"", final=True)
        if tail:
            await connection.send_message(LogChunkResponse(task_id=task_id, data=tail))
        await connection.send_message(StreamEndResponse(task_id=task_id, status=status))
        return True
