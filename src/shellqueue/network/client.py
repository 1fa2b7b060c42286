"""
Client side of the control protocol.

Used by tests and tooling to talk to a running daemon:

    async with Client(settings) as client:
        added = await client.add("make test", group="build")
        async for text in client.stream_log(added.task_id):
            print(text, end="")
"""

import asyncio
import os
from typing import AsyncIterator, Optional

import structlog
from pydantic import BaseModel

from ..core.config import DEFAULT_GROUP, Settings
from ..core.errors import AuthenticationError, ProtocolError
from .protocol import (
    AckResponse,
    AddedResponse,
    AddRequest,
    CleanRequest,
    EditRequest,
    ErrorResponse,
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
from .secret import read_shared_secret
from .tls import SERVER_NAME, client_context


logger = structlog.get_logger()


class RequestFailed(Exception):
    """The daemon answered a request with an ErrorResponse."""

    def __init__(self, response: ErrorResponse):
        super().__init__(f"{response.kind}: {response.message}")
        self.kind = response.kind
        self.message = response.message


class Client:
    """One authenticated connection to the daemon."""

    def __init__(self, settings: Settings, secret: Optional[bytes] = None):
        self.settings = settings
        self._secret = secret
        self._connection: Optional[FramedConnection] = None
        self.daemon_version: Optional[str] = None
        self.last_stream_status = None

    async def __aenter__(self) -> "Client":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def connect(self) -> None:
        """
        Open the TLS connection and authenticate.

        Raises:
            AuthenticationError: if the daemon rejects the secret
            ProtocolError: if the daemon answers with something unexpected
        """
        shared = self.settings.shared
        context = client_context(shared.cert_path())
        secret = self._secret if self._secret is not None else read_shared_secret(shared.secret_path())

        if shared.use_unix_socket:
            reader, writer = await asyncio.open_unix_connection(
                str(shared.socket_path()), ssl=context, server_hostname=SERVER_NAME
            )
        else:
            reader, writer = await asyncio.open_connection(
                shared.host, shared.port, ssl=context, server_hostname=SERVER_NAME
            )

        self._connection = FramedConnection(
            reader, writer, self.settings.daemon.max_message_bytes
        )
        await self._connection.send(secret)

        try:
            reply = await self._connection.receive_response()
        except ProtocolError:
            await self.close()
            raise AuthenticationError("Daemon closed the connection during authentication")

        if isinstance(reply, ErrorResponse):
            await self.close()
            raise AuthenticationError(reply.message)
        if not isinstance(reply, HelloResponse):
            await self.close()
            raise ProtocolError(f"Expected hello, got {reply.type}")

        self.daemon_version = reply.version
        logger.debug("client_connected", daemon_version=reply.version)

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    # ==================== Raw requests ====================

    async def send(self, request: BaseModel):
        """Send one request and return whatever the daemon answers."""
        if self._connection is None:
            raise ProtocolError("Client is not connected")
        await self._connection.send_message(request)
        return await self._connection.receive_response()

    async def request(self, request: BaseModel):
        """Like ``send`` but raises ``RequestFailed`` on an error response."""
        response = await self.send(request)
        if isinstance(response, ErrorResponse):
            raise RequestFailed(response)
        return response

    # ==================== Tasks ====================

    async def add(
        self,
        command: str,
        group: str = DEFAULT_GROUP,
        start_immediately: bool = False,
        stashed: bool = False,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[str] = None,
        label: Optional[str] = None,
    ) -> AddedResponse:
        """Queue a command. ``env`` defaults to this process's environment."""
        return await self.request(AddRequest(
            command=command,
            group=group,
            start_immediately=start_immediately,
            stashed=stashed,
            env=dict(os.environ) if env is None else env,
            cwd=cwd if cwd is not None else os.getcwd(),
            label=label,
        ))

    async def status(self) -> StatusResponse:
        return await self.request(StatusRequest())

    async def set_status(
        self,
        action: StatusAction,
        task_ids: Optional[list[int]] = None,
        group: Optional[str] = None,
        all: bool = False,
    ) -> AckResponse:
        selection = TaskSelection(task_ids=task_ids or [], group=group, all=all)
        return await self.request(SetStatusRequest(selection=selection, action=action))

    async def start(self, task_ids: list[int]) -> AckResponse:
        return await self.set_status(StatusAction.START, task_ids=task_ids)

    async def pause(self, task_ids: list[int]) -> AckResponse:
        return await self.set_status(StatusAction.PAUSE, task_ids=task_ids)

    async def resume(self, task_ids: list[int]) -> AckResponse:
        return await self.set_status(StatusAction.RESUME, task_ids=task_ids)

    async def kill(self, task_ids: list[int]) -> AckResponse:
        return await self.set_status(StatusAction.KILL, task_ids=task_ids)

    async def stash(self, task_ids: list[int]) -> AckResponse:
        return await self.set_status(StatusAction.STASH, task_ids=task_ids)

    async def enqueue(self, task_ids: list[int]) -> AckResponse:
        return await self.set_status(StatusAction.ENQUEUE, task_ids=task_ids)

    async def remove(self, task_ids: list[int]) -> AckResponse:
        return await self.request(RemoveRequest(task_ids=task_ids))

    async def edit(
        self,
        task_id: int,
        command: Optional[str] = None,
        label: Optional[str] = None,
    ) -> AckResponse:
        return await self.request(EditRequest(task_id=task_id, command=command, label=label))

    async def restart(self, task_ids: list[int], stashed: bool = False) -> AckResponse:
        return await self.request(RestartRequest(task_ids=task_ids, stashed=stashed))

    async def clean(self, group: Optional[str] = None) -> AckResponse:
        return await self.request(CleanRequest(group=group))

    async def shutdown(self) -> AckResponse:
        return await self.request(ShutdownRequest())

    # ==================== Groups ====================

    async def add_group(self, name: str, parallel_slots: int = 1) -> AckResponse:
        return await self.request(
            GroupRequest(action=GroupAction.ADD, name=name, parallel_slots=parallel_slots)
        )

    async def remove_group(self, name: str) -> AckResponse:
        return await self.request(GroupRequest(action=GroupAction.REMOVE, name=name))

    async def set_group_slots(self, name: str, parallel_slots: int) -> AckResponse:
        return await self.request(
            GroupRequest(action=GroupAction.EDIT, name=name, parallel_slots=parallel_slots)
        )

    async def pause_group(self, name: str) -> AckResponse:
        return await self.set_status(StatusAction.PAUSE, group=name)

    async def resume_group(self, name: str) -> AckResponse:
        return await self.set_status(StatusAction.RESUME, group=name)

    # ==================== Logs ====================

    async def stream_log(
        self,
        task_id: int,
        lines: Optional[int] = None,
    ) -> AsyncIterator[str]:
        """
        Yield output chunks until the daemon ends the stream.

        The final status is available as ``last_stream_status`` afterwards.
        """
        if self._connection is None:
            raise ProtocolError("Client is not connected")

        self.last_stream_status = None
        await self._connection.send_message(StreamLogRequest(task_id=task_id, lines=lines))
        while True:
            response = await self._connection.receive_response()
            if isinstance(response, LogChunkResponse):
                yield response.data
            elif isinstance(response, StreamEndResponse):
                self.last_stream_status = response.status
                return
            elif isinstance(response, ErrorResponse):
                raise RequestFailed(response)
            else:
                raise ProtocolError(f"Unexpected {response.type} in log stream")

    async def read_log(self, task_id: int, lines: Optional[int] = None) -> str:
        chunks = []
        async for text in self.stream_log(task_id, lines=lines):
            chunks.append(text)
        return "".join(chunks)
