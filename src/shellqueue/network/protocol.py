"""
Wire protocol: message variants and length-delimited framing.

Every frame is an 8-byte big-endian length followed by that many bytes.
The first client frame carries the raw shared secret; every later frame
is one JSON-encoded request or response, discriminated by ``type``.
"""

import asyncio
import struct
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator

from ..core.config import DEFAULT_GROUP
from ..core.errors import ProtocolError
from ..core.state import Group, Task, TaskStatus


HEADER = struct.Struct(">Q")
READ_CHUNK_SIZE = 64 * 1024
# The first frame of a connection carries only the shared secret.
SECRET_FRAME_LIMIT = 4 * 1024


# ==================== Requests ====================


class StatusAction(str, Enum):
    """Task or group state changes a client can ask for."""
    START = "start"       # enqueue stashed / resume paused; unpause group + resume its tasks
    PAUSE = "pause"       # suspend tasks; pause group dispatch
    RESUME = "resume"     # continue paused tasks; unpause group dispatch
    KILL = "kill"
    STASH = "stash"
    ENQUEUE = "enqueue"


class GroupAction(str, Enum):
    ADD = "add"
    REMOVE = "remove"
    EDIT = "edit"


class TaskSelection(BaseModel):
    """Exactly one of: explicit ids, one group, or everything."""
    task_ids: list[int] = Field(default_factory=list)
    group: Optional[str] = None
    all: bool = False

    @model_validator(mode="after")
    def _one_target(self) -> "TaskSelection":
        chosen = sum([bool(self.task_ids), self.group is not None, self.all])
        if chosen != 1:
            raise ValueError("select either task_ids, a group, or all")
        return self


class AddRequest(BaseModel):
    type: Literal["add"] = "add"
    command: str = Field(min_length=1)
    group: str = DEFAULT_GROUP
    start_immediately: bool = False
    stashed: bool = False
    env: dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None
    label: Optional[str] = None


class SetStatusRequest(BaseModel):
    type: Literal["set_status"] = "set_status"
    selection: TaskSelection
    action: StatusAction


class RemoveRequest(BaseModel):
    type: Literal["remove"] = "remove"
    task_ids: list[int] = Field(min_length=1)


class EditRequest(BaseModel):
    type: Literal["edit"] = "edit"
    task_id: int
    command: Optional[str] = Field(default=None, min_length=1)
    label: Optional[str] = None


class RestartRequest(BaseModel):
    type: Literal["restart"] = "restart"
    task_ids: list[int] = Field(min_length=1)
    stashed: bool = False


class CleanRequest(BaseModel):
    type: Literal["clean"] = "clean"
    group: Optional[str] = None


class StatusRequest(BaseModel):
    type: Literal["status"] = "status"


class GroupRequest(BaseModel):
    type: Literal["group"] = "group"
    action: GroupAction
    name: str = Field(min_length=1)
    parallel_slots: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _slots_for_edit(self) -> "GroupRequest":
        if self.action == GroupAction.EDIT and self.parallel_slots is None:
            raise ValueError("editing a group requires parallel_slots")
        return self


class StreamLogRequest(BaseModel):
    type: Literal["stream_log"] = "stream_log"
    task_id: int
    lines: Optional[int] = Field(default=None, ge=0)


class ShutdownRequest(BaseModel):
    type: Literal["shutdown"] = "shutdown"


Request = Annotated[
    Union[
        AddRequest,
        SetStatusRequest,
        RemoveRequest,
        EditRequest,
        RestartRequest,
        CleanRequest,
        StatusRequest,
        GroupRequest,
        StreamLogRequest,
        ShutdownRequest,
    ],
    Field(discriminator="type"),
]


# ==================== Responses ====================


class HelloResponse(BaseModel):
    type: Literal["hello"] = "hello"
    version: str


class AckResponse(BaseModel):
    type: Literal["ack"] = "ack"
    message: str
    task_ids: list[int] = Field(default_factory=list)
    # Tasks whose suspend or continue signal failed
    unreached: list[int] = Field(default_factory=list)


class AddedResponse(BaseModel):
    type: Literal["added"] = "added"
    task_id: int
    group: str
    status: TaskStatus


class StatusResponse(BaseModel):
    type: Literal["status"] = "status"
    tasks: dict[int, Task]
    groups: dict[str, Group]


class LogChunkResponse(BaseModel):
    type: Literal["log_chunk"] = "log_chunk"
    task_id: int
    data: str


class StreamEndResponse(BaseModel):
    type: Literal["stream_end"] = "stream_end"
    task_id: int
    status: TaskStatus


class ErrorResponse(BaseModel):
    type: Literal["error"] = "error"
    kind: str
    message: str


Response = Annotated[
    Union[
        HelloResponse,
        AckResponse,
        AddedResponse,
        StatusResponse,
        LogChunkResponse,
        StreamEndResponse,
        ErrorResponse,
    ],
    Field(discriminator="type"),
]


_REQUEST_ADAPTER: TypeAdapter = TypeAdapter(Request)
_RESPONSE_ADAPTER: TypeAdapter = TypeAdapter(Response)


def encode_message(message: BaseModel) -> bytes:
    return message.model_dump_json().encode("utf-8")


def decode_request(payload: bytes):
    try:
        return _REQUEST_ADAPTER.validate_json(payload)
    except ValidationError as e:
        raise ProtocolError(f"Invalid request: {e.errors(include_url=False)}")


def decode_response(payload: bytes):
    try:
        return _RESPONSE_ADAPTER.validate_json(payload)
    except ValidationError as e:
        raise ProtocolError(f"Invalid response: {e.errors(include_url=False)}")


# ==================== Framing ====================


def encode_frame(payload: bytes) -> bytes:
    return HEADER.pack(len(payload)) + payload


class FrameDecoder:
    """
    Reassembles frames from arbitrarily split reads.

    Frames are cut from the buffer one at a time, so ``max_size`` applies
    to each frame as it is taken. A frame is only released once its whole
    body is buffered.
    """

    def __init__(self, max_size: int):
        self.max_size = max_size
        self._buffer = bytearray()

    def feed(self, data: bytes) -> None:
        self._buffer.extend(data)

    def next_frame(self) -> Optional[bytes]:
        if len(self._buffer) < HEADER.size:
            return None
        (length,) = HEADER.unpack_from(self._buffer)
        if length > self.max_size:
            raise ProtocolError(
                f"Frame of {length} bytes exceeds limit of {self.max_size}"
            )
        end = HEADER.size + length
        if len(self._buffer) < end:
            return None
        frame = bytes(self._buffer[HEADER.size:end])
        del self._buffer[:end]
        return frame

    @property
    def buffered(self) -> int:
        """Bytes received but not yet released as frames."""
        return len(self._buffer)


class FramedConnection:
    """A stream pair speaking length-delimited frames."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        max_size: int,
    ):
        self.reader = reader
        self.writer = writer
        self.decoder = FrameDecoder(max_size)

    async def receive(self) -> Optional[bytes]:
        """Next complete frame, or None on a clean end of stream."""
        while True:
            frame = self.decoder.next_frame()
            if frame is not None:
                return frame

            data = await self.reader.read(READ_CHUNK_SIZE)
            if not data:
                if self.decoder.buffered:
                    raise ProtocolError("Connection closed in the middle of a frame")
                return None
            self.decoder.feed(data)

    async def send(self, payload: bytes) -> None:
        self.writer.write(encode_frame(payload))
        await self.writer.drain()

    async def send_message(self, message: BaseModel) -> None:
        await self.send(encode_message(message))

    async def receive_request(self):
        frame = await self.receive()
        return None if frame is None else decode_request(frame)

    async def receive_response(self):
        frame = await self.receive()
        if frame is None:
            raise ProtocolError("Connection closed before a response arrived")
        return decode_response(frame)

    async def close(self) -> None:
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass
