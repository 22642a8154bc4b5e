"""Control message protocol spoken over the text channel of the session socket.

Every control message is one JSON object per text frame with a ``type``
discriminator. Terminal bytes travel in binary frames and never pass
through this module.

Message types:
    resize, signal, ping, pong, ready, exit, error, sync_back,
    sync_back_ack, file_change, file_upload, file_upload_chunk

Unknown types decode to :class:`Unrecognized` so that newer servers can add
messages without breaking older clients.
"""

from __future__ import annotations

import base64
import json
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class MessageType(str, Enum):
    """Message types in the control protocol."""

    RESIZE = "resize"
    SIGNAL = "signal"
    PING = "ping"
    PONG = "pong"
    READY = "ready"
    EXIT = "exit"
    ERROR = "error"
    SYNC_BACK = "sync_back"
    SYNC_BACK_ACK = "sync_back_ack"
    FILE_CHANGE = "file_change"
    FILE_UPLOAD = "file_upload"
    FILE_UPLOAD_CHUNK = "file_upload_chunk"


class MalformedMessage(ValueError):
    """A text frame that is not a valid control message."""


class _Message(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class Resize(_Message):
    type: Literal["resize"] = "resize"
    cols: int
    rows: int


class Signal(_Message):
    type: Literal["signal"] = "signal"
    name: str


class Ping(_Message):
    type: Literal["ping"] = "ping"


class Pong(_Message):
    type: Literal["pong"] = "pong"


class Ready(_Message):
    type: Literal["ready"] = "ready"


class Exit(_Message):
    type: Literal["exit"] = "exit"
    code: int
    signal: str | None = None


class Error(_Message):
    type: Literal["error"] = "error"
    message: str


class SyncBack(_Message):
    type: Literal["sync_back"] = "sync_back"
    enabled: bool


class SyncBackAck(_Message):
    type: Literal["sync_back_ack"] = "sync_back_ack"
    enabled: bool
    workspace_dir: str | None = None
    interval_ms: int | None = None


class FileChange(_Message):
    """A file written or deleted on the remote side.

    ``content`` is base64 encoded and only present for writes.
    """

    type: Literal["file_change"] = "file_change"
    action: Literal["write", "delete"]
    path: str
    content: str | None = None
    mode: int | None = None

    def decoded_content(self) -> bytes:
        """Decode the base64 payload.

        Raises:
            ValueError: If the content is missing or not valid base64.
        """
        if self.content is None:
            raise ValueError("file_change has no content")
        return base64.b64decode(self.content, validate=True)


class FileUpload(_Message):
    type: Literal["file_upload"] = "file_upload"
    filename: str
    path: str
    content: str
    mime: str


class FileUploadChunk(_Message):
    type: Literal["file_upload_chunk"] = "file_upload_chunk"
    upload_id: str
    filename: str
    path: str
    index: int
    total: int
    chunk: str
    mime: str


class Unrecognized(_Message):
    """A well-formed message of a type this client does not know."""

    type: str
    payload: dict[str, Any] = Field(default_factory=dict)


KnownMessage = Annotated[
    Union[
        Resize,
        Signal,
        Ping,
        Pong,
        Ready,
        Exit,
        Error,
        SyncBack,
        SyncBackAck,
        FileChange,
        FileUpload,
        FileUploadChunk,
    ],
    Field(discriminator="type"),
]

ControlMessage = Union[
    Resize,
    Signal,
    Ping,
    Pong,
    Ready,
    Exit,
    Error,
    SyncBack,
    SyncBackAck,
    FileChange,
    FileUpload,
    FileUploadChunk,
    Unrecognized,
]

_KNOWN_TYPES = frozenset(t.value for t in MessageType)
_adapter: TypeAdapter[Any] = TypeAdapter(KnownMessage)


def encode(message: ControlMessage) -> str:
    """Serialize a control message to a single JSON text frame.

    Optional fields that are unset are omitted from the wire form.
    """
    if isinstance(message, Unrecognized):
        return json.dumps({**message.payload, "type": message.type}, separators=(",", ":"))
    return message.model_dump_json(exclude_none=True)


def decode(text: str | bytes) -> ControlMessage:
    """Parse a text frame into a control message.

    Args:
        text: The frame payload.

    Returns:
        The parsed message, or :class:`Unrecognized` for unknown types.

    Raises:
        MalformedMessage: If the frame is not a JSON object with a string
            ``type``, or a known type has invalid fields.
    """
    try:
        data = json.loads(text)
    except (ValueError, TypeError) as e:
        raise MalformedMessage(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedMessage("control message must be a JSON object")
    msg_type = data.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise MalformedMessage("control message has no type")
    if msg_type not in _KNOWN_TYPES:
        payload = {k: v for k, v in data.items() if k != "type"}
        return Unrecognized(type=msg_type, payload=payload)
    try:
        return _adapter.validate_python(data)
    except ValidationError as e:
        raise MalformedMessage(f"invalid {msg_type} message: {e.error_count()} error(s)") from e


def resize(cols: int, rows: int) -> Resize:
    """Create a RESIZE message."""
    return Resize(cols=cols, rows=rows)


def signal(name: str) -> Signal:
    """Create a SIGNAL message forwarding a named signal to the remote process."""
    return Signal(name=name)


def ping() -> Ping:
    return Ping()


def pong() -> Pong:
    """Create a PONG reply to a server PING."""
    return Pong()


def sync_back(enabled: bool = True) -> SyncBack:
    """Create a SYNC_BACK request."""
    return SyncBack(enabled=enabled)


__all__ = [
    "MessageType",
    "MalformedMessage",
    "ControlMessage",
    "Resize",
    "Signal",
    "Ping",
    "Pong",
    "Ready",
    "Exit",
    "Error",
    "SyncBack",
    "SyncBackAck",
    "FileChange",
    "FileUpload",
    "FileUploadChunk",
    "Unrecognized",
    "encode",
    "decode",
    "resize",
    "signal",
    "ping",
    "pong",
    "sync_back",
]
