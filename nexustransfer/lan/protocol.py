"""Wire-level protocol for LAN transfer messages.

Every message travels alone on its own TCP connection as one *frame*: a 4-byte
big-endian length prefix followed by that many bytes of binary payload.

Payload format
--------------
::

    [tag: u8][fields...]

    TEXT           content:str
    FILE_OFFER     id:uuid  name:str  size:u64
    FILE_ACCEPT    id:uuid
    FILE_REJECT    id:uuid
    FILE_CHUNK     id:uuid  offset:u64  data:blob
    FILE_COMPLETE  id:uuid

``uuid`` is 16 raw bytes, ``u64`` is unsigned 64-bit big-endian, and ``str``
(UTF-8) / ``blob`` are a u32 big-endian length followed by the bytes.
"""

from __future__ import annotations

import asyncio
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, ClassVar
from uuid import UUID

from nexustransfer.lan.errors import DecodeError, EncodeError

_U32 = struct.Struct("!I")
_U64 = struct.Struct("!Q")

# Frame header is the same u32 used for string/blob lengths.
FRAME_HEADER = _U32

# Refuse to allocate for frames larger than this unless configured otherwise.
MAX_FRAME_SIZE = 16 * 1024 * 1024


class MsgType(IntEnum):
    """Variant tags of the closed message set."""

    TEXT = 0
    FILE_OFFER = 1
    FILE_ACCEPT = 2
    FILE_REJECT = 3
    FILE_CHUNK = 4
    FILE_COMPLETE = 5


# ---------------------------------------------------------------------------
# Message variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Text:
    """A short chat message."""

    content: str

    type: ClassVar[MsgType] = MsgType.TEXT


@dataclass(frozen=True)
class FileOffer:
    """Announces a file the sender is ready to serve."""

    id: UUID
    name: str
    size: int

    type: ClassVar[MsgType] = MsgType.FILE_OFFER


@dataclass(frozen=True)
class FileAccept:
    id: UUID

    type: ClassVar[MsgType] = MsgType.FILE_ACCEPT


@dataclass(frozen=True)
class FileReject:
    id: UUID

    type: ClassVar[MsgType] = MsgType.FILE_REJECT


@dataclass(frozen=True)
class FileChunk:
    """One slice of file bytes starting at ``offset``."""

    id: UUID
    offset: int
    data: bytes = field(repr=False)

    type: ClassVar[MsgType] = MsgType.FILE_CHUNK


@dataclass(frozen=True)
class FileComplete:
    id: UUID

    type: ClassVar[MsgType] = MsgType.FILE_COMPLETE


Message = Text | FileOffer | FileAccept | FileReject | FileChunk | FileComplete

# Variants that only carry a transfer id.
_ID_ONLY: dict[MsgType, type] = {
    MsgType.FILE_ACCEPT: FileAccept,
    MsgType.FILE_REJECT: FileReject,
    MsgType.FILE_COMPLETE: FileComplete,
}


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def _pack_uuid(value: Any) -> bytes:
    if not isinstance(value, UUID):
        raise EncodeError(f"expected UUID, got {type(value).__name__}")
    return value.bytes


def _pack_u64(value: Any) -> bytes:
    if not isinstance(value, int) or isinstance(value, bool):
        raise EncodeError(f"expected int, got {type(value).__name__}")
    try:
        return _U64.pack(value)
    except struct.error as exc:
        raise EncodeError(f"integer {value} does not fit in u64") from exc


def _pack_blob(data: Any) -> bytes:
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise EncodeError(f"expected bytes, got {type(data).__name__}")
    data = bytes(data)
    if len(data) > 0xFFFFFFFF:
        raise EncodeError(f"blob of {len(data)} bytes is too long")
    return _U32.pack(len(data)) + data


def _pack_str(value: Any) -> bytes:
    if not isinstance(value, str):
        raise EncodeError(f"expected str, got {type(value).__name__}")
    try:
        return _pack_blob(value.encode("utf-8"))
    except UnicodeEncodeError as exc:
        raise EncodeError(f"string is not encodable as UTF-8: {exc}") from exc


def encode(message: Message) -> bytes:
    """Serialise *message* to its binary payload (no length prefix)."""
    if isinstance(message, Text):
        body = _pack_str(message.content)
    elif isinstance(message, FileOffer):
        body = _pack_uuid(message.id) + _pack_str(message.name) + _pack_u64(message.size)
    elif isinstance(message, FileChunk):
        body = _pack_uuid(message.id) + _pack_u64(message.offset) + _pack_blob(message.data)
    elif isinstance(message, (FileAccept, FileReject, FileComplete)):
        body = _pack_uuid(message.id)
    else:
        raise EncodeError(f"not a message: {type(message).__name__}")
    return bytes([message.type]) + body


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

class _Cursor:
    """Sequential reader over a payload that raises DecodeError on underrun."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def take(self, n: int) -> bytes:
        end = self._pos + n
        if end > len(self._data):
            raise DecodeError(
                f"truncated payload: need {n} bytes at offset {self._pos}, "
                f"have {len(self._data) - self._pos}"
            )
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def uuid(self) -> UUID:
        return UUID(bytes=self.take(16))

    def u64(self) -> int:
        return _U64.unpack(self.take(8))[0]

    def blob(self) -> bytes:
        (length,) = _U32.unpack(self.take(4))
        return self.take(length)

    def text(self) -> str:
        raw = self.blob()
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"invalid UTF-8 string: {exc}") from exc

    def finish(self) -> None:
        if self._pos != len(self._data):
            raise DecodeError(f"{len(self._data) - self._pos} trailing bytes after message")


def decode(payload: bytes) -> Message:
    """Deserialise one binary payload produced by :func:`encode`."""
    data = bytes(payload)
    if not data:
        raise DecodeError("empty payload")
    try:
        tag = MsgType(data[0])
    except ValueError:
        raise DecodeError(f"unknown message tag {data[0]}") from None

    cur = _Cursor(data[1:])
    msg: Message
    if tag == MsgType.TEXT:
        msg = Text(content=cur.text())
    elif tag == MsgType.FILE_OFFER:
        msg = FileOffer(id=cur.uuid(), name=cur.text(), size=cur.u64())
    elif tag == MsgType.FILE_CHUNK:
        msg = FileChunk(id=cur.uuid(), offset=cur.u64(), data=cur.blob())
    else:
        msg = _ID_ONLY[tag](id=cur.uuid())
    cur.finish()
    return msg


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------

def pack_frame(message: Message) -> bytes:
    """Return the length-prefixed frame for *message*."""
    body = encode(message)
    if len(body) > 0xFFFFFFFF:
        raise EncodeError(f"payload of {len(body)} bytes exceeds the frame limit")
    return FRAME_HEADER.pack(len(body)) + body


def unpack_frame(data: bytes) -> Message:
    """Decode a complete in-memory frame (header + payload)."""
    if len(data) < FRAME_HEADER.size:
        raise DecodeError(f"frame header needs {FRAME_HEADER.size} bytes, got {len(data)}")
    (length,) = FRAME_HEADER.unpack(data[:FRAME_HEADER.size])
    body = data[FRAME_HEADER.size:]
    if len(body) < length:
        raise DecodeError(f"truncated frame: declared {length} bytes, got {len(body)}")
    if len(body) > length:
        raise DecodeError(f"{len(body) - length} trailing bytes after frame")
    return decode(body)


async def read_frame(reader: Any, *, max_size: int = MAX_FRAME_SIZE) -> Message:
    """Read exactly one frame from an ``asyncio.StreamReader``.

    Raises ``DecodeError`` if the stream ends early, the declared length
    exceeds *max_size*, or the payload is malformed.
    """
    try:
        header = await reader.readexactly(FRAME_HEADER.size)
    except asyncio.IncompleteReadError as exc:
        raise DecodeError(f"connection closed after {len(exc.partial)} header bytes") from exc
    (length,) = FRAME_HEADER.unpack(header)
    if length > max_size:
        raise DecodeError(f"frame of {length} bytes exceeds limit of {max_size}")
    try:
        body = await reader.readexactly(length)
    except asyncio.IncompleteReadError as exc:
        raise DecodeError(
            f"truncated frame: declared {length} bytes, got {len(exc.partial)}"
        ) from exc
    return decode(body)

