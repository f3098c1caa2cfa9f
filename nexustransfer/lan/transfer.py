"""Chunked file transfer engine.

Tracks the files this node has offered (outbound) and the partial files it is
receiving (inbound), keyed by transfer id.

Architecture
------------
- ``OutboundTransfer`` — an offered file the engine promises to serve chunks of
- ``InboundTransfer``  — an open destination file plus its progress counters
- ``TransferState``    — lifecycle states of one transfer, used by the node
- ``TransferEngine``   — the tables and the chunk read/apply operations

Protocol summary
----------------
Sender ``prepare_send`` → FILE_OFFER → receiver ``prepare_receive`` →
FILE_ACCEPT → sender ``read_chunk`` ×N as FILE_CHUNK → receiver
``apply_chunk`` until it reports completion → FILE_COMPLETE → both sides
``finalize``.

Chunks are written at their declared offset, so out-of-order delivery of
distinct chunks still produces the right file.  A chunk reaching past the
offered size is refused.  Only bytes not written before count towards
``received``, so a repeated or overlapping chunk rewrites the same region
without advancing completion.
"""

from __future__ import annotations

import asyncio
import errno
import os
import stat
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import BinaryIO
from uuid import UUID, uuid4

from loguru import logger

from nexustransfer.lan.errors import (
    ChunkOutOfRange,
    TransferExists,
    TransferNotFound,
    UnsafeFileName,
)

# Bytes per FILE_CHUNK.
CHUNK_SIZE = 64 * 1024

DEFAULT_DOWNLOAD_DIR = "downloads"


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

class TransferState(str, Enum):
    """Lifecycle of one transfer id."""

    OFFERED = "offered"            # FILE_OFFER sent or received
    ACCEPTED = "accepted"          # Receiver has a destination file open
    TRANSFERRING = "transferring"  # Chunks are flowing
    COMPLETED = "completed"        # All declared bytes written
    REJECTED = "rejected"          # Receiver declined the offer
    FAILED = "failed"              # I/O or protocol error


TERMINAL_STATES = frozenset({TransferState.COMPLETED, TransferState.REJECTED, TransferState.FAILED})


@dataclass
class OutboundTransfer:
    id: UUID
    path: Path


@dataclass
class InboundTransfer:
    """A file being received."""

    id: UUID
    path: Path
    handle: BinaryIO = field(repr=False)
    size: int
    received: int = 0
    spans: list[tuple[int, int]] = field(default_factory=list, repr=False)  # written [start, end), sorted
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def complete(self) -> bool:
        return self.received >= self.size


# ---------------------------------------------------------------------------
# Blocking helpers (run in a worker thread)
# ---------------------------------------------------------------------------

def _regular_file_size(path: Path) -> int:
    st = path.stat()
    if not stat.S_ISREG(st.st_mode):
        raise IsADirectoryError(errno.EISDIR, "not a regular file", str(path))
    return st.st_size


def _read_at(path: Path, offset: int, size: int) -> bytes:
    with open(path, "rb") as fh:
        fh.seek(offset)
        return fh.read(size)


def _open_destination(path: Path) -> BinaryIO:
    path.parent.mkdir(parents=True, exist_ok=True)
    return open(path, "wb")


def _write_at(handle: BinaryIO, offset: int, data: bytes) -> None:
    handle.seek(offset)
    handle.write(data)


def _add_span(spans: list[tuple[int, int]], start: int, end: int) -> int:
    """Merge ``[start, end)`` into *spans* and return how many bytes are new."""
    if start >= end:
        return 0
    fresh = end - start
    lo, hi = start, end
    kept = []
    for s, e in spans:
        if e < start or s > end:
            kept.append((s, e))
            continue
        fresh -= max(0, min(e, end) - max(s, start))
        lo, hi = min(lo, s), max(hi, e)
    kept.append((lo, hi))
    kept.sort()
    spans[:] = kept
    return fresh


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class TransferEngine:
    """Outbound/inbound transfer tables and chunk I/O.

    Parameters
    ----------
    download_dir:
        Directory that receives inbound files; created on demand.
    chunk_size:
        Maximum bytes returned by one ``read_chunk`` call.
    """

    def __init__(
        self,
        download_dir: str | Path = DEFAULT_DOWNLOAD_DIR,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self.download_dir = Path(download_dir)
        self.chunk_size = chunk_size
        self._outbound: dict[UUID, OutboundTransfer] = {}
        self._inbound: dict[UUID, InboundTransfer] = {}
        self._lock = asyncio.Lock()

    # -- sending side --------------------------------------------------------

    async def prepare_send(self, path: str | Path) -> tuple[UUID, str, int]:
        """Register *path* for sending.

        Returns ``(transfer_id, base_name, size)``.  Raises
        ``FileNotFoundError`` / ``OSError`` if the file is not accessible.
        No file content is read.
        """
        path = Path(path)
        size = await asyncio.to_thread(_regular_file_size, path)
        transfer_id = uuid4()
        async with self._lock:
            self._outbound[transfer_id] = OutboundTransfer(id=transfer_id, path=path)
        logger.info("[Lan/Transfer] prepared {} ({} bytes) as {}", path, size, transfer_id)
        return transfer_id, path.name or "unknown", size

    async def read_chunk(self, transfer_id: UUID, offset: int) -> bytes | None:
        """Read up to ``chunk_size`` bytes at *offset*; ``None`` at end of file."""
        out = self._outbound.get(transfer_id)
        if out is None:
            raise TransferNotFound(transfer_id)
        data = await asyncio.to_thread(_read_at, out.path, offset, self.chunk_size)
        return data or None

    # -- receiving side ------------------------------------------------------

    def destination_for(self, name: str) -> Path:
        """Map an offered file name to a path inside ``download_dir``.

        Only the final path component is kept, so an offer cannot write
        outside the download directory.
        """
        base = PurePosixPath(name.replace("\\", "/")).name
        if base in ("", ".", ".."):
            raise UnsafeFileName(f"cannot store a file named {name!r}")
        return self.download_dir / base

    async def prepare_receive(self, transfer_id: UUID, name: str, size: int) -> Path:
        """Create (or truncate) the destination file and start tracking it."""
        if transfer_id in self._inbound:
            raise TransferExists(transfer_id)
        path = self.destination_for(name)
        handle = await asyncio.to_thread(_open_destination, path)
        async with self._lock:
            if transfer_id in self._inbound:
                handle.close()
                raise TransferExists(transfer_id)
            self._inbound[transfer_id] = InboundTransfer(
                id=transfer_id, path=path, handle=handle, size=size,
            )
        logger.info("[Lan/Transfer] receiving {} ({} bytes) into {}", transfer_id, size, path)
        return path

    async def apply_chunk(self, transfer_id: UUID, offset: int, data: bytes) -> bool:
        """Write *data* at *offset*. Returns whether all declared bytes arrived."""
        inbound = self._inbound.get(transfer_id)
        if inbound is None:
            raise TransferNotFound(transfer_id)
        if offset < 0 or offset + len(data) > inbound.size:
            raise ChunkOutOfRange(
                f"chunk [{offset}, {offset + len(data)}) exceeds declared size "
                f"{inbound.size} of transfer {transfer_id}"
            )
        async with inbound.lock:
            if inbound.handle.closed:
                raise TransferNotFound(transfer_id)
            await asyncio.to_thread(_write_at, inbound.handle, offset, data)
            inbound.received += _add_span(inbound.spans, offset, offset + len(data))
            complete = inbound.complete
        logger.debug(
            "[Lan/Transfer] {} +{} bytes ({}/{})",
            transfer_id, len(data), inbound.received, inbound.size,
        )
        return complete

    # -- cleanup -------------------------------------------------------------

    async def finalize(self, transfer_id: UUID) -> None:
        """Stop tracking *transfer_id* on both sides. Unknown ids are a no-op."""
        async with self._lock:
            self._outbound.pop(transfer_id, None)
            inbound = self._inbound.pop(transfer_id, None)
        if inbound is not None:
            async with inbound.lock:
                if not inbound.handle.closed:
                    await asyncio.to_thread(inbound.handle.close)
            logger.debug("[Lan/Transfer] finalized {}", transfer_id)

    async def cancel(self, transfer_id: UUID) -> None:
        """Finalize and delete the partial destination file, if any."""
        inbound = self._inbound.get(transfer_id)
        await self.finalize(transfer_id)
        if inbound is not None and not inbound.complete:
            try:
                await asyncio.to_thread(os.remove, inbound.path)
            except FileNotFoundError:
                pass
            logger.info("[Lan/Transfer] discarded partial file {}", inbound.path)

    async def close_all(self) -> None:
        """Finalize every tracked transfer (shutdown)."""
        for transfer_id in list(self._outbound) + list(self._inbound):
            await self.finalize(transfer_id)

    # -- queries -------------------------------------------------------------

    def outbound_ids(self) -> list[UUID]:
        return list(self._outbound)

    def is_outbound(self, transfer_id: UUID) -> bool:
        return transfer_id in self._outbound

    def is_inbound(self, transfer_id: UUID) -> bool:
        return transfer_id in self._inbound

    def inbound_progress(self, transfer_id: UUID) -> tuple[int, int] | None:
        """Return ``(received, size)`` for an inbound transfer, or ``None``."""
        inbound = self._inbound.get(transfer_id)
        if inbound is None:
            return None
        return inbound.received, inbound.size
