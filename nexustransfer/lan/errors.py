"""Exception hierarchy for the LAN transfer core.

Every failure raised by the core derives from ``NexusError`` so callers at an
operation boundary can catch the whole family at once.  Filesystem problems are
left as the builtin ``OSError`` subclasses (``FileNotFoundError`` etc.).
"""

from __future__ import annotations

from uuid import UUID


class NexusError(Exception):
    """Base class for all errors raised by the transfer core."""


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------

class FrameError(NexusError, ValueError):
    """A frame could not be encoded or decoded."""


class EncodeError(FrameError):
    """A message value cannot be represented on the wire."""


class DecodeError(FrameError):
    """Bytes are truncated, malformed, or carry an unknown variant tag."""


# ---------------------------------------------------------------------------
# Peers / transport
# ---------------------------------------------------------------------------

class PeerNotFound(NexusError, LookupError):
    """The send target is not present in the peer registry."""

    def __init__(self, peer_id: UUID) -> None:
        super().__init__(f"peer {peer_id} not found")
        self.peer_id = peer_id


class PeerConnectionError(NexusError, ConnectionError):
    """Connecting to, or writing to, a peer failed."""


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------

class TransferError(NexusError):
    """Base class for transfer engine failures."""


class TransferNotFound(TransferError, LookupError):
    """An operation referenced a transfer id that is not tracked."""

    def __init__(self, transfer_id: UUID) -> None:
        super().__init__(f"transfer {transfer_id} not found")
        self.transfer_id = transfer_id


class TransferExists(TransferError):
    """An inbound transfer with this id is already being received."""

    def __init__(self, transfer_id: UUID) -> None:
        super().__init__(f"transfer {transfer_id} already in progress")
        self.transfer_id = transfer_id


class ChunkOutOfRange(TransferError, ValueError):
    """A chunk would write past the size declared in the offer."""


class UnsafeFileName(TransferError, ValueError):
    """An offered file name does not reduce to a usable base name."""
