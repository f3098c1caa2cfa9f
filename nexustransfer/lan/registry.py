"""Peer registry: the table of currently known LAN peers.

Populated by ``UDPDiscovery`` and read by ``LanTransport`` at send time.

Async safety
------------
Mutations run under an ``asyncio.Lock``.  Reads never await, so on a single
event loop they always observe a consistent table; they return snapshots so
callers never hold a reference into the live dict.  ``Peer`` is frozen, which
makes handing out the stored instances equivalent to handing out copies.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from uuid import UUID

from loguru import logger


@dataclass(frozen=True)
class Peer:
    """A remote node reachable on the LAN."""

    id: UUID
    name: str
    address: str  # "host:port"

    @property
    def host(self) -> str:
        return self.address.rsplit(":", 1)[0]

    @property
    def port(self) -> int:
        return int(self.address.rsplit(":", 1)[1])


class PeerRegistry:
    """Concurrent table of known peers, keyed by peer id."""

    def __init__(self) -> None:
        self._peers: dict[UUID, Peer] = {}
        self._last_seen: dict[UUID, float] = {}
        self._lock = asyncio.Lock()

    # -- mutations -----------------------------------------------------------

    async def upsert(self, peer: Peer) -> bool:
        """Insert or refresh *peer*. Returns ``True`` if it was not known."""
        async with self._lock:
            is_new = peer.id not in self._peers
            self._peers[peer.id] = peer
            self._last_seen[peer.id] = time.time()
        if is_new:
            logger.info("[Lan/Registry] added peer {} ({}) @ {}", peer.name, peer.id, peer.address)
        return is_new

    async def remove(self, peer_id: UUID) -> Peer | None:
        """Remove one peer by id. Returns the removed peer or ``None``."""
        async with self._lock:
            self._last_seen.pop(peer_id, None)
            peer = self._peers.pop(peer_id, None)
        if peer is not None:
            logger.info("[Lan/Registry] removed peer {} ({})", peer.name, peer.id)
        return peer

    async def remove_by_name(self, name: str) -> list[Peer]:
        """Remove every peer advertised under *name*."""
        async with self._lock:
            removed = [p for p in self._peers.values() if p.name == name]
            for peer in removed:
                del self._peers[peer.id]
                self._last_seen.pop(peer.id, None)
        for peer in removed:
            logger.info("[Lan/Registry] removed peer {} ({})", peer.name, peer.id)
        return removed

    async def prune(self, timeout: float) -> list[Peer]:
        """Remove peers not refreshed within *timeout* seconds."""
        now = time.time()
        async with self._lock:
            stale = [
                self._peers[pid] for pid, seen in self._last_seen.items()
                if now - seen >= timeout
            ]
            for peer in stale:
                del self._peers[peer.id]
                del self._last_seen[peer.id]
        for peer in stale:
            logger.info("[Lan/Registry] peer lost: {} ({})", peer.name, peer.address)
        return stale

    async def clear(self) -> None:
        async with self._lock:
            self._peers.clear()
            self._last_seen.clear()

    # -- queries -------------------------------------------------------------

    def get(self, peer_id: UUID) -> Peer | None:
        return self._peers.get(peer_id)

    def find_by_host(self, host: str) -> Peer | None:
        """Return the first peer whose address is on *host*, if any."""
        for peer in self._peers.values():
            if peer.host == host:
                return peer
        return None

    def list_peers(self) -> list[Peer]:
        """Snapshot of all known peers (no ordering guarantee)."""
        return list(self._peers.values())

    def __len__(self) -> int:
        return len(self._peers)

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._peers
