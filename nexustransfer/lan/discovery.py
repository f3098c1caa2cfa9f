"""UDP broadcast discovery for LAN transfer peers.

How it works
------------
1. Each node periodically broadcasts a small JSON beacon on a well-known UDP
   port, tagged with the service identifier shared by all NexusTransfer nodes.
2. Every node listens on the same port.  An ``announce`` beacon resolves a peer
   and upserts it into the ``PeerRegistry``; a ``bye`` beacon (sent once on
   shutdown) removes every peer advertised under that name.
3. Peers that stay silent for ``peer_timeout`` seconds are pruned.

The beacon payload::

    {"service": "_nexustransfer._tcp.local.", "event": "announce",
     "node_id": "<uuid>", "name": "alice", "tcp_port": 9876}

The beacon carries the node's own stable id, so a peer keeps the same id in
every registry for as long as its process runs.
"""

from __future__ import annotations

import asyncio
import json
import socket
from typing import Any
from uuid import UUID

from loguru import logger

from nexustransfer.lan.registry import Peer, PeerRegistry
from nexustransfer.lan.resilience import Watchdog, cancel_task, supervised_task

SERVICE_ID = "_nexustransfer._tcp.local."

EVENT_ANNOUNCE = "announce"
EVENT_BYE = "bye"

_MAX_BEACON = 2048


class UDPDiscovery:
    """Advertise this node and resolve others over UDP broadcast.

    Parameters
    ----------
    node_id:
        This node's identifier, advertised in every beacon.
    name:
        Display name advertised to other nodes.
    tcp_port:
        The TCP port where this node's transport listener accepts frames.
    registry:
        Peer table to populate.
    service_id:
        Beacons carrying any other identifier are ignored.
    udp_port:
        Shared UDP port for beacons.
    broadcast_interval:
        Seconds between announce beacons.
    peer_timeout:
        Seconds of silence after which a peer is pruned.
    prune_interval:
        Seconds between prune passes; defaults to half of *peer_timeout*, so a
        silent peer is gone at most 1.5 x *peer_timeout* after its last beacon.
    broadcast_address:
        Destination address for beacons.
    """

    def __init__(
        self,
        node_id: UUID,
        name: str,
        tcp_port: int,
        registry: PeerRegistry,
        *,
        service_id: str = SERVICE_ID,
        udp_port: int = 9877,
        broadcast_interval: float = 2.0,
        peer_timeout: float = 10.0,
        broadcast_address: str = "255.255.255.255",
        prune_interval: float | None = None,
    ):
        self.node_id = node_id
        self.name = name
        self.tcp_port = tcp_port
        self.registry = registry
        self.service_id = service_id
        self.udp_port = udp_port
        self.broadcast_interval = broadcast_interval
        self.peer_timeout = peer_timeout
        self.broadcast_address = broadcast_address

        self._running = False
        self._sock: socket.socket | None = None
        self._tasks: list[asyncio.Task] = []
        self._pruner = Watchdog(
            "discovery-prune", self.prune, interval=prune_interval or peer_timeout / 2,
        )

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Bind the beacon socket and start broadcasting and listening.

        Bind failures propagate: a node that cannot join discovery does not
        start.
        """
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                try:
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
                except OSError:
                    pass
            sock.bind(("", self.udp_port))
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        self._sock = sock
        self._running = True

        self._tasks = [
            supervised_task(self._broadcast_loop(), name="discovery-broadcast"),
            supervised_task(self._listen_loop(), name="discovery-listen"),
        ]
        self._pruner.start()
        logger.info(
            "[Lan/Discovery] started: node={} name={!r} udp={} tcp={}",
            self.node_id, self.name, self.udp_port, self.tcp_port,
        )

    async def stop(self) -> None:
        """Send a goodbye beacon and stop all discovery tasks."""
        if self._running and self._sock is not None:
            await self._send_beacon(EVENT_BYE)
        self._running = False
        await self._pruner.stop()
        for task in self._tasks:
            await cancel_task(task)
        self._tasks = []
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        logger.info("[Lan/Discovery] stopped")

    @property
    def bound_port(self) -> int:
        """The UDP port actually bound (useful when configured as 0)."""
        if self._sock is None:
            return self.udp_port
        return self._sock.getsockname()[1]

    # -- beacon broadcast ----------------------------------------------------

    def beacon(self, event: str = EVENT_ANNOUNCE) -> bytes:
        return json.dumps({
            "service": self.service_id,
            "event": event,
            "node_id": str(self.node_id),
            "name": self.name,
            "tcp_port": self.tcp_port,
        }).encode()

    async def _send_beacon(self, event: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.sock_sendto(
                self._sock, self.beacon(event), (self.broadcast_address, self.bound_port),  # type: ignore[arg-type]
            )
        except OSError as exc:
            logger.debug("[Lan/Discovery] {} beacon failed: {}", event, exc)

    async def _broadcast_loop(self) -> None:
        while self._running:
            await self._send_beacon(EVENT_ANNOUNCE)
            await asyncio.sleep(self.broadcast_interval)

    # -- beacon listener -----------------------------------------------------

    async def _listen_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while self._running:
            try:
                data, addr = await loop.sock_recvfrom(self._sock, _MAX_BEACON)  # type: ignore[arg-type]
            except OSError:
                if not self._running:
                    break
                await asyncio.sleep(0.1)
                continue
            try:
                await self.handle_beacon(data, addr[0])
            except Exception as exc:
                logger.warning("[Lan/Discovery] beacon from {} not handled: {}", addr[0], exc)

    async def handle_beacon(self, data: bytes, ip: str) -> None:
        """Translate one received beacon into a registry update."""
        try:
            info: dict[str, Any] = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return
        if not isinstance(info, dict) or info.get("service") != self.service_id:
            return

        try:
            node_id = UUID(str(info.get("node_id", "")))
        except ValueError:
            logger.debug("[Lan/Discovery] beacon from {} without a valid node_id", ip)
            return
        if node_id == self.node_id:
            return  # own beacon

        name = str(info.get("name", ""))
        event = info.get("event", EVENT_ANNOUNCE)

        if event == EVENT_BYE:
            await self.peer_removed(name)
            return

        try:
            tcp_port = int(info.get("tcp_port", 0))
        except (TypeError, ValueError):
            return
        if not 0 < tcp_port < 65536:
            return
        await self.peer_resolved(Peer(id=node_id, name=name, address=f"{ip}:{tcp_port}"))

    # -- registry updates ----------------------------------------------------

    async def peer_resolved(self, peer: Peer) -> bool:
        """Insert a resolved peer unless it is this node. Returns True if added."""
        if peer.id == self.node_id:
            return False
        return await self.registry.upsert(peer)

    async def peer_removed(self, name: str) -> list[Peer]:
        """Drop every registry entry advertised under *name*."""
        removed = await self.registry.remove_by_name(name)
        if removed:
            logger.info("[Lan/Discovery] {!r} left the network", name)
        return removed

    async def prune(self) -> list[Peer]:
        return await self.registry.prune(self.peer_timeout)
