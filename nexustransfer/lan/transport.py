"""TCP transport for LAN transfer frames.

Each node runs one TCP server.  To send a message, the sender opens a
short-lived TCP connection to the target peer (looked up in the
``PeerRegistry``), writes one length-prefixed frame, and closes the
connection.  The receiving side reads exactly one frame per connection and
pushes it onto an inbound queue consumed by a separate dispatch task, so a slow
handler never holds a socket open.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from uuid import UUID

from loguru import logger

from nexustransfer.lan.errors import DecodeError, PeerConnectionError, PeerNotFound
from nexustransfer.lan.protocol import MAX_FRAME_SIZE, Message, pack_frame, read_frame
from nexustransfer.lan.registry import PeerRegistry


@dataclass(frozen=True)
class Inbound:
    """One received message plus the address it arrived from."""

    message: Message
    remote_host: str


class LanTransport:
    """Listener and sender for one-frame-per-connection messaging.

    Parameters
    ----------
    registry:
        Peer table used to resolve send targets.
    inbox:
        Queue that receives an ``Inbound`` for every decoded frame.
    host:
        Interface to bind the TCP server on (default ``"0.0.0.0"``).
    tcp_port:
        TCP port to listen on; ``0`` picks a free port.
    connect_timeout:
        Seconds allowed for an outbound connect, ``None`` for no deadline.
    read_timeout:
        Seconds allowed to read one inbound frame, ``None`` for no deadline.
    max_frame_size:
        Inbound frames declaring a larger payload are refused.
    """

    def __init__(
        self,
        registry: PeerRegistry,
        inbox: asyncio.Queue[Inbound],
        host: str = "0.0.0.0",
        tcp_port: int = 9876,
        *,
        connect_timeout: float | None = None,
        read_timeout: float | None = None,
        max_frame_size: int = MAX_FRAME_SIZE,
    ):
        self.registry = registry
        self.inbox = inbox
        self.host = host
        self.tcp_port = tcp_port
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.max_frame_size = max_frame_size
        self._server: asyncio.Server | None = None

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Bind and start accepting connections.

        A bind failure propagates; the caller treats it as fatal.
        """
        self._server = await asyncio.start_server(
            self._handle_connection, self.host, self.tcp_port,
        )
        logger.info("[Lan/Transport] listening on {}:{}", self.host, self.bound_port)

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        logger.info("[Lan/Transport] stopped")

    @property
    def bound_port(self) -> int:
        """The TCP port actually bound (useful when configured as 0)."""
        if self._server is None or not self._server.sockets:
            return self.tcp_port
        return self._server.sockets[0].getsockname()[1]

    # -- receiving -----------------------------------------------------------

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle one inbound connection (exactly one frame)."""
        peername = writer.get_extra_info("peername")
        remote_host = peername[0] if peername else ""
        try:
            msg = await asyncio.wait_for(
                read_frame(reader, max_size=self.max_frame_size),
                timeout=self.read_timeout,
            )
            logger.debug("[Lan/Transport] received {} from {}", msg.type.name, remote_host)
            await self.inbox.put(Inbound(message=msg, remote_host=remote_host))
        except DecodeError as exc:
            logger.warning("[Lan/Transport] bad frame from {}: {}", remote_host, exc)
        except (asyncio.TimeoutError, ConnectionError, OSError) as exc:
            logger.warning("[Lan/Transport] connection error from {}: {}", remote_host, exc)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    # -- sending -------------------------------------------------------------

    async def send(self, peer_id: UUID, message: Message) -> None:
        """Send *message* to the registered peer *peer_id*.

        Raises ``PeerNotFound`` (before any network I/O) when the id is not in
        the registry, and ``PeerConnectionError`` when the single connection
        attempt or the write fails.  Returning means the frame was handed to
        the OS, not that the peer processed it.
        """
        peer = self.registry.get(peer_id)
        if peer is None:
            raise PeerNotFound(peer_id)
        await self.send_to_address(peer.host, peer.port, message)

    async def send_to_address(self, host: str, port: int, message: Message) -> None:
        """Send *message* to an explicit ``host:port``."""
        frame = pack_frame(message)
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise PeerConnectionError(f"cannot connect to {host}:{port}: {exc}") from exc
        try:
            writer.write(frame)
            await writer.drain()
        except (OSError, ConnectionError) as exc:
            raise PeerConnectionError(f"write to {host}:{port} failed: {exc}") from exc
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
        logger.debug("[Lan/Transport] sent {} to {}:{}", message.type.name, host, port)
