"""Transfer node — wires discovery, transport and the transfer engine together.

The node owns one inbound queue.  The transport pushes every decoded frame onto
it and a single dispatch task consumes it, so inbound messages are handled one
at a time in arrival order.  Work that opens an outbound connection (the
auto-accept reply, chunk pumping) runs in its own task, so an unreachable or
slow peer never stalls dispatch for everyone else.

File flow
---------
Sender ``offer_file`` → FILE_OFFER → receiver auto-accepts (or waits for
``accept_offer`` / ``reject_offer``) → FILE_ACCEPT → sender pumps FILE_CHUNK
messages linearly from offset 0 → FILE_COMPLETE.
"""

from __future__ import annotations

import asyncio
import socket
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable
from uuid import UUID, uuid4

from loguru import logger

from nexustransfer.config.schema import Config
from nexustransfer.lan.discovery import UDPDiscovery
from nexustransfer.lan.errors import NexusError, PeerNotFound, TransferError, TransferNotFound
from nexustransfer.lan.protocol import (
    FileAccept,
    FileChunk,
    FileComplete,
    FileOffer,
    FileReject,
    Message,
    Text,
)
from nexustransfer.lan.registry import Peer, PeerRegistry
from nexustransfer.lan.resilience import cancel_task, supervised_task
from nexustransfer.lan.transfer import TERMINAL_STATES, TransferEngine, TransferState
from nexustransfer.lan.transport import Inbound, LanTransport

DIRECTION_OUT = "out"
DIRECTION_IN = "in"

# Callback type: receives (event_name, data) and returns nothing.
EventCallback = Callable[[str, dict[str, Any]], Any]


@dataclass
class TransferRecord:
    """Status of one transfer as seen by this node."""

    id: UUID
    name: str
    size: int
    direction: str               # DIRECTION_OUT | DIRECTION_IN
    peer_id: UUID | None = None  # Counterpart, when it is in the registry
    remote_host: str = ""        # Where an inbound offer came from
    state: TransferState = TransferState.OFFERED
    bytes_done: int = 0
    path: str = ""
    error: str = ""
    started_at: float = field(default_factory=time.time)

    @property
    def progress(self) -> float:
        if self.size == 0:
            return 1.0 if self.state == TransferState.COMPLETED else 0.0
        return min(1.0, self.bytes_done / self.size)

    def to_status(self) -> dict[str, Any]:
        """Return a summary dict for external consumers."""
        return {
            "id": str(self.id),
            "name": self.name,
            "size": self.size,
            "direction": self.direction,
            "peer_id": str(self.peer_id) if self.peer_id else "",
            "state": self.state.value,
            "progress": round(self.progress, 3),
            "path": self.path,
            "error": self.error,
        }


class TransferNode:
    """One LAN participant: peer table, listener, sender and transfers.

    Parameters
    ----------
    config:
        Root configuration.
    node_id:
        Overrides ``config.node_id``; a random UUID is used when neither is set.
    name:
        Overrides ``config.node_name``; defaults to the hostname.
    """

    def __init__(
        self,
        config: Config,
        *,
        node_id: UUID | None = None,
        name: str = "",
    ):
        self.config = config
        self.node_id = node_id or (UUID(config.node_id) if config.node_id else uuid4())
        self.name = name or config.node_name or _default_node_name()
        self.auto_accept = config.transfer.auto_accept
        self.complete_grace = config.transfer.complete_grace

        self.registry = PeerRegistry()
        self.inbox: asyncio.Queue[Inbound] = asyncio.Queue()
        self.engine = TransferEngine(
            download_dir=config.transfer.download_path,
            chunk_size=config.transfer.chunk_size,
        )
        self.transport = LanTransport(
            self.registry,
            self.inbox,
            host=config.transport.host,
            tcp_port=config.transport.tcp_port,
            connect_timeout=config.transport.connect_timeout,
            read_timeout=config.transport.read_timeout,
            max_frame_size=config.transport.max_frame_size,
        )
        self.discovery = UDPDiscovery(
            node_id=self.node_id,
            name=self.name,
            tcp_port=config.transport.tcp_port,
            registry=self.registry,
            service_id=config.discovery.service_id,
            udp_port=config.discovery.udp_port,
            broadcast_interval=config.discovery.broadcast_interval,
            peer_timeout=config.discovery.peer_timeout,
            broadcast_address=config.discovery.broadcast_address,
            prune_interval=config.discovery.prune_interval,
        )

        self._transfers: dict[UUID, TransferRecord] = {}
        self._event_callbacks: list[EventCallback] = []
        self._dispatch_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()  # replies, pumps, expiry timers

    # -- events --------------------------------------------------------------

    def on_event(self, callback: EventCallback) -> None:
        """Register a callback for node events.

        Events: ``text``, ``offer``, ``accepted``, ``rejected``, ``progress``,
        ``sent``, ``received``, ``failed``.
        """
        self._event_callbacks.append(callback)

    def _emit(self, event: str, data: dict[str, Any]) -> None:
        for cb in self._event_callbacks:
            try:
                cb(event, data)
            except Exception as exc:
                logger.error("[Lan/Node] event callback error: {}", exc)

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Bind the transport, join discovery and start dispatching.

        Failing to bind either socket is fatal; whatever was already started is
        stopped again before the error propagates.
        """
        try:
            await self.transport.start()
        except OSError as exc:
            logger.error("[Lan/Node] transport start failed: {}", exc)
            raise
        self.discovery.tcp_port = self.transport.bound_port
        try:
            await self.discovery.start()
        except OSError as exc:
            logger.error("[Lan/Node] discovery start failed, stopping transport: {}", exc)
            await self.transport.stop()
            raise
        self._dispatch_task = supervised_task(self._dispatch_loop(), name="node-dispatch")
        logger.info(
            "[Lan/Node] started: name={!r} id={} tcp={}",
            self.name, self.node_id, self.transport.bound_port,
        )

    async def stop(self) -> None:
        """Leave discovery, stop listening and release every open file."""
        # Errors in one component must not prevent stopping the others.
        try:
            await self.discovery.stop()
        except Exception as exc:
            logger.error("[Lan/Node] discovery stop error: {}", exc)
        try:
            await self.transport.stop()
        except Exception as exc:
            logger.error("[Lan/Node] transport stop error: {}", exc)
        await cancel_task(self._dispatch_task)
        self._dispatch_task = None
        for task in list(self._background):
            await cancel_task(task)
        await self.engine.close_all()
        await self.registry.clear()
        logger.info("[Lan/Node] stopped")

    # -- queries -------------------------------------------------------------

    def list_peers(self) -> list[Peer]:
        return self.registry.list_peers()

    def transfers(self) -> list[TransferRecord]:
        return list(self._transfers.values())

    def get_transfer(self, transfer_id: UUID) -> TransferRecord | None:
        return self._transfers.get(transfer_id)

    def pending_offers(self) -> list[TransferRecord]:
        """Inbound offers still waiting for ``accept_offer``/``reject_offer``."""
        return [
            r for r in self._transfers.values()
            if r.direction == DIRECTION_IN and r.state == TransferState.OFFERED
        ]

    # -- outbound operations -------------------------------------------------

    async def send_text(self, peer_id: UUID, text: str) -> None:
        """Send a chat message. Raises ``PeerNotFound`` / ``PeerConnectionError``."""
        await self.transport.send(peer_id, Text(content=text))

    async def offer_file(self, peer_id: UUID, path: str | Path) -> TransferRecord:
        """Offer *path* to *peer_id*; chunks flow once the peer accepts."""
        if peer_id not in self.registry:
            raise PeerNotFound(peer_id)
        transfer_id, name, size = await self.engine.prepare_send(path)
        record = TransferRecord(
            id=transfer_id, name=name, size=size,
            direction=DIRECTION_OUT, peer_id=peer_id, path=str(path),
        )
        self._transfers[transfer_id] = record
        try:
            await self.transport.send(peer_id, FileOffer(id=transfer_id, name=name, size=size))
        except NexusError as exc:
            self._fail(record, exc)
            await self.engine.finalize(transfer_id)
            raise
        logger.info("[Lan/Node] offered {!r} ({} bytes) to {}", name, size, peer_id)
        return record

    async def accept_offer(self, transfer_id: UUID) -> Path:
        """Open the destination for a pending offer and tell the sender to go."""
        record = self._pending_record(transfer_id)
        try:
            path = await self.engine.prepare_receive(transfer_id, record.name, record.size)
        except (TransferError, OSError) as exc:
            self._fail(record, exc)
            await self._reply_quietly(record, FileReject(id=transfer_id))
            raise
        record.state = TransferState.ACCEPTED
        record.path = str(path)
        try:
            await self._reply(record, FileAccept(id=transfer_id))
        except NexusError as exc:
            self._fail(record, exc)
            await self.engine.cancel(transfer_id)
            raise
        self._emit("accepted", record.to_status())
        return path

    async def reject_offer(self, transfer_id: UUID) -> None:
        """Decline a pending offer."""
        record = self._pending_record(transfer_id)
        record.state = TransferState.REJECTED
        self._emit("rejected", record.to_status())
        await self._reply(record, FileReject(id=transfer_id))

    def _spawn(self, coro: Any, *, name: str) -> asyncio.Task:
        """Run *coro* off the dispatch task; it is cancelled by ``stop``."""
        task = supervised_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _pending_record(self, transfer_id: UUID) -> TransferRecord:
        record = self._transfers.get(transfer_id)
        if record is None or record.direction != DIRECTION_IN:
            raise TransferNotFound(transfer_id)
        if record.state != TransferState.OFFERED:
            raise TransferError(f"transfer {transfer_id} is already {record.state.value}")
        return record

    async def _reply(self, record: TransferRecord, message: Message) -> None:
        """Send *message* back to the node that made an inbound offer."""
        peer = None
        if record.peer_id is not None:
            peer = self.registry.get(record.peer_id)
        if peer is None and record.remote_host:
            peer = self.registry.find_by_host(record.remote_host)
        if peer is not None:
            record.peer_id = peer.id
            await self.transport.send(peer.id, message)
        elif record.remote_host:
            # Not discovered yet; every node listens on the configured port.
            await self.transport.send_to_address(
                record.remote_host, self.config.transport.tcp_port, message,
            )
        else:
            raise PeerNotFound(record.peer_id or UUID(int=0))

    async def _reply_quietly(self, record: TransferRecord, message: Message) -> None:
        try:
            await self._reply(record, message)
        except NexusError as exc:
            logger.warning("[Lan/Node] could not send {} for {}: {}", message.type.name, record.id, exc)

    # -- inbound dispatch ----------------------------------------------------

    async def _dispatch_loop(self) -> None:
        while True:
            item = await self.inbox.get()
            try:
                await self.handle(item)
            except Exception as exc:
                logger.error(
                    "[Lan/Node] failed to handle {} from {}: {}",
                    item.message.type.name, item.remote_host, exc,
                )
            finally:
                self.inbox.task_done()

    async def handle(self, item: Inbound) -> None:
        """Route one inbound message."""
        msg = item.message
        if isinstance(msg, Text):
            self._on_text(msg, item.remote_host)
        elif isinstance(msg, FileOffer):
            await self._on_offer(msg, item.remote_host)
        elif isinstance(msg, FileAccept):
            self._on_accept(msg)
        elif isinstance(msg, FileReject):
            await self._on_reject(msg)
        elif isinstance(msg, FileChunk):
            await self._on_chunk(msg)
        elif isinstance(msg, FileComplete):
            await self._on_complete(msg)

    def _on_text(self, msg: Text, remote_host: str) -> None:
        peer = self.registry.find_by_host(remote_host)
        sender = peer.name if peer else remote_host
        logger.info("[Lan/Node] text from {}", sender)
        self._emit("text", {
            "content": msg.content,
            "sender": sender,
            "peer_id": str(peer.id) if peer else "",
        })

    async def _on_offer(self, offer: FileOffer, remote_host: str) -> None:
        if offer.id in self._transfers:
            logger.warning("[Lan/Node] duplicate offer {} ignored", offer.id)
            return
        peer = self.registry.find_by_host(remote_host)
        record = TransferRecord(
            id=offer.id, name=offer.name, size=offer.size, direction=DIRECTION_IN,
            peer_id=peer.id if peer else None, remote_host=remote_host,
        )
        self._transfers[offer.id] = record
        logger.info("[Lan/Node] offer {!r} ({} bytes) from {}", offer.name, offer.size, remote_host)
        self._emit("offer", record.to_status())
        if self.auto_accept:
            # The FILE_ACCEPT connect may hang on an unreachable sender.
            self._spawn(self._auto_accept(offer.id), name=f"accept-{offer.id}")

    async def _auto_accept(self, transfer_id: UUID) -> None:
        try:
            await self.accept_offer(transfer_id)
        except (NexusError, OSError) as exc:
            logger.warning("[Lan/Node] auto-accept of {} failed: {}", transfer_id, exc)

    def _on_accept(self, msg: FileAccept) -> None:
        record = self._transfers.get(msg.id)
        if record is None or record.direction != DIRECTION_OUT or record.state != TransferState.OFFERED:
            logger.warning("[Lan/Node] unexpected FILE_ACCEPT for {}", msg.id)
            return
        record.state = TransferState.TRANSFERRING
        self._emit("accepted", record.to_status())
        self._spawn(self._pump(record), name=f"pump-{record.id}")

    async def _on_reject(self, msg: FileReject) -> None:
        record = self._transfers.get(msg.id)
        if record is None or record.direction != DIRECTION_OUT or record.state in TERMINAL_STATES:
            logger.warning("[Lan/Node] unexpected FILE_REJECT for {}", msg.id)
            return
        record.state = TransferState.REJECTED
        await self.engine.finalize(msg.id)
        logger.info("[Lan/Node] {!r} was rejected", record.name)
        self._emit("rejected", record.to_status())

    async def _on_chunk(self, msg: FileChunk) -> None:
        record = self._transfers.get(msg.id)
        try:
            complete = await self.engine.apply_chunk(msg.id, msg.offset, msg.data)
        except TransferNotFound:
            logger.warning("[Lan/Node] chunk for unknown transfer {}", msg.id)
            return
        except (TransferError, OSError) as exc:
            if record is not None:
                self._fail(record, exc)
            await self.engine.cancel(msg.id)
            return
        if record is None:
            return
        progress = self.engine.inbound_progress(msg.id)
        if progress is not None:
            record.bytes_done = progress[0]
        if complete:
            await self._finish_inbound(record)
        else:
            record.state = TransferState.TRANSFERRING
            self._emit("progress", record.to_status())

    async def _on_complete(self, msg: FileComplete) -> None:
        record = self._transfers.get(msg.id)
        if record is None or record.direction != DIRECTION_IN or record.state in TERMINAL_STATES:
            return
        progress = self.engine.inbound_progress(msg.id)
        if progress is None:
            return
        received, size = progress
        if received >= size:
            await self._finish_inbound(record)
            return
        # Each chunk has its own connection, so the last ones may still be
        # queued behind FILE_COMPLETE.
        logger.debug("[Lan/Node] FILE_COMPLETE for {} at {}/{} bytes, waiting", msg.id, received, size)
        self._spawn(self._expire_incomplete(record), name=f"expire-{record.id}")

    async def _expire_incomplete(self, record: TransferRecord) -> None:
        await asyncio.sleep(self.complete_grace)
        if record.state in TERMINAL_STATES:
            return
        progress = self.engine.inbound_progress(record.id)
        received = progress[0] if progress else record.bytes_done
        self._fail(record, TransferError(
            f"sender finished after {received} of {record.size} bytes"
        ))
        await self.engine.cancel(record.id)

    async def _finish_inbound(self, record: TransferRecord) -> None:
        record.state = TransferState.COMPLETED
        record.bytes_done = record.size
        await self.engine.finalize(record.id)
        logger.info("[Lan/Node] received {!r} into {}", record.name, record.path)
        self._emit("received", record.to_status())

    # -- chunk pump ----------------------------------------------------------

    async def _pump(self, record: TransferRecord) -> None:
        """Stream the whole file to the accepting peer, then FILE_COMPLETE."""
        offset = 0
        try:
            while True:
                data = await self.engine.read_chunk(record.id, offset)
                if data is None:
                    break
                await self.transport.send(record.peer_id, FileChunk(id=record.id, offset=offset, data=data))
                offset += len(data)
                record.bytes_done = offset
                self._emit("progress", record.to_status())
            await self.transport.send(record.peer_id, FileComplete(id=record.id))
            record.state = TransferState.COMPLETED
            logger.info("[Lan/Node] sent {!r} ({} bytes)", record.name, offset)
            self._emit("sent", record.to_status())
        except (NexusError, OSError) as exc:
            self._fail(record, exc)
        finally:
            await self.engine.finalize(record.id)

    def _fail(self, record: TransferRecord, exc: BaseException) -> None:
        record.state = TransferState.FAILED
        record.error = str(exc)
        logger.warning("[Lan/Node] transfer {} ({!r}) failed: {}", record.id, record.name, exc)
        self._emit("failed", record.to_status())


def _default_node_name() -> str:
    """Fall back to the machine's hostname as display name."""
    return socket.gethostname()
