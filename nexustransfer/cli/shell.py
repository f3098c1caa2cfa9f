"""Interactive prompt on top of a running ``TransferNode``."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable
from uuid import UUID

from loguru import logger

from nexustransfer.lan.errors import NexusError
from nexustransfer.lan.node import DIRECTION_OUT, TransferNode

USAGE = {
    "peers": "/peers",
    "send": "/send <peer-id> <text>",
    "file": "/file <peer-id> <path>",
    "accept": "/accept <transfer-id>",
    "reject": "/reject <transfer-id>",
    "transfers": "/transfers",
    "quit": "/quit",
    "help": "/help",
}

# Minimum number of arguments per command; the last one swallows the rest of the line.
_ARITY = {
    "peers": 0,
    "send": 2,
    "file": 2,
    "accept": 1,
    "reject": 1,
    "transfers": 0,
    "quit": 0,
    "help": 0,
}


class CommandError(ValueError):
    """A prompt line is not a valid command."""


@dataclass(frozen=True)
class Command:
    name: str
    args: tuple[str, ...] = field(default_factory=tuple)


def parse_command(line: str) -> Command:
    """Split a prompt line into a ``Command``.

    ``/send`` keeps everything after the peer id as one argument so the text
    may contain spaces; ``/file`` does the same for paths.
    """
    line = line.strip()
    if not line.startswith("/"):
        raise CommandError("commands start with '/'; try /help")
    head, _, rest = line[1:].partition(" ")
    name = head.lower()
    if name not in _ARITY:
        raise CommandError(f"unknown command /{head}; try /help")
    arity = _ARITY[name]
    if arity == 0:
        return Command(name)
    parts = rest.strip().split(None, arity - 1) if rest.strip() else []
    if len(parts) < arity:
        raise CommandError(f"usage: {USAGE[name]}")
    return Command(name, tuple(parts))


def parse_uuid(value: str, what: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        raise CommandError(f"not a valid {what} id: {value!r}") from None


def format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


class Shell:
    """Reads commands from stdin and prints node events.

    *read_line* and *write* are injectable so the shell can be driven without a
    terminal.
    """

    def __init__(
        self,
        node: TransferNode,
        *,
        read_line: Callable[[str], str] = input,
        write: Callable[[str], Any] = print,
    ):
        self.node = node
        self._read_line = read_line
        self._write = write
        node.on_event(self.on_event)

    async def run(self) -> None:
        """Prompt until ``/quit`` or end of input."""
        self._write(f"{self.node.name} is online. Type /help for commands.")
        while True:
            try:
                line = await asyncio.to_thread(self._read_line, "> ")
            except EOFError:
                break
            if not line.strip():
                continue
            try:
                command = parse_command(line)
            except CommandError as exc:
                self._write(str(exc))
                continue
            if command.name == "quit":
                break
            try:
                await self.execute(command)
            except CommandError as exc:
                self._write(str(exc))
            except (NexusError, OSError) as exc:
                logger.debug("[Shell] /{} failed: {!r}", command.name, exc)
                self._write(f"error: {exc}")

    async def execute(self, command: Command) -> None:
        node = self.node
        if command.name == "help":
            self._write("commands: " + ", ".join(USAGE.values()))
        elif command.name == "peers":
            peers = node.list_peers()
            if not peers:
                self._write("no peers discovered yet")
            for peer in peers:
                self._write(f"  {peer.id}  {peer.name}  {peer.address}")
        elif command.name == "send":
            peer_id = parse_uuid(command.args[0], "peer")
            await node.send_text(peer_id, command.args[1])
        elif command.name == "file":
            peer_id = parse_uuid(command.args[0], "peer")
            record = await node.offer_file(peer_id, Path(command.args[1]).expanduser())
            self._write(f"offered {record.name} ({format_size(record.size)}) as {record.id}")
        elif command.name == "accept":
            path = await node.accept_offer(parse_uuid(command.args[0], "transfer"))
            self._write(f"receiving into {path}")
        elif command.name == "reject":
            await node.reject_offer(parse_uuid(command.args[0], "transfer"))
        elif command.name == "transfers":
            records = node.transfers()
            if not records:
                self._write("no transfers")
            for r in records:
                arrow = "->" if r.direction == DIRECTION_OUT else "<-"
                line = f"  {r.id}  {arrow} {r.name}  {r.state.value}  {r.progress:.0%}"
                if r.error:
                    line += f"  ({r.error})"
                self._write(line)

    def on_event(self, event: str, data: dict[str, Any]) -> None:
        """Render node events for the terminal."""
        if event == "text":
            self._write(f"[{data['sender']}] {data['content']}")
        elif event == "offer":
            hint = "" if self.node.auto_accept else f"  (/accept {data['id']} or /reject {data['id']})"
            self._write(f"incoming file {data['name']} ({format_size(data['size'])}){hint}")
        elif event == "sent":
            self._write(f"sent {data['name']}")
        elif event == "received":
            self._write(f"received {data['name']} -> {data['path']}")
        elif event == "rejected":
            self._write(f"{data['name']} was rejected")
        elif event == "failed":
            self._write(f"transfer of {data['name']} failed: {data['error']}")
