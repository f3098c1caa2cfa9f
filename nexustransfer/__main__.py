"""Command-line entry point: ``python -m nexustransfer``."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from nexustransfer import __version__
from nexustransfer.cli.shell import Shell
from nexustransfer.config import Config, load_config
from nexustransfer.lan.node import TransferNode


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nexustransfer",
        description="Chat and send files to machines on the local network.",
    )
    parser.add_argument("--config", type=Path, default=None, help="path to a JSON config file")
    parser.add_argument("--name", default="", help="display name advertised to peers")
    parser.add_argument("--port", type=int, default=None, help="TCP port for incoming messages")
    parser.add_argument("--downloads", default=None, help="directory for received files")
    parser.add_argument("--log-level", default=None, help="loguru level (default from config)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def apply_args(config: Config, args: argparse.Namespace) -> Config:
    """Overlay command-line options on the loaded configuration."""
    if args.name:
        config.node_name = args.name
    if args.port is not None:
        config.transport.tcp_port = args.port
    if args.downloads:
        config.transfer.download_dir = args.downloads
    if args.log_level:
        config.log_level = args.log_level.upper()
    return config


def ask_name() -> str:
    while True:
        name = input("Enter your name: ").strip()
        if name:
            return name


async def run(config: Config) -> int:
    node = TransferNode(config)
    try:
        await node.start()
    except OSError as exc:
        logger.error("[Shell] could not start: {}", exc)
        return 1
    try:
        await Shell(node).run()
    finally:
        await node.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = apply_args(load_config(args.config), args)
    except ValidationError as exc:
        logger.error("[Shell] invalid configuration: {}", exc)
        return 2

    logger.remove()
    logger.add(sys.stderr, level=config.log_level)

    if not config.node_name:
        try:
            config.node_name = ask_name()
        except (EOFError, KeyboardInterrupt):
            return 1
    try:
        return asyncio.run(run(config))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
