"""peerlink console client.

Connects to the presence server as the given identity, logs who joins and
leaves, and optionally listens for or broadcasts messages for one
correlation id. Runs until interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import uuid
from typing import Iterable

from peerlink.config import get_client_config, load_env
from peerlink.manager import NetworkClientManager

log = logging.getLogger("peerlink.cli")


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("aiohttp").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _parse_args(argv: Iterable[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="peerlink presence client")
    parser.add_argument("identity", help="Display name to connect as")
    parser.add_argument(
        "--correlation-id",
        type=uuid.UUID,
        default=None,
        help="Correlation id for --listen/--send (default: random)",
    )
    parser.add_argument(
        "--listen",
        action="append",
        default=[],
        metavar="EVENT",
        help="Log JSON payloads received for EVENT (repeatable)",
    )
    parser.add_argument(
        "--send",
        nargs=2,
        metavar=("EVENT", "JSON"),
        default=None,
        help="Broadcast JSON to all peers once connected",
    )
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(list(argv))


async def run(args: argparse.Namespace) -> None:
    load_env()
    cfg = get_client_config()
    correlation_id = args.correlation_id or uuid.uuid4()

    manager = NetworkClientManager.from_config(cfg)
    manager.on_connected = lambda: log.info(f"Connected to {cfg.url} as {args.identity}")
    manager.on_disconnected = lambda: log.warning("Disconnected; retrying")
    manager.on_peer_connected = lambda peer: log.info(
        f"+ {peer.display_name} ({peer.connection_id})"
    )
    manager.on_peer_disconnected = lambda peer: log.info(
        f"- {peer.display_name} ({peer.connection_id})"
    )

    for event_name in args.listen:
        manager.register_handler(
            event_name,
            correlation_id,
            lambda value, name=event_name: log.info(f"[{name}] {json.dumps(value)}"),
        )

    send_payload = json.loads(args.send[1]) if args.send else None

    log.info(f"Correlation id: {correlation_id}")
    try:
        await manager.connect(args.identity)
        if args.send:
            manager.send_to_all(args.send[0], correlation_id, send_payload)
            await manager.flush()
        while not manager.disposed:
            await asyncio.sleep(1)
    finally:
        await manager.dispose()


def main(argv: Iterable[str]) -> int:
    args = _parse_args(argv)
    _configure_logging(args.verbose)
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        log.info("Shutting down...")
    return 0


def _console_main() -> int:
    return main(sys.argv[1:])
