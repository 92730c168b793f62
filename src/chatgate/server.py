"""Command line entry points: run the gateway, or replay frames through the core."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Dict, Iterable, TextIO

from aiohttp import web

from .calls import CallRelay
from .config import load_config_from_env
from .conversations import ConversationStore
from .hub import Connection, Frame
from .presence import PresenceRegistry
from .routing import Router
from .ws_transport import create_app, dispatch_frame

logger = logging.getLogger(__name__)


def simulate(frames: Iterable[dict], output: TextIO) -> None:
    """Process JSON frames through the routing core and emit every delivery.

    ``connect``/``disconnect`` frames attach or detach an in-memory connection
    for ``user_id``; any other frame is applied as that user's event. Each
    delivered or replied frame is written as one JSON line tagged with ``to``.
    """

    presence = PresenceRegistry()
    router = Router(presence=presence, store=ConversationStore())
    calls = CallRelay(router)
    connections: Dict[str, Connection] = {}

    def emit(user_id: str, frame: Frame) -> None:
        output.write(json.dumps({"to": user_id, **frame}) + "\n")

    for frame in frames:
        frame_type = frame.get("t")
        user_id = frame.get("user_id")
        if not isinstance(user_id, str) or not user_id:
            raise ValueError(f"frame without user_id: {frame}")
        if frame_type == "connect":
            connection = Connection(user_id=user_id, callback=lambda f, u=user_id: emit(u, f))
            connections[user_id] = connection
            presence.set_online(user_id, connection)
        elif frame_type == "disconnect":
            connection = connections.pop(user_id, None)
            if connection is not None and presence.clear(connection) is not None:
                calls.drop_user(user_id)
        else:
            reply = dispatch_frame(router, calls, user_id, {"v": 1, **frame})
            if reply is not None:
                emit(user_id, reply)


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    if args.file is None:
        frames = _load_frames(sys.stdin)
    else:
        with args.file as handle:
            frames = _load_frames(handle)
    simulate(frames, output)
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    config = load_config_from_env().with_overrides(
        host=args.host,
        port=args.port,
        ping_interval_s=args.ping_interval,
        upload_dir=args.upload_dir,
        log_level=args.log_level,
    )
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("starting chatgate on %s:%s", config.host, config.port)
    web.run_app(create_app(config), host=config.host, port=config.port, print=None)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(prog="chatgate", description="Real-time chat gateway")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay event frames through the routing core")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp gateway server")
    serve_parser.add_argument("--host", default=None, help="Host to bind (CHATGATE_HOST)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind (CHATGATE_PORT)")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=None,
        help="Seconds between heartbeat pings (CHATGATE_PING_INTERVAL_S)",
    )
    serve_parser.add_argument("--upload-dir", default=None, help="Directory for uploaded media (CHATGATE_UPLOAD_DIR)")
    serve_parser.add_argument("--log-level", default=None, help="Logging level (CHATGATE_LOG_LEVEL)")

    args = parser.parse_args(argv)

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
