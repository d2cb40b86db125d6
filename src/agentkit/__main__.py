"""Entry point for running the agentkit session server.

Usage:
    python -m agentkit
    python -m agentkit --port 3100 --cwd ~/work/project -vvv

Serves the session WebSocket at ``/ws`` plus ``/api/status`` and
``/api/sessions``.
"""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from pathlib import Path

from agentkit import __version__
from agentkit.logging import get_logger, setup_logging

log = get_logger()


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="agentkit",
        description="WebSocket session server for the Claude agent CLI",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--host", help="Interface to bind (default: config server.host)")
    parser.add_argument("--port", type=int, help="Port to listen on (default: config server.port)")
    parser.add_argument(
        "--cwd",
        type=Path,
        help="Workspace for new sessions; also the project config root",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=None,
        help="Increase verbosity (-v warning, -vv info, -vvv verbose, -vvvv trace)",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """Run the agentkit server."""
    from agentkit.config import load_config
    from agentkit.server import serve

    args = create_parser().parse_args(argv)

    project_root = str(args.cwd.expanduser().resolve()) if args.cwd else None

    # Load config before logging so we can use config.logging settings
    config = load_config(project_root=project_root)
    setup_logging(config.logging, verbose=args.verbose)

    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    if project_root:
        config.agent.cwd = project_root

    log.info(
        "Starting agentkit %s (cwd=%s, model=%s)",
        __version__,
        config.agent.cwd or Path.cwd(),
        config.agent.model or "default",
    )

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        log.info("Interrupted, exiting")


if __name__ == "__main__":
    main()
