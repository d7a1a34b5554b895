#!/usr/bin/env python3
"""Main entry point for multichat."""

import argparse
import logging
import sys
from pathlib import Path

from aiohttp import web

from .core.settings import Settings


def setup_logging(debug: bool = False) -> None:
    """Set up logging configuration."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    # Suppress noisy third-party loggers
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("TikTokLive").setLevel(logging.WARNING)
    logging.getLogger("pytchat").setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="multichat", description="Aggregate live chat into one WebSocket stream."
    )
    parser.add_argument("--config", type=Path, help="Path to settings.json")
    parser.add_argument("--host", help="Interface to listen on")
    parser.add_argument("--port", type=int, help="Port to listen on")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(args.debug)
    logger = logging.getLogger(__name__)

    settings = Settings.load(args.config)
    if args.host:
        settings.server.host = args.host
    if args.port:
        settings.server.port = Settings._validate_int(
            args.port, settings.server.port, min_val=1, max_val=65535
        )
    if args.debug:
        settings.debug = True
    if settings.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    from .server import create_app

    app = create_app(settings)
    logger.info(f"Listening on ws://{settings.server.host}:{settings.server.port}")
    web.run_app(
        app,
        host=settings.server.host,
        port=settings.server.port,
        print=None,
        shutdown_timeout=settings.server.shutdown_timeout,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
