#!/usr/bin/env python3
"""
DiceKV Server Entry Point

This is the main entry point for starting the DiceKV server.

Usage:
    python -m dicekv.server                    # Default settings (0.0.0.0:7379)
    python -m dicekv.server --port 8080        # Custom port
    python -m dicekv.server --host 127.0.0.1   # Custom host
    python -m dicekv.server --debug            # Enable debug logging
    python -m dicekv.server --max-keys 5000    # Bound the keyspace (LRU eviction)

Environment Variables:
    DICEKV_HOST          - Server bind address
    DICEKV_PORT          - Server port
    DICEKV_MAX_KEYS      - Maximum number of keys (0 = unbounded)
    DICEKV_IDLE_TIMEOUT  - Idle connection timeout in seconds (0 = never)
    DICEKV_DEBUG         - Enable debug mode (true/false)
    DICEKV_LOG_LEVEL     - Log level when not in debug mode

Exit Codes:
    0 - Clean shutdown
    2 - Invalid command line arguments
    3 - The listening socket could not be bound
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from .cache.store import KVStore
from .config.settings import settings
from .network.tcp_server import BindError, DiceServer

EXIT_OK = 0
EXIT_BIND_FAILURE = 3


def port_number(value: str) -> int:
    """argparse type for a TCP port in the range 1-65535."""
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {value!r}") from None
    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port must be between 1 and 65535, got {port}")
    return port


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="DiceKV: In-Memory Key-Value Server",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--host",
        type=str,
        default=settings.HOST,
        help="Host address to bind to",
    )

    parser.add_argument(
        "--port",
        type=port_number,
        default=settings.PORT,
        help="Port number to listen on",
    )

    parser.add_argument(
        "--max-keys",
        type=int,
        default=settings.MAX_KEYS,
        help="Maximum number of keys in the store (0 = unbounded)",
    )

    parser.add_argument(
        "--idle-timeout",
        type=float,
        default=settings.CONNECTION_TIMEOUT,
        help="Seconds before an idle connection is closed (0 = never)",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        default=settings.DEBUG,
        help="Enable debug logging",
    )

    return parser.parse_args(argv)


def setup_logging(debug: bool = False) -> None:
    """Configure logging based on debug flag."""
    level = logging.DEBUG if debug else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
        ]
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the server."""
    args = parse_args(argv)

    # Setup logging
    setup_logging(debug=args.debug)
    logger = logging.getLogger(__name__)

    store = KVStore(max_size=args.max_keys)
    server = DiceServer(
        host=args.host,
        port=args.port,
        store=store,
        idle_timeout=args.idle_timeout,
    )

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    async def shutdown(sig: signal.Signals) -> None:
        """Handle shutdown signal."""
        logger.info(f"Received signal {sig.name}, initiating shutdown...")
        await server.stop()

    # Register signal handlers (Unix only)
    shutdowns = []
    if sys.platform != 'win32':
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: shutdowns.append(asyncio.ensure_future(shutdown(s)))
            )

    # Log startup info
    logger.info("Rolling the dice: starting DiceKV server")
    logger.info(f"  Host: {args.host}")
    logger.info(f"  Port: {args.port}")
    logger.info(f"  Max keys: {args.max_keys or 'unbounded'}")
    logger.info(f"  Idle timeout: {args.idle_timeout or 'never'}")
    logger.info(f"  Debug: {args.debug}")

    exit_code = EXIT_OK
    try:
        loop.run_until_complete(server.start())
        # start() returns as soon as the listener closes; let the drain finish
        if shutdowns:
            loop.run_until_complete(asyncio.gather(*shutdowns))
    except BindError as exc:
        logger.critical(f"{exc}")
        exit_code = EXIT_BIND_FAILURE
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
        loop.run_until_complete(server.stop())
    finally:
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()
        asyncio.set_event_loop(None)
        logger.info("Server shutdown complete")

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
