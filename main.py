#!/usr/bin/env python3
"""Entry point for the Bridge Relayer service.

Loads configuration from the environment, then runs the relayer until
SIGINT or SIGTERM requests a graceful shutdown.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


# Get logger for this module
logger = logging.getLogger(__name__)

from bridge_relayer.errors import CatchUpError
from bridge_relayer.relayer import RelayerService


async def main() -> None:
    """Main entry point for the Bridge Relayer.

    Raises:
        SystemExit: On configuration or startup errors
    """
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Bridge Relayer - relay lock events into settlements on the target chain",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  CHAINS                 - Comma-separated chain names (default: ethereum,polygon)
  <NAME>_RPC_URL         - RPC endpoint per chain
  <NAME>_BRIDGE_ADDRESS  - Bridge contract address per chain
  <NAME>_PRIVATE_KEY     - Signing key per chain (or RELAYER_PRIVATE_KEY)
  USE_KMS                - Resolve keys through KMS_PROVIDER (local, vault, rofl)
  DATABASE_URL           - SQLAlchemy URL for persistent queue state
  LOG_LEVEL              - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    args: argparse.Namespace = parser.parse_args()

    setup_logging(args.log_level)
    logger.info("=== Bridge Relayer Starting ===")

    try:
        relayer: RelayerService = RelayerService.from_env()
    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - <NAME>_BRIDGE_ADDRESS: Bridge contract address for every chain in CHAINS")
        logger.error("  - <NAME>_PRIVATE_KEY or RELAYER_PRIVATE_KEY: Relayer signing key")
        logger.error("  - USE_KMS=true with <NAME>_KEY_ID: Key id in the secret store")
        sys.exit(1)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, relayer.stop)

    try:
        await relayer.run()
    except CatchUpError as e:
        logger.error(f"Startup failed: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
