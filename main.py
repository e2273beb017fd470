#!/usr/bin/env python3
"""Entry point for the GMP Relayer service.

Runs the relayer and, unless disabled, the operator status API on the same
event loop.
"""

import argparse
import asyncio
import logging
import os
import sys

import uvicorn


# Configure logging before any other imports create loggers
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

from gmp_relayer.api import create_api_application
from gmp_relayer.config import RelayerConfig
from gmp_relayer.errors import ConfigurationError
from gmp_relayer.relayer import GMPRelayer


async def serve(relayer: GMPRelayer, port: int, log_level: str) -> None:
    """Run the relayer with the status API; stop the API when the relayer exits."""
    server = uvicorn.Server(
        uvicorn.Config(
            create_api_application(relayer),
            host="0.0.0.0",
            port=port,
            log_level=log_level.lower(),
        )
    )
    api_task = asyncio.create_task(server.serve())
    # uvicorn handles SIGINT/SIGTERM itself; its exit drains the relayer too
    api_task.add_done_callback(lambda _: relayer.stop())
    logger.info(f"Status API listening on port {port}")

    try:
        await relayer.run()
    finally:
        server.should_exit = True
        await api_task


async def main() -> None:
    """Main entry point for the GMP Relayer service.

    Raises:
        SystemExit: On configuration or runtime errors
    """
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="GMP Relayer - relay gateway messages between EVM chains",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  RELAYER_CONFIG       - Path of the JSON configuration (default: config.json)
  RELAYER_PRIVATE_KEY  - Relayer signing key (overrides relayerPrivateKey)
  POLLING_INTERVAL     - Polling interval in seconds
  GAS_LIMIT            - Gas cap for submitted transactions
  STATE_FILE           - Processed-state file (omit to keep state in memory)
  HEALTH_CHECK_PORT    - Port of the status API
  LOG_LEVEL            - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path of the JSON configuration file (overrides RELAYER_CONFIG)"
    )
    parser.add_argument(
        "--no-api",
        action="store_true",
        default=False,
        help="Do not start the status API"
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    args: argparse.Namespace = parser.parse_args()

    setup_logging(args.log_level)
    logger.info("=== GMP Relayer Starting ===")

    if args.config:
        os.environ["RELAYER_CONFIG"] = args.config

    try:
        config: RelayerConfig = RelayerConfig.from_env()
        config.log_config()
        relayer: GMPRelayer = GMPRelayer(config)

        if args.no_api:
            await relayer.run()
        else:
            await serve(relayer, config.health_check_port, args.log_level)

    except ConfigurationError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your configuration file and environment variables:")
        logger.error("  - RELAYER_CONFIG: JSON file with `chains` and `relayerPrivateKey`")
        logger.error("  - RELAYER_PRIVATE_KEY: Relayer signing key")
        sys.exit(1)

    except KeyboardInterrupt:
        logger.info("\nReceived interrupt signal, shutting down gracefully...")
        sys.exit(0)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
