#!/usr/bin/env python3
"""Entry point for the bridge relay oracle.

Watches the configured EVM chain for new blocks and relays each one to the
destination process until interrupted.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys

from dotenv import load_dotenv


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

from bridge_oracle.config import OracleConfig
from bridge_oracle.errors import ChainConnectionError, CredentialError
from bridge_oracle.message_sender import MessageSender
from bridge_oracle.relay_oracle import RelayOracle, RelaySession
from bridge_oracle.utils.wallet_utility import load_credential


def install_signal_handlers(oracle: RelayOracle) -> None:
    """Route SIGINT and SIGTERM to a graceful drain."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, oracle.request_stop)


async def main() -> int:
    """Main entry point for the relay oracle.

    Returns:
        Process exit status: 0 after a clean stop, 1 on startup failure
    """
    load_dotenv()

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Bridge Relay Oracle - Relay EVM blocks to the destination process",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  NODE_ENV          - Network: local (Anvil) or test (Sepolia), default local
  ANVIL_PORT        - Anvil RPC port when NODE_ENV=local (default: 8545)
  SEPOLIA_RPC_URL   - RPC endpoint, required when NODE_ENV=test
  AO_PROCESS_ID     - Destination process ID
  AO_MU_URL         - Message-ingestion endpoint
  WALLET_FILE       - Signing credential file (default: wallet.json)
  WALLET_PASSWORD   - Password for keystore wallet files
  LOG_LEVEL         - Logging level (can be overridden with --log-level)
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
    logger.info("=== Bridge Relay Oracle Starting ===")

    try:
        config: OracleConfig = OracleConfig.from_env()
        config.log_config()
        credential = load_credential(config.wallet.wallet_file, config.wallet.password)
    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - NODE_ENV: local or test")
        logger.error("  - SEPOLIA_RPC_URL: required when NODE_ENV=test")
        logger.error("  - AO_PROCESS_ID: destination process ID")
        return 1
    except CredentialError as e:
        logger.error(f"Credential Error: {e}")
        return 1

    session = RelaySession(
        chain_config=config.chain,
        queue_size=config.retry.queue_size,
        request_timeout=config.destination.request_timeout,
    )
    oracle = RelayOracle(
        session=session,
        sender=MessageSender(config.destination.message_url, config.destination.request_timeout),
        credential=credential,
        process_id=config.destination.process_id,
        retry=config.retry,
    )

    try:
        await oracle.start()
    except ChainConnectionError as e:
        logger.error(f"Error starting watcher: {e}")
        await session.close()
        return 1

    install_signal_handlers(oracle)

    try:
        await oracle.run()
    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        return 1

    logger.info("🛑 Block watcher stopped")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
