#!/usr/bin/env python3
"""Submit a withdrawal proof to the destination process.

Requests a proof for a wallet address from the proof-generation service
(or reads a JSON proof from a file), normalizes it and sends it as a
signed ``Bridge`` message.
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from bridge_oracle.config import OracleConfig
from bridge_oracle.errors import OracleError
from bridge_oracle.message_sender import MessageSender
from bridge_oracle.proof_pipeline import (
    ProofInput,
    ProofServiceClient,
    ProofSubmitter,
    RawStringProof,
    StructuredProof,
)
from bridge_oracle.utils.wallet_utility import load_credential

logger = logging.getLogger(__name__)


async def main() -> int:
    """Generate (or load) a proof and submit it.

    Returns:
        Process exit status: 0 on delivery, 1 on any failure
    """
    load_dotenv()

    parser = argparse.ArgumentParser(description="Submit a bridge withdrawal proof")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--address", help="EVM wallet address to generate a proof for")
    source.add_argument("--proof-file", type=Path, help="JSON file with {withdraw, receipt}")
    parser.add_argument("--withdraw", help="Withdrawal address (required with --address)")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.address and not args.withdraw:
        parser.error("--withdraw is required with --address")

    try:
        config = OracleConfig.from_env()
        credential = load_credential(config.wallet.wallet_file, config.wallet.password)

        proof: ProofInput
        if args.proof_file:
            proof = RawStringProof(args.proof_file.read_text())
        else:
            client = ProofServiceClient(
                config.proof_service.base_url, config.proof_service.request_timeout
            )
            proof = StructuredProof(await client.generate(args.address), args.withdraw)

        submitter = ProofSubmitter(
            sender=MessageSender(config.destination.message_url, config.destination.request_timeout),
            credential=credential,
            process_id=config.destination.process_id,
        )
        receipt = await submitter.submit(proof)
    except (ValueError, OSError, OracleError) as e:
        logger.error(f"Bridge submission failed: {e}")
        return 1

    print(receipt.message_id or "submitted")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
