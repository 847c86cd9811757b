#!/usr/bin/env python3
"""Block descriptor construction.

Turns raw block headers into canonical BlockDescriptor values, fetching the
full block from the chain when the new-block event only carries a number.
"""

import logging
from collections.abc import Mapping
from typing import Any, Protocol

from .errors import BlockNotFoundError, ChainConnectionError, IncompleteBlockError
from .models import BlockDescriptor, NewBlockEvent

logger = logging.getLogger(__name__)

REQUIRED_FIELDS: tuple[str, ...] = ("number", "timestamp", "hash")


class BlockSource(Protocol):
    async def get_block_by_number(self, block_number: int) -> Mapping[str, Any]: ...


def normalize_block_hash(block_hash: Any) -> str:
    """Convert a block hash (bytes or hex string) to lowercase 0x-prefixed hex.

    Raises:
        ValueError: If the value is not a 32-byte hash
    """
    if isinstance(block_hash, (bytes, bytearray)):
        hex_str = bytes(block_hash).hex()
    elif isinstance(block_hash, str):
        hex_str = block_hash.lower().removeprefix("0x")
    else:
        raise ValueError(f"Unsupported block hash type: {type(block_hash).__name__}")

    if len(hex_str) != 64:
        raise ValueError(f"Block hash must be 32 bytes, got {len(hex_str) // 2}")
    int(hex_str, 16)
    return "0x" + hex_str


def build(header: Mapping[str, Any], network_id: str) -> BlockDescriptor:
    """
    Build a descriptor from a full block header.

    Args:
        header: Block data with number, timestamp and hash
        network_id: Chain ID of the source network

    Returns:
        BlockDescriptor for the block

    Raises:
        IncompleteBlockError: If a required field is missing or malformed
    """
    missing = [name for name in REQUIRED_FIELDS if header.get(name) is None]
    if missing:
        raise IncompleteBlockError(header.get("number"), missing)

    try:
        block_hash = normalize_block_hash(header["hash"])
    except ValueError as e:
        logger.warning(f"Malformed hash in block {header['number']}: {e}")
        raise IncompleteBlockError(header["number"], ["hash"]) from e

    try:
        block_number = int(header["number"])
        timestamp = int(header["timestamp"])
    except (TypeError, ValueError) as e:
        logger.warning(f"Non-numeric number or timestamp in block {header['number']}: {e}")
        raise IncompleteBlockError(header["number"], ["number", "timestamp"]) from e

    return BlockDescriptor(
        network_id=network_id,
        block_number=block_number,
        timestamp=timestamp,
        block_hash=block_hash,
    )


class DescriptorBuilder:
    """Resolves new-block events into descriptors.

    A block that comes back incomplete, unknown to the node, or lost to a
    transport fault is fetched once more before the error is surfaced.
    """

    def __init__(self, source: BlockSource, network_id: str) -> None:
        self.source = source
        self.network_id = network_id

    async def build(self, event: NewBlockEvent) -> BlockDescriptor:
        """
        Build the descriptor for a new-block event.

        Raises:
            IncompleteBlockError: If the block is still incomplete after one retry
            ChainConnectionError: If fetching fails twice at the transport level
        """
        if event.header is not None:
            try:
                return build(event.header, self.network_id)
            except IncompleteBlockError:
                logger.debug(f"Header for block {event.block_number} is partial, fetching full block")

        try:
            return await self._fetch_and_build(event.block_number)
        except (IncompleteBlockError, BlockNotFoundError, ChainConnectionError) as e:
            logger.warning(f"Block {event.block_number} unavailable ({e}), retrying once")

        try:
            return await self._fetch_and_build(event.block_number)
        except BlockNotFoundError as e:
            raise IncompleteBlockError(event.block_number, list(REQUIRED_FIELDS)) from e

    async def _fetch_and_build(self, block_number: int) -> BlockDescriptor:
        block = await self.source.get_block_by_number(block_number)
        return build(block, self.network_id)
