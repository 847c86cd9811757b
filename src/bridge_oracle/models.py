#!/usr/bin/env python3
"""Data models for the bridge oracle.

This module provides immutable data classes for block descriptors, outbound
message envelopes and delivery receipts used throughout the relay.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class RelayState(Enum):
    """Lifecycle states of the relay oracle."""
    IDLE = "idle"
    SUBSCRIBED = "subscribed"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class NewBlockEvent:
    """A new-block notification from the chain client.

    Polling subscriptions only know the number; websocket subscriptions
    also carry the raw header, which may or may not be complete.

    Attributes:
        block_number: Number of the announced block
        header: Raw header mapping when the transport delivered one
    """

    block_number: int
    header: dict[str, Any] | None = field(default=None, compare=False)


@dataclass(frozen=True, slots=True)
class BlockDescriptor:
    """Canonical summary of a chain block, relayed as an ``updateState`` payload.

    Attributes:
        network_id: Chain ID of the source network, as a decimal string
        block_number: The block number
        timestamp: Block timestamp (Unix seconds)
        block_hash: Lowercase 0x-prefixed 32-byte hash
    """

    network_id: str
    block_number: int
    timestamp: int
    block_hash: str

    def __str__(self) -> str:
        """Human-readable string representation."""
        return (
            f"BlockDescriptor(network={self.network_id}, "
            f"number={self.block_number}, "
            f"hash={self.block_hash[:10]}...)"
        )

    def to_payload(self) -> dict[str, str]:
        """Convert to the JSON shape consumed by the destination process."""
        return {
            "network": self.network_id,
            "blockNumber": str(self.block_number),
            "timestamp": str(self.timestamp),
            "blockHash": self.block_hash,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_payload())


@dataclass(frozen=True, slots=True)
class MessageEnvelope:
    """A signed, addressed message for the destination ledger.

    Constructed fresh for every delivery attempt and never reused.

    Attributes:
        process: Destination process ID
        action: Value of the ``Action`` tag
        data: Serialized payload (JSON text)
        owner: Address of the signing credential
        signature: 0x-prefixed EIP-191 signature over the canonical message
    """

    process: str
    action: str
    data: str
    owner: str
    signature: str

    @property
    def tags(self) -> list[dict[str, str]]:
        return [{"name": "Action", "value": self.action}]

    def to_wire(self) -> dict[str, Any]:
        """Body POSTed to the message-ingestion endpoint."""
        return {
            "process": self.process,
            "tags": self.tags,
            "data": self.data,
            "owner": self.owner,
            "signature": self.signature,
        }


@dataclass(frozen=True, slots=True)
class DeliveryReceipt:
    """Acknowledgement returned by the message-ingestion endpoint.

    Attributes:
        message_id: ID assigned by the endpoint, if it returned one
        status_code: HTTP status of the accepted request
    """

    message_id: str | None
    status_code: int
