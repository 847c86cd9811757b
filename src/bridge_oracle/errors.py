#!/usr/bin/env python3
"""Error taxonomy for the bridge oracle.

Per-block errors are caught by the relay loop; only startup failures
(chain connection, credential loading, configuration) end the process.
"""


class OracleError(Exception):
    """Base class for all bridge oracle errors."""


class ChainConnectionError(OracleError):
    """The RPC endpoint is unreachable or returned a transport fault."""


class BlockNotFoundError(OracleError):
    """The chain has no block with the requested number (yet)."""

    def __init__(self, block_number: int) -> None:
        super().__init__(f"Block {block_number} not found")
        self.block_number = block_number


class IncompleteBlockError(OracleError):
    """A fetched block is missing number, timestamp or hash."""

    def __init__(self, block_number: int | None, missing: list[str]) -> None:
        super().__init__(
            f"Block {block_number} is missing required fields: {', '.join(missing)}"
        )
        self.block_number = block_number
        self.missing = missing


class CredentialError(OracleError):
    """The signing credential file cannot be read or decoded."""


class SigningError(OracleError):
    """The credential could not sign a message payload."""


class DeliveryError(OracleError):
    """The message-ingestion endpoint was unreachable or rejected a message.

    Attributes:
        retryable: True for network faults, timeouts, 5xx, 408 and 429
        status_code: HTTP status when the endpoint answered, else None
    """

    def __init__(self, message: str, retryable: bool, status_code: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code

    def __str__(self) -> str:
        kind = "retryable" if self.retryable else "terminal"
        return f"{super().__str__()} ({kind})"


class InvalidProofError(OracleError):
    """A proof submission is malformed and was rejected before delivery."""


class ProofGenerationError(OracleError):
    """The proof-generation service failed or returned an error body."""
