#!/usr/bin/env python3
"""Proof pipeline for bridge withdrawals.

Requests a receipt for a wallet address from the proof-generation service,
normalizes the two shapes a proof can arrive in, and submits the result to
the destination process as a signed ``Bridge`` message.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx
from eth_account.signers.local import LocalAccount
from web3 import Web3

from .errors import InvalidProofError, ProofGenerationError
from .message_sender import MessageSender
from .models import DeliveryReceipt

logger = logging.getLogger(__name__)

BRIDGE_ACTION = "Bridge"


@dataclass(frozen=True, slots=True)
class RawStringProof:
    """A proof submitted as JSON text: ``{"withdraw": ..., "receipt": "<json>"}``."""

    text: str


@dataclass(frozen=True, slots=True)
class StructuredProof:
    """A proof-service response ``{"Ok": {"receipt": ...}}`` plus the withdrawal address."""

    response: Any
    withdraw: str


ProofInput = RawStringProof | StructuredProof


@dataclass(frozen=True, slots=True)
class ProofSubmission:
    """Canonical proof payload sent to the destination process.

    Attributes:
        receipt: Parsed receipt (structured JSON value)
        withdraw: Withdrawal address on the destination ledger
    """

    receipt: Any
    withdraw: str

    def to_payload(self) -> dict[str, Any]:
        return {"withdraw": self.withdraw, "receipt": self.receipt}

    def to_json(self) -> str:
        return json.dumps(self.to_payload())


def _parse_receipt(receipt: Any) -> Any:
    # String receipts are themselves JSON documents and need one more parse
    if isinstance(receipt, str):
        try:
            return json.loads(receipt)
        except json.JSONDecodeError as e:
            raise InvalidProofError(f"Receipt is not valid JSON: {e}") from e
    return receipt


def normalize_proof(proof: ProofInput) -> ProofSubmission:
    """
    Normalize either proof shape into a ProofSubmission.

    Raises:
        InvalidProofError: If the input cannot be parsed or lacks
            a receipt or withdrawal address
    """
    match proof:
        case RawStringProof(text=text):
            try:
                body = json.loads(text)
            except (json.JSONDecodeError, TypeError) as e:
                raise InvalidProofError(f"Proof is not valid JSON: {e}") from e
            if not isinstance(body, dict):
                raise InvalidProofError("Proof must be a JSON object")
            withdraw = body.get("withdraw")
            receipt = body.get("receipt")

        case StructuredProof(response=response, withdraw=withdraw):
            match response:
                case {"Ok": {"receipt": receipt}}:
                    pass
                case _:
                    raise InvalidProofError("Proof response must have the shape {Ok: {receipt}}")

        case _:
            raise InvalidProofError(f"Unsupported proof type: {type(proof).__name__}")

    if not withdraw or not isinstance(withdraw, str):
        raise InvalidProofError("Proof is missing a withdrawal address")
    if receipt is None or receipt == "":
        raise InvalidProofError("Proof is missing a receipt")

    # A receipt string may itself decode to null or an empty string
    receipt = _parse_receipt(receipt)
    if receipt is None or receipt == "":
        raise InvalidProofError("Proof is missing a receipt")

    return ProofSubmission(receipt=receipt, withdraw=withdraw)


class ProofServiceClient:
    """Client for the external proof-generation service."""

    def __init__(self, base_url: str, request_timeout: float = 300.0) -> None:
        """
        Initialize the client.

        Args:
            base_url: Base URL of the proof-generation service
            request_timeout: Timeout in seconds; proving is slow
        """
        self.base_url: str = base_url.rstrip("/")
        self.request_timeout: float = request_timeout

    async def generate(self, address: str) -> dict[str, Any]:
        """
        Request a proof for a wallet address.

        Returns:
            The service response, shaped ``{"Ok": {"receipt": ...}}``

        Raises:
            ProofGenerationError: If the address is invalid, the request
                fails, or the service answers with an ``Err`` body
        """
        if not Web3.is_address(address):
            raise ProofGenerationError(f"Invalid wallet address: {address}")

        url = f"{self.base_url}/generate/{address}"
        logger.info(f"Requesting proof for {address}")

        try:
            async with httpx.AsyncClient() as client:
                response: httpx.Response = await client.get(url, timeout=self.request_timeout)
                response.raise_for_status()
                body: Any = response.json()
        except httpx.HTTPStatusError as e:
            raise ProofGenerationError(
                f"Proof service returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise ProofGenerationError(f"Proof service request failed: {e}") from e
        except ValueError as e:
            raise ProofGenerationError(f"Proof service returned invalid JSON: {e}") from e

        match body:
            case {"Ok": dict()}:
                logger.info(f"Proof generated for {address}")
                return body
            case {"Err": {"error": error_msg}}:
                raise ProofGenerationError(f"Proof generation failed: {error_msg}")
            case _:
                raise ProofGenerationError(f"Unexpected proof service response: {body!r:.200}")


class ProofSubmitter:
    """Validates proofs and submits them to the destination process.

    Invalid proofs are rejected before any network call. Delivery errors are
    surfaced to the caller unchanged and never retried here.
    """

    def __init__(self, sender: MessageSender, credential: LocalAccount, process_id: str) -> None:
        self.sender = sender
        self.credential = credential
        self.process_id = process_id

    async def submit(self, proof: ProofInput) -> DeliveryReceipt:
        """
        Normalize and submit a proof.

        Raises:
            InvalidProofError: If the proof is malformed (nothing is sent)
            SigningError: If the payload cannot be signed
            DeliveryError: If the destination is unreachable or rejects it
        """
        submission = normalize_proof(proof)
        logger.info(f"Submitting proof for withdrawal to {submission.withdraw}")
        receipt = await self.sender.send(
            self.process_id, BRIDGE_ACTION, submission.to_json(), self.credential
        )
        logger.info(f"✓ Proof submitted (message {receipt.message_id or 'n/a'})")
        return receipt
