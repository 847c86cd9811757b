#!/usr/bin/env python3
"""Message signing and delivery for the bridge oracle.

This module builds signed envelopes for the destination ledger and posts
them to its message-ingestion endpoint, classifying failures as retryable
or terminal for the relay loop.
"""

import json
import logging
from typing import Any

import httpx
from eth_account.signers.local import LocalAccount

from .errors import DeliveryError
from .models import DeliveryReceipt, MessageEnvelope
from .utils.wallet_utility import canonical_message, sign_message

logger = logging.getLogger(__name__)

# 4xx statuses worth retrying; every 5xx is retried as well
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 429})


def build_envelope(process: str, action: str, data: str, credential: LocalAccount) -> MessageEnvelope:
    """Sign a payload and wrap it in an envelope.

    Raises:
        SigningError: If the credential cannot sign the payload
    """
    signature = sign_message(credential, canonical_message(process, action, data))
    return MessageEnvelope(
        process=process,
        action=action,
        data=data,
        owner=credential.address,
        signature=signature,
    )


def is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in RETRYABLE_STATUS_CODES


class MessageSender:
    """Delivers signed envelopes to the destination ledger.

    Each call to ``send`` is one delivery attempt; no deduplication is done
    here. Payloads carry a stable identifier (the block hash) so that the
    receiver can discard duplicates produced by retries.
    """

    def __init__(self, message_url: str, request_timeout: float = 30.0) -> None:
        """
        Initialize the MessageSender.

        Args:
            message_url: Message-ingestion endpoint of the destination ledger
            request_timeout: Timeout in seconds for a single attempt
        """
        self.message_url: str = message_url.rstrip("/")
        self.request_timeout: float = request_timeout

    async def send(
        self,
        process: str,
        action: str,
        data: str,
        credential: LocalAccount,
    ) -> DeliveryReceipt:
        """
        Sign and deliver a single message.

        Args:
            process: Destination process ID
            action: Value of the Action tag ("updateState" or "Bridge")
            data: Serialized JSON payload
            credential: Signing account

        Returns:
            DeliveryReceipt for the accepted message

        Raises:
            SigningError: If the payload cannot be signed
            DeliveryError: If the endpoint is unreachable or rejects the message
        """
        envelope = build_envelope(process, action, data, credential)
        logger.debug(f"Posting {action} message to {self.message_url} for process {process}")

        try:
            async with httpx.AsyncClient() as client:
                response: httpx.Response = await client.post(
                    self.message_url,
                    json=envelope.to_wire(),
                    timeout=self.request_timeout,
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise DeliveryError(
                f"Message rejected with HTTP {status}: {_error_detail(e.response)}",
                retryable=is_retryable_status(status),
                status_code=status,
            ) from e
        except httpx.TimeoutException as e:
            raise DeliveryError(f"Message delivery timed out: {e}", retryable=True) from e
        except httpx.TransportError as e:
            raise DeliveryError(f"Message endpoint unreachable: {e}", retryable=True) from e

        receipt = DeliveryReceipt(
            message_id=_message_id(response),
            status_code=response.status_code,
        )
        logger.debug(f"Message accepted: id={receipt.message_id}, status={receipt.status_code}")
        return receipt


def _message_id(response: httpx.Response) -> str | None:
    try:
        body: Any = response.json()
    except (json.JSONDecodeError, ValueError):
        return None
    if isinstance(body, dict) and (message_id := body.get("id")):
        return str(message_id)
    return None


def _error_detail(response: httpx.Response) -> str:
    text = response.text
    return text[:200] if text else response.reason_phrase
