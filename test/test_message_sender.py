#!/usr/bin/env python3
"""Unit tests for the MessageSender module."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from bridge_oracle.errors import DeliveryError, SigningError
from bridge_oracle.message_sender import MessageSender, build_envelope, is_retryable_status
from bridge_oracle.utils.wallet_utility import canonical_message

TEST_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
MU_URL = "https://mu.example"
PROCESS_ID = "Hk9s2m1JtV0pZbX7qW3eR5tY8uI0oP2aS4dF6gH8jK0"
PAYLOAD = '{"network": "31337", "blockNumber": "1", "timestamp": "100", "blockHash": "0x' + "aa" * 32 + '"}'


@pytest.fixture
def credential():
    return Account.from_key(TEST_KEY)


def make_response(status_code: int, body=None) -> httpx.Response:
    """Build a real httpx response bound to a request."""
    request = httpx.Request("POST", MU_URL)
    if body is None:
        return httpx.Response(status_code, request=request)
    return httpx.Response(status_code, json=body, request=request)


@pytest.fixture
def mock_client():
    """Patch httpx.AsyncClient inside the sender module."""
    with patch("bridge_oracle.message_sender.httpx.AsyncClient") as mock_client_class:
        client = AsyncMock()
        mock_client_class.return_value.__aenter__.return_value = client
        yield client


class TestBuildEnvelope:
    """Tests for envelope construction."""

    def test_envelope_wire_shape(self, credential):
        envelope = build_envelope(PROCESS_ID, "updateState", PAYLOAD, credential)
        wire = envelope.to_wire()

        assert wire["process"] == PROCESS_ID
        assert wire["tags"] == [{"name": "Action", "value": "updateState"}]
        assert wire["data"] == PAYLOAD
        assert wire["owner"] == credential.address

    def test_envelope_signature_covers_payload(self, credential):
        envelope = build_envelope(PROCESS_ID, "Bridge", PAYLOAD, credential)

        message = encode_defunct(text=canonical_message(PROCESS_ID, "Bridge", PAYLOAD))
        assert Account.recover_message(message, signature=envelope.signature) == credential.address

    def test_envelopes_are_fresh_per_payload(self, credential):
        first = build_envelope(PROCESS_ID, "updateState", '{"n": 1}', credential)
        second = build_envelope(PROCESS_ID, "updateState", '{"n": 2}', credential)

        assert first.signature != second.signature


class TestRetryClassification:

    @pytest.mark.parametrize("status", [500, 502, 503, 504, 408, 429])
    def test_retryable_statuses(self, status):
        assert is_retryable_status(status) is True

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 409, 422])
    def test_terminal_statuses(self, status):
        assert is_retryable_status(status) is False


class TestMessageSender:
    """Test suite for MessageSender.send."""

    @pytest.mark.asyncio
    async def test_send_success(self, mock_client, credential):
        """Test a delivery the endpoint accepts."""
        mock_client.post = AsyncMock(return_value=make_response(200, {"id": "msg-123"}))
        sender = MessageSender(MU_URL + "/", request_timeout=5)

        receipt = await sender.send(PROCESS_ID, "updateState", PAYLOAD, credential)

        assert receipt.message_id == "msg-123"
        assert receipt.status_code == 200
        mock_client.post.assert_called_once()
        args, kwargs = mock_client.post.call_args
        assert args[0] == MU_URL
        assert kwargs["timeout"] == 5
        body = kwargs["json"]
        assert body["process"] == PROCESS_ID
        assert body["tags"] == [{"name": "Action", "value": "updateState"}]
        assert json.loads(body["data"])["blockHash"] == "0x" + "aa" * 32

    @pytest.mark.asyncio
    async def test_send_success_without_id(self, mock_client, credential):
        """Test that a body without an id still yields a receipt."""
        mock_client.post = AsyncMock(return_value=make_response(202))
        sender = MessageSender(MU_URL)

        receipt = await sender.send(PROCESS_ID, "updateState", PAYLOAD, credential)

        assert receipt.message_id is None
        assert receipt.status_code == 202

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self, mock_client, credential):
        mock_client.post = AsyncMock(return_value=make_response(503, {"error": "busy"}))
        sender = MessageSender(MU_URL)

        with pytest.raises(DeliveryError) as exc_info:
            await sender.send(PROCESS_ID, "updateState", PAYLOAD, credential)

        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_validation_rejection_is_terminal(self, mock_client, credential):
        mock_client.post = AsyncMock(return_value=make_response(400, {"error": "bad schema"}))
        sender = MessageSender(MU_URL)

        with pytest.raises(DeliveryError) as exc_info:
            await sender.send(PROCESS_ID, "updateState", PAYLOAD, credential)

        assert exc_info.value.retryable is False
        assert exc_info.value.status_code == 400
        assert "bad schema" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, mock_client, credential):
        mock_client.post = AsyncMock(side_effect=httpx.ReadTimeout("timed out"))
        sender = MessageSender(MU_URL)

        with pytest.raises(DeliveryError, match="timed out") as exc_info:
            await sender.send(PROCESS_ID, "updateState", PAYLOAD, credential)

        assert exc_info.value.retryable is True
        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_connection_refused_is_retryable(self, mock_client, credential):
        mock_client.post = AsyncMock(side_effect=httpx.ConnectError("connection refused"))
        sender = MessageSender(MU_URL)

        with pytest.raises(DeliveryError, match="unreachable") as exc_info:
            await sender.send(PROCESS_ID, "updateState", PAYLOAD, credential)

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_signing_error_sends_nothing(self, mock_client):
        """Test that a broken credential fails before any network call."""
        broken = MagicMock()
        broken.sign_message.side_effect = ValueError("malformed key")
        mock_client.post = AsyncMock()
        sender = MessageSender(MU_URL)

        with pytest.raises(SigningError):
            await sender.send(PROCESS_ID, "updateState", PAYLOAD, broken)

        mock_client.post.assert_not_called()
