#!/usr/bin/env python3
"""Tests for the relay and bridge command-line entry points."""

import asyncio
import os
import signal
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import bridge
import main
from bridge_oracle.chain_client import Subscription
from bridge_oracle.config import (
    ChainConfig,
    DestinationConfig,
    OracleConfig,
    ProofServiceConfig,
    RetryConfig,
    WalletConfig,
)
from bridge_oracle.errors import (
    ChainConnectionError,
    CredentialError,
    DeliveryError,
    ProofGenerationError,
)
from bridge_oracle.models import DeliveryReceipt, NewBlockEvent
from bridge_oracle.relay_oracle import RelaySession

PROCESS_ID = "Hk9s2m1JtV0pZbX7qW3eR5tY8uI0oP2aS4dF6gH8jK0"
WALLET = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"


@pytest.fixture
def config():
    return OracleConfig(
        chain=ChainConfig.for_network("local"),
        destination=DestinationConfig(process_id=PROCESS_ID),
        retry=RetryConfig(base_delay=0.001, max_delay=0.002),
        wallet=WalletConfig(wallet_file="wallet.json"),
        proof_service=ProofServiceConfig(),
    )


@pytest.fixture
def sender():
    sender = MagicMock()
    sender.send = AsyncMock(return_value=DeliveryReceipt(message_id="msg-1", status_code=200))
    return sender


class OneBlockChain:
    """Chain that announces a single block and then stays quiet."""

    chain_id = 31337

    def __init__(self) -> None:
        self.closed = False

    async def get_block_by_number(self, number: int) -> dict:
        return {"number": number, "timestamp": 100, "hash": "0x" + "aa" * 32}

    async def subscribe_new_blocks(self, on_block, on_error) -> Subscription:
        async def feed() -> None:
            await on_block(NewBlockEvent(block_number=1))
            await asyncio.Event().wait()

        return Subscription("one-block", asyncio.create_task(feed()))

    async def close(self) -> None:
        self.closed = True


def session_factory(connector):
    """Build real sessions around a fake chain connector."""
    def factory(**kwargs):
        return RelaySession(connector=connector, **kwargs)
    return factory


async def wait_for(predicate, timeout=2.0):
    async def _wait():
        while not predicate():
            await asyncio.sleep(0.001)
    await asyncio.wait_for(_wait(), timeout)


@pytest.fixture
def relay_env(config, sender):
    """Patch everything main() reads from the outside world."""
    with patch.object(sys, "argv", ["main.py"]), \
            patch("main.load_dotenv"), \
            patch.object(OracleConfig, "from_env", return_value=config), \
            patch("main.load_credential", return_value=MagicMock()), \
            patch("main.MessageSender", return_value=sender):
        yield


class TestRelayMain:
    """Exit codes of the relay entry point."""

    @pytest.mark.asyncio
    async def test_config_error_exits_1(self, relay_env):
        with patch.object(OracleConfig, "from_env", side_effect=ValueError("AO_PROCESS_ID is required")):
            assert await main.main() == 1

    @pytest.mark.asyncio
    async def test_credential_error_exits_1(self, relay_env):
        with patch("main.load_credential", side_effect=CredentialError("Cannot read wallet file")):
            assert await main.main() == 1

    @pytest.mark.asyncio
    async def test_startup_connection_failure_exits_1(self, relay_env, sender):
        connector = AsyncMock(side_effect=ChainConnectionError("connection refused"))
        with patch("main.RelaySession", side_effect=session_factory(connector)):
            assert await main.main() == 1

        sender.send.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals only")
    async def test_termination_signal_drains_and_exits_0(self, relay_env, sender):
        chain = OneBlockChain()
        background = []

        install_handlers = main.install_signal_handlers

        def install_and_signal(oracle):
            install_handlers(oracle)

            async def terminate_after_first_block():
                await wait_for(lambda: oracle.blocks_relayed == 1)
                os.kill(os.getpid(), signal.SIGTERM)

            background.append(asyncio.ensure_future(terminate_after_first_block()))

        with patch("main.RelaySession", side_effect=session_factory(AsyncMock(return_value=chain))), \
                patch("main.install_signal_handlers", side_effect=install_and_signal):
            status = await asyncio.wait_for(main.main(), 5.0)

        assert status == 0
        assert chain.closed is True
        sender.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unexpected_error_exits_1(self, relay_env, sender):
        sender.send.side_effect = RuntimeError("boom")
        chain = OneBlockChain()

        with patch("main.RelaySession", side_effect=session_factory(AsyncMock(return_value=chain))), \
                patch("main.install_signal_handlers"):
            assert await asyncio.wait_for(main.main(), 5.0) == 1

        assert chain.closed is True

    @pytest.mark.asyncio
    async def test_signal_handlers_request_stop(self):
        oracle = MagicMock()
        loop = asyncio.get_running_loop()

        with patch.object(loop, "add_signal_handler") as add_handler:
            main.install_signal_handlers(oracle)

        add_handler.assert_any_call(signal.SIGINT, oracle.request_stop)
        add_handler.assert_any_call(signal.SIGTERM, oracle.request_stop)


@pytest.fixture
def bridge_env(config, sender):
    """Patch config, credential and sender for the bridge entry point."""
    with patch("bridge.load_dotenv"), \
            patch.object(OracleConfig, "from_env", return_value=config), \
            patch("bridge.load_credential", return_value=MagicMock()), \
            patch("bridge.MessageSender", return_value=sender):
        yield


async def run_bridge(*argv):
    with patch.object(sys, "argv", ["bridge.py", *argv]):
        return await bridge.main()


class TestBridgeMain:
    """Exit codes of the proof submission entry point."""

    @pytest.mark.asyncio
    async def test_proof_file_submitted(self, bridge_env, sender, tmp_path, capsys):
        proof_file = tmp_path / "proof.json"
        proof_file.write_text('{"withdraw": "abc", "receipt": "{\\"x\\": 1}"}')

        assert await run_bridge("--proof-file", str(proof_file)) == 0

        _, action, _, _ = sender.send.await_args.args
        assert action == "Bridge"
        assert "msg-1" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_invalid_proof_exits_1(self, bridge_env, sender, tmp_path):
        proof_file = tmp_path / "proof.json"
        proof_file.write_text('{"withdraw": "abc"}')

        assert await run_bridge("--proof-file", str(proof_file)) == 1
        sender.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_proof_file_exits_1(self, bridge_env, tmp_path):
        assert await run_bridge("--proof-file", str(tmp_path / "absent.json")) == 1

    @pytest.mark.asyncio
    async def test_proof_generation_failure_exits_1(self, bridge_env, sender):
        with patch("bridge.ProofServiceClient") as mock_service:
            mock_service.return_value.generate = AsyncMock(
                side_effect=ProofGenerationError("Proof generation failed: no deposits")
            )
            assert await run_bridge("--address", WALLET, "--withdraw", "abc") == 1

        sender.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_generated_proof_submitted(self, bridge_env, sender):
        with patch("bridge.ProofServiceClient") as mock_service:
            mock_service.return_value.generate = AsyncMock(
                return_value={"Ok": {"receipt": '{"x": 1}'}}
            )
            assert await run_bridge("--address", WALLET, "--withdraw", "abc") == 0

        mock_service.return_value.generate.assert_awaited_once_with(WALLET)
        sender.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_delivery_error_exits_1(self, bridge_env, sender, tmp_path):
        sender.send.side_effect = DeliveryError("Message rejected with HTTP 400", retryable=False)
        proof_file = tmp_path / "proof.json"
        proof_file.write_text('{"withdraw": "abc", "receipt": "{}"}')

        assert await run_bridge("--proof-file", str(proof_file)) == 1

    @pytest.mark.asyncio
    async def test_address_without_withdraw_rejected(self, bridge_env):
        with pytest.raises(SystemExit) as exc_info:
            await run_bridge("--address", WALLET)

        assert exc_info.value.code == 2
