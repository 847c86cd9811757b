"""
Chain client for new-block monitoring.

Wraps an AsyncWeb3 connection and exposes block fetching plus a new-block
subscription. HTTP endpoints are polled for the head number; websocket
endpoints use an eth_subscribe newHeads subscription. The client never
reconnects on its own: transport faults are reported through ``on_error``.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from web3 import AsyncWeb3
from web3.exceptions import BlockNotFound, ProviderConnectionError
from web3.providers import WebSocketProvider
from web3.utils.subscriptions import NewHeadsSubscription

from .config import ChainConfig
from .errors import BlockNotFoundError, ChainConnectionError
from .models import NewBlockEvent

BlockCallback = Callable[[NewBlockEvent], Awaitable[None]]
ErrorCallback = Callable[[Exception], Any]


class Subscription:
    """Handle for an active new-block subscription."""

    def __init__(self, label: str, task: asyncio.Task, on_cancel: Callable[[], Awaitable[None]] | None = None) -> None:
        self.label = label
        self.task = task
        self._on_cancel = on_cancel
        self.active = True

    async def unsubscribe(self) -> None:
        """Stop delivering blocks. Safe to call more than once."""
        if not self.active:
            return
        self.active = False
        if self._on_cancel is not None:
            await self._on_cancel()
        if not self.task.done():
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass  # Expected when cancelling


class ChainClient:
    """
    Thin client over an EVM RPC endpoint.

    Use ``ChainClient.connect(config)`` to obtain a connected instance.
    """

    def __init__(self, config: ChainConfig, w3: AsyncWeb3) -> None:
        """
        Initialize the ChainClient around an existing connection.

        Args:
            config: Chain configuration
            w3: Connected AsyncWeb3 instance
        """
        self.config = config
        self.w3 = w3
        self.chain_id: int | None = None
        self.last_emitted_block: int | None = None
        self.last_emitted_hash: Any = None
        self.subscriptions: list[Subscription] = []

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @classmethod
    async def connect(cls, config: ChainConfig, request_timeout: float = 30.0) -> "ChainClient":
        """
        Open a connection to the configured RPC endpoint.

        Args:
            config: Chain configuration
            request_timeout: Timeout in seconds for individual RPC requests

        Returns:
            Connected ChainClient with chain_id populated

        Raises:
            ChainConnectionError: If the endpoint is unreachable
        """
        logger = logging.getLogger(f"{__name__}.{cls.__name__}")
        logger.info(f"Connecting to {config.chain_name} at {config.rpc_url}")

        try:
            if config.is_websocket:
                w3 = await AsyncWeb3(WebSocketProvider(config.rpc_url, request_timeout=request_timeout))
            else:
                w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
                    config.rpc_url,
                    request_kwargs={"timeout": request_timeout},
                ))
            connected = await w3.is_connected()
        except (OSError, asyncio.TimeoutError, ProviderConnectionError) as e:
            raise ChainConnectionError(f"Failed to connect to {config.rpc_url}: {e}") from e

        if not connected:
            raise ChainConnectionError(f"Failed to connect to {config.rpc_url}")

        client = cls(config, w3)
        try:
            client.chain_id = await w3.eth.chain_id
        except Exception as e:
            await client.close()
            raise ChainConnectionError(f"Failed to read chain ID from {config.rpc_url}: {e}") from e

        if client.chain_id != config.expected_chain_id:
            logger.warning(
                f"Chain ID {client.chain_id} does not match expected "
                f"{config.expected_chain_id} for network '{config.network}'"
            )
        logger.info(f"Connected to chain {client.chain_id}")
        if config.network == "local":
            logger.info(f"📡 Connected to Anvil on port {config.local_port}")
        return client

    async def get_block_by_number(self, block_number: int) -> dict[str, Any]:
        """
        Fetch a block by number.

        Raises:
            BlockNotFoundError: If the node does not know the block
            ChainConnectionError: If the request fails at the transport level
        """
        try:
            block = await self.w3.eth.get_block(block_number)
        except BlockNotFound as e:
            raise BlockNotFoundError(block_number) from e
        except Exception as e:
            raise ChainConnectionError(f"Failed to fetch block {block_number}: {e}") from e
        return dict(block)

    async def subscribe_new_blocks(self, on_block: BlockCallback, on_error: ErrorCallback) -> Subscription:
        """
        Start delivering new blocks, in chain order.

        ``on_block`` is awaited for each block, so a slow consumer holds back
        delivery instead of letting it overlap. ``on_error`` is called for
        transport faults; the subscription keeps running afterwards.

        Returns:
            Subscription handle used to cancel delivery
        """
        if self.config.is_websocket:
            subscription = await self._subscribe_heads(on_block, on_error)
        else:
            subscription = self._poll_heads(on_block, on_error)
        self.subscriptions.append(subscription)
        self.logger.info(f"🔭 Watching {self.config.chain_name} network for new blocks...")
        return subscription

    def _poll_heads(self, on_block: BlockCallback, on_error: ErrorCallback) -> Subscription:
        task = asyncio.create_task(self._poll_loop(on_block, on_error), name="poll-new-blocks")
        self.logger.info(
            f"Polling {self.config.chain_name} for new blocks every {self.config.polling_interval} seconds"
        )
        return Subscription("poll-new-blocks", task)

    async def _poll_loop(self, on_block: BlockCallback, on_error: ErrorCallback) -> None:
        while True:
            try:
                await self.poll_once(on_block)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                on_error(e)
            await asyncio.sleep(self.config.polling_interval)

    async def poll_once(self, on_block: BlockCallback) -> None:
        """
        Emit every block after the last emitted one up to the current head.

        The first poll only emits the current head.
        """
        head = await self.w3.eth.block_number
        if self.last_emitted_block is None:
            start = head
        elif head <= self.last_emitted_block:
            return
        else:
            start = self.last_emitted_block + 1

        for number in range(start, head + 1):
            await on_block(NewBlockEvent(block_number=number))
            self.last_emitted_block = number

    async def _subscribe_heads(self, on_block: BlockCallback, on_error: ErrorCallback) -> Subscription:
        async def handle_head(context: Any) -> None:
            header = dict(context.result)
            number = header.get("number")
            if number is None:
                on_error(ValueError(f"Malformed newHeads payload: {header}"))
                return
            block_hash = header.get("hash")
            if self.last_emitted_block is not None:
                # Lower heights are stale; a new hash at the same height replaces a reorged block
                if number < self.last_emitted_block:
                    return
                if number == self.last_emitted_block and block_hash == self.last_emitted_hash:
                    return
            await on_block(NewBlockEvent(block_number=number, header=header))
            self.last_emitted_block = number
            self.last_emitted_hash = block_hash

        manager = self.w3.subscription_manager
        await manager.subscribe([NewHeadsSubscription(label="new-heads", handler=handle_head)])

        async def handle_loop() -> None:
            try:
                await manager.handle_subscriptions()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                on_error(e)

        task = asyncio.create_task(handle_loop(), name="new-heads")
        self.logger.info(f"Subscribed to {self.config.chain_name} newHeads")
        return Subscription("new-heads", task, on_cancel=manager.unsubscribe_all)

    async def close(self) -> None:
        """Cancel subscriptions and release the connection."""
        for subscription in self.subscriptions:
            try:
                await subscription.unsubscribe()
            except Exception as e:
                self.logger.warning(f"Error cancelling {subscription.label}: {e}")
        self.subscriptions.clear()

        try:
            provider = self.w3.provider
            if hasattr(provider, "disconnect"):
                await provider.disconnect()
        except Exception as e:
            self.logger.warning(f"Error during cleanup: {e}")
