"""
Relay oracle implementation.

This module contains the long-running relay that takes new blocks from the
chain client, turns them into descriptors and delivers them as signed
``updateState`` messages to the destination process, one block at a time.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from eth_account.signers.local import LocalAccount

from .chain_client import ChainClient
from .config import ChainConfig, RetryConfig
from .descriptor_builder import DescriptorBuilder
from .errors import ChainConnectionError, DeliveryError, IncompleteBlockError, SigningError
from .message_sender import MessageSender
from .models import BlockDescriptor, NewBlockEvent, RelayState

logger = logging.getLogger(__name__)

UPDATE_STATE_ACTION = "updateState"

Connector = Callable[[ChainConfig, float], Awaitable[Any]]


class RelaySession:
    """
    Process-wide relay state: the chain connection, its new-block
    subscription and the FIFO queue between them and the relay loop.

    Created by the entry point and handed to the oracle, so tests can run
    several sessions side by side.
    """

    def __init__(
        self,
        chain_config: ChainConfig,
        queue_size: int = 100,
        request_timeout: float = 30.0,
        connector: Connector = ChainClient.connect,
    ) -> None:
        """
        Initialize the session.

        Args:
            chain_config: Chain to watch
            queue_size: Bound on headers waiting to be relayed
            request_timeout: RPC request timeout in seconds
            connector: Coroutine opening the chain client
        """
        self.chain_config = chain_config
        self.request_timeout = request_timeout
        self.connector = connector
        self.queue: asyncio.Queue[NewBlockEvent] = asyncio.Queue(maxsize=queue_size)

        self.chain: ChainClient | None = None
        self.subscription: Any = None
        self.running = False

    async def open(self) -> ChainClient:
        """Connect to the chain.

        Raises:
            ChainConnectionError: If the RPC endpoint is unreachable
        """
        self.chain = await self.connector(self.chain_config, self.request_timeout)
        return self.chain

    async def subscribe(
        self,
        on_block: Callable[[NewBlockEvent], Awaitable[None]],
        on_error: Callable[[Exception], Any],
    ) -> None:
        if self.chain is None:
            raise RuntimeError("Session is not connected")
        self.subscription = await self.chain.subscribe_new_blocks(on_block, on_error)
        self.running = True

    async def cancel_subscription(self) -> None:
        """Stop accepting new blocks. Safe to call more than once."""
        subscription, self.subscription = self.subscription, None
        if subscription is not None:
            await subscription.unsubscribe()
            logger.info("New-block subscription cancelled")

    def discard_pending(self) -> int:
        """Drop queued blocks that were never started; returns how many."""
        discarded = 0
        while not self.queue.empty():
            self.queue.get_nowait()
            discarded += 1
        return discarded

    async def close(self) -> None:
        """Release the chain connection."""
        await self.cancel_subscription()
        if self.chain is not None:
            await self.chain.close()
            self.chain = None
        self.running = False


class RelayOracle:
    """
    Relays new blocks to the destination process.

    States: IDLE -> SUBSCRIBED -> DRAINING -> STOPPED. Blocks are handled
    strictly one at a time, in arrival order. Retryable delivery failures
    hold the current block until it is delivered or the oracle stops;
    terminal failures are logged and the block is skipped.
    """

    METRICS_LOG_INTERVAL = 10  # relayed blocks

    def __init__(
        self,
        session: RelaySession,
        sender: MessageSender,
        credential: LocalAccount,
        process_id: str,
        retry: RetryConfig,
    ) -> None:
        """
        Initialize the RelayOracle.

        Args:
            session: Session owning the chain connection and block queue
            sender: Delivers signed envelopes to the destination
            credential: Signing account, loaded once at startup
            process_id: Destination process ID
            retry: Backoff policy for retryable delivery failures
        """
        self.session = session
        self.sender = sender
        self.credential = credential
        self.process_id = process_id
        self.retry = retry

        self.state = RelayState.IDLE
        self.builder: DescriptorBuilder | None = None
        self.shutdown_event = asyncio.Event()
        self._unsubscribe_task: asyncio.Task | None = None

        # Metrics tracking
        self.blocks_received = 0
        self.blocks_relayed = 0
        self.blocks_skipped = 0
        self.blocks_discarded = 0
        self.delivery_retries = 0
        self.transport_errors = 0
        self.last_relayed_block: int | None = None

    async def start(self) -> None:
        """
        Connect to the chain and register the new-block subscription.

        Raises:
            ChainConnectionError: If the chain cannot be reached
        """
        if self.state is not RelayState.IDLE:
            raise RuntimeError(f"Cannot start relay in state {self.state.value}")

        chain = await self.session.open()
        self.builder = DescriptorBuilder(chain, str(chain.chain_id))
        await self.session.subscribe(self._enqueue_block, self._on_transport_error)
        self.state = RelayState.SUBSCRIBED
        logger.info(f"Relay subscribed to chain {chain.chain_id}, delivering to process {self.process_id}")

    async def run(self) -> None:
        """Process blocks until a stop is requested, then drain and release."""
        if self.state is RelayState.IDLE:
            await self.start()

        logger.info("Waiting for new blocks...")
        try:
            while not self.shutdown_event.is_set():
                event = await self._next_event()
                if event is None:
                    break
                await self.relay_block(event)
        finally:
            await self._shutdown()

    def request_stop(self) -> None:
        """Begin draining: stop accepting blocks, let the in-flight send finish."""
        if self.state in (RelayState.DRAINING, RelayState.STOPPED):
            return
        logger.info("🛑 Stopping block watcher...")
        self.state = RelayState.DRAINING
        self.shutdown_event.set()
        self._unsubscribe_task = asyncio.ensure_future(self.session.cancel_subscription())

    async def relay_block(self, event: NewBlockEvent) -> bool:
        """
        Build and deliver one block.

        Returns:
            True if the block was delivered, False if it was skipped or abandoned
        """
        try:
            descriptor = await self.builder.build(event)
        except (IncompleteBlockError, ChainConnectionError) as e:
            self.blocks_skipped += 1
            logger.error(f"✗ Skipping block {event.block_number}: {e}")
            return False

        logger.info(f"🧱 New block: {descriptor}")
        return await self._deliver(descriptor)

    async def _deliver(self, descriptor: BlockDescriptor) -> bool:
        data = descriptor.to_json()
        attempt = 0
        while True:
            attempt += 1
            try:
                receipt = await self.sender.send(
                    self.process_id, UPDATE_STATE_ACTION, data, self.credential
                )
            except SigningError as e:
                self.blocks_skipped += 1
                logger.error(f"✗ Skipping block {descriptor.block_number}: {e}")
                return False
            except DeliveryError as e:
                if not e.retryable:
                    self.blocks_skipped += 1
                    logger.error(f"✗ Skipping block {descriptor.block_number}: {e}")
                    return False

                if self.shutdown_event.is_set():
                    logger.warning(
                        f"✗ Abandoning block {descriptor.block_number} after {attempt} attempt(s): "
                        f"stop requested ({e})"
                    )
                    return False

                delay = self.retry.delay_for(attempt)
                self.delivery_retries += 1
                logger.warning(
                    f"Delivery of block {descriptor.block_number} failed "
                    f"(attempt {attempt}): {e}. Retrying in {delay:.1f} seconds..."
                )
                if await self._wait_for_stop(delay):
                    logger.warning(
                        f"✗ Abandoning block {descriptor.block_number} after {attempt} attempt(s): "
                        "stop requested during backoff"
                    )
                    return False
                continue

            self.blocks_relayed += 1
            self.last_relayed_block = descriptor.block_number
            logger.info(
                f"✓ Relayed block {descriptor.block_number} (message {receipt.message_id or 'n/a'})"
            )
            if self.blocks_relayed % self.METRICS_LOG_INTERVAL == 0:
                self.log_metrics()
            return True

    async def _enqueue_block(self, event: NewBlockEvent) -> None:
        self.blocks_received += 1
        await self.session.queue.put(event)

    def _on_transport_error(self, error: Exception) -> None:
        self.transport_errors += 1
        logger.error(f"Chain watch error: {error}")

    async def _next_event(self) -> NewBlockEvent | None:
        """Wait for the next queued block, or None once a stop is requested."""
        get_task = asyncio.ensure_future(self.session.queue.get())
        stop_task = asyncio.ensure_future(self.shutdown_event.wait())
        try:
            await asyncio.wait({get_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (get_task, stop_task):
                if not task.done():
                    task.cancel()

        if stop_task.done() and not stop_task.cancelled():
            if get_task.done() and not get_task.cancelled():
                self.blocks_discarded += 1
            return None
        return get_task.result()

    async def _wait_for_stop(self, timeout: float) -> bool:
        """Sleep up to timeout; True if a stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _shutdown(self) -> None:
        if self.state is RelayState.STOPPED:
            return
        self.state = RelayState.DRAINING

        if self._unsubscribe_task is not None:
            try:
                await self._unsubscribe_task
            except Exception as e:
                logger.warning(f"Error cancelling subscription: {e}")

        self.blocks_discarded += self.session.discard_pending()
        if self.blocks_discarded:
            logger.info(f"Discarded {self.blocks_discarded} queued block(s) that were not started")

        try:
            await self.session.close()
        except Exception as e:
            logger.warning(f"Error closing chain connection: {e}")

        self.state = RelayState.STOPPED
        self.log_metrics()
        logger.info("Relay oracle stopped")

    def get_stats(self) -> dict[str, Any]:
        """
        Get current relay metrics.

        Returns:
            Dictionary of metric names to values
        """
        return {
            "state": self.state.value,
            "blocks_received": self.blocks_received,
            "blocks_relayed": self.blocks_relayed,
            "blocks_skipped": self.blocks_skipped,
            "blocks_discarded": self.blocks_discarded,
            "delivery_retries": self.delivery_retries,
            "transport_errors": self.transport_errors,
            "last_relayed_block": self.last_relayed_block,
        }

    def log_metrics(self) -> None:
        """Log current relay metrics."""
        stats = self.get_stats()
        logger.info(
            f"Relay Metrics: "
            f"Received={stats['blocks_received']}, "
            f"Relayed={stats['blocks_relayed']}, "
            f"Skipped={stats['blocks_skipped']}, "
            f"Discarded={stats['blocks_discarded']}, "
            f"Retries={stats['delivery_retries']}, "
            f"TransportErrors={stats['transport_errors']}, "
            f"LastBlock={stats['last_relayed_block']}"
        )
