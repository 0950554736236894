"""Background worker consuming a reliable queue.

Packages the usual consumer policy on top of ``ReliableQueue``:
- Reclaims entries left idle by crashed consumers before reading new ones
- Acks an entry once every handler succeeded
- Leaves failed entries pending so they are redelivered after the idle
  threshold
- Dead-letters entries that exhausted their delivery budget, and entries
  whose payload cannot be decoded
- Optional leader election for singleton workers
- Graceful shutdown on SIGTERM / SIGINT

Example:
    worker = QueueWorker(ReliableQueue(), stream="orders", group="billing")
    worker.register_handler(handle_order)

    # Run worker (blocks until shutdown)
    await worker.run()

    # Or as context manager
    async with worker:
        await worker.run_once()
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass, field
from types import TracebackType
from typing import Awaitable, Callable
from uuid import uuid4

from concord.config import settings
from concord.distributed.leader import LeaderElection
from concord.observability.logging import LogContext
from concord.queue.entries import QueueEntry
from concord.queue.reliable import GROUP_START_ALL, ReliableQueue

logger = logging.getLogger(__name__)

# Type alias for entry handlers
EntryHandler = Callable[[QueueEntry], Awaitable[None]]


def _generate_consumer_id() -> str:
    """Generate a unique consumer ID for this instance."""
    hostname = os.environ.get("HOSTNAME", os.environ.get("POD_NAME", "unknown"))
    return f"{hostname}-{uuid4().hex[:8]}"


@dataclass
class WorkerConfig:
    """Worker configuration."""

    # Entry processing
    batch_size: int = field(default_factory=lambda: settings.queue_batch_size)
    block_ms: int | None = field(default_factory=lambda: settings.queue_block_ms)
    poll_interval: float = 1.0

    # Recovery
    claim_idle_ms: int = field(default_factory=lambda: settings.queue_claim_idle_ms)
    max_deliveries: int = field(default_factory=lambda: settings.queue_max_deliveries)
    dead_letter_stream: str | None = None

    # Group creation on start
    group_start_id: str = GROUP_START_ALL

    # Leader election (for singleton workers)
    leader_election: bool = False
    leader_lease_ttl_ms: int = 30000
    leader_renewal_interval: float = 10.0


class QueueWorker:
    """Consumes one stream as one consumer of a consumer group.

    Entries are processed one at a time in delivery order; run several
    workers (with distinct consumer ids) to process in parallel.
    """

    def __init__(
        self,
        queue: ReliableQueue | None = None,
        stream: str = "concord:queue",
        group: str = "concord-workers",
        consumer: str | None = None,
        config: WorkerConfig | None = None,
    ) -> None:
        self.queue = queue or ReliableQueue()
        self.stream = stream
        self.group = group
        self.consumer = consumer or _generate_consumer_id()
        self.config = config or WorkerConfig()
        if self.config.max_deliveries < 1:
            raise ValueError("max_deliveries must be >= 1")

        self._handlers: list[EntryHandler] = []
        self._running = False
        self._started = False
        self._shutdown_event = asyncio.Event()
        self._leader: LeaderElection | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def register_handler(self, handler: EntryHandler) -> None:
        """Register a handler called for every entry.

        Handlers run in registration order; the entry is acked only when
        all of them return without raising.

        Example:
            async def handle_order(entry: QueueEntry) -> None:
                await charge(entry.fields["order_id"])

            worker.register_handler(handle_order)
        """
        self._handlers.append(handler)
        handler_name = getattr(handler, "__name__", handler.__class__.__name__)
        logger.info(f"Registered queue handler: {handler_name}")

    async def start(self) -> None:
        """Ensure the consumer group exists and start leader election if configured."""
        if self._started:
            return

        await self.queue.create_group(
            self.stream,
            self.group,
            from_id=self.config.group_start_id,
            mkstream=True,
        )
        self._running = True
        self._started = True
        self._shutdown_event.clear()

        if self.config.leader_election:
            self._leader = LeaderElection(
                name=f"worker-{self.stream}-{self.group}",
                lease_ttl_ms=self.config.leader_lease_ttl_ms,
                renewal_interval=self.config.leader_renewal_interval,
            )
            await self._leader.start()
            logger.info(f"Started leader election for worker on {self.stream}/{self.group}")

        logger.info(f"Worker {self.consumer} started on {self.stream}/{self.group}")

    async def stop(self) -> None:
        """Stop the worker; the entry in progress finishes first."""
        if not self._started:
            return
        logger.info(f"Stopping worker {self.consumer}")
        self._running = False
        self._started = False
        self._shutdown_event.set()

        if self._leader:
            await self._leader.stop()
            self._leader = None

        logger.info(f"Worker stopped: {self.consumer}")

    def _signal_handler(self) -> None:
        """Handle shutdown signals."""
        logger.info("Received shutdown signal")
        self._running = False
        self._shutdown_event.set()

    async def run(self) -> None:
        """Run the worker until shutdown.

        Main loop that reclaims idle entries, then reads and processes new
        ones.
        """
        await self.start()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._signal_handler)

        try:
            while self._running:
                if self._leader and not self._leader.is_leader:
                    await self._sleep(self.config.poll_interval)
                    continue

                try:
                    await self._iterate(block_ms=self.config.block_ms)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Error consuming {self.stream}/{self.group}: {e}")
                    await self._sleep(self.config.poll_interval)
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            await self.stop()

    async def run_once(self) -> int:
        """Process one batch of reclaimed and new entries without blocking.

        Useful for testing or cron-like execution.

        Returns:
            Number of entries processed successfully
        """
        if not self._started:
            await self.queue.create_group(
                self.stream,
                self.group,
                from_id=self.config.group_start_id,
                mkstream=True,
            )
        return await self._iterate(block_ms=None)

    async def _iterate(self, block_ms: int | None) -> int:
        processed = 0

        reclaimed = await self.queue.claim_idle(
            self.stream,
            self.group,
            self.consumer,
            min_idle_ms=self.config.claim_idle_ms,
            batch_size=self.config.batch_size,
        )
        for entry in reclaimed:
            processed += await self._process_entry(entry)

        entries = await self.queue.consume(
            self.stream,
            self.group,
            self.consumer,
            batch_size=self.config.batch_size,
            block_ms=None if reclaimed else block_ms,
        )
        for entry in entries:
            processed += await self._process_entry(entry)

        return processed

    async def _process_entry(self, entry: QueueEntry) -> bool:
        """Process a single entry.

        Returns:
            True if the entry was handled and acked
        """
        with LogContext(consumer_id=self.consumer, correlation_id=entry.id):
            if entry.decode_error is not None:
                # Redelivery cannot fix a malformed payload
                logger.error(f"Cannot decode entry {entry.id}: {entry.decode_error}")
                await self._dead_letter(entry, entry.decode_error)
                return False

            if entry.delivery_count > self.config.max_deliveries:
                await self._dead_letter(
                    entry,
                    f"exceeded {self.config.max_deliveries} deliveries",
                )
                return False

            try:
                for handler in self._handlers:
                    await handler(entry)
            except Exception as e:
                reason = str(e) or e.__class__.__name__
                logger.error(
                    f"Handler failed for {entry.id} "
                    f"(delivery {entry.delivery_count}/{self.config.max_deliveries}): {reason}"
                )
                if entry.delivery_count >= self.config.max_deliveries:
                    await self._dead_letter(entry, reason)
                return False

            await self.queue.ack(self.stream, self.group, entry.id)
            logger.debug(f"Processed and acked entry {entry.id}")
            return True

    async def _dead_letter(self, entry: QueueEntry, reason: str) -> None:
        await self.queue.dead_letter(
            self.stream,
            self.group,
            entry.id,
            reason,
            dead_letter_stream=self.config.dead_letter_stream,
        )

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def __aenter__(self) -> "QueueWorker":
        """Context manager entry."""
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Context manager exit."""
        await self.stop()
