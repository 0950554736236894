"""Reliable queue on Redis Streams.

Provides at-least-once delivery with:
- Consumer groups sharing the work of a stream
- Explicit acknowledgement
- Idle reclaim of entries held by crashed consumers
- Dead-letter streams for poison entries

Example:
    # Enqueue an entry
    from concord.queue import ReliableQueue

    queue = ReliableQueue()
    entry_id = await queue.enqueue("orders", {"order_id": 42})

    # Process entries with a worker
    from concord.queue import QueueWorker

    worker = QueueWorker(queue, stream="orders", group="billing")
    worker.register_handler(handle_order)
    await worker.run()
"""

from concord.queue.entries import (
    DeadLetterEntry,
    PayloadDecodeError,
    PendingEntry,
    PendingSummary,
    QueueEntry,
)
from concord.queue.reliable import (
    GROUP_START_ALL,
    GROUP_START_NEW,
    ReliableQueue,
)
from concord.queue.worker import (
    EntryHandler,
    QueueWorker,
    WorkerConfig,
)

__all__ = [
    # Entries
    "QueueEntry",
    "PendingEntry",
    "PendingSummary",
    "DeadLetterEntry",
    "PayloadDecodeError",
    # Queue
    "ReliableQueue",
    "GROUP_START_ALL",
    "GROUP_START_NEW",
    # Worker
    "QueueWorker",
    "WorkerConfig",
    "EntryHandler",
]
