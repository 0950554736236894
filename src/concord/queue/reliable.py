"""Reliable queue on Redis Streams with consumer groups.

Each stream is an append-only log. A consumer group tracks, per entry,
which consumer it was delivered to and how often; an entry stays pending
until acknowledged. Delivery is at-least-once:

- ``consume`` hands out new entries and makes them pending for the caller
- ``ack`` removes an entry from the pending list
- ``claim_idle`` transfers entries whose consumer went quiet to another
  consumer (the way crashed consumers are recovered)
- ``dead_letter`` moves a poisonous entry out of normal delivery

A handler failure never acknowledges anything. Retry budgets are caller
policy (see ``concord.queue.worker``).

Example:
    queue = ReliableQueue()
    await queue.create_group("orders", "billing", from_id="0", mkstream=True)
    await queue.enqueue("orders", {"order_id": 42})

    for entry in await queue.consume("orders", "billing", "worker-1"):
        await handle(entry.fields)
        await queue.ack("orders", "billing", entry.id)
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from concord.config import settings
from concord.errors import InvalidArgumentError, ScriptError, StreamNotFoundError
from concord.observability.metrics import record_queue_entries
from concord.queue.entries import (
    PAYLOAD_FIELD,
    DeadLetterEntry,
    PendingEntry,
    PendingSummary,
    QueueEntry,
    encode_payload,
    validate_entry_id,
)
from concord.store.executor import ScriptExecutor
from concord.store.keys import StoreKeys
from concord.store.redis import to_str
from concord.store.scripts import DEAD_LETTER, REPLAY_DEAD_LETTER

logger = logging.getLogger(__name__)

# Special ids accepted by XGROUP CREATE besides explicit entry ids
GROUP_START_NEW = "$"
GROUP_START_ALL = "0"


def _require_name(kind: str, value: str) -> None:
    if not isinstance(value, str) or not value:
        raise InvalidArgumentError(f"{kind} must be a non-empty string")


def _require_positive(kind: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidArgumentError(f"{kind} must be an integer >= 1")


def _iter_stream_reply(reply: Any) -> list[tuple[Any, Any]]:
    """Flatten an XREADGROUP reply (RESP2 list or RESP3 mapping)."""
    if not reply:
        return []
    if isinstance(reply, Mapping):
        # RESP3: {stream: [[(id, fields), ...]]}
        return [item for batches in reply.values() for batch in batches for item in batch]
    return [item for _stream, messages in reply for item in messages]


class ReliableQueue:
    """At-least-once queue operations on Redis Streams.

    Stateless apart from the executor; any number of instances in any
    number of processes can operate on the same streams.

    Args:
        executor: Script executor; a new one on the shared client when None
    """

    def __init__(self, executor: ScriptExecutor | None = None):
        self.executor = executor or ScriptExecutor()

    def _dead_letter_stream(self, stream: str, dead_letter_stream: str | None) -> str:
        if dead_letter_stream is not None:
            _require_name("dead_letter_stream", dead_letter_stream)
            return dead_letter_stream
        return StoreKeys.dead_letter(stream)

    async def enqueue(
        self,
        stream: str,
        payload: Mapping[str, Any],
        maxlen: int | None = None,
    ) -> str:
        """Append ``payload`` to ``stream`` and return the new entry id.

        The stream is created on first use. ``maxlen`` (default
        ``settings.queue_maxlen``) trims old entries approximately.
        """
        _require_name("stream", stream)
        data = encode_payload(payload)
        maxlen = maxlen if maxlen is not None else settings.queue_maxlen
        if maxlen is not None:
            _require_positive("maxlen", maxlen)

        entry_id = await self.executor.call(
            "xadd",
            stream,
            {PAYLOAD_FIELD: data},
            maxlen=maxlen,
            approximate=True,
        )
        entry_id = to_str(entry_id) or ""
        record_queue_entries("enqueue")
        logger.debug(f"Enqueued {entry_id} on {stream}")
        return entry_id

    async def create_group(
        self,
        stream: str,
        group: str,
        from_id: str = GROUP_START_NEW,
        mkstream: bool = False,
    ) -> bool:
        """Create consumer ``group`` on ``stream``.

        ``from_id`` is ``"$"`` (only entries added from now on), ``"0"``
        (every entry in the stream) or an explicit entry id.

        Returns:
            True if created, False if the group already existed

        Raises:
            StreamNotFoundError: stream missing and ``mkstream`` is False
        """
        _require_name("stream", stream)
        _require_name("group", group)
        if from_id != GROUP_START_NEW:
            validate_entry_id(from_id)

        try:
            await self.executor.call("xgroup_create", stream, group, id=from_id, mkstream=mkstream)
        except ScriptError as e:
            message = str(e)
            if "BUSYGROUP" in message:
                logger.debug(f"Consumer group {group} already exists on {stream}")
                return False
            if "requires the key to exist" in message:
                raise StreamNotFoundError(stream) from e
            raise

        logger.info(f"Created consumer group {group} on stream {stream} from {from_id}")
        return True

    async def consume(
        self,
        stream: str,
        group: str,
        consumer: str,
        batch_size: int | None = None,
        block_ms: int | None = None,
    ) -> list[QueueEntry]:
        """Read up to ``batch_size`` never-delivered entries for ``consumer``.

        Waits up to ``block_ms`` for entries to arrive when none are
        available; ``None`` or ``0`` returns immediately. Returned entries
        are pending for ``consumer`` until acked or claimed elsewhere.
        """
        _require_name("stream", stream)
        _require_name("group", group)
        _require_name("consumer", consumer)
        batch_size = batch_size if batch_size is not None else settings.queue_batch_size
        _require_positive("batch_size", batch_size)
        if block_ms is not None and block_ms < 0:
            raise InvalidArgumentError("block_ms must be >= 0")

        reply = await self.executor.call(
            "xreadgroup",
            groupname=group,
            consumername=consumer,
            streams={stream: ">"},
            count=batch_size,
            block=block_ms or None,
        )

        entries = [
            QueueEntry.from_stream(entry_id, fields)
            for entry_id, fields in _iter_stream_reply(reply)
            if fields is not None
        ]
        for entry in entries:
            if entry.decode_error is not None:
                logger.warning(f"Entry {entry.id} on {stream} has an undecodable payload")
        record_queue_entries("consume", len(entries))
        if entries:
            logger.debug(f"Consumer {consumer} received {len(entries)} entries from {stream}")
        return entries

    async def ack(self, stream: str, group: str, entry_id: str) -> bool:
        """Acknowledge ``entry_id``.

        Returns:
            True if the entry was pending, False otherwise (already acked,
            dead-lettered, or never delivered)
        """
        _require_name("stream", stream)
        _require_name("group", group)
        validate_entry_id(entry_id)

        acked = int(await self.executor.call("xack", stream, group, entry_id))
        record_queue_entries("ack", acked)
        return acked > 0

    async def claim_idle(
        self,
        stream: str,
        group: str,
        consumer: str,
        min_idle_ms: int | None = None,
        batch_size: int | None = None,
    ) -> list[QueueEntry]:
        """Take over entries pending for at least ``min_idle_ms``.

        Candidates come from the pending list; XCLAIM re-checks the idle
        time on each, so when several consumers race for the same entry
        only the first one receives it. Claimed entries carry their new
        delivery count.
        """
        _require_name("stream", stream)
        _require_name("group", group)
        _require_name("consumer", consumer)
        min_idle_ms = min_idle_ms if min_idle_ms is not None else settings.queue_claim_idle_ms
        batch_size = batch_size if batch_size is not None else settings.queue_batch_size
        # XCLAIM with a zero idle time claims unconditionally, so racing
        # claimers would all receive the same entry
        _require_positive("min_idle_ms", min_idle_ms)
        _require_positive("batch_size", batch_size)

        candidates = await self.pending_entries(
            stream, group, count=batch_size, min_idle_ms=min_idle_ms
        )
        if not candidates:
            return []

        counts = {c.id: c.delivery_count for c in candidates}
        claimed = await self.executor.call(
            "xclaim",
            stream,
            group,
            consumer,
            min_idle_time=min_idle_ms,
            message_ids=list(counts),
        )

        entries: list[QueueEntry] = []
        for raw_id, fields in claimed or []:
            if raw_id is None:
                continue
            entry_id = to_str(raw_id) or ""
            if fields is None:
                # Trimmed from the stream while pending; nothing left to deliver
                await self.executor.call("xack", stream, group, entry_id)
                logger.warning(f"Dropped pending entry {entry_id} on {stream}: entry was trimmed")
                continue
            entries.append(
                QueueEntry.from_stream(entry_id, fields, delivery_count=counts.get(entry_id, 0) + 1)
            )

        record_queue_entries("claim", len(entries))
        if entries:
            logger.info(
                f"Consumer {consumer} claimed {len(entries)} idle entries from {stream}/{group}"
            )
        return entries

    async def dead_letter(
        self,
        stream: str,
        group: str,
        entry_id: str,
        reason: str,
        dead_letter_stream: str | None = None,
    ) -> str | None:
        """Move a pending entry to the dead-letter stream and ack it.

        Copying and acknowledging happen in one script, so the entry is
        never both pending and dead-lettered.

        Returns:
            Id of the dead-letter entry, or None if ``entry_id`` was not
            pending in ``group``
        """
        _require_name("stream", stream)
        _require_name("group", group)
        validate_entry_id(entry_id)
        dlq = self._dead_letter_stream(stream, dead_letter_stream)

        dead_id = await self.executor.execute(
            DEAD_LETTER,
            keys=[stream, dlq],
            args=[group, entry_id, str(reason)],
        )
        if dead_id is None:
            logger.debug(f"Entry {entry_id} not pending in {stream}/{group}, not dead-lettered")
            return None

        dead_id = to_str(dead_id)
        record_queue_entries("dead_letter")
        logger.warning(
            f"Dead-lettered {entry_id} from {stream}/{group} as {dead_id}: {reason}",
            extra={"stream": stream, "group": group, "entry_id": entry_id},
        )
        return dead_id

    async def pending(self, stream: str, group: str) -> PendingSummary:
        """Summary of the pending entries of ``group``."""
        _require_name("stream", stream)
        _require_name("group", group)
        info = await self.executor.call("xpending", stream, group)
        return PendingSummary.from_redis(info or {})

    async def pending_entries(
        self,
        stream: str,
        group: str,
        count: int = 100,
        consumer: str | None = None,
        min_idle_ms: int | None = None,
    ) -> list[PendingEntry]:
        """Pending entries of ``group``, oldest first.

        ``min_idle_ms`` restricts the result to entries idle at least that long.
        """
        _require_name("stream", stream)
        _require_name("group", group)
        _require_positive("count", count)
        kwargs: dict[str, Any] = {}
        if consumer is not None:
            _require_name("consumer", consumer)
            kwargs["consumername"] = consumer
        if min_idle_ms is not None:
            _require_positive("min_idle_ms", min_idle_ms)
            kwargs["idle"] = min_idle_ms

        rows = await self.executor.call(
            "xpending_range", stream, group, min="-", max="+", count=count, **kwargs
        )
        return [PendingEntry.from_redis(row) for row in rows or []]

    async def dead_letters(
        self,
        stream: str,
        count: int = 100,
        dead_letter_stream: str | None = None,
    ) -> list[DeadLetterEntry]:
        """Oldest dead letters recorded for ``stream``."""
        _require_name("stream", stream)
        _require_positive("count", count)
        dlq = self._dead_letter_stream(stream, dead_letter_stream)

        rows = await self.executor.call("xrange", dlq, min="-", max="+", count=count)
        return [DeadLetterEntry.from_stream(entry_id, fields) for entry_id, fields in rows or []]

    async def replay_dead_letter(
        self,
        stream: str,
        dead_letter_id: str,
        dead_letter_stream: str | None = None,
    ) -> str | None:
        """Re-enqueue a dead letter's payload on ``stream`` and delete it.

        Returns:
            Id of the new entry, or None if the dead letter does not exist
        """
        _require_name("stream", stream)
        validate_entry_id(dead_letter_id)
        dlq = self._dead_letter_stream(stream, dead_letter_stream)

        new_id = await self.executor.execute(
            REPLAY_DEAD_LETTER, keys=[dlq, stream], args=[dead_letter_id]
        )
        if new_id is None:
            return None

        new_id = to_str(new_id)
        record_queue_entries("replay")
        logger.info(f"Replayed dead letter {dead_letter_id} onto {stream} as {new_id}")
        return new_id

    async def length(self, stream: str) -> int:
        """Number of entries in ``stream`` (0 if it does not exist)."""
        _require_name("stream", stream)
        return int(await self.executor.call("xlen", stream))
