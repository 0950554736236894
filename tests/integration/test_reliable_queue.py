"""Integration tests for the reliable queue against real Redis."""

import asyncio

import pytest
import pytest_asyncio

from concord.errors import StreamNotFoundError
from concord.queue.entries import QueueEntry
from concord.queue.reliable import ReliableQueue
from concord.queue.worker import QueueWorker, WorkerConfig

STREAM = "orders"
GROUP = "billing"


@pytest_asyncio.fixture
async def ready_queue(queue: ReliableQueue) -> ReliableQueue:
    await queue.create_group(STREAM, GROUP, from_id="0", mkstream=True)
    return queue


class TestConsumerGroups:
    """Group management."""

    @pytest.mark.asyncio
    async def test_create_group_idempotent(self, queue: ReliableQueue) -> None:
        assert await queue.create_group(STREAM, GROUP, mkstream=True) is True
        assert await queue.create_group(STREAM, GROUP, mkstream=True) is False

    @pytest.mark.asyncio
    async def test_create_group_on_missing_stream(self, queue: ReliableQueue) -> None:
        with pytest.raises(StreamNotFoundError):
            await queue.create_group("missing", GROUP)

    @pytest.mark.asyncio
    async def test_group_from_now_skips_existing_entries(self, queue: ReliableQueue) -> None:
        await queue.enqueue(STREAM, {"n": 1})
        await queue.create_group(STREAM, "late", from_id="$")
        await queue.enqueue(STREAM, {"n": 2})

        entries = await queue.consume(STREAM, "late", "worker-a")

        assert [e.fields for e in entries] == [{"n": 2}]

    @pytest.mark.asyncio
    async def test_groups_consume_independently(self, queue: ReliableQueue) -> None:
        await queue.create_group(STREAM, "a", from_id="0", mkstream=True)
        await queue.create_group(STREAM, "b", from_id="0", mkstream=True)
        await queue.enqueue(STREAM, {"n": 1})

        first = await queue.consume(STREAM, "a", "worker-a")
        second = await queue.consume(STREAM, "b", "worker-b")

        assert first[0].id == second[0].id


class TestDelivery:
    """At-least-once delivery."""

    @pytest.mark.asyncio
    async def test_enqueue_consume_ack(self, ready_queue: ReliableQueue) -> None:
        entry_id = await ready_queue.enqueue(STREAM, {"order_id": 42})

        entries = await ready_queue.consume(STREAM, GROUP, "worker-a")

        assert len(entries) == 1
        assert entries[0].id == entry_id
        assert entries[0].fields == {"order_id": 42}
        assert entries[0].delivery_count == 1
        assert (await ready_queue.pending(STREAM, GROUP)).pending == 1

        assert await ready_queue.ack(STREAM, GROUP, entry_id) is True
        assert await ready_queue.ack(STREAM, GROUP, entry_id) is False
        assert (await ready_queue.pending(STREAM, GROUP)).pending == 0

    @pytest.mark.asyncio
    async def test_each_entry_delivered_to_one_consumer(
        self, ready_queue: ReliableQueue
    ) -> None:
        for n in range(10):
            await ready_queue.enqueue(STREAM, {"n": n})

        batches = await asyncio.gather(
            *(ready_queue.consume(STREAM, GROUP, f"worker-{i}", batch_size=4) for i in range(3))
        )

        ids = [e.id for batch in batches for e in batch]
        assert len(ids) == 10
        assert len(set(ids)) == 10

    @pytest.mark.asyncio
    async def test_entries_in_id_order(self, ready_queue: ReliableQueue) -> None:
        ids = [await ready_queue.enqueue(STREAM, {"n": n}) for n in range(5)]

        entries = await ready_queue.consume(STREAM, GROUP, "worker-a", batch_size=10)

        assert [e.id for e in entries] == ids

    @pytest.mark.asyncio
    async def test_consume_blocks_until_entry_arrives(self, ready_queue: ReliableQueue) -> None:
        async def produce_later() -> None:
            await asyncio.sleep(0.1)
            await ready_queue.enqueue(STREAM, {"late": True})

        producer = asyncio.create_task(produce_later())
        entries = await ready_queue.consume(STREAM, GROUP, "worker-a", block_ms=2000)
        await producer

        assert [e.fields for e in entries] == [{"late": True}]

    @pytest.mark.asyncio
    async def test_unacked_entry_is_reclaimed(self, ready_queue: ReliableQueue) -> None:
        """A consumer that never acks loses the entry to another after the idle time."""
        entry_id = await ready_queue.enqueue(STREAM, {"n": 1})
        await ready_queue.consume(STREAM, GROUP, "crashed")

        assert await ready_queue.claim_idle(STREAM, GROUP, "worker-b", min_idle_ms=10_000) == []

        await asyncio.sleep(0.15)
        claimed = await ready_queue.claim_idle(STREAM, GROUP, "worker-b", min_idle_ms=100)

        assert [e.id for e in claimed] == [entry_id]
        assert claimed[0].delivery_count == 2
        assert claimed[0].fields == {"n": 1}
        summary = await ready_queue.pending(STREAM, GROUP)
        assert summary.consumers == {"worker-b": 1}

    @pytest.mark.asyncio
    async def test_crashed_consumer_entries_delivered_at_least_once(
        self, ready_queue: ReliableQueue
    ) -> None:
        """Entries a consumer never acked are recovered by another; none are lost."""
        total = 10
        enqueued = [await ready_queue.enqueue(STREAM, {"n": n}) for n in range(total)]

        delivered = await ready_queue.consume(STREAM, GROUP, "crashed", batch_size=total)
        assert [e.id for e in delivered] == enqueued

        acked: set[str] = set()
        for entry in delivered[: total // 2]:
            assert await ready_queue.ack(STREAM, GROUP, entry.id)
            acked.add(entry.id)
        unacked = [e.id for e in delivered[total // 2 :]]

        await asyncio.sleep(0.15)
        claimed = await ready_queue.claim_idle(
            STREAM, GROUP, "worker-b", min_idle_ms=100, batch_size=total
        )

        assert [e.id for e in claimed] == unacked
        assert all(e.delivery_count == 2 for e in claimed)
        for entry in claimed:
            assert await ready_queue.ack(STREAM, GROUP, entry.id)
            acked.add(entry.id)

        assert acked == set(enqueued)
        assert (await ready_queue.pending(STREAM, GROUP)).pending == 0

    @pytest.mark.asyncio
    async def test_racing_claimers_single_winner(self, ready_queue: ReliableQueue) -> None:
        await ready_queue.enqueue(STREAM, {"n": 1})
        await ready_queue.consume(STREAM, GROUP, "crashed")
        await asyncio.sleep(0.15)

        results = await asyncio.gather(
            *(
                ready_queue.claim_idle(STREAM, GROUP, f"claimer-{i}", min_idle_ms=100)
                for i in range(5)
            )
        )

        assert sum(len(r) for r in results) == 1

    @pytest.mark.asyncio
    async def test_trimmed_pending_entry_is_dropped(
        self, ready_queue: ReliableQueue, redis_client
    ) -> None:
        entry_id = await ready_queue.enqueue(STREAM, {"n": 1})
        await ready_queue.consume(STREAM, GROUP, "crashed")
        await redis_client.xdel(STREAM, entry_id)
        await asyncio.sleep(0.15)

        claimed = await ready_queue.claim_idle(STREAM, GROUP, "worker-b", min_idle_ms=100)

        assert claimed == []
        assert (await ready_queue.pending(STREAM, GROUP)).pending == 0


class TestDeadLetter:
    """Dead-letter isolation."""

    @pytest.mark.asyncio
    async def test_dead_letter_moves_entry(self, ready_queue: ReliableQueue) -> None:
        entry_id = await ready_queue.enqueue(STREAM, {"order_id": 42})
        await ready_queue.consume(STREAM, GROUP, "worker-a")

        dead_id = await ready_queue.dead_letter(STREAM, GROUP, entry_id, "card declined")

        assert dead_id is not None
        assert (await ready_queue.pending(STREAM, GROUP)).pending == 0

        letters = await ready_queue.dead_letters(STREAM)
        assert len(letters) == 1
        letter = letters[0]
        assert letter.id == dead_id
        assert letter.original_id == entry_id
        assert letter.original_stream == STREAM
        assert letter.group == GROUP
        assert letter.consumer == "worker-a"
        assert letter.delivery_count == 1
        assert letter.reason == "card declined"
        assert letter.dead_lettered_at > 0
        assert letter.fields == {"order_id": 42}

    @pytest.mark.asyncio
    async def test_dead_lettered_entry_never_redelivered(
        self, ready_queue: ReliableQueue
    ) -> None:
        entry_id = await ready_queue.enqueue(STREAM, {"n": 1})
        await ready_queue.consume(STREAM, GROUP, "worker-a")
        await ready_queue.dead_letter(STREAM, GROUP, entry_id, "poison")
        await asyncio.sleep(0.15)

        assert await ready_queue.claim_idle(STREAM, GROUP, "worker-b", min_idle_ms=100) == []
        assert await ready_queue.consume(STREAM, GROUP, "worker-b") == []

    @pytest.mark.asyncio
    async def test_dead_letter_not_pending_is_noop(self, ready_queue: ReliableQueue) -> None:
        entry_id = await ready_queue.enqueue(STREAM, {"n": 1})

        assert await ready_queue.dead_letter(STREAM, GROUP, entry_id, "never delivered") is None
        assert await ready_queue.dead_letters(STREAM) == []

    @pytest.mark.asyncio
    async def test_replay_dead_letter(self, ready_queue: ReliableQueue) -> None:
        entry_id = await ready_queue.enqueue(STREAM, {"n": 1})
        await ready_queue.consume(STREAM, GROUP, "worker-a")
        dead_id = await ready_queue.dead_letter(STREAM, GROUP, entry_id, "poison")
        assert dead_id is not None

        new_id = await ready_queue.replay_dead_letter(STREAM, dead_id)

        assert new_id is not None and new_id != entry_id
        assert await ready_queue.dead_letters(STREAM) == []
        entries = await ready_queue.consume(STREAM, GROUP, "worker-b")
        assert [(e.id, e.fields) for e in entries] == [(new_id, {"n": 1})]
        assert await ready_queue.replay_dead_letter(STREAM, dead_id) is None


class TestQueueWorker:
    """Worker policy end to end."""

    @pytest.mark.asyncio
    async def test_failing_entry_ends_in_dead_letter(self, queue: ReliableQueue) -> None:
        config = WorkerConfig(batch_size=10, claim_idle_ms=50, max_deliveries=2)
        worker = QueueWorker(queue, STREAM, GROUP, consumer="worker-a", config=config)
        handled: list[tuple[str, int]] = []

        async def handler(entry: QueueEntry) -> None:
            handled.append((entry.id, entry.delivery_count))
            if entry.fields.get("poison"):
                raise ValueError("cannot process")

        worker.register_handler(handler)
        good_id = await queue.enqueue(STREAM, {"poison": False})
        bad_id = await queue.enqueue(STREAM, {"poison": True})

        assert await worker.run_once() == 1
        await asyncio.sleep(0.1)
        assert await worker.run_once() == 0

        assert handled == [(good_id, 1), (bad_id, 1), (bad_id, 2)]
        letters = await queue.dead_letters(STREAM)
        assert [(d.original_id, d.reason) for d in letters] == [(bad_id, "cannot process")]
        assert (await queue.pending(STREAM, GROUP)).pending == 0

    @pytest.mark.asyncio
    async def test_undecodable_entry_does_not_block_the_stream(
        self, queue: ReliableQueue, redis_client
    ) -> None:
        config = WorkerConfig(batch_size=10, claim_idle_ms=50, max_deliveries=3)
        worker = QueueWorker(queue, STREAM, GROUP, consumer="worker-a", config=config)
        handled: list[str] = []

        async def handler(entry: QueueEntry) -> None:
            handled.append(entry.id)

        worker.register_handler(handler)
        await queue.create_group(STREAM, GROUP, from_id="0", mkstream=True)
        bad_id = await redis_client.xadd(STREAM, {"payload": "not-json"})
        good_id = await queue.enqueue(STREAM, {"n": 1})

        assert await worker.run_once() == 1

        assert handled == [good_id]
        letters = await queue.dead_letters(STREAM)
        assert [d.original_id for d in letters] == [bad_id]
        assert letters[0].reason.startswith("Undecodable payload")
        assert letters[0].fields == {"payload": "not-json"}
        assert (await queue.pending(STREAM, GROUP)).pending == 0
