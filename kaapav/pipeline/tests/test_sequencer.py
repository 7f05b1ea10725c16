"""
Tests for the Per-Conversation Sequencer.

Tests cover:
  - FIFO ordering within a conversation
  - At most one unit running per conversation
  - Cross-conversation parallelism
  - A failed unit does not block the next one
  - Registry entries removed once the chain drains
  - Queue depth and active conversation tracking
  - stop() drains pending work
"""

import asyncio

import pytest

from kaapav.pipeline.queue import ConversationSequencer


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Ordering & exclusivity
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestOrdering:

    @pytest.mark.asyncio
    async def test_units_run_in_enqueue_order(self):
        seq = ConversationSequencer()
        processed = []

        async def unit(n):
            await asyncio.sleep(0.01 * (5 - n))  # later units are faster
            processed.append(n)
            return n

        results = await asyncio.gather(
            *(seq.enqueue("919800000001", lambda n=n: unit(n)) for n in range(5))
        )

        assert processed == [0, 1, 2, 3, 4]
        assert results == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_at_most_one_unit_per_conversation(self):
        """Concurrent enqueues never overlap for the same conversation."""
        seq = ConversationSequencer()
        running = 0
        peak = 0

        async def unit():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.005)
            running -= 1

        await asyncio.gather(*(seq.enqueue("919800000002", unit) for _ in range(10)))

        assert peak == 1

    @pytest.mark.asyncio
    async def test_different_conversations_run_concurrently(self):
        seq = ConversationSequencer()
        started = []
        release = asyncio.Event()

        async def blocked(name):
            started.append(name)
            await release.wait()

        t1 = asyncio.create_task(seq.enqueue("A", lambda: blocked("A")))
        t2 = asyncio.create_task(seq.enqueue("B", lambda: blocked("B")))
        await asyncio.sleep(0.02)

        assert sorted(started) == ["A", "B"]
        release.set()
        await asyncio.gather(t1, t2)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Failure isolation
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestFailureIsolation:

    @pytest.mark.asyncio
    async def test_failed_unit_raises_to_its_caller_only(self):
        seq = ConversationSequencer()

        async def boom():
            await asyncio.sleep(0.01)
            raise RuntimeError("route exploded")

        async def ok():
            return "second ran"

        first = asyncio.create_task(seq.enqueue("C", boom))
        second = asyncio.create_task(seq.enqueue("C", ok))

        with pytest.raises(RuntimeError):
            await first
        assert await second == "second ran"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Registry bookkeeping
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestRegistry:

    @pytest.mark.asyncio
    async def test_entry_removed_after_chain_drains(self):
        seq = ConversationSequencer()

        async def unit():
            return None

        await seq.enqueue("D", unit)
        await asyncio.sleep(0.01)

        assert seq.active_count == 0
        assert seq.active_conversations == []

    @pytest.mark.asyncio
    async def test_earlier_chain_does_not_remove_newer_tail(self):
        """When the head settles, the newer tail must stay registered."""
        seq = ConversationSequencer()
        release = asyncio.Event()

        async def quick():
            return 1

        async def slow():
            await release.wait()
            return 2

        first = asyncio.create_task(seq.enqueue("E", quick))
        second = asyncio.create_task(seq.enqueue("E", slow))
        await first
        await asyncio.sleep(0.01)

        assert seq.active_conversations == ["E"]
        assert seq.queue_depth("E") == 1

        release.set()
        assert await second == 2
        await asyncio.sleep(0.01)
        assert seq.active_count == 0
        assert seq.queue_depth("E") == 0

    @pytest.mark.asyncio
    async def test_queue_depth_counts_waiting_units(self):
        seq = ConversationSequencer()
        release = asyncio.Event()

        async def slow():
            await release.wait()

        tasks = [asyncio.create_task(seq.enqueue("F", slow)) for _ in range(3)]
        await asyncio.sleep(0.01)

        assert seq.queue_depth("F") == 3
        assert seq.queue_depth("unknown") == 0

        release.set()
        await asyncio.gather(*tasks)

    @pytest.mark.asyncio
    async def test_stop_waits_for_pending_work(self):
        seq = ConversationSequencer()
        done = []

        async def unit():
            await asyncio.sleep(0.02)
            done.append(True)

        task = asyncio.create_task(seq.enqueue("G", unit))
        await asyncio.sleep(0)
        await seq.stop(timeout=1.0)

        assert done == [True]
        await task
