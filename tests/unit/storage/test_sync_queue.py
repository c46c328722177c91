import asyncio
from datetime import timedelta

import pytest

from docvault.services.storage.sync_queue import SyncQueue


@pytest.fixture
def queue(clock):
    return SyncQueue(clock=clock, max_retries=3, base_delay_seconds=1.0)


@pytest.mark.asyncio
async def test_enqueue_schedules_first_retry_after_base_delay(queue, clock):
    item = await queue.enqueue("doc_1", "secondary", "doc_1", "boom")

    assert item.retry_count == 0
    assert item.next_attempt_at == clock.now() + timedelta(seconds=1)
    assert item.last_error == "boom"
    assert queue.status().pending == 1


@pytest.mark.asyncio
async def test_enqueue_twice_keeps_one_item(queue):
    await queue.enqueue("doc_1", "secondary", "doc_1", "first")
    await queue.enqueue("doc_1", "secondary", "doc_1", "second")

    assert queue.status().pending == 1
    assert queue.get("doc_1", "secondary").last_error == "second"


@pytest.mark.asyncio
async def test_claim_due_only_returns_due_items(queue, clock):
    await queue.enqueue("doc_1", "secondary", "doc_1")
    assert await queue.claim_due() == []

    await clock.advance(1)
    due = await queue.claim_due()
    assert [item.key for item in due] == [("doc_1", "secondary")]


@pytest.mark.asyncio
async def test_claimed_items_are_not_handed_out_twice(queue, clock):
    await queue.enqueue("doc_1", "secondary", "doc_1")
    await clock.advance(1)

    first = await queue.claim_due()
    second = await queue.claim_due()

    assert len(first) == 1
    assert second == []


@pytest.mark.asyncio
async def test_failed_retries_back_off_exponentially_then_move_to_failed(queue, clock):
    await queue.enqueue("doc_1", "secondary", "doc_1")
    delays = []

    for _ in range(4):
        item = queue.get("doc_1", "secondary")
        delays.append((item.next_attempt_at - clock.now()).total_seconds())
        await clock.advance(delays[-1])
        await queue.claim_due()
        exhausted = await queue.mark_failed(("doc_1", "secondary"), "still down")

    assert delays == [1.0, 2.0, 4.0, 8.0]
    assert exhausted is not None
    assert queue.status().pending == 0
    assert queue.status().failed == 1
    assert queue.failed_items()[0].last_error == "still down"


@pytest.mark.asyncio
async def test_failed_items_are_never_claimed(queue, clock):
    await queue.enqueue("doc_1", "secondary", "doc_1")
    for _ in range(4):
        await clock.advance(10)
        await queue.claim_due()
        await queue.mark_failed(("doc_1", "secondary"), "down")

    await clock.advance(1000)
    assert await queue.claim_due() == []


@pytest.mark.asyncio
async def test_mark_succeeded_removes_item(queue, clock):
    await queue.enqueue("doc_1", "secondary", "doc_1")
    await clock.advance(1)
    await queue.claim_due()
    await queue.mark_succeeded(("doc_1", "secondary"))

    assert queue.status().pending == 0
    assert queue.get("doc_1", "secondary") is None


@pytest.mark.asyncio
async def test_requeue_failed_resets_retry_count(queue, clock):
    for backend in ("primary", "secondary"):
        await queue.enqueue("doc_1", backend, "doc_1")
        for _ in range(4):
            await clock.advance(10)
            await queue.claim_due()
            await queue.mark_failed(("doc_1", backend), "down")

    assert await queue.requeue_failed(backend_name="secondary") == 1

    status = queue.status()
    assert status.pending == 1
    assert status.failed == 1
    item = queue.get("doc_1", "secondary")
    assert item.retry_count == 0
    assert item.next_attempt_at == clock.now()


@pytest.mark.asyncio
async def test_remove_document_drops_pending_and_failed(queue):
    await queue.enqueue("doc_1", "primary", "doc_1")
    await queue.enqueue("doc_1", "secondary", "doc_1")
    await queue.enqueue("doc_2", "secondary", "doc_2")

    assert await queue.remove_document("doc_1") == 2
    assert queue.status().pending == 1
    assert not await queue.references("doc_1")
    assert await queue.references("doc_2")


@pytest.mark.asyncio
async def test_snapshot_and_restore(queue, clock):
    await queue.enqueue("doc_1", "secondary", "doc_1")
    pending, failed = queue.snapshot()

    restored = SyncQueue(clock=clock)
    await restored.restore(pending, failed)

    assert restored.status().pending == 1
    assert restored.get("doc_1", "secondary").next_attempt_at == queue.get("doc_1", "secondary").next_attempt_at


@pytest.mark.asyncio
async def test_concurrent_enqueues_for_same_pair_keep_one_item(queue):
    await asyncio.gather(*(queue.enqueue("doc_1", "secondary", "doc_1", str(i)) for i in range(50)))

    assert queue.status().pending == 1
