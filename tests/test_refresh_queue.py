import asyncio
from unittest.mock import AsyncMock, MagicMock

from brawlsync.core.store import RedisStore
from brawlsync.models.job import JobState, RefreshKind, dedupe_key
from brawlsync.refresh.queue import MemoryQueueStore, RedisQueueStore, RefreshQueue


def test_dedupe_key_format():
    assert dedupe_key(RefreshKind.RANKED, 42) == "refresh-ranked-42"
    assert dedupe_key("stats", 42) == "refresh-stats-42"


def test_pending_job_is_not_duplicated(clock):
    queue = RefreshQueue(MemoryQueueStore(clock))

    async def run():
        first = await queue.enqueue(RefreshKind.RANKED, 42, 50)
        second = await queue.enqueue(RefreshKind.RANKED, 42, 10)
        other_kind = await queue.enqueue(RefreshKind.STATS, 42, 10)
        return first, second, other_kind, await queue.backlog(), await queue.get(RefreshKind.RANKED, 42)

    first, second, other_kind, backlog, job = asyncio.run(run())
    assert (first, second, other_kind) == (True, False, True)
    assert backlog == 2
    assert job.priority == 50


def test_failed_job_is_replaced_on_resubmit(clock):
    store = MemoryQueueStore(clock)
    queue = RefreshQueue(store)

    async def run():
        await queue.enqueue(RefreshKind.STATS, 7, 40)
        job = await store.poll()
        job.attempts = 3
        await store.mark_failed(job, "HTTP 503")
        failed = await queue.get(RefreshKind.STATS, 7)
        failed_state, backlog_after_fail = failed.state, await queue.backlog()
        resubmitted = await queue.enqueue(RefreshKind.STATS, 7, 40)
        return failed_state, backlog_after_fail, resubmitted, await queue.get(RefreshKind.STATS, 7)

    failed_state, backlog_after_fail, resubmitted, fresh = asyncio.run(run())
    assert failed_state is JobState.FAILED
    assert backlog_after_fail == 0
    assert resubmitted is True
    assert fresh.state is JobState.WAITING
    assert fresh.attempts == 0


def test_lower_priority_value_is_served_first(clock):
    store = MemoryQueueStore(clock)
    queue = RefreshQueue(store)

    async def run():
        await queue.enqueue(RefreshKind.RANKED, 1, 50)
        await queue.enqueue(RefreshKind.RANKED, 2, 10)
        await queue.enqueue(RefreshKind.STATS, 3, 10)
        order = []
        while (job := await store.poll()) is not None:
            order.append(job.target_id)
        return order

    assert asyncio.run(run()) == [2, 3, 1]


def test_priority_is_clamped(clock):
    queue = RefreshQueue(MemoryQueueStore(clock))

    async def run():
        await queue.enqueue(RefreshKind.RANKED, 1, 500)
        await queue.enqueue(RefreshKind.RANKED, 2, -3)
        return await queue.get(RefreshKind.RANKED, 1), await queue.get(RefreshKind.RANKED, 2)

    high, low = asyncio.run(run())
    assert (high.priority, low.priority) == (100, 1)


def test_deferred_job_comes_back_when_due(clock):
    store = MemoryQueueStore(clock)

    async def run():
        await RefreshQueue(store).enqueue(RefreshKind.RANKED, 5, 20)
        job = await store.poll()
        await store.defer(job, 60)
        too_early = await store.poll()
        clock.advance(61)
        return too_early, await store.poll(), await store.backlog()

    too_early, due, backlog = asyncio.run(run())
    assert too_early is None
    assert due.target_id == 5 and due.state is JobState.ACTIVE
    assert backlog == 1


def test_removed_job_is_never_polled(clock):
    store = MemoryQueueStore(clock)

    async def run():
        await RefreshQueue(store).enqueue(RefreshKind.RANKED, 5, 20)
        await store.remove("refresh-ranked-5")
        return await store.poll(), await store.backlog()

    assert asyncio.run(run()) == (None, 0)


def test_redis_queue_decodes_job_hash():
    client = MagicMock()
    client.register_script.return_value = AsyncMock(
        return_value=[
            "key", "refresh-ranked-7",
            "kind", "ranked",
            "target_id", "7",
            "priority", "40",
            "created_at", "1700000000.0",
            "state", "delayed",
            "attempts", "1",
            "not_before", "1700000300.0",
            "last_error", "",
        ]
    )
    queue_store = RedisQueueStore(RedisStore("redis://localhost:6379/0", client=client))

    job = asyncio.run(queue_store.get("refresh-ranked-7"))
    assert job.kind is RefreshKind.RANKED
    assert job.state is JobState.DELAYED
    assert job.priority == 40
    assert job.not_before == 1700000300.0
    assert job.last_error is None


def test_redis_queue_add_sends_priority_and_fields():
    client = MagicMock()
    script = AsyncMock(side_effect=[[], 1])
    client.register_script.return_value = script
    queue_store = RedisQueueStore(RedisStore("redis://localhost:6379/0", client=client), prefix="q")

    async def run():
        return await RefreshQueue(queue_store).enqueue(RefreshKind.STATS, 9, 30)

    assert asyncio.run(run()) is True
    keys = script.await_args_list[-1].kwargs["keys"]
    args = script.await_args_list[-1].kwargs["args"]
    assert keys == ["q:job:refresh-stats-9", "q:waiting", "q:seq"]
    assert args[:2] == ["refresh-stats-9", 30]
    assert "target_id" in args


def test_stalled_claim_returns_to_the_queue(clock):
    store = MemoryQueueStore(clock, claim_timeout=60)
    queue = RefreshQueue(store)

    async def run():
        await queue.enqueue(RefreshKind.RANKED, 8, 20)
        claimed = await store.poll()
        first_deadline = claimed.claimed_until
        resubmitted = await queue.enqueue(RefreshKind.RANKED, 8, 20)
        before_deadline = await store.poll()
        clock.advance(61)
        reclaimed = await store.poll()
        return first_deadline, resubmitted, before_deadline, reclaimed, await store.backlog()

    first_deadline, resubmitted, before_deadline, reclaimed, backlog = asyncio.run(run())
    assert first_deadline == clock.now - 1
    assert resubmitted is False
    assert before_deadline is None
    assert reclaimed.key == "refresh-ranked-8"
    assert reclaimed.state is JobState.ACTIVE
    assert reclaimed.claimed_until == clock.now + 60
    assert backlog == 1


def test_redis_poll_passes_claim_timeout():
    client = MagicMock()
    script = AsyncMock(return_value=[])
    client.register_script.return_value = script
    queue_store = RedisQueueStore(RedisStore("redis://localhost:6379/0", client=client), prefix="q", claim_timeout=45)

    assert asyncio.run(queue_store.poll()) is None
    assert script.await_args.kwargs["keys"] == ["q:waiting", "q:delayed", "q:active"]
    assert script.await_args.kwargs["args"] == ["q:job:", 45000]
