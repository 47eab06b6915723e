import asyncio

from brawlsync.models.job import RefreshKind
from brawlsync.models.player import BackfillCandidate
from brawlsync.refresh.backfill import Backfill
from brawlsync.refresh.queue import MemoryQueueStore, RefreshQueue


def test_backfill_enqueues_missing_details_up_to_batch(repo, backfill_settings, clock):
    repo.candidates = [
        BackfillCandidate(1),
        BackfillCandidate(2, [RefreshKind.STATS]),
        BackfillCandidate(3),
    ]
    queue = RefreshQueue(MemoryQueueStore(clock))

    async def run():
        enqueued = await Backfill(repo, queue, backfill_settings).run()
        jobs = [await queue.get(kind, pid) for pid, kind in ((1, "ranked"), (1, "stats"), (2, "stats"), (3, "ranked"))]
        return enqueued, jobs

    enqueued, jobs = asyncio.run(run())
    assert enqueued == 3
    assert all(job is not None for job in jobs[:3])
    assert jobs[3] is None
    assert {job.priority for job in jobs[:3]} == {backfill_settings.priority}


def test_backfill_skips_when_backlog_is_full(repo, backfill_settings, clock):
    repo.candidates = [BackfillCandidate(100)]
    queue = RefreshQueue(MemoryQueueStore(clock))

    async def run():
        for player_id in range(backfill_settings.max_backlog):
            await queue.enqueue(RefreshKind.RANKED, player_id, 10)
        return await Backfill(repo, queue, backfill_settings).run()

    assert asyncio.run(run()) == 0


def test_backfill_counts_only_new_jobs(repo, backfill_settings, clock):
    repo.candidates = [BackfillCandidate(1)]
    queue = RefreshQueue(MemoryQueueStore(clock))

    async def run():
        await queue.enqueue(RefreshKind.RANKED, 1, 10)
        return await Backfill(repo, queue, backfill_settings).run()

    assert asyncio.run(run()) == 1
