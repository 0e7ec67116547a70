import asyncio
from datetime import datetime, timedelta, timezone

from services.message_store import JobStatus, Mention
from services.stale_handler import StaleJobReaper


async def enqueue(store, n: int):
    await store.enqueue(
        Mention(
            uri=f"at://did:plc:alice/app.bsky.feed.post/{n}",
            cid=f"bafy-{n}",
            author_did="did:plc:alice",
            author_handle="alice.test",
            text=f"question {n}",
        )
    )
    return store.jobs[max(store.jobs)]


def test_stuck_jobs_are_requeued(store) -> None:
    reaper = StaleJobReaper(store, timeout=timedelta(minutes=10))

    async def scenario():
        stuck = await enqueue(store, 1)
        fresh = await enqueue(store, 2)
        await store.claim_next()
        await store.claim_next()
        stuck.processing_started_at = datetime.now(timezone.utc) - timedelta(minutes=11)
        return stuck, fresh, await reaper.run_once()

    stuck, fresh, summary = asyncio.run(scenario())

    assert summary == {"reset": 1, "archived": 0}
    assert store.jobs[stuck.id].status is JobStatus.QUEUED
    assert store.jobs[stuck.id].processing_started_at is None
    assert store.jobs[stuck.id].retry_count == 0
    assert store.jobs[fresh.id].status is JobStatus.PROCESSING


def test_terminally_failed_jobs_are_archived(store) -> None:
    reaper = StaleJobReaper(store)

    async def scenario():
        job = await enqueue(store, 1)
        await store.claim_next()
        await store.mark_failed(job.id, "all models exhausted", max_retries=1)
        return await reaper.run_once()

    summary = asyncio.run(scenario())

    assert summary == {"reset": 0, "archived": 1}
    assert store.jobs == {}
    entry = store.history[0]
    assert entry["status"] is JobStatus.FAILED
    assert entry["error_message"] == "all models exhausted"
    assert entry["reply_uri"] is None


def test_archive_failure_keeps_job(store) -> None:
    reaper = StaleJobReaper(store)

    async def scenario():
        job = await enqueue(store, 1)
        await store.claim_next()
        await store.mark_failed(job.id, "boom", max_retries=1)
        store.fail_finalize = True
        return await reaper.run_once()

    assert asyncio.run(scenario()) == {"reset": 0, "archived": 0}
    assert store.jobs[1].status is JobStatus.FAILED


def test_stopped_reaper_does_nothing(store) -> None:
    reaper = StaleJobReaper(store, timeout=timedelta(minutes=10))
    reaper.stop_event.set()

    async def scenario():
        job = await enqueue(store, 1)
        await store.claim_next()
        job.processing_started_at = datetime.now(timezone.utc) - timedelta(hours=1)
        return await reaper.run_once()

    assert asyncio.run(scenario()) == {"reset": 0, "archived": 0}
    assert store.jobs[1].status is JobStatus.PROCESSING
