import asyncio

import pytest

from fakes import FakeLLM
from services.bot import ReplyBot
from services.rate_limiter import RateLimiter


@pytest.fixture
def make_bot(store, bluesky, quota_db, clock):
    def factory() -> ReplyBot:
        limiter = RateLimiter(quota_db, clock=clock, tz_name="America/Los_Angeles")
        return ReplyBot(store, limiter, bluesky, FakeLLM())
    return factory


def test_start_schedules_every_loop(make_bot) -> None:
    async def scenario():
        bot = make_bot()
        bot.start()
        started = bot.running
        job_ids = sorted(job.id for job in bot.scheduler.get_jobs())
        clean = await bot.stop(grace_seconds=1)
        return bot, started, job_ids, clean

    bot, started, job_ids, clean = asyncio.run(scenario())

    assert started
    assert job_ids == ["ingestor", "reply_sender", "stale_handler", "worker"]
    assert clean
    assert not bot.running
    assert bot.ingest_stop_event.is_set()
    assert bot.stop_event.is_set()


def test_tick_errors_do_not_escape(make_bot) -> None:
    async def boom():
        raise RuntimeError("tick exploded")

    async def scenario():
        bot = make_bot()
        await bot._tick("worker", boom)
        return bot

    bot = asyncio.run(scenario())
    assert bot._running == set()


def test_stop_waits_for_in_flight_tick(make_bot) -> None:
    finished = []

    async def slow():
        await asyncio.sleep(0.05)
        finished.append(True)

    async def scenario():
        bot = make_bot()
        task = asyncio.create_task(bot._tick("reply_sender", slow))
        await asyncio.sleep(0)
        assert task in bot._running
        return await bot.stop(grace_seconds=2)

    assert asyncio.run(scenario()) is True
    assert finished == [True]


def test_stop_cancels_ticks_after_grace(make_bot) -> None:
    async def stuck():
        await asyncio.sleep(30)

    async def scenario():
        bot = make_bot()
        task = asyncio.create_task(bot._tick("worker", stuck))
        await asyncio.sleep(0)
        clean = await bot.stop(grace_seconds=0.05)
        return clean, task

    clean, task = asyncio.run(scenario())

    assert clean is False
    assert task.cancelled()


def test_ingestion_stops_before_other_loops(make_bot) -> None:
    observed = {}

    async def scenario():
        bot = make_bot()

        async def sender_tick():
            # in-flight ticks keep running after ingestion is switched off
            await asyncio.sleep(0.01)
            observed["ingest_stopped"] = bot.ingest_stop_event.is_set()
            observed["stopped"] = bot.stop_event.is_set()

        asyncio.create_task(bot._tick("reply_sender", sender_tick))
        await asyncio.sleep(0)
        await bot.stop(grace_seconds=1)
        observed["ingest_tick"] = await bot.ingestor.run_once()

    asyncio.run(scenario())

    assert observed == {
        "ingest_stopped": True,
        "stopped": True,
        "ingest_tick": {"found": 0, "enqueued": 0},
    }
