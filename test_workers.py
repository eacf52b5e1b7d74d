"""
Worker pool tests
"""

import asyncio

import pytest

from velocity.errors import CapacityError
from velocity.workers import WorkerPool


def test_runs_jobs_and_returns_results():
    async def scenario():
        pool = WorkerPool(workers=2, queue_size=4)
        await pool.start()
        try:
            async def double(n):
                await asyncio.sleep(0)
                return n * 2

            results = await asyncio.gather(*(pool.run(lambda n=n: double(n)) for n in range(4)))
            return results, pool.get_stats()
        finally:
            await pool.stop()

    results, stats = asyncio.run(scenario())
    assert results == [0, 2, 4, 6]
    assert stats['jobs_completed'] == 4


def test_job_errors_reach_the_caller():
    async def scenario():
        pool = WorkerPool(workers=1, queue_size=1)
        await pool.start()
        try:
            async def broken():
                raise ValueError("boom")

            with pytest.raises(ValueError):
                await pool.run(broken)
            # The worker survives a failing job
            async def fine():
                return "ok"

            return await pool.run(fine)
        finally:
            await pool.stop()

    assert asyncio.run(scenario()) == "ok"


def test_full_queue_is_rejected_with_capacity_error():
    async def scenario():
        pool = WorkerPool(workers=1, queue_size=1)
        await pool.start()
        release = asyncio.Event()

        async def blocker():
            await release.wait()
            return "done"

        try:
            running = asyncio.ensure_future(pool.run(blocker))
            await asyncio.sleep(0.01)
            queued = asyncio.ensure_future(pool.run(blocker))
            await asyncio.sleep(0.01)

            with pytest.raises(CapacityError):
                await pool.run(blocker)

            release.set()
            return await asyncio.gather(running, queued), pool.get_stats()
        finally:
            await pool.stop()

    results, stats = asyncio.run(scenario())
    assert results == ["done", "done"]
    assert stats['jobs_rejected'] == 1


def test_cancelling_the_caller_cancels_the_job():
    async def scenario():
        pool = WorkerPool(workers=1, queue_size=2)
        await pool.start()
        started = asyncio.Event()
        job_cancelled = asyncio.Event()

        async def long_job():
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                job_cancelled.set()
                raise

        try:
            caller = asyncio.ensure_future(pool.run(long_job))
            await started.wait()
            caller.cancel()
            with pytest.raises(asyncio.CancelledError):
                await caller
            await asyncio.wait_for(job_cancelled.wait(), timeout=1.0)

            # Worker is free again
            async def quick():
                return 42

            return await asyncio.wait_for(pool.run(quick), timeout=1.0)
        finally:
            await pool.stop()

    assert asyncio.run(scenario()) == 42


def test_run_requires_started_pool():
    async def nothing():
        return None

    with pytest.raises(RuntimeError):
        asyncio.run(WorkerPool().run(nothing))
