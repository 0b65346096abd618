import asyncio

import pytest

from ugc_tracker.api.job_manager import JobAlreadyRunning, JobManager


def test_second_job_of_same_type_is_refused():
    async def scenario():
        jobs = JobManager()
        gate = asyncio.Event()

        async def slow():
            await gate.wait()
            return {"ok": True}

        first = await jobs.create("sync_creators", slow)
        with pytest.raises(JobAlreadyRunning) as exc:
            await jobs.create("sync_creators", slow)
        assert exc.value.job.job_id == first.job_id

        other = await jobs.create("something_else", slow)
        gate.set()
        await asyncio.sleep(0.01)
        return first, other

    first, other = asyncio.run(scenario())
    assert first.status == "succeeded"
    assert first.result == {"ok": True}
    assert other.status == "succeeded"


def test_failed_job_keeps_traceback():
    async def scenario():
        jobs = JobManager()

        async def boom():
            raise RuntimeError("apify down")

        job = await jobs.create("sync_creators", boom)
        await asyncio.sleep(0.01)
        return job

    job = asyncio.run(scenario())
    assert job.status == "failed"
    assert "apify down" in job.error
    assert job.finished_at is not None


def test_history_is_bounded():
    async def scenario():
        jobs = JobManager(max_history=2)

        async def noop():
            return None

        for i in range(4):
            await jobs.create(f"job-{i}", noop)
            await asyncio.sleep(0.01)
        return await jobs.list()

    listed = asyncio.run(scenario())
    assert [j.job_type for j in listed] == ["job-3", "job-2"]


def test_run_awaits_the_job_and_shares_the_active_check():
    async def scenario():
        jobs = JobManager()
        gate = asyncio.Event()

        async def slow():
            await gate.wait()
            return {"ok": True}

        background = await jobs.create("sync_creators", slow)
        await asyncio.sleep(0)
        with pytest.raises(JobAlreadyRunning) as exc:
            await jobs.run("sync_creators", slow)
        assert exc.value.job.job_id == background.job_id

        gate.set()
        await asyncio.sleep(0.01)
        inline = await jobs.run("sync_creators", slow)
        return background, inline

    background, inline = asyncio.run(scenario())
    assert background.status == "succeeded"
    assert inline.status == "succeeded"
    assert inline.result == {"ok": True}
    assert inline.finished_at is not None


def test_run_records_and_reraises_failures():
    async def scenario():
        jobs = JobManager()

        async def boom():
            raise RuntimeError("apify down")

        with pytest.raises(RuntimeError, match="apify down"):
            await jobs.run("sync_creators", boom)
        return await jobs.list()

    (job,) = asyncio.run(scenario())
    assert job.status == "failed"
    assert "apify down" in job.error
