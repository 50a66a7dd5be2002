import asyncio

import pytest

from reelwatch.config import Settings
from reelwatch.jobs import JobConflictError, JobStore
from reelwatch.models import JobRequest
from reelwatch.tracker import Phase
from tests.fakes import INTERVAL, FakeHandle, GatedPoller, ScriptedPoller, ScriptedSubmitter, eventually


@pytest.mark.asyncio
async def test_start_records_job_and_tracks_updates(make_tracker):
    store = JobStore(make_tracker(ScriptedSubmitter(FakeHandle()), ScriptedPoller(FakeHandle(done=True, result_uri="uri://v"))))

    record = store.start("job-1", JobRequest(prompt="a cat"))
    first_update = record.updated_at
    await record.state.wait(timeout=2)

    assert store.get("job-1") is record
    assert store.find_by_state(record.state) is record
    assert record.state.phase is Phase.COMPLETED
    assert record.updated_at >= first_update


@pytest.mark.asyncio
async def test_live_job_id_cannot_be_reused(make_tracker):
    store = JobStore(make_tracker(ScriptedSubmitter(FakeHandle()), ScriptedPoller(FakeHandle(done=False))))

    store.start("job-1", JobRequest(prompt="a cat"))

    with pytest.raises(JobConflictError):
        store.start("job-1", JobRequest(prompt="a dog"))
    store.cancel_all()


@pytest.mark.asyncio
async def test_finished_job_id_gets_fresh_tracker(make_tracker):
    submitter = ScriptedSubmitter(Exception("quota exceeded"))
    store = JobStore(make_tracker(submitter, ScriptedPoller(FakeHandle())))

    failed = store.start("job-1", JobRequest(prompt="a cat"))
    await failed.state.wait(timeout=2)
    retried = store.start("job-1", JobRequest(prompt="a cat"))

    assert retried.state is not failed.state
    assert failed.state.phase is Phase.FAILED
    assert retried.state.phase is Phase.SUBMITTING
    await retried.state.wait(timeout=2)


@pytest.mark.asyncio
async def test_cancel_all_stops_live_jobs_only(make_tracker):
    poller = ScriptedPoller(FakeHandle(done=False))
    store = JobStore(make_tracker(ScriptedSubmitter(FakeHandle()), poller))

    running = store.start("job-1", JobRequest(prompt="a cat"))
    other = store.start("job-2", JobRequest(prompt="a dog"))
    await eventually(lambda: running.state.phase is Phase.POLLING)
    store.tracker.cancel(other.state)

    assert store.cancel_all() == 1
    polls = len(poller.calls)
    await asyncio.sleep(INTERVAL * 5)

    assert running.state.cancelled
    assert len(poller.calls) == polls
    assert store.cancel("missing") is None


def test_settings_clamp_poll_interval():
    assert Settings(poll_interval_seconds=0).poll_interval_seconds == 0.01
    assert Settings(poll_interval_seconds="bogus").poll_interval_seconds == 10.0
    assert Settings(gemini_base_url="https://gemini.test/v1beta/").gemini_base_url == "https://gemini.test/v1beta"
    assert Settings(gemini_api_key="").gemini_api_key is None


@pytest.mark.asyncio
async def test_shutdown_cancels_and_awaits_outstanding_tasks(make_tracker):
    poller = GatedPoller(FakeHandle(done=True, result_uri="uri://v"))
    store = JobStore(make_tracker(ScriptedSubmitter(FakeHandle()), poller))

    record = store.start("job-1", JobRequest(prompt="a cat"))
    await asyncio.wait_for(poller.started.wait(), timeout=2)
    outstanding = record.state.pending_tasks()

    assert await store.shutdown() == 1
    assert outstanding
    assert all(task.done() for task in outstanding)
    assert record.state.pending_tasks() == []
    assert record.state.cancelled


@pytest.mark.asyncio
async def test_replaced_job_is_forgotten(make_tracker):
    store = JobStore(make_tracker(ScriptedSubmitter(Exception("quota exceeded")), ScriptedPoller(FakeHandle())))

    first = store.start("job-1", JobRequest(prompt="a cat"))
    await first.state.wait(timeout=2)
    second = store.start("job-1", JobRequest(prompt="a cat"))
    await second.state.wait(timeout=2)

    assert store.find_by_state(first.state) is None
    assert store.find_by_state(second.state) is second
    assert len(store) == 1


@pytest.mark.asyncio
async def test_oldest_finished_jobs_are_pruned(make_tracker):
    store = JobStore(
        make_tracker(ScriptedSubmitter(Exception("quota exceeded")), ScriptedPoller(FakeHandle())),
        max_finished_jobs=1,
    )

    oldest = store.start("job-1", JobRequest(prompt="a cat"))
    await oldest.state.wait(timeout=2)
    newer = store.start("job-2", JobRequest(prompt="a dog"))
    await newer.state.wait(timeout=2)
    store.start("job-3", JobRequest(prompt="a bird"))

    assert store.get("job-1") is None
    assert store.find_by_state(oldest.state) is None
    assert store.get("job-2") is newer
    assert len(store) == 2
    store.cancel_all()
