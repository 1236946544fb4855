"""Tests for the job poller state machine and the per-job poll registry."""

import asyncio
from collections.abc import Awaitable, Callable

import pytest

from finance_dashboard.core.errors import JobFailedError, JobFetchError, JobTimeoutError, UpstreamError
from finance_dashboard.core.models import Job, PollSnapshot, PollState
from finance_dashboard.workers.job_poller import JobPoller, PollRegistry, wait_for_job
from tests.fakes import step


def job_sequence(*payloads: dict) -> tuple[Callable[[str], Awaitable[Job]], list[str]]:
    """A fetch function serving payloads in order (the last one repeats) and the ids it was asked for."""
    calls: list[str] = []
    queue = list(payloads)

    async def fetch(job_id: str) -> Job:
        calls.append(job_id)
        payload = queue.pop(0) if len(queue) > 1 else queue[0]
        return Job.model_validate({"id": job_id, **payload})

    return fetch, calls


async def no_sleep(_: float) -> None:
    await asyncio.sleep(0)


PENDING = {"steps": [step("success"), step("in-progress"), step("pending")]}
SUCCESS = {"steps": [step("success"), step("success"), step("success")]}


def test_poller_succeeds_after_pending_ticks() -> None:
    """The poller keeps polling while the job is pending and stops on success."""
    fetch, calls = job_sequence(PENDING, PENDING, SUCCESS)
    seen: list[PollSnapshot] = []

    async def scenario() -> JobPoller:
        poller = JobPoller("j1", fetch, interval=0, max_attempts=5, on_change=seen.append, sleep=no_sleep)
        await poller.run()
        return poller

    poller = asyncio.run(scenario())
    if poller.snapshot.state != PollState.SUCCEEDED:
        msg = f"Expected SUCCEEDED, got {poller.snapshot.state}"
        raise AssertionError(msg)
    if len(calls) != 3:  # noqa: PLR2004
        msg = f"Expected 3 fetches, got {len(calls)}"
        raise AssertionError(msg)
    states = [s.state for s in seen]
    if states != [PollState.STARTING, PollState.POLLING, PollState.POLLING, PollState.SUCCEEDED]:
        msg = f"Unexpected state sequence: {states}"
        raise AssertionError(msg)
    if poller.result().id != "j1":
        msg = "Expected result() to return the finished job"
        raise AssertionError(msg)


def test_poller_times_out_at_max_attempts() -> None:
    """A job that never finishes times out after exactly max_attempts fetches."""
    fetch, calls = job_sequence(PENDING)

    async def scenario() -> JobPoller:
        poller = JobPoller("j1", fetch, interval=0, max_attempts=4, sleep=no_sleep)
        await poller.run()
        return poller

    poller = asyncio.run(scenario())
    if poller.snapshot.state != PollState.TIMED_OUT:
        msg = f"Expected TIMED_OUT, got {poller.snapshot.state}"
        raise AssertionError(msg)
    if len(calls) != 4 or poller.network_calls != 4 or poller.snapshot.attempts != 4:  # noqa: PLR2004
        msg = f"Expected 4 fetches and attempts, got {len(calls)} / {poller.snapshot.attempts}"
        raise AssertionError(msg)
    if poller.snapshot.error_kind != "JobTimeoutError":
        msg = f"Expected JobTimeoutError, got {poller.snapshot.error_kind}"
        raise AssertionError(msg)
    with pytest.raises(JobTimeoutError, match="refresh"):
        poller.result()


def test_poller_fails_on_failed_step() -> None:
    """A failed step ends the poll with the step's detail."""
    failing = {"steps": [step("success"), step("failed", result={"detail": "bank auth expired"})]}
    fetch, calls = job_sequence(PENDING, failing)

    async def scenario() -> JobPoller:
        poller = JobPoller("j2", fetch, interval=0, max_attempts=10, sleep=no_sleep)
        await poller.run()
        return poller

    poller = asyncio.run(scenario())
    if poller.snapshot.state != PollState.FAILED or len(calls) != 2:  # noqa: PLR2004
        msg = f"Expected FAILED after 2 fetches, got {poller.snapshot.state} after {len(calls)}"
        raise AssertionError(msg)
    with pytest.raises(JobFailedError, match="bank auth expired"):
        poller.result()


def test_poller_fails_immediately_on_fetch_error() -> None:
    """A fetch failure is terminal for the poll; no retry at this layer."""
    calls = []

    async def fetch(job_id: str) -> Job:
        calls.append(job_id)
        raise UpstreamError(503, "Service unavailable")

    async def scenario() -> JobPoller:
        poller = JobPoller("j3", fetch, interval=0, max_attempts=10, sleep=no_sleep)
        await poller.run()
        return poller

    poller = asyncio.run(scenario())
    if poller.snapshot.state != PollState.FAILED or len(calls) != 1:
        msg = f"Expected FAILED after 1 fetch, got {poller.snapshot.state} after {len(calls)}"
        raise AssertionError(msg)
    with pytest.raises(JobFetchError, match="Service unavailable"):
        poller.result()


def test_poller_fails_on_error_payload() -> None:
    """A job payload that carries an error field is treated as a fetch failure."""
    fetch, _ = job_sequence({"error": "Job not found", "steps": []})

    async def scenario() -> JobPoller:
        poller = JobPoller("j4", fetch, interval=0, max_attempts=10, sleep=no_sleep)
        await poller.run()
        return poller

    poller = asyncio.run(scenario())
    if poller.snapshot.error_kind != "JobFetchError" or poller.snapshot.error != "Job not found":
        msg = f"Unexpected snapshot: {poller.snapshot}"
        raise AssertionError(msg)


def test_poller_stops_silently_when_cancelled() -> None:
    """After cancel() no further state changes are emitted and no more fetches happen."""
    seen: list[PollSnapshot] = []
    calls = []
    holder: dict[str, JobPoller] = {}

    async def fetch(job_id: str) -> Job:
        calls.append(job_id)
        if len(calls) == 2:  # noqa: PLR2004
            holder["poller"].cancel()
        return Job.model_validate({"id": job_id, **PENDING})

    async def scenario() -> JobPoller:
        poller = JobPoller("j5", fetch, interval=0, max_attempts=10, on_change=seen.append, sleep=no_sleep)
        holder["poller"] = poller
        await poller.run()
        return poller

    poller = asyncio.run(scenario())
    if len(calls) != 2:  # noqa: PLR2004
        msg = f"Expected 2 fetches, got {len(calls)}"
        raise AssertionError(msg)
    if [s.state for s in seen] != [PollState.STARTING, PollState.POLLING]:
        msg = f"Expected no updates after cancellation, got {[s.state for s in seen]}"
        raise AssertionError(msg)
    if poller.snapshot.state != PollState.CANCELLED:
        msg = f"Expected CANCELLED, got {poller.snapshot.state}"
        raise AssertionError(msg)


def test_wait_for_job_returns_finished_job() -> None:
    """wait_for_job returns the job once it succeeds."""
    fetch, _ = job_sequence(PENDING, SUCCESS)
    job = asyncio.run(wait_for_job("j6", fetch, interval=0, max_attempts=3))
    if job.completed_steps != 3:  # noqa: PLR2004
        msg = f"Expected 3 completed steps, got {job.completed_steps}"
        raise AssertionError(msg)


def test_registry_ignores_duplicate_start() -> None:
    """Starting a second poll for the same job returns the running poller."""
    fetch, calls = job_sequence(PENDING)

    async def scenario() -> None:
        registry = PollRegistry(fetch, interval=0.05, max_attempts=100)
        first = registry.start("j7")
        second = registry.start("j7")
        if first is not second:
            msg = "Expected the duplicate start to return the running poller"
            raise AssertionError(msg)
        await asyncio.sleep(0)
        if not registry.is_active("j7"):
            msg = "Expected the poll to be active"
            raise AssertionError(msg)
        cancelled = await registry.cancel("j7")
        if not cancelled or registry.is_active("j7"):
            msg = "Expected the poll to be cancelled"
            raise AssertionError(msg)
        if first.snapshot.state != PollState.CANCELLED:
            msg = f"Expected CANCELLED, got {first.snapshot.state}"
            raise AssertionError(msg)

    asyncio.run(scenario())
    if len(set(calls)) != 1:
        msg = f"Expected a single job id polled, got {calls}"
        raise AssertionError(msg)


def test_registry_consume_forgets_finished_polls() -> None:
    """A terminal snapshot is returned once and then discarded."""
    fetch, _ = job_sequence(SUCCESS)

    async def scenario() -> None:
        registry = PollRegistry(fetch, interval=0, max_attempts=3)
        registry.start("j8")
        for _ in range(20):
            if not registry.is_active("j8"):
                break
            await asyncio.sleep(0)
        snapshot = registry.consume("j8")
        if snapshot is None or snapshot.state != PollState.SUCCEEDED:
            msg = f"Expected a SUCCEEDED snapshot, got {snapshot}"
            raise AssertionError(msg)
        if registry.consume("j8") is not None:
            msg = "Expected the finished poll to be forgotten"
            raise AssertionError(msg)

    asyncio.run(scenario())


def test_registry_shutdown_cancels_running_polls() -> None:
    """Shutdown leaves no running poll tasks behind."""
    fetch, _ = job_sequence(PENDING)

    async def scenario() -> None:
        registry = PollRegistry(fetch, interval=10, max_attempts=100)
        registry.start("a")
        registry.start("b")
        await asyncio.sleep(0)
        await registry.shutdown()
        if registry.is_active("a") or registry.is_active("b"):
            msg = "Expected every poll to be stopped"
            raise AssertionError(msg)

    asyncio.run(scenario())


def test_registry_bounds_unread_finished_polls() -> None:
    """Finished polls nobody reads are dropped once more than max_finished pile up."""
    fetch, calls = job_sequence(SUCCESS)

    async def scenario() -> None:
        registry = PollRegistry(fetch, interval=0, max_attempts=3, max_finished=10)
        for index in range(100):
            registry.start(f"job-{index}")
        for _ in range(200):
            if not any(registry.is_active(f"job-{index}") for index in range(100)):
                break
            await asyncio.sleep(0)
        # Let the last done callbacks run.
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        if len(calls) != 100:  # noqa: PLR2004
            msg = f"Expected every poll to run, got {len(calls)} fetches"
            raise AssertionError(msg)
        if len(registry) != 10:  # noqa: PLR2004
            msg = f"Expected 10 finished polls kept, got {len(registry)}"
            raise AssertionError(msg)
        if registry.consume("job-99") is None or registry.consume("job-0") is not None:
            msg = "Expected the newest finished polls to be kept and the oldest dropped"
            raise AssertionError(msg)

    asyncio.run(scenario())
