"""Background polling of aggregation jobs until they reach a terminal state.

A JobPoller follows one job id on a fixed interval with a bounded attempt budget:

    STARTING -> POLLING -> SUCCEEDED | FAILED | TIMED_OUT

Each tick is one awaited fetch, so the loop runs as an asyncio task without blocking the
request that started it. Cancellation is checked before every tick and after every sleep;
once cancelled the loop stops without notifying observers again.

The PollRegistry keeps at most one poll per job id. Starting a poll for a job that already
has an active poll is ignored and returns the running poller.
"""

import asyncio
from collections.abc import Awaitable, Callable

from finance_dashboard.core.errors import (
    CredentialError,
    FinanceDashboardError,
    JobFailedError,
    JobFetchError,
    JobTimeoutError,
)
from finance_dashboard.core.models import Job, JobState, PollSnapshot, PollState
from finance_dashboard.core.utils import get_logger

logger = get_logger("finance-dashboard.poller")

FetchJob = Callable[[str], Awaitable[Job]]
OnChange = Callable[[PollSnapshot], None]
Sleep = Callable[[float], Awaitable[None]]

TIMEOUT_MESSAGE = "Job polling timeout - data may still be processing. Please refresh the page."
DEFAULT_MAX_FINISHED = 100


class JobPoller:
    """Poll one job until it succeeds, fails, times out or is cancelled."""

    def __init__(
        self,
        job_id: str,
        fetch_job: FetchJob,
        *,
        interval: float,
        max_attempts: int,
        on_change: OnChange | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the poller in the STARTING state."""
        if max_attempts < 1:
            msg = "max_attempts must be at least 1"
            raise ValueError(msg)
        self.job_id = job_id
        self.fetch_job = fetch_job
        self.interval = interval
        self.max_attempts = max_attempts
        self.on_change = on_change
        self._sleep = sleep
        self._cancelled = asyncio.Event()
        self.network_calls = 0
        self.error: FinanceDashboardError | None = None
        self.snapshot = PollSnapshot(job_id=job_id, max_attempts=max_attempts)

    @property
    def cancelled(self) -> bool:
        """True once the owner abandoned the poll."""
        return self._cancelled.is_set()

    @property
    def is_active(self) -> bool:
        """True while the loop has not reached an end state."""
        return self.snapshot.is_active

    def cancel(self) -> None:
        """Ask the loop to stop at its next check."""
        if not self.cancelled:
            logger.info(f"Poll for job {self.job_id} cancelled after {self.snapshot.attempts} attempts")
        self._cancelled.set()

    def _update(self, **changes: object) -> None:
        self.snapshot = self.snapshot.model_copy(update=changes)
        if self.on_change is not None and not self.cancelled:
            self.on_change(self.snapshot)

    def _finish(self, state: PollState, job: Job | None, error: FinanceDashboardError | None = None) -> PollSnapshot:
        self.error = error
        if error is not None:
            logger.warning(f"Poll for job {self.job_id} ended {state.value}: {error.message}")
        else:
            logger.info(f"Poll for job {self.job_id} ended {state.value} after {self.network_calls} fetches")
        self._update(
            state=state,
            job=job or self.snapshot.job,
            error=error.message if error is not None else None,
            error_kind=type(error).__name__ if error is not None else None,
        )
        return self.snapshot

    def _mark_cancelled(self) -> PollSnapshot:
        # Recorded silently; observers get no further updates after cancel().
        self.snapshot = self.snapshot.model_copy(update={"state": PollState.CANCELLED})
        return self.snapshot

    async def _tick(self) -> PollSnapshot | None:
        """Fetch the job once; return the final snapshot when the job is terminal."""
        self.network_calls += 1
        try:
            job = await self.fetch_job(self.job_id)
        except CredentialError as exc:
            return self._finish(PollState.FAILED, None, exc)
        except FinanceDashboardError as exc:
            return self._finish(PollState.FAILED, None, JobFetchError(exc.message))

        if self.cancelled:
            return None
        logger.info(
            f"Job {self.job_id} status: {job.overall_status.value} "
            f"(attempt {self.snapshot.attempts + 1}/{self.max_attempts})"
        )
        if job.error:
            return self._finish(PollState.FAILED, job, JobFetchError(job.error))
        if job.overall_status == JobState.SUCCESS:
            return self._finish(PollState.SUCCEEDED, job)
        if job.overall_status == JobState.FAILED or job.has_failed_step:
            detail = job.failure_detail() or "Job failed with unknown error."
            return self._finish(PollState.FAILED, job, JobFailedError(f"Job failed: {detail}"))

        attempts = self.snapshot.attempts + 1
        if attempts >= self.max_attempts:
            self.snapshot = self.snapshot.model_copy(update={"attempts": attempts})
            return self._finish(PollState.TIMED_OUT, job, JobTimeoutError(TIMEOUT_MESSAGE))
        self._update(state=PollState.POLLING, attempts=attempts, job=job)
        return None

    async def run(self) -> PollSnapshot:
        """Run the loop to an end state and return the final snapshot."""
        logger.info(f"Polling job {self.job_id} every {self.interval}s, up to {self.max_attempts} attempts")
        self._update(state=PollState.STARTING)
        try:
            while not self.cancelled:
                final = await self._tick()
                if final is not None:
                    return final
                if self.cancelled:
                    break
                await self._sleep(self.interval)
        except asyncio.CancelledError:
            self._cancelled.set()
            self._mark_cancelled()
            raise
        return self._mark_cancelled()

    def result(self) -> Job:
        """Return the finished job, or raise the error the poll ended with."""
        if self.error is not None:
            raise self.error
        if self.snapshot.state != PollState.SUCCEEDED or self.snapshot.job is None:
            msg = f"Poll for job {self.job_id} has not succeeded (state {self.snapshot.state.value})"
            raise RuntimeError(msg)
        return self.snapshot.job


async def wait_for_job(job_id: str, fetch_job: FetchJob, *, interval: float, max_attempts: int) -> Job:
    """Poll a job in the caller's task and return it once it succeeds."""
    poller = JobPoller(job_id, fetch_job, interval=interval, max_attempts=max_attempts)
    await poller.run()
    return poller.result()


class PollRegistry:
    """Track the running poll, at most one, for each job id.

    Finished polls are kept until their terminal snapshot is read, up to `max_finished`
    of them; beyond that the oldest finished entries are dropped as new polls complete.
    """

    def __init__(
        self,
        fetch_job: FetchJob,
        *,
        interval: float,
        max_attempts: int,
        max_finished: int = DEFAULT_MAX_FINISHED,
    ) -> None:
        """Initialize an empty registry whose polls share one fetch function and budget."""
        self.fetch_job = fetch_job
        self.interval = interval
        self.max_attempts = max_attempts
        self.max_finished = max(0, max_finished)
        self._pollers: dict[str, JobPoller] = {}
        self._tasks: dict[str, asyncio.Task[PollSnapshot]] = {}

    def is_active(self, job_id: str) -> bool:
        """True while a poll task for job_id is still running."""
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    def __len__(self) -> int:
        """Number of polls tracked, running or finished."""
        return len(self._tasks)

    def start(self, job_id: str, on_change: OnChange | None = None) -> JobPoller:
        """Start polling job_id in the background, or return the poll already running for it."""
        if self.is_active(job_id):
            logger.info(f"Poll for job {job_id} already running; ignoring duplicate start")
            return self._pollers[job_id]
        poller = JobPoller(
            job_id,
            self.fetch_job,
            interval=self.interval,
            max_attempts=self.max_attempts,
            on_change=on_change,
        )
        task = asyncio.create_task(poller.run(), name=f"poll-job-{job_id}")
        task.add_done_callback(self._task_done)
        # Re-inserted so a restarted job counts as the newest entry.
        self._pollers.pop(job_id, None)
        self._tasks.pop(job_id, None)
        self._pollers[job_id] = poller
        self._tasks[job_id] = task
        return poller

    def consume(self, job_id: str) -> PollSnapshot | None:
        """Return the latest snapshot for job_id, forgetting the poll once it has ended."""
        poller = self._pollers.get(job_id)
        if poller is None:
            return None
        snapshot = poller.snapshot
        if not self.is_active(job_id) and not snapshot.is_active:
            self._pollers.pop(job_id, None)
            self._tasks.pop(job_id, None)
        return snapshot

    async def cancel(self, job_id: str) -> bool:
        """Cancel the poll for job_id; return False when none was running."""
        poller = self._pollers.pop(job_id, None)
        task = self._tasks.pop(job_id, None)
        if poller is None or task is None:
            return False
        running = not task.done()
        poller.cancel()
        if running:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        return running

    async def shutdown(self) -> None:
        """Cancel every poll so no task outlives the application."""
        job_ids = list(self._tasks)
        if job_ids:
            logger.info(f"Cancelling {len(job_ids)} poll(s) on shutdown")
        for job_id in job_ids:
            await self.cancel(job_id)

    def _prune(self) -> None:
        finished = [job_id for job_id, task in self._tasks.items() if task.done()]
        excess = len(finished) - self.max_finished
        if excess <= 0:
            return
        for job_id in finished[:excess]:
            self._pollers.pop(job_id, None)
            self._tasks.pop(job_id, None)
        logger.info(f"Dropped {excess} unread finished poll(s); {len(self._tasks)} tracked")

    def _task_done(self, task: asyncio.Task[PollSnapshot]) -> None:
        if not task.cancelled():
            exc = task.exception()
            if exc is not None:
                logger.error(f"Poll task {task.get_name()} crashed: {exc!r}")
        self._prune()
