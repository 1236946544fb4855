"""Tests for the connection status shown while a bank-data job is processed."""

from finance_dashboard.core.models import DisplayState, Job, JobStep
from finance_dashboard.services.status import derive_display_status, describe_step, progress_percent, step_list
from tests.fakes import step


def test_all_steps_succeeded_and_polling_stopped_is_success() -> None:
    """A job whose steps all succeeded shows SUCCESS at 100% once polling stops."""
    job = Job.model_validate({"id": "j1", "steps": [{"status": "success"}, {"status": "success"}]})
    display = derive_display_status(job, polling_active=False)
    if display.status != DisplayState.SUCCESS:
        msg = f"Expected SUCCESS, got {display.status}"
        raise AssertionError(msg)
    if display.progress_percent != 100:  # noqa: PLR2004
        msg = f"Expected 100%, got {display.progress_percent}"
        raise AssertionError(msg)


def test_failed_step_is_error_with_its_detail() -> None:
    """A failed step shows ERROR with the step's detail as the message."""
    job = Job.model_validate(
        {"id": "j2", "steps": [{"status": "success"}, {"status": "failed", "result": {"detail": "bank auth expired"}}]}
    )
    display = derive_display_status(job, polling_active=False)
    if display.status != DisplayState.ERROR:
        msg = f"Expected ERROR, got {display.status}"
        raise AssertionError(msg)
    if "bank auth expired" not in display.message:
        msg = f"Expected the step detail in the message, got {display.message!r}"
        raise AssertionError(msg)
    if display.progress_percent != 50:  # noqa: PLR2004
        msg = f"Expected 50%, got {display.progress_percent}"
        raise AssertionError(msg)


def test_failed_step_wins_over_active_polling() -> None:
    """Errors take precedence even while the poller is still running."""
    job = Job.model_validate({"id": "j", "steps": [step("failed", title="Verify credentials")]})
    display = derive_display_status(job, polling_active=True)
    if display.status != DisplayState.ERROR or display.title != "Verify credentials":
        msg = f"Expected ERROR titled after the step, got {display}"
        raise AssertionError(msg)


def test_error_title_prefers_result_title() -> None:
    """The failure result's title is used ahead of the step title."""
    job = Job.model_validate(
        {"id": "j", "steps": [step("failed", title="Verify", result={"title": "Login failed", "detail": "x"})]}
    )
    if derive_display_status(job, polling_active=False).title != "Login failed":
        msg = "Expected the result title"
        raise AssertionError(msg)


def test_polling_error_without_job_is_error() -> None:
    """A poller error alone is enough for ERROR, with the generic title."""
    display = derive_display_status(None, polling_active=False, polling_error="Job polling timeout")
    if display.status != DisplayState.ERROR:
        msg = f"Expected ERROR, got {display.status}"
        raise AssertionError(msg)
    if display.title != "Connection Failed" or display.message != "Job polling timeout":
        msg = f"Unexpected error copy: {display}"
        raise AssertionError(msg)


def test_completed_job_still_polling_is_in_progress() -> None:
    """SUCCESS is only shown once polling has stopped."""
    job = Job.model_validate({"id": "j", "steps": [step("success"), step("success")]})
    if derive_display_status(job, polling_active=True).status != DisplayState.IN_PROGRESS:
        msg = "Expected IN_PROGRESS while polling"
        raise AssertionError(msg)


def test_idle_states() -> None:
    """Without a job the status is awaiting; with an unfinished job and no poll it is initializing."""
    waiting = derive_display_status(None, polling_active=False)
    if waiting.status != DisplayState.IDLE or waiting.title != "Awaiting Connection":
        msg = f"Unexpected idle status without a job: {waiting}"
        raise AssertionError(msg)
    job = Job.model_validate({"id": "j", "steps": [step("success"), step("pending")]})
    initializing = derive_display_status(job, polling_active=False)
    if initializing.status != DisplayState.IDLE or initializing.title != "Initializing Connection":
        msg = f"Unexpected idle status with a job: {initializing}"
        raise AssertionError(msg)


def test_progress_is_zero_without_steps() -> None:
    """No steps means 0% rather than a division error."""
    if progress_percent(Job.model_validate({"id": "j", "steps": []})) != 0:
        msg = "Expected 0% for a job without steps"
        raise AssertionError(msg)
    if progress_percent(None) != 0:
        msg = "Expected 0% without a job"
        raise AssertionError(msg)


def test_progress_rounds_to_two_places() -> None:
    """One of three steps done is 33.33%."""
    job = Job.model_validate({"id": "j", "steps": [step("success"), step("pending"), step("pending")]})
    if progress_percent(job) != 33.33:  # noqa: PLR2004
        msg = f"Expected 33.33, got {progress_percent(job)}"
        raise AssertionError(msg)


def test_status_spellings_are_normalised() -> None:
    """Upstream spellings map onto the step and job enums."""
    job = Job.model_validate(
        {"id": "j", "status": "in-progress", "steps": [step("in-progress"), step("completed"), step("weird")]}
    )
    buckets = [describe_step(s) for s in job.steps]
    if buckets != ["active", "completed", "pending"]:
        msg = f"Unexpected step buckets: {buckets}"
        raise AssertionError(msg)
    if job.overall_status.value != "in_progress":
        msg = f"Expected in_progress, got {job.overall_status}"
        raise AssertionError(msg)
    if describe_step(JobStep(status="error")) != "failed":
        msg = "Expected error to map to failed"
        raise AssertionError(msg)


def test_step_list_buckets_every_step() -> None:
    """The progress list has one row per step, in order, with its display bucket."""
    job = Job.model_validate(
        {
            "id": "j",
            "steps": [
                step("success", title="verify-credentials"),
                step("in-progress", title="retrieve-accounts"),
                step("failed", title="retrieve-transactions"),
                {"id": "retrieve-statements", "status": "pending"},
            ],
        }
    )
    rows = [(row.title, row.state) for row in step_list(job)]
    expected = [
        ("verify-credentials", "completed"),
        ("retrieve-accounts", "active"),
        ("retrieve-transactions", "failed"),
        ("retrieve-statements", "pending"),
    ]
    if rows != expected:
        msg = f"Unexpected progress rows: {rows}"
        raise AssertionError(msg)
    if step_list(None) != []:
        msg = "Expected no rows without a job"
        raise AssertionError(msg)
