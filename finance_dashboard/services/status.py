"""Derive the single human-facing connection status from a job and the poller's state."""

from finance_dashboard.core.models import DisplayState, DisplayStatus, Job, JobStep, StepDisplay, StepStatus

GENERIC_ERROR_TITLE = "Connection Failed"
GENERIC_ERROR_MESSAGE = "There was an issue connecting your bank account. Please try again."


def progress_percent(job: Job | None) -> float:
    """Share of steps completed successfully, as a percentage; 0 without steps."""
    if job is None or not job.steps:
        return 0.0
    return round(job.completed_steps / len(job.steps) * 100, 2)


def describe_step(step: JobStep) -> str:
    """Display bucket for one step in the connection progress list."""
    return {
        StepStatus.SUCCESS: "completed",
        StepStatus.ACTIVE: "active",
        StepStatus.FAILED: "failed",
    }.get(step.status, "pending")


def step_list(job: Job | None) -> list[StepDisplay]:
    """Progress rows for every step of the job, in order."""
    if job is None:
        return []
    return [StepDisplay(title=step.title or step.id, state=describe_step(step)) for step in job.steps]


def derive_display_status(job: Job | None, polling_active: bool, polling_error: str | None = None) -> DisplayStatus:
    """Collapse a job and the poller's state into one display status.

    First matching rule wins: any error, then a finished final step once polling has
    stopped, then active polling, and otherwise idle.
    """
    progress = progress_percent(job)
    steps = job.steps if job is not None else []
    failed_step = job.first_failed_step if job is not None else None

    if polling_error or failed_step is not None:
        title = GENERIC_ERROR_TITLE
        message = polling_error or GENERIC_ERROR_MESSAGE
        if failed_step is not None:
            result = failed_step.result or {}
            title = str(result.get("title") or failed_step.title or GENERIC_ERROR_TITLE)
            if not polling_error and failed_step.detail:
                message = failed_step.detail
        return DisplayStatus(status=DisplayState.ERROR, title=title, message=message, progress_percent=progress)

    if steps and steps[-1].is_complete and not polling_active:
        return DisplayStatus(
            status=DisplayState.SUCCESS,
            title="Connection Complete!",
            message="Your bank account is successfully connected, and your data is ready.",
            progress_percent=progress,
        )

    if polling_active:
        return DisplayStatus(
            status=DisplayState.IN_PROGRESS,
            title="Connecting Bank Account",
            message="We're securely connecting to your bank and fetching your financial data.",
            progress_percent=progress,
        )

    if job is None:
        return DisplayStatus(
            status=DisplayState.IDLE,
            title="Awaiting Connection",
            message="Waiting for bank connection to start.",
            progress_percent=progress,
        )
    return DisplayStatus(
        status=DisplayState.IDLE,
        title="Initializing Connection",
        message="Preparing to connect your financial data securely.",
        progress_percent=progress,
    )
