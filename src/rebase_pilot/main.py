"""CLI entrypoint for rebase-pilot."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from rebase_pilot import __version__
from rebase_pilot.orchestrator.controllers import (
    JobInspectCommand,
    JobListCommand,
    JobMutateCommand,
    JobSubmitCommand,
    OrchestratorCliController,
    ResolveCheckCommand,
    WorkerRunCommand,
    budget_exceeded_lines,
)
from rebase_pilot.orchestrator.errors import BudgetExceeded, OrchestratorError
from rebase_pilot.orchestrator.models import JobPriority, JobStatus

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="rebase-pilot")
def rebase_pilot() -> None:
    """Rebase jobs with validated conflict resolution."""


@rebase_pilot.group()
def jobs() -> None:
    """Job submission and inspection commands."""


@jobs.command("submit")
@_DB_PATH_OPTION
@click.option("--user", "user_id", required=True, help="Owning user id.")
@click.option("--org", "organization_id", required=True, help="Organization id.")
@click.option("--repo", "repository", required=True, help="Repository URL or path.")
@click.option("--branch", required=True, help="Branch to rebase and push.")
@click.option("--target", "target_branch", required=True, help="Branch to rebase onto.")
@click.option("--task", default="", help="Free-text task description.")
@click.option(
    "--env",
    "environment",
    multiple=True,
    help="Environment entry KEY=VALUE. Can be repeated.",
)
@click.option(
    "--priority",
    type=click.Choice([priority.value for priority in JobPriority]),
    default=JobPriority.NORMAL.value,
    show_default=True,
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=None,
    help="Retry budget (defaults to REBASE_PILOT_DEFAULT_MAX_RETRIES).",
)
@click.option("--operation", default="standard", show_default=True, help="Admission tier.")
@click.option(
    "--cost",
    "estimated_cost",
    type=click.IntRange(min=0),
    default=1,
    show_default=True,
    help="Admission weight.",
)
def jobs_submit(  # noqa: PLR0913
    db_path: Path | None,
    user_id: str,
    organization_id: str,
    repository: str,
    branch: str,
    target_branch: str,
    task: str,
    environment: tuple[str, ...],
    priority: str,
    max_retries: int | None,
    operation: str,
    estimated_cost: int,
) -> None:
    """Submit a rebase job; it is queued once admission allows it."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.submit(
            JobSubmitCommand(
                db_path=db_path,
                user_id=user_id,
                organization_id=organization_id,
                repository=repository,
                branch=branch,
                target_branch=target_branch,
                task=task,
                environment=environment,
                priority=priority,
                max_retries=max_retries,
                operation=operation,
                estimated_cost=estimated_cost,
            ),
        ),
    )


@jobs.command("status")
@_DB_PATH_OPTION
@click.option("--job-id", required=True, help="Job id.")
def jobs_status(db_path: Path | None, job_id: str) -> None:
    """Show a job with its event trail and attempt counts."""

    _run(lambda: ORCHESTRATOR_CONTROLLER.status(JobInspectCommand(db_path=db_path, job_id=job_id)))


@jobs.command("list")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Only jobs in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.list_jobs(
            JobListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@jobs.command("cancel")
@_DB_PATH_OPTION
@click.option("--job-id", required=True, help="Job id.")
def jobs_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a queued job, or ask a running one to stop."""

    _run(lambda: ORCHESTRATOR_CONTROLLER.cancel(JobMutateCommand(db_path=db_path, job_id=job_id)))


@jobs.command("resubmit")
@_DB_PATH_OPTION
@click.option("--job-id", required=True, help="Terminal failed or cancelled job id.")
def jobs_resubmit(db_path: Path | None, job_id: str) -> None:
    """Start a new job continuing the retry chain of a terminal job."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.resubmit(JobMutateCommand(db_path=db_path, job_id=job_id)),
    )


@jobs.command("admit")
@_DB_PATH_OPTION
@click.option("--job-id", required=True, help="Pending job id.")
def jobs_admit(db_path: Path | None, job_id: str) -> None:
    """Retry admission for a job left pending by a budget denial."""

    _run(lambda: ORCHESTRATOR_CONTROLLER.admit(JobMutateCommand(db_path=db_path, job_id=job_id)))


@jobs.command("attempts")
@_DB_PATH_OPTION
@click.option("--job-id", required=True, help="Job id.")
def jobs_attempts(db_path: Path | None, job_id: str) -> None:
    """Print the append-only resolution attempt log of a job."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.attempts(JobInspectCommand(db_path=db_path, job_id=job_id)),
    )


@rebase_pilot.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@_DB_PATH_OPTION
@click.option("--workers", type=click.IntRange(min=1), default=None, help="Worker threads.")
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many jobs.",
)
@click.option(
    "--idle-timeout",
    "idle_timeout_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Exit after the queue stays empty this long (seconds).",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
)
def worker_run(
    db_path: Path | None,
    workers: int | None,
    max_jobs: int | None,
    idle_timeout_seconds: float | None,
    log_level: str,
) -> None:
    """Run the worker pool until stopped, idle, or `--max-jobs` reached."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )
    _run(
        lambda: ORCHESTRATOR_CONTROLLER.run_worker(
            WorkerRunCommand(
                db_path=db_path,
                workers=workers,
                max_jobs=max_jobs,
                idle_timeout_seconds=idle_timeout_seconds,
            ),
        ),
    )


@rebase_pilot.group()
def resolve() -> None:
    """Conflict resolution commands."""


@resolve.command("check")
@click.argument("file_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option(
    "--policy",
    "fallback_policy",
    type=click.Choice(["prefer_ours", "prefer_theirs", "manual_only"]),
    default=None,
    help="Fallback policy (defaults to REBASE_PILOT_FALLBACK_POLICY).",
)
def resolve_check(file_path: Path, fallback_policy: str | None) -> None:
    """Dry-run the fallback ladder on a conflicted file and print each outcome."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.resolve_check(
            ResolveCheckCommand(file_path=file_path, fallback_policy=fallback_policy),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except BudgetExceeded as error:
        _emit_lines(budget_exceeded_lines(error))
        raise click.ClickException("Admission denied.") from error
    except (OrchestratorError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    rebase_pilot()
