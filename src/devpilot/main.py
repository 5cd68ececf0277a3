"""CLI entrypoint for devpilot."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import rich_click as click
from sqlalchemy.exc import SQLAlchemyError

from devpilot import __version__
from devpilot.harness.controllers import (
    CheckpointHistoryCommand,
    HarnessCliController,
    JobCommand,
    JobsClearCommand,
    JobsListCommand,
    ModeCommand,
    ProvidersCommand,
    RunCommand,
)
from devpilot.harness.errors import HarnessError
from devpilot.harness.models import JobStatus, Mode

click.rich_click.USE_MARKDOWN = True
HARNESS_CONTROLLER = HarnessCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
MODE_CHOICE = click.Choice([mode.value for mode in Mode], case_sensitive=False)


@dataclass(slots=True)
class CliContext:
    """Options shared by every subcommand."""

    project_dir: Path | None
    db_path: Path | None


@click.group()
@click.version_option(version=__version__, prog_name="devpilot")
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
@click.option(
    "--project-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project directory (defaults to DEVPILOT_PROJECT_DIR or the current directory).",
)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.pass_context
def devpilot(
    ctx: click.Context,
    verbose: bool,
    project_dir: Path | None,
    db_path: Path | None,
) -> None:
    """Drive multi-step AI-assisted development workflows.

    Modes: `analyze`, `execute`.
    """

    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT)
    ctx.obj = CliContext(project_dir=project_dir, db_path=db_path)


@devpilot.command("run")
@click.argument("mode", type=MODE_CHOICE)
@click.option("--step", "step_id", default=None, help="Run only this step id.")
@click.option("--force", is_flag=True, default=False, help="Ignore unmet step dependencies.")
@click.option(
    "--answer",
    "answers",
    multiple=True,
    help="Answer a pending question as KEY=VALUE (KEY is the question number). Repeatable.",
)
@click.pass_obj
def run_mode(
    obj: CliContext,
    mode: str,
    step_id: str | None,
    force: bool,
    answers: tuple[str, ...],
) -> None:
    """Run or resume a workflow mode."""

    with _harness_errors():
        result = HARNESS_CONTROLLER.run(
            RunCommand(
                project_dir=obj.project_dir,
                db_path=obj.db_path,
                mode=Mode(mode.lower()),
                step_id=step_id,
                force=force,
                answers=answers,
            ),
        )
    _emit_lines(result.lines)
    if result.failed:
        raise SystemExit(1)


@devpilot.command("reset")
@click.argument("mode", type=MODE_CHOICE)
@click.pass_obj
def reset_mode(obj: CliContext, mode: str) -> None:
    """Discard the checkpoint, log and finished jobs of a mode."""

    with _harness_errors():
        lines = HARNESS_CONTROLLER.reset(_mode_command(obj, mode))
    _emit_lines(lines)


@devpilot.command("status")
@click.argument("mode", type=MODE_CHOICE)
@click.pass_obj
def status_mode(obj: CliContext, mode: str) -> None:
    """Show progress of a mode."""

    with _harness_errors():
        lines = HARNESS_CONTROLLER.status(_mode_command(obj, mode))
    _emit_lines(lines)


@devpilot.group()
def jobs() -> None:
    """Inspect and control provider jobs."""


@jobs.command("list")
@click.option("--mode", type=MODE_CHOICE, default=None, help="Only jobs of this mode.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Only jobs with this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of jobs to print.",
)
@click.pass_obj
def jobs_list(obj: CliContext, mode: str | None, status: str | None, limit: int) -> None:
    """List journaled jobs, newest first."""

    with _harness_errors():
        lines = HARNESS_CONTROLLER.jobs_list(
            JobsListCommand(
                project_dir=obj.project_dir,
                db_path=obj.db_path,
                mode=Mode(mode.lower()) if mode else None,
                status=status,
                limit=limit,
            ),
        )
    _emit_lines(lines)


@jobs.command("status")
@click.argument("job_id")
@click.pass_obj
def jobs_status(obj: CliContext, job_id: str) -> None:
    """Show one job."""

    with _harness_errors():
        lines = HARNESS_CONTROLLER.jobs_status(_job_command(obj, job_id))
    _emit_lines(lines)


@jobs.command("stop")
@click.argument("job_id")
@click.pass_obj
def jobs_stop(obj: CliContext, job_id: str) -> None:
    """Ask the owning harness process to cancel a running job."""

    with _harness_errors():
        lines = HARNESS_CONTROLLER.jobs_stop(_job_command(obj, job_id))
    _emit_lines(lines)


@jobs.command("logs")
@click.argument("job_id")
@click.pass_obj
def jobs_logs(obj: CliContext, job_id: str) -> None:
    """Print job logs and output preview."""

    with _harness_errors():
        lines = HARNESS_CONTROLLER.jobs_logs(_job_command(obj, job_id))
    _emit_lines(lines)


@jobs.command("clear")
@click.option("--mode", type=MODE_CHOICE, default=None, help="Only jobs of this mode.")
@click.pass_obj
def jobs_clear(obj: CliContext, mode: str | None) -> None:
    """Remove finished jobs."""

    with _harness_errors():
        lines = HARNESS_CONTROLLER.jobs_clear(
            JobsClearCommand(
                project_dir=obj.project_dir,
                db_path=obj.db_path,
                mode=Mode(mode.lower()) if mode else None,
            ),
        )
    _emit_lines(lines)


@devpilot.group()
def checkpoint() -> None:
    """Inspect persisted harness state."""


@checkpoint.command("show")
@click.argument("mode", type=MODE_CHOICE)
@click.pass_obj
def checkpoint_show(obj: CliContext, mode: str) -> None:
    """Print the full checkpoint and execution log."""

    with _harness_errors():
        lines = HARNESS_CONTROLLER.checkpoint_show(_mode_command(obj, mode))
    _emit_lines(lines)


@checkpoint.command("history")
@click.argument("mode", type=MODE_CHOICE)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Max number of history rows to print.",
)
@click.pass_obj
def checkpoint_history(obj: CliContext, mode: str, limit: int) -> None:
    """List checkpoint history, newest first."""

    with _harness_errors():
        lines = HARNESS_CONTROLLER.checkpoint_history(
            CheckpointHistoryCommand(
                project_dir=obj.project_dir,
                db_path=obj.db_path,
                mode=Mode(mode.lower()),
                limit=limit,
            ),
        )
    _emit_lines(lines)


@checkpoint.command("clear")
@click.argument("mode", type=MODE_CHOICE)
@click.pass_obj
def checkpoint_clear(obj: CliContext, mode: str) -> None:
    """Delete the checkpoint of a mode."""

    with _harness_errors():
        lines = HARNESS_CONTROLLER.checkpoint_clear(_mode_command(obj, mode))
    _emit_lines(lines)


@devpilot.command("providers")
@click.pass_obj
def providers(obj: CliContext) -> None:
    """List configured providers with health and reachability."""

    with _harness_errors():
        lines = HARNESS_CONTROLLER.providers(
            ProvidersCommand(project_dir=obj.project_dir, db_path=obj.db_path),
        )
    _emit_lines(lines)


def _mode_command(obj: CliContext, mode: str) -> ModeCommand:
    return ModeCommand(project_dir=obj.project_dir, db_path=obj.db_path, mode=Mode(mode.lower()))


def _job_command(obj: CliContext, job_id: str) -> JobCommand:
    return JobCommand(project_dir=obj.project_dir, db_path=obj.db_path, job_id=job_id)


@contextmanager
def _harness_errors() -> Iterator[None]:
    try:
        yield
    except (HarnessError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    except SQLAlchemyError as error:
        raise click.ClickException(f"State database error: {error}") from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    devpilot()
