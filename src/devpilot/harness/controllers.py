"""Controllers for harness CLI commands."""

from __future__ import annotations

import json
import os
import shlex
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from devpilot.config import ProviderSettings, Settings
from devpilot.harness.condition_detector import ConditionDetector, DetectorVocabulary
from devpilot.harness.error_handler import ErrorHandler
from devpilot.harness.job_manager import JobManager
from devpilot.harness.lock import run_lock
from devpilot.harness.models import Job, JobStatus, Mode, ProviderKind, RunSummary, WorkflowRun
from devpilot.harness.provider_manager import ProviderManager
from devpilot.harness.providers.factory import build_providers, provider_records
from devpilot.harness.runner import HarnessRunner
from devpilot.harness.state_manager import StateManager
from devpilot.harness.steps import catalog_for

STATUS_LOG_TAIL = 5


@dataclass(slots=True)
class RunCommand:
    """CLI input for running or resuming a mode."""

    project_dir: Path | None
    db_path: Path | None
    mode: Mode
    step_id: str | None = None
    force: bool = False
    answers: tuple[str, ...] = ()


@dataclass(slots=True)
class RunResult:
    """Rendered run summary plus the exit decision."""

    lines: list[str]
    failed: bool


@dataclass(slots=True)
class ModeCommand:
    """CLI input for commands scoped to one mode."""

    project_dir: Path | None
    db_path: Path | None
    mode: Mode


@dataclass(slots=True)
class CheckpointHistoryCommand:
    """CLI input for checkpoint history listing."""

    project_dir: Path | None
    db_path: Path | None
    mode: Mode
    limit: int = 20


@dataclass(slots=True)
class JobsListCommand:
    """CLI input for journaled job listing."""

    project_dir: Path | None
    db_path: Path | None
    mode: Mode | None = None
    status: str | None = None
    limit: int = 50


@dataclass(slots=True)
class JobCommand:
    """CLI input for commands on one job."""

    project_dir: Path | None
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobsClearCommand:
    """CLI input for dropping finished jobs."""

    project_dir: Path | None
    db_path: Path | None
    mode: Mode | None = None


@dataclass(slots=True)
class ProvidersCommand:
    """CLI input for provider listing."""

    project_dir: Path | None
    db_path: Path | None


class HarnessCliController:
    """Coordinates runner, checkpoint and job inspection CLI operations."""

    def run(self, command: RunCommand) -> RunResult:
        settings = _settings(command.project_dir, command.db_path)
        settings.validate()
        answers = parse_answers(command.answers)
        lock_path = settings.state_dir / f"{command.mode.value}.lock"
        with run_lock(lock_path), _state_manager(settings) as state_manager:
            runner = build_runner(settings, mode=command.mode, state_manager=state_manager)
            summary = runner.run(command.step_id, force=command.force, answers=answers)
        return RunResult(lines=render_summary(summary), failed=summary.failed)

    def reset(self, command: ModeCommand) -> list[str]:
        settings = _settings(command.project_dir, command.db_path)
        lock_path = settings.state_dir / f"{command.mode.value}.lock"
        with run_lock(lock_path), _state_manager(settings) as state_manager:
            existed = state_manager.reset(settings.project_dir, command.mode)
            cleared = state_manager.clear_jobs(project_dir=settings.project_dir, mode=command.mode)
            lines = [f"Warning: {warning}" for warning in state_manager.pop_warnings()]
        if not existed:
            return [*lines, f"No {command.mode.value} state to reset."]
        return [*lines, f"Reset {command.mode.value} state; removed {cleared} finished job(s)."]

    def status(self, command: ModeCommand) -> list[str]:
        settings = _settings(command.project_dir, command.db_path)
        with _state_manager(settings) as state_manager:
            run = state_manager.load(settings.project_dir, command.mode)
            warnings = state_manager.pop_warnings()
        lines = [f"Warning: {warning}" for warning in warnings]
        if run is None:
            lines.append(f"No {command.mode.value} checkpoint for {settings.project_dir}.")
            return lines
        total = len(catalog_for(command.mode))
        lines.extend(_render_run_header(run, total=total))
        if run.execution_log:
            lines.append("Recent log:")
            lines.extend(
                f"  {entry.timestamp.isoformat()} {entry.level.upper()} {entry.message}"
                for entry in run.execution_log[-STATUS_LOG_TAIL:]
            )
        return lines

    def checkpoint_show(self, command: ModeCommand) -> list[str]:
        settings = _settings(command.project_dir, command.db_path)
        with _state_manager(settings) as state_manager:
            run = state_manager.load(settings.project_dir, command.mode)
            warnings = state_manager.pop_warnings()
        lines = [f"Warning: {warning}" for warning in warnings]
        if run is None:
            lines.append(f"No {command.mode.value} checkpoint for {settings.project_dir}.")
            return lines
        lines.extend(_render_run_header(run, total=len(catalog_for(command.mode))))
        lines.append("Payload:")
        lines.extend(
            json.dumps(run.to_payload(), ensure_ascii=False, indent=2, sort_keys=True).splitlines(),
        )
        lines.append(f"Execution log ({len(run.execution_log)} entries):")
        lines.extend(
            f"  {entry.timestamp.isoformat()} {entry.level.upper()} {entry.message}"
            for entry in run.execution_log
        )
        return lines

    def checkpoint_history(self, command: CheckpointHistoryCommand) -> list[str]:
        settings = _settings(command.project_dir, command.db_path)
        with _state_manager(settings) as state_manager:
            history = state_manager.history(settings.project_dir, command.mode, command.limit)
        if not history:
            return [f"No {command.mode.value} checkpoint history."]
        return [
            f"#{item.history_id} {item.recorded_at.isoformat()} state={item.state.value} "
            f"step={item.current_step_id or '-'} provider={item.current_provider_id or '-'} "
            f"completed={item.completed_count}"
            for item in history
        ]

    def checkpoint_clear(self, command: ModeCommand) -> list[str]:
        settings = _settings(command.project_dir, command.db_path)
        lock_path = settings.state_dir / f"{command.mode.value}.lock"
        with run_lock(lock_path), _state_manager(settings) as state_manager:
            existed = state_manager.reset(settings.project_dir, command.mode)
        if not existed:
            return [f"No {command.mode.value} checkpoint to clear."]
        return [f"Cleared {command.mode.value} checkpoint."]

    def jobs_list(self, command: JobsListCommand) -> list[str]:
        settings = _settings(command.project_dir, command.db_path)
        status = _parse_job_status(command.status)
        with _state_manager(settings) as state_manager:
            jobs = state_manager.list_jobs(
                project_dir=settings.project_dir,
                mode=command.mode,
                status=status,
                limit=command.limit,
            )
        if not jobs:
            return ["No jobs."]
        return [_render_job_line(job) for job in jobs]

    def jobs_status(self, command: JobCommand) -> list[str]:
        job = self._get_job(command)
        lines = [_render_job_line(job)]
        if job.started_at is not None:
            lines.append(f"Started: {job.started_at.isoformat()}")
        if job.finished_at is not None:
            lines.append(f"Finished: {job.finished_at.isoformat()}")
        if job.error:
            lines.append(f"Error: {job.error}")
        return lines

    def jobs_stop(self, command: JobCommand) -> list[str]:
        settings = _settings(command.project_dir, command.db_path)
        with _state_manager(settings) as state_manager:
            job = state_manager.get_job(command.job_id)
            if job is None:
                raise ValueError(f"Job not found: {command.job_id}")
            requested = state_manager.request_job_stop(command.job_id)
        if not requested:
            return [f"Job {command.job_id} already finished with status={job.status.value}."]
        return [f"Stop requested for job {command.job_id}."]

    def jobs_logs(self, command: JobCommand) -> list[str]:
        job = self._get_job(command)
        lines = [f"Logs for job {job.id}:"]
        lines.extend(f"  {line}" for line in job.logs)
        if not job.logs:
            lines.append("  (none)")
        if job.result:
            lines.append("Output:")
            lines.extend(job.result.splitlines())
        return lines

    def jobs_clear(self, command: JobsClearCommand) -> list[str]:
        settings = _settings(command.project_dir, command.db_path)
        with _state_manager(settings) as state_manager:
            removed = state_manager.clear_jobs(project_dir=settings.project_dir, mode=command.mode)
        return [f"Removed {removed} finished job(s)."]

    def providers(self, command: ProvidersCommand) -> list[str]:
        settings = _settings(command.project_dir, command.db_path)
        settings.validate()
        manager = ProviderManager(
            provider_records(settings.providers),
            circuit_cooldown_seconds=settings.harness.circuit_cooldown_seconds,
        )
        by_id = {provider.id: provider for provider in settings.providers}
        lines: list[str] = []
        for record in manager.status():
            provider = by_id[record.id]
            health = "available" if record.available else "unavailable"
            lines.append(
                f"{record.id}: kind={record.kind.value} priority={record.priority} "
                f"max_retries={record.max_retries} models={','.join(record.model_ids) or '-'} "
                f"health={health} {_provider_reachability(provider)}",
            )
        return lines

    def _get_job(self, command: JobCommand) -> Job:
        settings = _settings(command.project_dir, command.db_path)
        with _state_manager(settings) as state_manager:
            job = state_manager.get_job(command.job_id)
        if job is None:
            raise ValueError(f"Job not found: {command.job_id}")
        return job


def build_runner(settings: Settings, *, mode: Mode, state_manager: StateManager) -> HarnessRunner:
    """Wire the harness components for one mode from settings."""

    harness = settings.harness
    vocabulary = DetectorVocabulary().extended(
        rate_limit=settings.detector.rate_limit_patterns,
        feedback_headings=settings.detector.feedback_headings,
        completion=settings.detector.completion_patterns,
    )
    detector = ConditionDetector(
        vocabulary,
        default_backoff_seconds=harness.default_rate_limit_backoff_seconds,
    )
    job_manager = JobManager(
        providers=build_providers(settings.providers),
        workdir_root=settings.state_dir / "jobs",
        detector=detector,
        journal=state_manager.job_journal(settings.project_dir, mode),
        cwd=settings.project_dir,
        default_timeout_seconds=harness.step_timeout_seconds,
        liveness_interval_seconds=harness.liveness_interval_seconds,
        graceful_shutdown_seconds=harness.graceful_shutdown_seconds,
    )
    return HarnessRunner(
        mode=mode,
        project_dir=settings.project_dir,
        steps=catalog_for(mode),
        provider_manager=ProviderManager(
            provider_records(settings.providers),
            circuit_cooldown_seconds=harness.circuit_cooldown_seconds,
            default_rate_limit_backoff_seconds=harness.default_rate_limit_backoff_seconds,
        ),
        job_manager=job_manager,
        state_manager=state_manager,
        error_handler=ErrorHandler(
            retry_base_seconds=harness.retry_base_seconds,
            retry_max_seconds=harness.retry_max_seconds,
            rate_limit_ceiling_seconds=harness.rate_limit_ceiling_seconds,
            default_rate_limit_backoff_seconds=harness.default_rate_limit_backoff_seconds,
        ),
        detector=detector,
        step_timeout_seconds=harness.step_timeout_seconds,
    )


def parse_answers(raw: tuple[str, ...]) -> dict[str, str]:
    """Parse repeated KEY=VALUE options."""

    answers: dict[str, str] = {}
    for item in raw:
        key, separator, value = item.partition("=")
        if not separator or not key.strip():
            raise ValueError(f"Invalid --answer {item!r}; expected KEY=VALUE.")
        answers[key.strip()] = value.strip()
    return answers


def render_summary(summary: RunSummary) -> list[str]:
    """Lines printed after a run."""

    lines = [f"Mode: {summary.mode.value} state={summary.state.value}", summary.message]
    lines.extend(f"Warning: {warning}" for warning in summary.warnings)
    lines.append(
        f"Completed steps ({len(summary.completed_steps)}): "
        f"{', '.join(summary.completed_steps) or '-'}",
    )
    if summary.current_step_id:
        lines.append(
            f"Current step: {summary.current_step_id} "
            f"provider={summary.current_provider_id or '-'}",
        )
    if summary.pending_questions:
        lines.append("Questions:")
        for question in summary.pending_questions:
            marker = "" if question.required else " (optional)"
            lines.append(f"  {question.number}. {question.text}{marker}")
        lines.append(
            f'Answer with: devpilot run {summary.mode.value} --answer 1="..."',
        )
    if summary.resume_after is not None:
        lines.append(f"Resume after: {summary.resume_after.isoformat()}")
    if summary.last_error is not None:
        lines.append(f"Last error: {summary.last_error.describe()}")
    if summary.interrupted:
        lines.append("Run interrupted; state saved.")
    metrics = " ".join(f"{key}={value}" for key, value in sorted(summary.metrics.items()))
    if metrics:
        lines.append(f"Metrics: {metrics}")
    return lines


def _render_run_header(run: WorkflowRun, *, total: int) -> list[str]:
    lines = [
        f"Mode: {run.mode.value} state={run.state.value}",
        f"Project: {run.project_dir}",
        f"Started: {run.started_at.isoformat() if run.started_at else '-'}",
        f"Progress: {len(run.completed_steps)}/{total} steps",
        f"Current step: {run.current_step_id or '-'} provider={run.current_provider_id or '-'}",
    ]
    if run.pending_questions:
        lines.append("Pending questions:")
        lines.extend(
            f"  {question.number}. {question.text}" for question in run.pending_questions
        )
    if run.resume_after is not None:
        lines.append(f"Resume after: {run.resume_after.isoformat()}")
    if run.last_error is not None:
        lines.append(f"Last error: {run.last_error.describe()}")
    return lines


def _render_job_line(job: Job) -> str:
    return (
        f"{job.id} status={job.status.value} step={job.step_id} "
        f"provider={job.provider_id} attempt={job.attempt} created={job.created_at.isoformat()}"
    )


def _parse_job_status(raw: str | None) -> JobStatus | None:
    if raw is None:
        return None
    try:
        return JobStatus(raw.strip().lower())
    except ValueError as error:
        supported = ", ".join(status.value for status in JobStatus)
        raise ValueError(f"Unknown job status {raw!r}. Expected one of: {supported}") from error


def _provider_reachability(provider: ProviderSettings) -> str:
    if provider.kind is ProviderKind.API:
        key_state = "-"
        if provider.api_key_env:
            key_state = "set" if os.getenv(provider.api_key_env) else "missing"
        return f"endpoint={provider.endpoint} api_key={key_state}"
    template = provider.command_template or ""
    try:
        executable = shlex.split(template)[0] if template.strip() else ""
    except ValueError:
        executable = ""
    installed = bool(executable) and shutil.which(executable) is not None
    return f"command={executable or '-'} installed={'yes' if installed else 'no'}"


def _settings(project_dir: Path | None, db_path: Path | None) -> Settings:
    return Settings.from_env(project_dir=project_dir, db_path=db_path)


@contextmanager
def _state_manager(settings: Settings) -> Iterator[StateManager]:
    state_manager = StateManager(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    try:
        state_manager.init_schema()
        yield state_manager
    finally:
        state_manager.close()
