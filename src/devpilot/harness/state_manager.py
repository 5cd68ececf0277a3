"""Durable harness checkpoints, execution log and job journal backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import DatabaseError, OperationalError
from sqlmodel import Session, col, select

from devpilot.harness.errors import CorruptCheckpoint
from devpilot.harness.models import (
    CheckpointHistoryView,
    HarnessState,
    Job,
    JobStatus,
    LogEntry,
    Mode,
    WorkflowRun,
)
from devpilot.storage.alembic_runner import upgrade_head
from devpilot.storage.common import (
    build_state_engine,
    move_aside,
    quarantine_foreign_file,
    to_aware_utc,
    to_naive_utc,
    utc_now,
)
from devpilot.storage.sqlmodel_models import (
    CheckpointHistoryEntry,
    ExecutionLogRow,
    HarnessCheckpoint,
    HarnessJobRow,
)

logger = logging.getLogger(__name__)

CHECKPOINT_SCHEMA_VERSION = 1
RESULT_PREVIEW_CHARS = 2000
_TERMINAL_JOB_STATUSES = tuple(status.value for status in JobStatus if status.is_terminal)


class StateManager:
    """Checkpoint persistence facade; the runner is its only writer."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_state_engine(db_path, busy_timeout_ms=sqlite_busy_timeout_ms)
        self.last_load_warning: str | None = None
        self._warnings: list[str] = []

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Move aside a non-SQLite or unreadable file, then run schema migrations."""

        moved = quarantine_foreign_file(self.db_path)
        if moved is not None:
            self.engine.dispose()
            self._record_quarantine(moved, "was not SQLite")
        try:
            upgrade_head(self.db_path)
        except DatabaseError as error:
            if isinstance(error, OperationalError):
                raise
            self._rebuild(error)

    def _rebuild(self, error: DatabaseError) -> str:
        """Quarantine a damaged database file and create a fresh schema in its place."""

        self.engine.dispose()
        moved = move_aside(self.db_path)
        message = self._record_quarantine(moved, f"could not be read ({error.orig})")
        upgrade_head(self.db_path)
        return message

    def _record_quarantine(self, moved: Path, reason: str) -> str:
        message = f"State database {self.db_path} {reason}; moved aside to {moved.name}"
        logger.warning("%s", message)
        self._warnings.append(message)
        return message

    def pop_warnings(self) -> list[str]:
        """Return and clear warnings collected by init_schema and load."""

        warnings = list(self._warnings)
        self._warnings.clear()
        return warnings

    def load(self, project_dir: Path, mode: Mode) -> WorkflowRun | None:
        """Restore the checkpoint, or None when absent or undecodable."""

        self.last_load_warning = None
        try:
            with Session(self.engine) as session:
                row = session.get(HarnessCheckpoint, (str(project_dir), mode.value))
                if row is None:
                    return None
                log_rows = session.exec(
                    select(ExecutionLogRow)
                    .where(
                        ExecutionLogRow.project_dir == str(project_dir),
                        ExecutionLogRow.mode == mode.value,
                    )
                    .order_by(col(ExecutionLogRow.seq).asc()),
                ).all()
        except DatabaseError as error:
            if isinstance(error, OperationalError):
                raise
            self.last_load_warning = self._rebuild(error)
            return None

        try:
            run = _decode_checkpoint(row, project_dir=project_dir, mode=mode)
        except CorruptCheckpoint as error:
            message = f"Ignoring corrupt checkpoint for {mode.value}: {error}"
            logger.warning("%s", message)
            self.last_load_warning = message
            self._warnings.append(message)
            return None

        run.execution_log = [
            LogEntry(
                timestamp=to_aware_utc(log_row.logged_at),
                level=log_row.level,
                message=log_row.message,
            )
            for log_row in log_rows
        ]
        return run

    def save(self, run: WorkflowRun) -> None:
        """Upsert the checkpoint, append history and sync log rows in one transaction."""

        now = utc_now()
        payload_json = json.dumps(run.to_payload(), ensure_ascii=False, sort_keys=True)
        scope = (str(run.project_dir), run.mode.value)
        started_at = to_naive_utc(run.started_at) if run.started_at is not None else None
        with Session(self.engine) as session:
            row = session.get(HarnessCheckpoint, scope)
            if row is None:
                row = HarnessCheckpoint(
                    project_dir=scope[0],
                    mode=scope[1],
                    schema_version=CHECKPOINT_SCHEMA_VERSION,
                    state=run.state.value,
                    payload_json=payload_json,
                    updated_at=to_naive_utc(now),
                )
            row.schema_version = CHECKPOINT_SCHEMA_VERSION
            row.state = run.state.value
            row.current_step_id = run.current_step_id
            row.current_provider_id = run.current_provider_id
            row.started_at = started_at
            row.payload_json = payload_json
            row.updated_at = to_naive_utc(now)
            session.add(row)
            session.add(
                CheckpointHistoryEntry(
                    project_dir=scope[0],
                    mode=scope[1],
                    schema_version=CHECKPOINT_SCHEMA_VERSION,
                    state=run.state.value,
                    current_step_id=run.current_step_id,
                    current_provider_id=run.current_provider_id,
                    completed_count=len(run.completed_steps),
                    payload_json=payload_json,
                    recorded_at=to_naive_utc(now),
                ),
            )
            self._sync_log(session, run)
            session.commit()

    def append_log(self, run: WorkflowRun, entry: LogEntry) -> None:
        """Append one execution log entry without rewriting the checkpoint."""

        run.execution_log.append(entry)
        with Session(self.engine) as session:
            self._sync_log(session, run)
            session.commit()

    def reset(self, project_dir: Path, mode: Mode) -> bool:
        """Delete checkpoint, log and history rows; True when a checkpoint existed."""

        scope = (str(project_dir), mode.value)
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(HarnessCheckpoint).where(
                    col(HarnessCheckpoint.project_dir) == scope[0],
                    col(HarnessCheckpoint.mode) == scope[1],
                ),
            )
            session.exec(
                sa_delete(ExecutionLogRow).where(
                    col(ExecutionLogRow.project_dir) == scope[0],
                    col(ExecutionLogRow.mode) == scope[1],
                ),
            )
            session.exec(
                sa_delete(CheckpointHistoryEntry).where(
                    col(CheckpointHistoryEntry.project_dir) == scope[0],
                    col(CheckpointHistoryEntry.mode) == scope[1],
                ),
            )
            session.commit()
        existed = bool(result.rowcount)
        logger.info("Reset %s state for %s (existed: %s)", mode.value, project_dir, existed)
        return existed

    def history(
        self,
        project_dir: Path,
        mode: Mode,
        limit: int = 20,
    ) -> list[CheckpointHistoryView]:
        """Checkpoint history, newest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(CheckpointHistoryEntry)
                .where(
                    CheckpointHistoryEntry.project_dir == str(project_dir),
                    CheckpointHistoryEntry.mode == mode.value,
                )
                .order_by(col(CheckpointHistoryEntry.history_id).desc())
                .limit(limit),
            ).all()
        views: list[CheckpointHistoryView] = []
        for row in rows:
            try:
                state = HarnessState(row.state)
            except ValueError:
                logger.warning("Skipping history row %s with unknown state", row.history_id)
                continue
            views.append(
                CheckpointHistoryView(
                    history_id=row.history_id or 0,
                    state=state,
                    current_step_id=row.current_step_id,
                    current_provider_id=row.current_provider_id,
                    completed_count=row.completed_count,
                    recorded_at=to_aware_utc(row.recorded_at),
                ),
            )
        return views

    def record_job(self, job: Job, *, project_dir: Path, mode: Mode) -> None:
        """Upsert the journaled job snapshot; keeps any pending stop request."""

        with Session(self.engine) as session:
            row = session.get(HarnessJobRow, job.id)
            if row is None:
                row = HarnessJobRow(
                    job_id=job.id,
                    project_dir=str(project_dir),
                    mode=mode.value,
                    step_id=job.step_id,
                    provider_id=job.provider_id,
                    status=job.status.value,
                    created_at=to_naive_utc(job.created_at),
                )
            row.attempt = job.attempt
            row.status = job.status.value
            row.started_at = to_naive_utc(job.started_at) if job.started_at else None
            row.finished_at = to_naive_utc(job.finished_at) if job.finished_at else None
            row.result_preview = job.result[:RESULT_PREVIEW_CHARS] if job.result else None
            row.error = job.error
            row.logs_json = json.dumps(job.logs, ensure_ascii=False) if job.logs else None
            session.add(row)
            session.commit()

    def list_jobs(
        self,
        *,
        project_dir: Path | None = None,
        mode: Mode | None = None,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[Job]:
        """List journaled jobs, newest first."""

        with Session(self.engine) as session:
            statement = select(HarnessJobRow).order_by(col(HarnessJobRow.created_at).desc())
            if project_dir is not None:
                statement = statement.where(HarnessJobRow.project_dir == str(project_dir))
            if mode is not None:
                statement = statement.where(HarnessJobRow.mode == mode.value)
            if status is not None:
                statement = statement.where(HarnessJobRow.status == status.value)
            rows = session.exec(statement.limit(limit)).all()
        return [_to_job(row) for row in rows]

    def get_job(self, job_id: str) -> Job | None:
        with Session(self.engine) as session:
            row = session.get(HarnessJobRow, job_id)
        return _to_job(row) if row is not None else None

    def request_job_stop(self, job_id: str) -> bool:
        """Flag a running job for cancellation by the process that owns it."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(HarnessJobRow)
                .where(
                    col(HarnessJobRow.job_id) == job_id,
                    col(HarnessJobRow.status).not_in(_TERMINAL_JOB_STATUSES),
                )
                .values(stop_requested=True),
            )
            session.commit()
        return result.rowcount == 1

    def stop_requested(self, job_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.get(HarnessJobRow, job_id)
        return bool(row is not None and row.stop_requested)

    def clear_jobs(self, *, project_dir: Path | None = None, mode: Mode | None = None) -> int:
        """Delete finished job records and return how many were removed."""

        statement = sa_delete(HarnessJobRow).where(
            col(HarnessJobRow.status).in_(_TERMINAL_JOB_STATUSES),
        )
        if project_dir is not None:
            statement = statement.where(col(HarnessJobRow.project_dir) == str(project_dir))
        if mode is not None:
            statement = statement.where(col(HarnessJobRow.mode) == mode.value)
        with Session(self.engine) as session:
            result = session.exec(statement)
            session.commit()
        return int(result.rowcount or 0)

    def job_journal(self, project_dir: Path, mode: Mode) -> ScopedJobJournal:
        return ScopedJobJournal(self, project_dir=project_dir, mode=mode)

    def _sync_log(self, session: Session, run: WorkflowRun) -> None:
        persisted = session.exec(
            select(func.max(ExecutionLogRow.seq)).where(
                ExecutionLogRow.project_dir == str(run.project_dir),
                ExecutionLogRow.mode == run.mode.value,
            ),
        ).one()
        start = int(persisted or 0)
        for seq, entry in enumerate(run.execution_log[start:], start=start + 1):
            session.add(
                ExecutionLogRow(
                    project_dir=str(run.project_dir),
                    mode=run.mode.value,
                    seq=seq,
                    level=entry.level,
                    message=entry.message,
                    logged_at=to_naive_utc(entry.timestamp),
                ),
            )


class ScopedJobJournal:
    """JobJournal bound to one project and mode."""

    def __init__(self, state_manager: StateManager, *, project_dir: Path, mode: Mode) -> None:
        self.state_manager = state_manager
        self.project_dir = project_dir
        self.mode = mode

    def record_job(self, job: Job) -> None:
        self.state_manager.record_job(job, project_dir=self.project_dir, mode=self.mode)

    def stop_requested(self, job_id: str) -> bool:
        return self.state_manager.stop_requested(job_id)


def _decode_checkpoint(row: HarnessCheckpoint, *, project_dir: Path, mode: Mode) -> WorkflowRun:
    if row.schema_version != CHECKPOINT_SCHEMA_VERSION:
        raise CorruptCheckpoint(
            f"schema_version {row.schema_version} != {CHECKPOINT_SCHEMA_VERSION}",
        )
    try:
        state = HarnessState(row.state)
    except ValueError as error:
        raise CorruptCheckpoint(f"unknown state {row.state!r}") from error
    try:
        payload: Any = json.loads(row.payload_json)
    except json.JSONDecodeError as error:
        raise CorruptCheckpoint(f"payload is not JSON: {error}") from error
    if not isinstance(payload, dict):
        raise CorruptCheckpoint("payload is not a JSON object")

    run = WorkflowRun(
        mode=mode,
        project_dir=project_dir,
        state=state,
        current_step_id=row.current_step_id,
        current_provider_id=row.current_provider_id,
        started_at=to_aware_utc(row.started_at) if row.started_at else None,
    )
    try:
        run.apply_payload(payload)
    except (KeyError, TypeError, ValueError) as error:
        raise CorruptCheckpoint(f"payload fields are invalid: {error}") from error
    return run


def _to_job(row: HarnessJobRow) -> Job:
    logs: list[str] = []
    if row.logs_json:
        parsed = json.loads(row.logs_json)
        if isinstance(parsed, list):
            logs = [str(item) for item in parsed]
    return Job(
        id=row.job_id,
        step_id=row.step_id,
        provider_id=row.provider_id,
        attempt=row.attempt,
        status=JobStatus(row.status),
        created_at=to_aware_utc(row.created_at),
        started_at=_aware_or_none(row.started_at),
        finished_at=_aware_or_none(row.finished_at),
        result=row.result_preview,
        error=row.error,
        logs=logs,
    )


def _aware_or_none(value: datetime | None) -> datetime | None:
    return to_aware_utc(value) if value is not None else None
