from __future__ import annotations

from pathlib import Path

import allure
import pytest
from conftest import BlockingProvider, ScriptedProvider

from devpilot.harness.errors import RateLimited, TransportError
from devpilot.harness.job_manager import JobManager
from devpilot.harness.models import Job, JobStatus, Signal

pytestmark = [
    allure.epic("Harness Orchestration"),
    allure.feature("Job Manager"),
]


class RecordingJournal:
    def __init__(self, *, stop: bool = False) -> None:
        self.records: list[Job] = []
        self.stop = stop

    def record_job(self, job: Job) -> None:
        self.records.append(job)

    def stop_requested(self, job_id: str) -> bool:
        return self.stop


def _manager(tmp_path: Path, providers: dict[str, object], **kwargs) -> JobManager:
    return JobManager(
        providers=providers,  # type: ignore[arg-type]
        workdir_root=tmp_path / "jobs",
        liveness_interval_seconds=0.01,
        graceful_shutdown_seconds=0.0,
        **kwargs,
    )


def test_successful_job_returns_output(tmp_path: Path) -> None:
    manager = _manager(tmp_path, {"a": ScriptedProvider("wrote docs/PRD.md")})

    job_id = manager.submit("S", "a", "prompt")
    result = manager.wait(job_id, 5.0)

    assert result.status is JobStatus.SUCCEEDED
    assert result.output == "wrote docs/PRD.md"
    assert result.exit_status == 0
    assert result.classification is None
    job = manager.job_status(job_id)
    assert job.started_at is not None
    assert job.finished_at is not None
    assert "exit_status: 0" in manager.job_logs(job_id)


def test_rate_limited_exception_is_classified_with_retry_after(tmp_path: Path) -> None:
    provider = ScriptedProvider(RateLimited("HTTP 429", retry_after_seconds=30))
    manager = _manager(tmp_path, {"a": provider})

    result = manager.wait(manager.submit("S", "a", "prompt"), 5.0)

    assert result.status is JobStatus.FAILED
    assert result.classification is not None
    assert result.classification.signal is Signal.RATE_LIMITED
    assert result.classification.retry_after_seconds == 30.0


def test_transport_error_is_classified_as_generic_error(tmp_path: Path) -> None:
    provider = ScriptedProvider(TransportError("connection refused"))
    manager = _manager(tmp_path, {"a": provider})

    result = manager.wait(manager.submit("S", "a", "prompt"), 5.0)

    assert result.status is JobStatus.FAILED
    assert result.exit_status == 1
    assert result.error == "connection refused"
    assert result.classification is not None
    assert result.classification.signal is Signal.GENERIC_ERROR
    assert result.classification.transient is True


def test_permanent_transport_error_is_not_transient(tmp_path: Path) -> None:
    provider = ScriptedProvider(TransportError("command not found: agent", transient=False))
    manager = _manager(tmp_path, {"a": provider})

    result = manager.wait(manager.submit("S", "a", "prompt"), 5.0)

    assert result.classification is not None
    assert result.classification.signal is Signal.GENERIC_ERROR
    assert result.classification.transient is False


def test_wait_timeout_marks_job_timed_out_and_discards_late_result(tmp_path: Path) -> None:
    provider = BlockingProvider()
    manager = _manager(tmp_path, {"a": provider})
    job_id = manager.submit("S", "a", "prompt")

    result = manager.wait(job_id, 0.05)

    assert result.status is JobStatus.TIMED_OUT
    assert result.error == "job timed out after 0.05s"
    assert provider.cancelled.wait(2.0)
    assert manager.job_status(job_id).status is JobStatus.TIMED_OUT


def test_cancel_requested_callback_cancels_running_job(tmp_path: Path) -> None:
    provider = BlockingProvider()
    manager = _manager(tmp_path, {"a": provider})
    job_id = manager.submit("S", "a", "prompt")
    assert provider.started.wait(2.0)

    result = manager.wait(job_id, 5.0, cancel_requested=lambda: True)

    assert result.status is JobStatus.CANCELLED
    assert provider.cancelled.wait(2.0)
    assert manager.cancel(job_id) is False


def test_on_tick_reports_live_job_snapshots(tmp_path: Path) -> None:
    provider = BlockingProvider()
    manager = _manager(tmp_path, {"a": provider})
    job_id = manager.submit("S", "a", "prompt")
    ticks: list[Job] = []

    def _tick(job: Job) -> None:
        ticks.append(job)
        provider.release.set()

    result = manager.wait(job_id, 5.0, on_tick=_tick)

    assert result.status is JobStatus.SUCCEEDED
    assert result.output == "late result"
    assert ticks
    assert ticks[0].id == job_id


def test_duplicate_active_step_attempt_is_rejected(tmp_path: Path) -> None:
    provider = BlockingProvider()
    manager = _manager(tmp_path, {"a": provider})
    job_id = manager.submit("S", "a", "prompt")

    try:
        with pytest.raises(RuntimeError, match="already running"):
            manager.submit("S", "a", "prompt")
        second = manager.submit("S", "a", "prompt", attempt=2)
        assert second != job_id
    finally:
        provider.release.set()


def test_unknown_provider_and_job_are_rejected(tmp_path: Path) -> None:
    manager = _manager(tmp_path, {"a": ScriptedProvider()})

    with pytest.raises(ValueError, match="Unknown provider"):
        manager.submit("S", "missing", "prompt")
    with pytest.raises(KeyError):
        manager.job_status("nope")


def test_journal_sees_transitions_and_external_stop(tmp_path: Path) -> None:
    provider = BlockingProvider()
    journal = RecordingJournal(stop=True)
    manager = _manager(tmp_path, {"a": provider}, journal=journal)

    result = manager.wait(manager.submit("S", "a", "prompt"), 5.0)

    assert result.status is JobStatus.CANCELLED
    statuses = [job.status for job in journal.records]
    assert statuses[0] is JobStatus.PENDING
    assert JobStatus.CANCELLED in statuses


def test_clear_jobs_drops_only_finished_jobs(tmp_path: Path) -> None:
    blocking = BlockingProvider()
    manager = _manager(tmp_path, {"a": ScriptedProvider("done"), "b": blocking})
    finished = manager.submit("S1", "a", "prompt")
    manager.wait(finished, 5.0)
    running = manager.submit("S2", "b", "prompt")

    try:
        assert manager.clear_jobs() == 1
        assert [job.id for job in manager.list_jobs()] == [running]
    finally:
        blocking.release.set()
