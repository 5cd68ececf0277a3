"""Run provider invocations on worker threads with timeout and cancellation."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from devpilot.harness.condition_detector import ConditionDetector
from devpilot.harness.errors import ProviderOutputError, TransportError
from devpilot.harness.models import Job, JobResult, JobStatus, Signal
from devpilot.harness.providers.base import Provider, ProviderRequest
from devpilot.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_LIVENESS_INTERVAL_SECONDS = 1.0
_ERROR_EXIT_STATUS = 1


class JobJournal(Protocol):
    """Durable sink for job transitions, readable by other processes."""

    def record_job(self, job: Job) -> None:
        """Persist the current job snapshot."""

    def stop_requested(self, job_id: str) -> bool:
        """Return True when a stop was requested from outside the process."""


@dataclass(slots=True)
class _JobHandle:
    job: Job
    prompt: str
    timeout_seconds: float
    done: threading.Event = field(default_factory=threading.Event)
    cancel: threading.Event = field(default_factory=threading.Event)
    output: str = ""
    classification_source: str | None = None
    transient: bool = True
    thread: threading.Thread | None = None


class JobManager:
    """Own asynchronous provider jobs for one harness process."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        providers: Mapping[str, Provider],
        workdir_root: Path,
        detector: ConditionDetector | None = None,
        journal: JobJournal | None = None,
        cwd: Path | None = None,
        default_timeout_seconds: float = 600.0,
        liveness_interval_seconds: float = DEFAULT_LIVENESS_INTERVAL_SECONDS,
        graceful_shutdown_seconds: float = 5.0,
    ) -> None:
        self.providers = dict(providers)
        self.workdir_root = workdir_root
        self.detector = detector or ConditionDetector()
        self.journal = journal
        self.cwd = cwd
        self.default_timeout_seconds = default_timeout_seconds
        self.liveness_interval_seconds = liveness_interval_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self._jobs: dict[str, _JobHandle] = {}
        self._lock = threading.Lock()

    def submit(
        self,
        step_id: str,
        provider_id: str,
        prompt: str,
        *,
        attempt: int = 1,
        timeout_seconds: float | None = None,
    ) -> str:
        """Start the invocation on a worker thread and return its job id."""

        provider = self.providers.get(provider_id)
        if provider is None:
            raise ValueError(f"Unknown provider: {provider_id!r}")

        with self._lock:
            for handle in self._jobs.values():
                active = handle.job
                if (
                    active.step_id == step_id
                    and active.attempt == attempt
                    and not active.status.is_terminal
                ):
                    raise RuntimeError(
                        f"Job {active.id} already running for step={step_id} attempt={attempt}",
                    )
            job = Job(
                id=uuid4().hex,
                step_id=step_id,
                provider_id=provider_id,
                attempt=attempt,
                status=JobStatus.PENDING,
                created_at=utc_now(),
            )
            handle = _JobHandle(
                job=job,
                prompt=prompt,
                timeout_seconds=timeout_seconds or self.default_timeout_seconds,
            )
            self._jobs[job.id] = handle

        self._journal(job)
        handle.thread = threading.Thread(
            target=self._run_job,
            args=(handle, provider),
            daemon=True,
            name=f"devpilot-job-{job.id[:8]}",
        )
        handle.thread.start()
        logger.debug("Submitted job %s step=%s provider=%s", job.id, step_id, provider_id)
        return job.id

    def wait(
        self,
        job_id: str,
        timeout: float,
        *,
        on_tick: Callable[[Job], None] | None = None,
        cancel_requested: Callable[[], bool] | None = None,
    ) -> JobResult:
        """Block up to ``timeout`` seconds with periodic liveness callbacks."""

        handle = self._handle(job_id)
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._expire(handle, timeout)
                return self._result(handle)
            if handle.done.wait(min(self.liveness_interval_seconds, remaining)):
                return self._result(handle)
            if on_tick is not None:
                on_tick(self.job_status(job_id))
            if cancel_requested is not None and cancel_requested():
                self.cancel(job_id)
                return self._result(handle)
            if self.journal is not None and self._stop_requested_externally(job_id):
                logger.info("Stop requested for job %s", job_id)
                self.cancel(job_id)
                return self._result(handle)

    def cancel(self, job_id: str) -> bool:
        """Request cooperative cancellation; no-op for finished jobs."""

        handle = self._handle(job_id)
        with self._lock:
            job = handle.job
            if job.status.is_terminal:
                return False
            job.status = JobStatus.CANCELLED
            job.finished_at = utc_now()
            job.error = "cancelled"
            job.logs.append("cancel requested")
            handle.cancel.set()
            handle.done.set()
        self._journal(job)
        logger.debug("Cancelled job %s", job_id)
        return True

    def list_jobs(self) -> list[Job]:
        with self._lock:
            return [_snapshot(handle.job) for handle in self._jobs.values()]

    def job_status(self, job_id: str) -> Job:
        handle = self._handle(job_id)
        with self._lock:
            return _snapshot(handle.job)

    def job_logs(self, job_id: str) -> list[str]:
        handle = self._handle(job_id)
        with self._lock:
            return list(handle.job.logs)

    def clear_jobs(self) -> int:
        """Drop finished jobs from memory and return how many were removed."""

        with self._lock:
            finished = [
                job_id for job_id, handle in self._jobs.items() if handle.job.status.is_terminal
            ]
            for job_id in finished:
                del self._jobs[job_id]
        return len(finished)

    def _run_job(self, handle: _JobHandle, provider: Provider) -> None:
        job = handle.job
        with self._lock:
            if job.status.is_terminal:
                return
            job.status = JobStatus.RUNNING
            job.started_at = utc_now()
        self._journal(job)

        request = ProviderRequest(
            provider_id=job.provider_id,
            prompt=handle.prompt,
            workdir=self.workdir_root / job.id,
            timeout_seconds=handle.timeout_seconds,
            cwd=self.cwd,
            cancel_requested=handle.cancel.is_set,
            graceful_shutdown_seconds=self.graceful_shutdown_seconds,
        )
        status: JobStatus
        output = ""
        error: str | None = None
        exit_status: int | None
        logs: list[str] = []
        source: str | None = None
        transient = True
        try:
            response = provider.invoke(request)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Job %s provider %s raised: %s", job.id, job.provider_id, exc)
            status = JobStatus.FAILED
            error = str(exc) or exc.__class__.__name__
            exit_status = (
                exc.exit_status if isinstance(exc, ProviderOutputError) else _ERROR_EXIT_STATUS
            )
            logs.append(f"error: {exc.__class__.__name__}: {error}")
            source = error
            if isinstance(exc, TransportError):
                transient = exc.transient
        else:
            output = response.output
            exit_status = response.exit_status
            if response.timed_out:
                status = JobStatus.TIMED_OUT
                error = "provider call timed out"
            elif response.success:
                status = JobStatus.SUCCEEDED
            else:
                status = JobStatus.FAILED
            logs.extend(f"artifact: {path}" for path in response.artifacts)
            logs.append(f"exit_status: {exit_status}")

        with self._lock:
            if job.status.is_terminal:
                logger.debug("Discarding late result for job %s (%s)", job.id, job.status.value)
                return
            job.status = status
            job.finished_at = utc_now()
            job.result = output
            job.error = error
            job.exit_status = exit_status
            job.logs.extend(logs)
            handle.output = output
            handle.classification_source = source
            handle.transient = transient
            handle.done.set()
        self._journal(job)
        logger.debug("Job %s finished status=%s", job.id, status.value)

    def _expire(self, handle: _JobHandle, timeout: float) -> None:
        with self._lock:
            job = handle.job
            if job.status.is_terminal:
                return
            job.status = JobStatus.TIMED_OUT
            job.finished_at = utc_now()
            job.error = f"job timed out after {timeout:g}s"
            job.logs.append(job.error)
            handle.cancel.set()
            handle.done.set()
        self._journal(job)
        logger.info("Job %s timed out after %gs", job.id, timeout)

    def _result(self, handle: _JobHandle) -> JobResult:
        with self._lock:
            job = handle.job
            result = JobResult(
                job_id=job.id,
                status=job.status,
                output=handle.output,
                exit_status=job.exit_status,
                error=job.error,
            )
            source = handle.classification_source
            transient = handle.transient
        if source is not None:
            classification = self.detector.classify(
                source,
                exit_status=result.exit_status or _ERROR_EXIT_STATUS,
            )
            if classification.signal is Signal.GENERIC_ERROR:
                classification.transient = transient
            result.classification = classification
        return result

    def _handle(self, job_id: str) -> _JobHandle:
        with self._lock:
            handle = self._jobs.get(job_id)
        if handle is None:
            raise KeyError(f"Job not found: {job_id}")
        return handle

    def _journal(self, job: Job) -> None:
        if self.journal is None:
            return
        with self._lock:
            snapshot = _snapshot(job)
        try:
            self.journal.record_job(snapshot)
        except Exception:  # noqa: BLE001
            logger.exception("Job journal write failed for %s", job.id)

    def _stop_requested_externally(self, job_id: str) -> bool:
        try:
            return bool(self.journal and self.journal.stop_requested(job_id))
        except Exception:  # noqa: BLE001
            logger.exception("Job journal read failed for %s", job_id)
            return False


def _snapshot(job: Job) -> Job:
    return replace(job, logs=list(job.logs))
