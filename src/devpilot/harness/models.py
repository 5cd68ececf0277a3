"""Domain models for harness runs, providers, jobs, and decisions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from devpilot.storage.common import from_iso


class Mode(str, Enum):
    """Supported workflow categories."""

    ANALYZE = "analyze"
    EXECUTE = "execute"


class HarnessState(str, Enum):
    """Harness runner lifecycle states."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED_USER_FEEDBACK = "paused_user_feedback"
    PAUSED_RATE_LIMITED = "paused_rate_limited"
    PAUSED_ERROR = "paused_error"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_paused(self) -> bool:
        return self in {
            HarnessState.PAUSED_USER_FEEDBACK,
            HarnessState.PAUSED_RATE_LIMITED,
            HarnessState.PAUSED_ERROR,
        }


class Signal(str, Enum):
    """Primary signal extracted from one provider response."""

    RATE_LIMITED = "rate_limited"
    NEEDS_USER_FEEDBACK = "needs_user_feedback"
    WORK_COMPLETE = "work_complete"
    GENERIC_ERROR = "generic_error"
    OK = "ok"

    @property
    def is_success(self) -> bool:
        return self in {Signal.OK, Signal.WORK_COMPLETE}


class ProviderKind(str, Enum):
    """How a provider is reached."""

    API = "api"
    SUBSCRIPTION = "subscription"
    CLI_PASSTHROUGH = "cli-passthrough"


class JobStatus(str, Enum):
    """Asynchronous provider invocation lifecycle."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in {JobStatus.PENDING, JobStatus.RUNNING}


class DecisionAction(str, Enum):
    """Recovery actions produced by the error handler."""

    RETRY_SAME_PROVIDER = "retry_same_provider"
    WAIT_AND_RETRY_SAME_PROVIDER = "wait_and_retry_same_provider"
    SWITCH_PROVIDER = "switch_provider"
    PAUSE_FOR_USER_INPUT = "pause_for_user_input"
    ABORT_STEP = "abort_step"


@dataclass(slots=True)
class Step:
    """One unit of workflow work from a mode catalog."""

    id: str
    dependencies: frozenset[str] = frozenset()
    requires_gate_approval: bool = False
    description: str = ""
    output: str | None = None


@dataclass(slots=True)
class Question:
    """One numbered question a provider asked the user."""

    number: int
    text: str
    required: bool = True
    key: str = ""

    def __post_init__(self) -> None:
        if not self.key:
            self.key = str(self.number)

    def to_payload(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "text": self.text,
            "required": self.required,
            "key": self.key,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Question:
        return cls(
            number=int(payload["number"]),
            text=str(payload["text"]),
            required=bool(payload.get("required", True)),
            key=str(payload.get("key") or payload["number"]),
        )


@dataclass(slots=True)
class Classification:
    """Condition detector verdict with diagnostics."""

    signal: Signal
    matched_rule: str
    matched_pattern: str | None = None
    retry_after_seconds: float | None = None
    questions: list[Question] = field(default_factory=list)
    message: str = ""
    transient: bool = True


@dataclass(slots=True)
class ClassifiedError:
    """Last failure recorded on a run, shown on abort."""

    signal: Signal
    message: str
    provider_id: str | None
    step_id: str | None
    attempts: int

    def to_payload(self) -> dict[str, Any]:
        return {
            "signal": self.signal.value,
            "message": self.message,
            "provider_id": self.provider_id,
            "step_id": self.step_id,
            "attempts": self.attempts,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ClassifiedError:
        return cls(
            signal=Signal(payload["signal"]),
            message=str(payload.get("message", "")),
            provider_id=payload.get("provider_id"),
            step_id=payload.get("step_id"),
            attempts=int(payload.get("attempts", 0)),
        )

    def describe(self) -> str:
        return (
            f"{self.signal.value} on step={self.step_id or '-'} "
            f"provider={self.provider_id or '-'} after {self.attempts} attempt(s): "
            f"{self.message or '-'}"
        )


@dataclass(slots=True)
class LogEntry:
    """One execution log record of a workflow run."""

    timestamp: datetime
    level: str
    message: str


def _default_metrics() -> dict[str, int]:
    return {
        "attempts": 0,
        "failures": 0,
        "provider_switches": 0,
        "steps_completed": 0,
    }


@dataclass(slots=True)
class WorkflowRun:
    """One execution of a mode for a project directory."""

    mode: Mode
    project_dir: Path
    state: HarnessState = HarnessState.IDLE
    current_step_id: str | None = None
    current_provider_id: str | None = None
    started_at: datetime | None = None
    completed_steps: list[str] = field(default_factory=list)
    execution_log: list[LogEntry] = field(default_factory=list)
    user_answers: dict[str, str] = field(default_factory=dict)
    pending_questions: list[Question] = field(default_factory=list)
    pending_gate: str | None = None
    resume_after: datetime | None = None
    last_error: ClassifiedError | None = None
    metrics: dict[str, int] = field(default_factory=_default_metrics)

    def bump(self, metric: str, amount: int = 1) -> None:
        self.metrics[metric] = self.metrics.get(metric, 0) + amount

    def to_payload(self) -> dict[str, Any]:
        """Serialize the fields kept in the checkpoint JSON payload."""

        return {
            "completed_steps": list(self.completed_steps),
            "user_answers": dict(self.user_answers),
            "pending_questions": [question.to_payload() for question in self.pending_questions],
            "pending_gate": self.pending_gate,
            "resume_after": self.resume_after.isoformat() if self.resume_after else None,
            "last_error": self.last_error.to_payload() if self.last_error else None,
            "metrics": dict(self.metrics),
        }

    def apply_payload(self, payload: dict[str, Any]) -> None:
        completed = payload.get("completed_steps", [])
        if not isinstance(completed, list):
            raise ValueError("completed_steps must be a list")
        self.completed_steps = [str(step_id) for step_id in completed]
        self.user_answers = {
            str(key): str(value) for key, value in dict(payload.get("user_answers", {})).items()
        }
        self.pending_questions = [
            Question.from_payload(item) for item in payload.get("pending_questions", [])
        ]
        self.pending_gate = payload.get("pending_gate")
        resume_after = payload.get("resume_after")
        self.resume_after = from_iso(resume_after) if resume_after else None
        last_error = payload.get("last_error")
        self.last_error = ClassifiedError.from_payload(last_error) if last_error else None
        metrics = _default_metrics()
        metrics.update({str(k): int(v) for k, v in dict(payload.get("metrics", {})).items()})
        self.metrics = metrics


@dataclass(slots=True)
class ProviderRecord:
    """Configured provider plus its in-memory health."""

    id: str
    priority: int
    kind: ProviderKind
    max_retries: int = 3
    model_ids: tuple[str, ...] = ()
    available: bool = True
    rate_limited_until: datetime | None = None
    consecutive_failures: int = 0
    circuit_open: bool = False
    circuit_opened_at: datetime | None = None


@dataclass(slots=True)
class Job:
    """One asynchronous provider invocation for a step attempt."""

    id: str
    step_id: str
    provider_id: str
    attempt: int
    status: JobStatus
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: str | None = None
    error: str | None = None
    exit_status: int | None = None
    logs: list[str] = field(default_factory=list)


@dataclass(slots=True)
class JobResult:
    """Outcome returned to the orchestration loop by JobManager.wait."""

    job_id: str
    status: JobStatus
    output: str = ""
    exit_status: int | None = None
    error: str | None = None
    classification: Classification | None = None


@dataclass(slots=True)
class ErrorContext:
    """Inputs the error handler needs besides the classification."""

    provider_id: str
    step_id: str
    attempt: int
    consecutive_failures: int
    max_retries: int
    fallback_chain: tuple[str, ...] = ()


@dataclass(slots=True)
class Decision:
    """Error handler decision executed by the runner."""

    action: DecisionAction
    reason: str
    next_provider_id: str | None = None
    backoff_seconds: float | None = None
    questions: list[Question] = field(default_factory=list)


@dataclass(slots=True)
class RunSummary:
    """Result of one HarnessRunner.run call for CLI reporting."""

    mode: Mode
    state: HarnessState
    completed_steps: list[str]
    current_step_id: str | None
    current_provider_id: str | None
    message: str
    pending_questions: list[Question] = field(default_factory=list)
    resume_after: datetime | None = None
    last_error: ClassifiedError | None = None
    warnings: list[str] = field(default_factory=list)
    interrupted: bool = False
    metrics: dict[str, int] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.state is HarnessState.FAILED


@dataclass(slots=True)
class CheckpointHistoryView:
    """One row of the checkpoint history, newest first when listed."""

    history_id: int
    state: HarnessState
    current_step_id: str | None
    current_provider_id: str | None
    completed_count: int
    recorded_at: datetime
