"""Harness runner: the state machine that drives a workflow to completion."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path

from devpilot.harness.condition_detector import ConditionDetector
from devpilot.harness.error_handler import ErrorHandler
from devpilot.harness.errors import DependencyUnmet, NoProviderAvailable
from devpilot.harness.job_manager import JobManager
from devpilot.harness.models import (
    Classification,
    ClassifiedError,
    DecisionAction,
    ErrorContext,
    HarnessState,
    Job,
    JobResult,
    JobStatus,
    LogEntry,
    Mode,
    Question,
    RunSummary,
    Signal,
    Step,
    WorkflowRun,
)
from devpilot.harness.provider_manager import ProviderManager
from devpilot.harness.state_manager import StateManager
from devpilot.harness.steps import build_step_prompt, validate_catalog
from devpilot.storage.common import utc_now

logger = logging.getLogger(__name__)

AFFIRMATIVE_ANSWERS = frozenset({"y", "yes", "approve", "approved", "ok", "true", "1"})

PromptBuilder = Callable[[Step, WorkflowRun], str]
Sleeper = Callable[[float], None]


class HarnessRunner:
    """Run one mode's steps for one project, persisting every transition."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        mode: Mode,
        project_dir: Path,
        steps: Sequence[Step],
        provider_manager: ProviderManager,
        job_manager: JobManager,
        state_manager: StateManager,
        error_handler: ErrorHandler,
        detector: ConditionDetector,
        step_timeout_seconds: float = 600.0,
        prompt_builder: PromptBuilder = build_step_prompt,
        sleeper: Sleeper | None = None,
        clock: Callable[[], datetime] = utc_now,
        stop_event: threading.Event | None = None,
    ) -> None:
        validate_catalog(steps)
        self.mode = mode
        self.project_dir = project_dir
        self.steps = list(steps)
        self._steps_by_id = {step.id: step for step in self.steps}
        self.provider_manager = provider_manager
        self.job_manager = job_manager
        self.state_manager = state_manager
        self.error_handler = error_handler
        self.detector = detector
        self.step_timeout_seconds = step_timeout_seconds
        self.prompt_builder = prompt_builder
        self._sleeper = sleeper
        self._clock = clock
        self.stop_event = stop_event or threading.Event()
        self._stop_signal_name: str | None = None

    def request_stop(self, *, signal_name: str = "request") -> None:
        """Ask the loop to stop at the next safe point; the run stays resumable."""

        self._stop_signal_name = signal_name
        self.stop_event.set()

    def run(
        self,
        step_id: str | None = None,
        *,
        force: bool = False,
        answers: Mapping[str, str] | None = None,
    ) -> RunSummary:
        """Run or resume the workflow, or a single targeted step."""

        with self._signal_handlers():
            return self._run(step_id=step_id, force=force, answers=dict(answers or {}))

    def _run(self, *, step_id: str | None, force: bool, answers: dict[str, str]) -> RunSummary:
        if step_id is not None and step_id not in self._steps_by_id:
            known = ", ".join(self._steps_by_id)
            raise ValueError(f"Unknown step {step_id!r} for mode {self.mode.value}. Known: {known}")

        run = self.state_manager.load(self.project_dir, self.mode)
        corrupt = run is None and self.state_manager.last_load_warning is not None
        if step_id is not None and not force:
            completed = set(run.completed_steps) if run is not None else set()
            missing = self._steps_by_id[step_id].dependencies - completed
            if missing:
                raise DependencyUnmet(step_id, missing)

        if corrupt:
            self.state_manager.reset(self.project_dir, self.mode)
        if run is None:
            run = WorkflowRun(
                mode=self.mode,
                project_dir=self.project_dir,
                started_at=self._clock(),
            )
            self.state_manager.save(run)
        warnings = self.state_manager.pop_warnings()
        for warning in warnings:
            self._log(run, "warning", warning)

        if step_id is None and run.state in {HarnessState.COMPLETED, HarnessState.FAILED}:
            return self._summary(
                run,
                f"Workflow is {run.state.value}; reset the mode to start over.",
                warnings=warnings,
            )

        self._merge_answers(run, answers)
        if run.state is HarnessState.PAUSED_USER_FEEDBACK:
            waiting = self._resolve_pending(run)
            if waiting is not None:
                self.state_manager.save(run)
                return self._summary(run, waiting, warnings=warnings)

        if step_id is not None and force and step_id in run.completed_steps:
            run.completed_steps.remove(step_id)
            self._log(run, "info", f"Re-opening completed step {step_id} (forced)")

        if run.resume_after is not None and run.state.is_paused:
            delay = (run.resume_after - self._clock()).total_seconds()
            if delay > 0:
                self._log(run, "info", f"Waiting {delay:.0f}s until {run.resume_after.isoformat()}")
                if self._sleep(delay):
                    return self._interrupted(run, warnings)

        self._transition(run, HarnessState.RUNNING, "Workflow running")
        return self._loop(run, target=step_id, warnings=warnings)

    def _loop(self, run: WorkflowRun, *, target: str | None, warnings: list[str]) -> RunSummary:
        preferred = run.current_provider_id
        attempt = 1
        error_attempts = 0
        attempt_provider: str | None = None
        while True:
            if self.stop_event.is_set():
                return self._interrupted(run, warnings)

            step = self._next_step(run, target)
            if step is None:
                return self._finish(run, target=target, warnings=warnings)
            if run.current_step_id != step.id:
                run.current_step_id = step.id
                attempt = 1
                error_attempts = 0
                attempt_provider = None

            try:
                provider_id = self.provider_manager.select_provider(preferred)
            except NoProviderAvailable as error:
                run.resume_after = error.resume_at
                self._transition(
                    run,
                    HarnessState.PAUSED_RATE_LIMITED,
                    f"No provider available for step {step.id}; resume after "
                    f"{error.resume_at.isoformat() if error.resume_at else 'unknown'}",
                    level="warning",
                )
                return self._summary(run, str(error), warnings=warnings)
            if attempt_provider is not None and provider_id != attempt_provider:
                attempt = 1
                error_attempts = 0
                run.bump("provider_switches")
                self._log(run, "info", f"Provider {attempt_provider} replaced by {provider_id}")
            attempt_provider = provider_id
            run.current_provider_id = provider_id
            run.bump("attempts")
            self._log(
                run,
                "info",
                f"Running step {step.id} on {provider_id} (attempt {attempt})",
            )
            self.state_manager.save(run)

            result = self._execute(step, provider_id, attempt, run)
            if result.status is JobStatus.CANCELLED:
                return self._interrupted(run, warnings)

            remaining = sum(
                1
                for candidate in self.steps
                if candidate.id not in run.completed_steps and candidate.id != step.id
            )
            classification = self._classify(result, remaining_steps=remaining)

            if classification.signal.is_success:
                self.provider_manager.record_success(provider_id)
                if step.requires_gate_approval:
                    self._request_gate_approval(run, step)
                    return self._summary(
                        run,
                        f"Step {step.id} is waiting for approval",
                        warnings=warnings,
                    )
                self._complete_step(run, step)
                if classification.signal is Signal.WORK_COMPLETE:
                    run.current_step_id = None
                    self._transition(run, HarnessState.COMPLETED, "Provider reported work complete")
                    return self._summary(run, "Workflow completed", warnings=warnings)
                preferred = provider_id
                continue

            if classification.signal is Signal.NEEDS_USER_FEEDBACK:
                self._request_answers(run, step, classification.questions)
                return self._summary(
                    run,
                    f"Step {step.id} needs answers to {len(run.pending_questions)} question(s)",
                    warnings=warnings,
                )

            run.bump("failures")
            self.provider_manager.record_failure(provider_id, classification)
            record = self.provider_manager.get(provider_id)
            # rate-limit waits do not spend the generic-error retry budget
            if classification.signal is Signal.GENERIC_ERROR:
                error_attempts += 1
            context = ErrorContext(
                provider_id=provider_id,
                step_id=step.id,
                attempt=error_attempts,
                consecutive_failures=record.consecutive_failures,
                max_retries=record.max_retries,
                fallback_chain=tuple(self.provider_manager.fallback_chain(provider_id)),
            )
            decision = self.error_handler.decide(classification, context)
            last_error = ClassifiedError(
                signal=classification.signal,
                message=classification.message,
                provider_id=provider_id,
                step_id=step.id,
                attempts=attempt,
            )
            run.last_error = last_error
            self._log(
                run,
                "warning",
                f"Step {step.id} on {provider_id} failed ({classification.signal.value}, "
                f"rule={classification.matched_rule}): {decision.action.value}",
            )

            if decision.action in {
                DecisionAction.RETRY_SAME_PROVIDER,
                DecisionAction.WAIT_AND_RETRY_SAME_PROVIDER,
            }:
                paused_state = (
                    HarnessState.PAUSED_ERROR
                    if decision.action is DecisionAction.RETRY_SAME_PROVIDER
                    else HarnessState.PAUSED_RATE_LIMITED
                )
                backoff = decision.backoff_seconds or 0.0
                run.resume_after = self._clock() + timedelta(seconds=backoff)
                self._transition(
                    run,
                    paused_state,
                    f"Backing off {backoff:g}s before retrying step {step.id} on {provider_id}",
                )
                if self._sleep(backoff):
                    return self._interrupted(run, warnings)
                run.resume_after = None
                self._transition(run, HarnessState.RUNNING, f"Retrying step {step.id}")
                attempt += 1
                preferred = provider_id
                continue

            if decision.action is DecisionAction.SWITCH_PROVIDER:
                if decision.next_provider_id is None:
                    run.resume_after = self.provider_manager.next_reset_time() or (
                        self._clock() + timedelta(seconds=decision.backoff_seconds or 0.0)
                    )
                    self._transition(
                        run,
                        HarnessState.PAUSED_RATE_LIMITED,
                        f"No fallback provider for step {step.id}; paused until "
                        f"{run.resume_after.isoformat()}",
                        level="warning",
                    )
                    return self._summary(run, decision.reason, warnings=warnings)
                self._log(
                    run,
                    "info",
                    f"Switching provider {provider_id} -> {decision.next_provider_id}",
                )
                preferred = decision.next_provider_id
                continue

            self._transition(
                run,
                HarnessState.FAILED,
                f"Step {step.id} aborted: {last_error.describe()}",
                level="error",
            )
            return self._summary(
                run,
                f"Step {step.id} aborted: {last_error.describe()}",
                warnings=warnings,
            )

    def _execute(self, step: Step, provider_id: str, attempt: int, run: WorkflowRun) -> JobResult:
        prompt = self.prompt_builder(step, run)
        job_id = self.job_manager.submit(
            step.id,
            provider_id,
            prompt,
            attempt=attempt,
            timeout_seconds=self.step_timeout_seconds,
        )
        return self.job_manager.wait(
            job_id,
            self.step_timeout_seconds,
            on_tick=self._on_tick,
            cancel_requested=self.stop_event.is_set,
        )

    def _classify(self, result: JobResult, *, remaining_steps: int) -> Classification:
        if result.classification is not None:
            return result.classification
        if result.status is JobStatus.TIMED_OUT:
            return Classification(
                signal=Signal.GENERIC_ERROR,
                matched_rule="timeout",
                message=result.error or "provider call timed out",
            )
        return self.detector.classify(
            result.output,
            exit_status=result.exit_status,
            remaining_steps=remaining_steps,
        )

    def _next_step(self, run: WorkflowRun, target: str | None) -> Step | None:
        completed = set(run.completed_steps)
        if target is not None:
            return None if target in completed else self._steps_by_id[target]
        current = self._steps_by_id.get(run.current_step_id or "")
        if current is not None and current.id not in completed:
            return current
        for step in self.steps:
            if step.id not in completed and step.dependencies <= completed:
                return step
        return None

    def _finish(self, run: WorkflowRun, *, target: str | None, warnings: list[str]) -> RunSummary:
        run.current_step_id = None
        remaining = [step.id for step in self.steps if step.id not in run.completed_steps]
        if target is not None and remaining:
            self._transition(run, HarnessState.IDLE, f"Targeted step {target} finished")
            return self._summary(run, f"Step {target} finished", warnings=warnings)
        self._transition(run, HarnessState.COMPLETED, "All steps completed")
        return self._summary(run, "Workflow completed", warnings=warnings)

    def _complete_step(self, run: WorkflowRun, step: Step) -> None:
        if step.id not in run.completed_steps:
            run.completed_steps.append(step.id)
        run.bump("steps_completed")
        run.user_answers.pop(f"review:{step.id}", None)
        run.current_step_id = None
        run.last_error = None
        self._log(run, "info", f"Step {step.id} completed")
        self.state_manager.save(run)

    def _request_answers(self, run: WorkflowRun, step: Step, questions: list[Question]) -> None:
        keyed = [
            Question(
                number=question.number,
                text=question.text,
                required=question.required,
                key=f"{step.id}#{question.number}",
            )
            for question in questions
        ]
        for question in keyed:
            run.user_answers.pop(question.key, None)
        run.pending_questions = keyed
        self._transition(
            run,
            HarnessState.PAUSED_USER_FEEDBACK,
            f"Step {step.id} asked {len(keyed)} question(s)",
        )

    def _request_gate_approval(self, run: WorkflowRun, step: Step) -> None:
        gate_key = f"gate:{step.id}"
        run.user_answers.pop(gate_key, None)
        run.pending_gate = step.id
        run.pending_questions = [
            Question(
                number=1,
                text=f"Approve the output of step {step.id}? "
                "Answer yes to continue, or give feedback to re-run the step.",
                key=gate_key,
            ),
        ]
        self._transition(
            run,
            HarnessState.PAUSED_USER_FEEDBACK,
            f"Step {step.id} is waiting for gate approval",
        )

    def _merge_answers(self, run: WorkflowRun, answers: dict[str, str]) -> None:
        by_number = {str(question.number): question.key for question in run.pending_questions}
        for raw_key, value in answers.items():
            key = by_number.get(raw_key.strip(), raw_key.strip())
            run.user_answers[key] = value

    def _resolve_pending(self, run: WorkflowRun) -> str | None:
        """Apply answers to pending questions; return a message while still waiting."""

        if run.pending_gate is not None:
            step_id = run.pending_gate
            gate_key = f"gate:{step_id}"
            answer = run.user_answers.pop(gate_key, None)
            if answer is None:
                return f"Step {step_id} is waiting for approval"
            run.pending_gate = None
            run.pending_questions = []
            if answer.strip().lower() in AFFIRMATIVE_ANSWERS:
                self._log(run, "info", f"Gate for step {step_id} approved")
                self._complete_step(run, self._steps_by_id[step_id])
            else:
                run.user_answers[f"review:{step_id}"] = answer
                run.current_step_id = step_id
                self._log(run, "info", f"Gate for step {step_id} rejected; re-running")
            return None

        unanswered = [
            question
            for question in run.pending_questions
            if question.required and not run.user_answers.get(question.key, "").strip()
        ]
        if unanswered:
            numbers = ", ".join(str(question.number) for question in unanswered)
            return f"Waiting for answers to required question(s): {numbers}"
        run.pending_questions = []
        return None

    def _transition(
        self,
        run: WorkflowRun,
        state: HarnessState,
        message: str,
        *,
        level: str = "info",
    ) -> None:
        previous = run.state
        run.state = state
        if state is HarnessState.RUNNING:
            run.resume_after = None
        self._log(run, level, f"{previous.value} -> {state.value}: {message}")
        self.state_manager.save(run)

    def _log(self, run: WorkflowRun, level: str, message: str) -> None:
        logger.log(logging.getLevelName(level.upper()), "[%s] %s", self.mode.value, message)
        self.state_manager.append_log(
            run,
            LogEntry(timestamp=self._clock(), level=level, message=message),
        )

    def _interrupted(self, run: WorkflowRun, warnings: list[str]) -> RunSummary:
        reason = self._stop_signal_name or "stop request"
        self._log(run, "info", f"Interrupted by {reason}; state kept as {run.state.value}")
        self.state_manager.save(run)
        return self._summary(
            run,
            "Interrupted; run again to resume",
            warnings=warnings,
            interrupted=True,
        )

    def _summary(
        self,
        run: WorkflowRun,
        message: str,
        *,
        warnings: list[str],
        interrupted: bool = False,
    ) -> RunSummary:
        return RunSummary(
            mode=run.mode,
            state=run.state,
            completed_steps=list(run.completed_steps),
            current_step_id=run.current_step_id,
            current_provider_id=run.current_provider_id,
            message=message,
            pending_questions=list(run.pending_questions),
            resume_after=run.resume_after,
            last_error=run.last_error,
            warnings=list(warnings),
            interrupted=interrupted,
            metrics=dict(run.metrics),
        )

    def _sleep(self, seconds: float) -> bool:
        """Wait interruptibly; True when a stop was requested."""

        if seconds <= 0:
            return self.stop_event.is_set()
        if self._sleeper is None:
            return self.stop_event.wait(seconds)
        self._sleeper(seconds)
        return self.stop_event.is_set()

    def _on_tick(self, job: Job) -> None:
        logger.debug("Job %s for step %s is %s", job.id, job.step_id, job.status.value)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, stopping after the current step", name)
            self.request_stop(signal_name=name)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
