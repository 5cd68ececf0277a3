from __future__ import annotations

import allure
import pytest

from devpilot.harness.error_handler import ErrorHandler
from devpilot.harness.models import (
    Classification,
    DecisionAction,
    ErrorContext,
    Question,
    Signal,
)

pytestmark = [
    allure.epic("Harness Orchestration"),
    allure.feature("Error Handler"),
]


def _context(*, attempt: int = 1, max_retries: int = 3, fallback: tuple[str, ...] = ()):
    return ErrorContext(
        provider_id="claude",
        step_id="00_PRD",
        attempt=attempt,
        consecutive_failures=attempt,
        max_retries=max_retries,
        fallback_chain=fallback,
    )


def _classification(signal: Signal, retry_after: float | None = None) -> Classification:
    return Classification(signal=signal, matched_rule="test", retry_after_seconds=retry_after)


@pytest.mark.parametrize(("attempt", "delay"), [(0, 2.0), (1, 4.0), (3, 16.0), (10, 60.0)])
def test_retry_delay_is_exponential_and_capped(attempt: int, delay: float) -> None:
    assert ErrorHandler().compute_retry_delay(attempt=attempt) == delay


def test_generic_error_retries_same_provider_with_backoff() -> None:
    decision = ErrorHandler().decide(_classification(Signal.GENERIC_ERROR), _context(attempt=2))

    assert decision.action is DecisionAction.RETRY_SAME_PROVIDER
    assert decision.next_provider_id == "claude"
    assert decision.backoff_seconds == 8.0


def test_exhausted_retries_switch_to_first_fallback() -> None:
    decision = ErrorHandler().decide(
        _classification(Signal.GENERIC_ERROR),
        _context(attempt=3, fallback=("codex", "gemini")),
    )

    assert decision.action is DecisionAction.SWITCH_PROVIDER
    assert decision.next_provider_id == "codex"


def test_exhausted_retries_without_fallback_abort() -> None:
    decision = ErrorHandler().decide(_classification(Signal.GENERIC_ERROR), _context(attempt=3))

    assert decision.action is DecisionAction.ABORT_STEP
    assert "no fallback" in decision.reason


@pytest.mark.parametrize(
    ("fallback", "action"),
    [(("codex",), DecisionAction.SWITCH_PROVIDER), ((), DecisionAction.ABORT_STEP)],
)
def test_permanent_error_skips_same_provider_retries(
    fallback: tuple[str, ...],
    action: DecisionAction,
) -> None:
    classification = Classification(
        signal=Signal.GENERIC_ERROR,
        matched_rule="exit_status",
        message="CLI provider command not found: claude",
        transient=False,
    )

    decision = ErrorHandler().decide(classification, _context(attempt=1, fallback=fallback))

    assert decision.action is action
    assert decision.backoff_seconds is None
    assert "Permanent failure" in decision.reason


def test_rate_limit_within_ceiling_waits_on_same_provider() -> None:
    decision = ErrorHandler().decide(
        _classification(Signal.RATE_LIMITED, retry_after=90),
        _context(attempt=5, max_retries=1),
    )

    assert decision.action is DecisionAction.WAIT_AND_RETRY_SAME_PROVIDER
    assert decision.backoff_seconds == 90


def test_rate_limit_without_hint_uses_default_backoff() -> None:
    handler = ErrorHandler(default_rate_limit_backoff_seconds=45.0)

    decision = handler.decide(_classification(Signal.RATE_LIMITED), _context())

    assert decision.backoff_seconds == 45.0


def test_long_rate_limit_switches_or_reports_no_fallback() -> None:
    handler = ErrorHandler(rate_limit_ceiling_seconds=300.0)
    classification = _classification(Signal.RATE_LIMITED, retry_after=3600)

    switched = handler.decide(classification, _context(fallback=("codex",)))
    stranded = handler.decide(classification, _context())

    assert switched.action is DecisionAction.SWITCH_PROVIDER
    assert switched.next_provider_id == "codex"
    assert stranded.action is DecisionAction.SWITCH_PROVIDER
    assert stranded.next_provider_id is None
    assert stranded.backoff_seconds == 3600


def test_feedback_pauses_with_questions() -> None:
    classification = Classification(
        signal=Signal.NEEDS_USER_FEEDBACK,
        matched_rule="feedback_questions",
        questions=[Question(number=1, text="Which DB?")],
    )

    decision = ErrorHandler().decide(classification, _context())

    assert decision.action is DecisionAction.PAUSE_FOR_USER_INPUT
    assert [question.text for question in decision.questions] == ["Which DB?"]


@pytest.mark.parametrize("signal", [Signal.OK, Signal.WORK_COMPLETE])
def test_success_signals_have_no_decision(signal: Signal) -> None:
    with pytest.raises(ValueError, match="No recovery decision"):
        ErrorHandler().decide(_classification(signal), _context())
