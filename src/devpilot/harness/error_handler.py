"""Pure recovery policy mapping classified failures to runner actions."""

from __future__ import annotations

from devpilot.harness.models import (
    Classification,
    Decision,
    DecisionAction,
    ErrorContext,
    Signal,
)

DEFAULT_RETRY_BASE_SECONDS = 2.0
DEFAULT_RETRY_MAX_SECONDS = 60.0
DEFAULT_RATE_LIMIT_CEILING_SECONDS = 300.0


class ErrorHandler:
    """Decide retry, switch, pause, or abort; never performs the action."""

    def __init__(
        self,
        *,
        retry_base_seconds: float = DEFAULT_RETRY_BASE_SECONDS,
        retry_max_seconds: float = DEFAULT_RETRY_MAX_SECONDS,
        rate_limit_ceiling_seconds: float = DEFAULT_RATE_LIMIT_CEILING_SECONDS,
        default_rate_limit_backoff_seconds: float = 60.0,
    ) -> None:
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.rate_limit_ceiling_seconds = rate_limit_ceiling_seconds
        self.default_rate_limit_backoff_seconds = default_rate_limit_backoff_seconds

    def decide(self, classification: Classification, context: ErrorContext) -> Decision:
        signal = classification.signal
        if signal.is_success:
            raise ValueError(f"No recovery decision for successful signal {signal.value!r}")

        if signal is Signal.NEEDS_USER_FEEDBACK:
            return Decision(
                action=DecisionAction.PAUSE_FOR_USER_INPUT,
                reason=f"Provider {context.provider_id} asked for user input",
                questions=list(classification.questions),
            )

        if signal is Signal.RATE_LIMITED:
            return self._decide_rate_limited(classification, context)

        if not classification.transient:
            return self._give_up(
                context,
                f"Permanent failure on {context.provider_id}: {classification.message}",
            )

        if context.attempt < context.max_retries:
            return Decision(
                action=DecisionAction.RETRY_SAME_PROVIDER,
                reason=(
                    f"Attempt {context.attempt}/{context.max_retries} failed on "
                    f"{context.provider_id}"
                ),
                next_provider_id=context.provider_id,
                backoff_seconds=self.compute_retry_delay(attempt=context.attempt),
            )

        return self._give_up(
            context,
            f"Retries exhausted on {context.provider_id} after {context.attempt} attempt(s)",
        )

    def compute_retry_delay(self, *, attempt: int) -> float:
        return min(self.retry_max_seconds, self.retry_base_seconds * (2 ** max(attempt, 0)))

    def _give_up(self, context: ErrorContext, reason: str) -> Decision:
        if context.fallback_chain:
            next_provider = context.fallback_chain[0]
            return Decision(
                action=DecisionAction.SWITCH_PROVIDER,
                reason=f"{reason}; switching to {next_provider}",
                next_provider_id=next_provider,
            )
        return Decision(
            action=DecisionAction.ABORT_STEP,
            reason=f"{reason} and no fallback provider is available",
        )

    def _decide_rate_limited(
        self,
        classification: Classification,
        context: ErrorContext,
    ) -> Decision:
        backoff = classification.retry_after_seconds
        if backoff is None:
            backoff = self.default_rate_limit_backoff_seconds
        if backoff <= self.rate_limit_ceiling_seconds:
            return Decision(
                action=DecisionAction.WAIT_AND_RETRY_SAME_PROVIDER,
                reason=f"Provider {context.provider_id} rate limited for {backoff:g}s",
                next_provider_id=context.provider_id,
                backoff_seconds=backoff,
            )
        next_provider = context.fallback_chain[0] if context.fallback_chain else None
        return Decision(
            action=DecisionAction.SWITCH_PROVIDER,
            reason=(
                f"Rate limit backoff {backoff:g}s on {context.provider_id} exceeds ceiling "
                f"{self.rate_limit_ceiling_seconds:g}s"
            ),
            next_provider_id=next_provider,
            backoff_seconds=backoff,
        )
