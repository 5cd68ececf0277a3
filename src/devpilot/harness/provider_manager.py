"""Provider selection, health tracking, and fallback chains."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import replace
from datetime import datetime, timedelta

from devpilot.harness.condition_detector import DEFAULT_RATE_LIMIT_BACKOFF_SECONDS
from devpilot.harness.errors import NoProviderAvailable
from devpilot.harness.models import Classification, ProviderRecord, Signal
from devpilot.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_CIRCUIT_COOLDOWN_SECONDS = 300.0


class ProviderManager:
    """Holds configured providers and their in-memory health."""

    def __init__(
        self,
        providers: Sequence[ProviderRecord],
        *,
        circuit_cooldown_seconds: float = DEFAULT_CIRCUIT_COOLDOWN_SECONDS,
        default_rate_limit_backoff_seconds: float = DEFAULT_RATE_LIMIT_BACKOFF_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not providers:
            raise ValueError("At least one provider must be configured.")
        seen: set[str] = set()
        for record in providers:
            if record.id in seen:
                raise ValueError(f"Duplicate provider id: {record.id!r}")
            seen.add(record.id)

        # sorted() is stable, so equal priorities keep configuration order.
        self._ordered = sorted(providers, key=lambda record: record.priority)
        self._records = {record.id: record for record in self._ordered}
        self.circuit_cooldown = timedelta(seconds=circuit_cooldown_seconds)
        self.default_rate_limit_backoff_seconds = default_rate_limit_backoff_seconds
        self._clock = clock
        self._current_id: str | None = None

    @property
    def current_provider(self) -> ProviderRecord | None:
        if self._current_id is None:
            return None
        return self._records[self._current_id]

    @property
    def provider_ids(self) -> list[str]:
        return [record.id for record in self._ordered]

    def get(self, provider_id: str) -> ProviderRecord:
        try:
            return self._records[provider_id]
        except KeyError as error:
            raise ValueError(f"Unknown provider: {provider_id!r}") from error

    def select_provider(self, preferred: str | None = None) -> str:
        """Pick ``preferred`` when usable, else the best available provider."""

        if preferred is not None and preferred in self._records and self.is_available(preferred):
            self._current_id = preferred
            return preferred
        for record in self._ordered:
            if self.is_available(record.id):
                if preferred is not None and record.id != preferred:
                    logger.info("Provider %s unavailable, selected %s", preferred, record.id)
                self._current_id = record.id
                return record.id
        raise NoProviderAvailable(self.next_reset_time())

    def fallback_chain(self, provider_id: str) -> list[str]:
        """Available alternates to ``provider_id`` ordered by priority."""

        return [
            record.id
            for record in self._ordered
            if record.id != provider_id and self.is_available(record.id)
        ]

    def record_success(self, provider_id: str) -> None:
        record = self.get(provider_id)
        record.consecutive_failures = 0
        record.circuit_open = False
        record.circuit_opened_at = None
        record.available = self._is_available(record)

    def record_failure(self, provider_id: str, classification: Classification) -> None:
        """Update health after a failed attempt.

        Rate limiting only parks the provider until the reset time; it never
        counts toward the circuit breaker.
        """

        record = self.get(provider_id)
        now = self._clock()
        if classification.signal is Signal.RATE_LIMITED:
            seconds = classification.retry_after_seconds
            if seconds is None:
                seconds = self.default_rate_limit_backoff_seconds
            record.rate_limited_until = now + timedelta(seconds=seconds)
            record.available = False
            logger.info("Provider %s rate limited until %s", provider_id, record.rate_limited_until)
            return

        record.consecutive_failures += 1
        if not record.circuit_open and record.consecutive_failures >= record.max_retries:
            record.circuit_open = True
            record.circuit_opened_at = now
            logger.warning(
                "Circuit opened for provider %s after %d consecutive failures",
                provider_id,
                record.consecutive_failures,
            )
        record.available = self._is_available(record)

    def is_available(self, provider_id: str) -> bool:
        record = self.get(provider_id)
        available = self._is_available(record)
        record.available = available
        return available

    def next_reset_time(self) -> datetime | None:
        """Soonest moment any unavailable provider becomes selectable again."""

        now = self._clock()
        candidates: list[datetime] = []
        for record in self._ordered:
            if record.rate_limited_until is not None and record.rate_limited_until > now:
                candidates.append(record.rate_limited_until)
            if record.circuit_open and record.circuit_opened_at is not None:
                candidates.append(record.circuit_opened_at + self.circuit_cooldown)
        if not candidates:
            return None
        return min(candidates)

    def status(self) -> list[ProviderRecord]:
        """Health snapshot in priority order."""

        for record in self._ordered:
            self.is_available(record.id)
        return [replace(record) for record in self._ordered]

    def _is_available(self, record: ProviderRecord) -> bool:
        now = self._clock()
        if record.circuit_open:
            opened_at = record.circuit_opened_at or now
            if now - opened_at < self.circuit_cooldown:
                return False
            logger.info("Circuit cooldown elapsed for provider %s", record.id)
            record.circuit_open = False
            record.circuit_opened_at = None
            record.consecutive_failures = 0
        if record.rate_limited_until is not None:
            if record.rate_limited_until > now:
                return False
            record.rate_limited_until = None
        return True
