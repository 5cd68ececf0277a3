"""Harness error taxonomy."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from pathlib import Path


class HarnessError(RuntimeError):
    """Base class for harness failures."""


class TransportError(HarnessError):
    """Provider process or API unreachable, failed to start, or timed out."""

    def __init__(self, message: str, *, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class RateLimited(HarnessError):
    """Provider explicitly signaled throttling."""

    def __init__(self, message: str, *, retry_after_seconds: float | None = None) -> None:
        if retry_after_seconds is not None:
            message = f"{message} (rate limit: retry after {retry_after_seconds:g} seconds)"
        else:
            message = f"{message} (rate limit)"
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class ProviderOutputError(HarnessError):
    """Non-zero exit or error response without further detail."""

    def __init__(self, message: str, *, exit_status: int = 1) -> None:
        super().__init__(message)
        self.exit_status = exit_status


class NoProviderAvailable(HarnessError):
    """Every configured provider is circuit-open or rate-limited."""

    def __init__(self, resume_at: datetime | None) -> None:
        when = resume_at.isoformat() if resume_at is not None else "unknown"
        super().__init__(f"No provider available; earliest reset at {when}")
        self.resume_at = resume_at


class CorruptCheckpoint(HarnessError):
    """Persisted harness state cannot be decoded."""


class DependencyUnmet(HarnessError):
    """Step requested before its dependencies completed, without force."""

    def __init__(self, step_id: str, missing: Iterable[str]) -> None:
        self.step_id = step_id
        self.missing = tuple(sorted(missing))
        super().__init__(
            f"Cannot run step {step_id!r}: missing dependencies {', '.join(self.missing)}. "
            "Use --force to override.",
        )


class HarnessLocked(HarnessError):
    """Another live harness process holds the project lock."""

    def __init__(self, pid: int, lock_path: Path) -> None:
        super().__init__(f"Harness already running (pid={pid}, lock={lock_path})")
        self.pid = pid
        self.lock_path = lock_path
