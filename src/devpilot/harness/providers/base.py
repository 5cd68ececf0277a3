"""Provider interface used by the job manager."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class ProviderRequest:
    """Inputs required to execute one provider invocation."""

    provider_id: str
    prompt: str
    workdir: Path
    timeout_seconds: float
    cwd: Path | None = None
    cancel_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: float = 0.0


@dataclass(slots=True)
class ProviderResponse:
    """Raw provider outcome before classification."""

    success: bool
    output: str
    exit_status: int
    timed_out: bool = False
    artifacts: list[Path] = field(default_factory=list)


class Provider(Protocol):
    """Protocol implemented by every provider variant."""

    def invoke(self, request: ProviderRequest) -> ProviderResponse:
        """Run one prompt and return its raw outcome or raise TransportError."""
