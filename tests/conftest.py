"""Shared test fixtures."""

from __future__ import annotations

import sys
import threading
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from devpilot.harness.condition_detector import ConditionDetector
from devpilot.harness.error_handler import ErrorHandler
from devpilot.harness.job_manager import JobManager
from devpilot.harness.models import Mode, ProviderKind, ProviderRecord, Step
from devpilot.harness.provider_manager import ProviderManager
from devpilot.harness.providers.base import ProviderRequest, ProviderResponse
from devpilot.harness.runner import HarnessRunner
from devpilot.harness.state_manager import StateManager

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m devpilot.harness.providers.echo_agent --prompt-file {{prompt_file}}"
)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class ScriptedProvider:
    """Returns scripted outputs (or raises scripted exceptions) in order."""

    def __init__(self, *replies: str | BaseException | ProviderResponse) -> None:
        self.replies = list(replies)
        self.prompts: list[str] = []

    def invoke(self, request: ProviderRequest) -> ProviderResponse:
        self.prompts.append(request.prompt)
        if not self.replies:
            return ProviderResponse(success=True, output="ok", exit_status=0)
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, ProviderResponse):
            return reply
        return ProviderResponse(success=True, output=reply, exit_status=0)

    @property
    def calls(self) -> int:
        return len(self.prompts)


class BlockingProvider:
    """Blocks until released or cancelled."""

    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()
        self.cancelled = threading.Event()

    def invoke(self, request: ProviderRequest) -> ProviderResponse:
        self.started.set()
        while not self.release.is_set():
            if request.cancel_requested is not None and request.cancel_requested():
                self.cancelled.set()
                return ProviderResponse(success=False, output="", exit_status=130)
            time.sleep(0.01)
        return ProviderResponse(success=True, output="late result", exit_status=0)


def provider_record(
    provider_id: str,
    *,
    priority: int = 10,
    max_retries: int = 3,
) -> ProviderRecord:
    return ProviderRecord(
        id=provider_id,
        priority=priority,
        kind=ProviderKind.CLI_PASSTHROUGH,
        max_retries=max_retries,
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def state_manager(tmp_path: Path):
    manager = StateManager(tmp_path / "state" / "harness.db")
    manager.init_schema()
    yield manager
    manager.close()


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def make_runner(
    tmp_path: Path,
    state_manager: StateManager,
    clock: FakeClock,
    sleeps: list[float],
):
    """Build a runner over in-process providers; sleeps advance the fake clock."""

    def _sleeper(seconds: float) -> None:
        sleeps.append(seconds)
        clock.advance(seconds)

    def _factory(  # noqa: PLR0913
        providers: dict[str, object],
        steps: Sequence[Step],
        *,
        records: Sequence[ProviderRecord] | None = None,
        mode: Mode = Mode.ANALYZE,
        step_timeout_seconds: float = 5.0,
        sleeper: Callable[[float], None] | None = None,
    ) -> HarnessRunner:
        provider_records = list(
            records
            or [
                provider_record(provider_id, priority=(index + 1) * 10)
                for index, provider_id in enumerate(providers)
            ],
        )
        detector = ConditionDetector()
        return HarnessRunner(
            mode=mode,
            project_dir=tmp_path / "project",
            steps=steps,
            provider_manager=ProviderManager(provider_records, clock=clock),
            job_manager=JobManager(
                providers=providers,  # type: ignore[arg-type]
                workdir_root=tmp_path / "jobs",
                detector=detector,
                liveness_interval_seconds=0.01,
                graceful_shutdown_seconds=0.0,
            ),
            state_manager=state_manager,
            error_handler=ErrorHandler(),
            detector=detector,
            step_timeout_seconds=step_timeout_seconds,
            sleeper=sleeper or _sleeper,
            clock=clock,
        )

    return _factory
