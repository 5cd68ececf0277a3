from __future__ import annotations

from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from conftest import ECHO_AGENT_COMMAND_TEMPLATE

from devpilot.main import devpilot
from devpilot.storage.common import SQLITE_MAGIC

pytestmark = [
    allure.epic("Command Line"),
    allure.feature("Harness CLI"),
]


@pytest.fixture(autouse=True)
def echo_provider(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DEVPILOT_DB_PATH", raising=False)
    monkeypatch.setenv("DEVPILOT_PROVIDERS", "echo")
    monkeypatch.setenv("DEVPILOT_PROVIDER_ECHO_COMMAND", ECHO_AGENT_COMMAND_TEMPLATE)
    monkeypatch.setenv("DEVPILOT_LIVENESS_INTERVAL_SECONDS", "0.05")
    monkeypatch.setenv("DEVPILOT_STEP_TIMEOUT_SECONDS", "60")


def _invoke(project_dir: Path, *args: str):
    return CliRunner().invoke(devpilot, ["--project-dir", str(project_dir), *args])


def test_analyze_runs_to_completion_and_is_inspectable(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "run", "analyze")

    assert result.exit_code == 0, result.output
    assert "Mode: analyze state=completed" in result.output
    assert "Completed steps (7)" in result.output
    assert (tmp_path / ".devpilot" / "harness.db").exists()
    assert not (tmp_path / ".devpilot" / "analyze.lock").exists()

    status = _invoke(tmp_path, "status", "analyze")
    assert status.exit_code == 0, status.output
    assert "Progress: 7/7 steps" in status.output
    assert "Recent log:" in status.output

    jobs = _invoke(tmp_path, "jobs", "list", "--mode", "analyze")
    assert jobs.exit_code == 0, jobs.output
    job_lines = jobs.output.strip().splitlines()
    assert len(job_lines) == 7
    assert all("status=succeeded" in line for line in job_lines)

    job_id = job_lines[0].split()[0]
    logs = _invoke(tmp_path, "jobs", "logs", job_id)
    assert logs.exit_code == 0, logs.output
    assert "Prompt received." in logs.output
    stop = _invoke(tmp_path, "jobs", "stop", job_id)
    assert "already finished with status=succeeded" in stop.output
    job_status = _invoke(tmp_path, "jobs", "status", job_id)
    assert "Finished:" in job_status.output

    show = _invoke(tmp_path, "checkpoint", "show", "analyze")
    assert '"completed_steps": [' in show.output
    history = _invoke(tmp_path, "checkpoint", "history", "analyze", "--limit", "3")
    assert len(history.output.strip().splitlines()) == 3
    assert "state=completed" in history.output.splitlines()[0]

    again = _invoke(tmp_path, "run", "analyze")
    assert again.exit_code == 0
    assert "reset the mode to start over" in again.output

    reset = _invoke(tmp_path, "reset", "analyze")
    assert "Reset analyze state; removed 7 finished job(s)." in reset.output
    assert "No analyze checkpoint" in _invoke(tmp_path, "status", "analyze").output
    assert "No jobs." in _invoke(tmp_path, "jobs", "list").output


def test_targeted_step_respects_dependencies(tmp_path: Path) -> None:
    unmet = _invoke(tmp_path, "run", "execute", "--step", "01_NFRS")
    assert unmet.exit_code == 1
    assert "missing dependencies" in unmet.output

    unknown = _invoke(tmp_path, "run", "execute", "--step", "99_NOPE")
    assert unknown.exit_code == 1
    assert "Unknown step" in unknown.output

    forced = _invoke(tmp_path, "run", "execute", "--step", "01_NFRS", "--force")
    assert forced.exit_code == 0, forced.output
    assert "state=idle" in forced.output
    assert "Completed steps (1): 01_NFRS" in forced.output


def test_failing_provider_exits_non_zero(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv(
        "DEVPILOT_PROVIDER_ECHO_COMMAND",
        f'{ECHO_AGENT_COMMAND_TEMPLATE} --reply "error: boom" --exit-code 3',
    )
    monkeypatch.setenv("DEVPILOT_PROVIDER_ECHO_MAX_RETRIES", "1")

    result = _invoke(tmp_path, "run", "analyze")

    assert result.exit_code == 1
    assert "state=failed" in result.output
    assert "aborted" in result.output
    assert "Last error: generic_error on step=01_REPOSITORY_ANALYSIS" in result.output


def test_invalid_answer_format_is_rejected(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "run", "analyze", "--answer", "no-separator")

    assert result.exit_code == 1
    assert "expected KEY=VALUE" in result.output


def test_providers_lists_health_and_reachability(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "providers")

    assert result.exit_code == 0, result.output
    assert "echo: kind=cli-passthrough priority=10" in result.output
    assert "health=available" in result.output
    assert "installed=yes" in result.output


def test_unknown_job_is_reported(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "jobs", "status", "does-not-exist")

    assert result.exit_code == 1
    assert "Job not found" in result.output


def test_reset_recovers_from_damaged_state_database(tmp_path: Path) -> None:
    state_dir = tmp_path / ".devpilot"
    state_dir.mkdir()
    (state_dir / "harness.db").write_bytes(SQLITE_MAGIC + b"\x00" * 84 + b"garbage" * 500)

    reset = _invoke(tmp_path, "reset", "analyze")

    assert reset.exit_code == 0, reset.output
    assert "moved aside" in reset.output
    assert "No analyze state to reset." in reset.output
    assert list(state_dir.glob("harness.db.corrupt-*"))
    assert _invoke(tmp_path, "run", "analyze").exit_code == 0
