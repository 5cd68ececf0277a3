from __future__ import annotations

import sys
from pathlib import Path

import allure
import pytest
from conftest import ECHO_AGENT_COMMAND_TEMPLATE

from devpilot.harness.errors import TransportError
from devpilot.harness.providers.base import ProviderRequest
from devpilot.harness.providers.cli_provider import (
    TIMEOUT_EXIT_STATUS,
    CliProvider,
    build_run_args,
)

pytestmark = [
    allure.epic("Providers"),
    allure.feature("CLI Provider"),
]


def _request(
    tmp_path: Path,
    prompt: str = "# Step 00_PRD (execute)\n",
    **kwargs,
) -> ProviderRequest:
    return ProviderRequest(
        provider_id="echo",
        prompt=prompt,
        workdir=tmp_path / "job",
        timeout_seconds=kwargs.pop("timeout_seconds", 30.0),
        **kwargs,
    )


def test_build_run_args_quotes_values_on_posix(tmp_path: Path) -> None:
    args, head = build_run_args(
        command_template="agent --model {model} -- {prompt}",
        model="sonnet",
        prompt="fix 'quotes' and spaces",
        prompt_file=tmp_path / "prompt.txt",
        os_name="posix",
    )

    assert args == ["agent", "--model", "sonnet", "--", "fix 'quotes' and spaces"]
    assert head == "agent"


def test_build_run_args_renders_command_line_on_windows(tmp_path: Path) -> None:
    args, head = build_run_args(
        command_template="agent.exe --prompt-file {prompt_file}",
        model="",
        prompt="ignored",
        prompt_file=Path("C:/work dir/prompt.txt"),
        os_name="nt",
    )

    assert isinstance(args, str)
    assert args.startswith("agent.exe --prompt-file ")
    assert '"C:' in args
    assert head == "agent.exe"


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("agent --model {model}", "must include"),
        ("agent {prompt} {unknown}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(
    tmp_path: Path,
    template: str,
    message: str,
) -> None:
    with pytest.raises(TransportError, match=message) as error:
        build_run_args(
            command_template=template,
            model="m",
            prompt="p",
            prompt_file=tmp_path / "prompt.txt",
            os_name="posix",
        )

    assert error.value.transient is False


def test_echo_agent_round_trip_writes_artifacts(tmp_path: Path) -> None:
    provider = CliProvider(command_template=ECHO_AGENT_COMMAND_TEMPLATE)

    response = provider.invoke(_request(tmp_path))

    assert response.success is True
    assert response.exit_status == 0
    assert "Prompt received." in response.output
    assert "Step: # Step 00_PRD (execute)" in response.output
    prompt_file = tmp_path / "job" / "input" / "prompt.txt"
    assert prompt_file.read_text("utf-8") == "# Step 00_PRD (execute)\n"
    assert prompt_file.resolve() in [path.resolve() for path in response.artifacts]


def test_non_zero_exit_is_reported_not_raised(tmp_path: Path) -> None:
    provider = CliProvider(
        command_template=f"{ECHO_AGENT_COMMAND_TEMPLATE} --reply 'error: boom' --exit-code 3",
    )

    response = provider.invoke(_request(tmp_path))

    assert response.success is False
    assert response.exit_status == 3
    assert response.output.strip() == "error: boom"


def test_stderr_is_appended_to_output(tmp_path: Path) -> None:
    script = "import sys; print('out'); print('warn', file=sys.stderr)"
    provider = CliProvider(command_template=f"{sys.executable} -c \"{script}\" {{prompt_file}}")

    response = provider.invoke(_request(tmp_path))

    assert response.output.splitlines() == ["out", "warn"]


def test_timeout_terminates_process(tmp_path: Path) -> None:
    provider = CliProvider(
        command_template=f'{sys.executable} -c "import time; time.sleep(5)" {{prompt_file}}',
    )

    response = provider.invoke(_request(tmp_path, timeout_seconds=0.3))

    assert response.timed_out is True
    assert response.success is False
    assert response.exit_status == TIMEOUT_EXIT_STATUS


def test_cancel_request_stops_process(tmp_path: Path) -> None:
    provider = CliProvider(
        command_template=f'{sys.executable} -c "import time; time.sleep(5)" {{prompt_file}}',
    )

    response = provider.invoke(_request(tmp_path, cancel_requested=lambda: True))

    assert response.success is False
    assert response.exit_status == TIMEOUT_EXIT_STATUS


def test_missing_command_is_permanent_transport_error(tmp_path: Path) -> None:
    provider = CliProvider(command_template="devpilot-no-such-agent-binary {prompt}")

    with pytest.raises(TransportError, match="command not found") as error:
        provider.invoke(_request(tmp_path))

    assert error.value.transient is False


def test_provider_environment_is_exported(tmp_path: Path) -> None:
    script = "import os; print(os.environ['DEVPILOT_PROVIDER_ID'], os.environ['DEVPILOT_MODEL'])"
    provider = CliProvider(
        command_template=f"{sys.executable} -c \"{script}\" {{prompt_file}}",
        model="sonnet",
    )

    response = provider.invoke(_request(tmp_path))

    assert response.output.strip() == "echo sonnet"
