"""Subprocess-based provider for CLI agents (claude, codex, gemini, ...)."""

from __future__ import annotations

import contextlib
import os
import shlex
import subprocess
import time
from collections.abc import Callable
from pathlib import Path

from devpilot.harness.errors import TransportError
from devpilot.harness.providers.base import ProviderRequest, ProviderResponse

TIMEOUT_EXIT_STATUS = 124
_POLL_INTERVAL_SECONDS = 0.1


class CliProvider:
    """Render a command template per request and run it as a subprocess."""

    def __init__(
        self,
        *,
        command_template: str,
        model: str = "",
        env: dict[str, str] | None = None,
    ) -> None:
        self.command_template = command_template
        self.model = model
        self.env = env or {}

    def invoke(self, request: ProviderRequest) -> ProviderResponse:
        input_dir = request.workdir / "input"
        output_dir = request.workdir / "output"
        input_dir.mkdir(parents=True, exist_ok=True)
        output_dir.mkdir(parents=True, exist_ok=True)
        prompt_file = input_dir / "prompt.txt"
        prompt_file.write_text(request.prompt, "utf-8")
        stdout_path = output_dir / "stdout.txt"
        stderr_path = output_dir / "stderr.txt"

        run_args, command_head = build_run_args(
            command_template=self.command_template,
            model=self.model,
            prompt=request.prompt,
            prompt_file=prompt_file.resolve(),
        )

        env = os.environ.copy()
        env.update(self.env)
        env["DEVPILOT_PROVIDER_ID"] = request.provider_id
        env["DEVPILOT_MODEL"] = self.model

        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                process = subprocess.Popen(  # noqa: S603
                    run_args,
                    env=env,
                    cwd=request.cwd or request.workdir,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    text=True,
                )
                exit_status, timed_out = _supervise(
                    process,
                    timeout_seconds=request.timeout_seconds,
                    cancel_requested=request.cancel_requested,
                    grace_seconds=request.graceful_shutdown_seconds,
                )
        except FileNotFoundError as error:
            raise TransportError(
                f"CLI provider command not found: {command_head}",
                transient=False,
            ) from error
        except OSError as error:
            raise TransportError(
                f"CLI provider failed to start: {error}",
                transient=True,
            ) from error

        output = _read_text(stdout_path)
        stderr = _read_text(stderr_path)
        if stderr.strip():
            output = f"{output.rstrip()}\n{stderr}" if output.strip() else stderr
        return ProviderResponse(
            success=exit_status == 0 and not timed_out,
            output=output,
            exit_status=exit_status,
            timed_out=timed_out,
            artifacts=[prompt_file, stdout_path, stderr_path],
        )


def build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
    os_name: str | None = None,
) -> tuple[str | list[str], str]:
    """Render the template into argv (POSIX) or a command line (Windows)."""

    stripped = command_template.strip()
    if not stripped:
        raise TransportError("CLI provider command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise TransportError(
            "CLI provider command template must include {prompt} or {prompt_file}.",
            transient=False,
        )

    values = {"model": model, "prompt": prompt, "prompt_file": str(prompt_file)}
    try:
        if (os_name or os.name) == "nt":
            rendered = stripped.format(
                **{key: subprocess.list2cmdline([value]) for key, value in values.items()},
            ).strip()
            if not rendered:
                raise TransportError(
                    "CLI provider command template rendered empty command.",
                    transient=False,
                )
            return rendered, rendered.split(maxsplit=1)[0]
        rendered = stripped.format(**{key: shlex.quote(value) for key, value in values.items()})
    except (KeyError, IndexError) as error:
        raise TransportError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise TransportError(
            "CLI provider command template rendered empty command.",
            transient=False,
        )
    return argv, argv[0]


def _supervise(
    process: subprocess.Popen[str],
    *,
    timeout_seconds: float,
    cancel_requested: Callable[[], bool] | None,
    grace_seconds: float,
) -> tuple[int, bool]:
    """Wait for the agent; on timeout or cancel stop it and report a timeout status."""

    deadline = time.monotonic() + timeout_seconds
    while True:
        with contextlib.suppress(subprocess.TimeoutExpired):
            return process.wait(timeout=_POLL_INTERVAL_SECONDS), False
        cancelled = cancel_requested is not None and cancel_requested()
        if cancelled or time.monotonic() >= deadline:
            _stop_process(process, grace_seconds)
            return TIMEOUT_EXIT_STATUS, True


def _stop_process(process: subprocess.Popen[str], grace_seconds: float) -> None:
    """SIGTERM first; SIGKILL once the grace period is over."""

    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=max(grace_seconds, _POLL_INTERVAL_SECONDS))
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def _read_text(path: Path) -> str:
    if not path.exists():
        return ""
    return path.read_text("utf-8", errors="replace")
