from __future__ import annotations

import json
from pathlib import Path

import allure
import httpx
import pytest

from devpilot.config import ProviderSettings
from devpilot.harness.errors import ProviderOutputError, RateLimited, TransportError
from devpilot.harness.models import ProviderKind
from devpilot.harness.providers.base import ProviderRequest
from devpilot.harness.providers.factory import build_provider, provider_records
from devpilot.harness.providers.http_provider import HttpApiProvider

pytestmark = [
    allure.epic("Providers"),
    allure.feature("HTTP API Provider"),
]

ENDPOINT = "https://llm.example.test/v1/complete"


def _request(tmp_path: Path) -> ProviderRequest:
    return ProviderRequest(
        provider_id="api",
        prompt="Summarize the repository",
        workdir=tmp_path,
        timeout_seconds=5.0,
    )


def _provider(handler, **kwargs) -> HttpApiProvider:
    return HttpApiProvider(
        endpoint=ENDPOINT,
        model="large",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_success_posts_prompt_and_reads_output(tmp_path: Path) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"output": "Repository summary"})

    response = _provider(handler).invoke(_request(tmp_path))

    assert response.success is True
    assert response.output == "Repository summary"
    assert json.loads(seen[0].content) == {"model": "large", "prompt": "Summarize the repository"}
    assert seen[0].headers["User-Agent"].startswith("devpilot/")


def test_plain_text_body_is_returned_verbatim(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="plain answer")

    assert _provider(handler).invoke(_request(tmp_path)).output == "plain answer"


def test_429_raises_rate_limited_with_retry_after(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"Retry-After": "42"}, text="slow down")

    with pytest.raises(RateLimited) as error:
        _provider(handler).invoke(_request(tmp_path))

    assert error.value.retry_after_seconds == 42.0
    assert "retry after 42 seconds" in str(error.value)


def test_server_error_is_transient_transport_error(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    with pytest.raises(TransportError) as error:
        _provider(handler).invoke(_request(tmp_path))

    assert error.value.transient is True


def test_client_error_raises_provider_output_error(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, text="bad prompt")

    with pytest.raises(ProviderOutputError) as error:
        _provider(handler).invoke(_request(tmp_path))

    assert error.value.exit_status == 400


def test_connection_failure_is_transport_error(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransportError, match="request failed"):
        _provider(handler).invoke(_request(tmp_path))


def test_api_key_is_sent_as_bearer_token(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("DEVPILOT_TEST_API_KEY", "secret-token")
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"text": "ok"})

    _provider(handler, api_key_env="DEVPILOT_TEST_API_KEY").invoke(_request(tmp_path))

    assert seen[0].headers["Authorization"] == "Bearer secret-token"


def test_missing_api_key_is_permanent_error(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.delenv("DEVPILOT_TEST_API_KEY", raising=False)

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(TransportError, match="DEVPILOT_TEST_API_KEY") as error:
        _provider(handler, api_key_env="DEVPILOT_TEST_API_KEY").invoke(_request(tmp_path))

    assert error.value.transient is False


def test_factory_builds_provider_by_kind() -> None:
    api = ProviderSettings(id="api", kind=ProviderKind.API, endpoint=ENDPOINT, priority=5)
    cli = ProviderSettings(id="cli", command_template="agent {prompt}", models=("m1", "m2"))

    assert isinstance(build_provider(api), HttpApiProvider)
    assert build_provider(cli).model == "m1"  # type: ignore[attr-defined]
    with pytest.raises(ValueError, match="requires an endpoint"):
        build_provider(ProviderSettings(id="broken", kind=ProviderKind.API))
    with pytest.raises(ValueError, match="requires a command template"):
        build_provider(ProviderSettings(id="bare"))

    records = provider_records([api, cli])
    assert [(record.id, record.priority, record.model_ids) for record in records] == [
        ("api", 5, ()),
        ("cli", 100, ("m1", "m2")),
    ]
