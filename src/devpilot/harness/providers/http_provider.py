"""HTTP API provider backed by httpx."""

from __future__ import annotations

import logging
import os

import httpx

from devpilot.harness.errors import ProviderOutputError, RateLimited, TransportError
from devpilot.harness.providers.base import ProviderRequest, ProviderResponse

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "devpilot/0.1 (+https://github.com/devpilot/devpilot)"
_OUTPUT_KEYS = ("output", "text", "completion", "content")


class HttpApiProvider:
    """POST the prompt as JSON and read the completion text from the reply."""

    def __init__(
        self,
        *,
        endpoint: str,
        model: str = "",
        api_key_env: str | None = None,
        transport: httpx.BaseTransport | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self.endpoint = endpoint
        self.model = model
        self.api_key_env = api_key_env
        self._transport = transport
        self._user_agent = user_agent

    def invoke(self, request: ProviderRequest) -> ProviderResponse:
        headers = {"User-Agent": self._user_agent}
        if self.api_key_env:
            api_key = os.getenv(self.api_key_env, "")
            if not api_key:
                raise TransportError(
                    f"API key env var {self.api_key_env} is not set for {request.provider_id}",
                    transient=False,
                )
            headers["Authorization"] = f"Bearer {api_key}"

        timeout = httpx.Timeout(request.timeout_seconds, connect=10.0)
        try:
            with httpx.Client(
                timeout=timeout,
                headers=headers,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                response = client.post(
                    self.endpoint,
                    json={"model": self.model, "prompt": request.prompt},
                )
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling %s for %s", self.endpoint, request.provider_id)
            raise TransportError(f"HTTP provider timed out: {error}", transient=True) from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error calling %s: %s", self.endpoint, error)
            raise TransportError(
                f"HTTP provider request failed: {error}",
                transient=True,
            ) from error

        return _to_response(response)


def _to_response(response: httpx.Response) -> ProviderResponse:
    status = response.status_code
    if status == httpx.codes.TOO_MANY_REQUESTS:
        raise RateLimited(
            f"HTTP 429 too many requests: {response.text[:200]}",
            retry_after_seconds=_retry_after(response),
        )
    if status >= httpx.codes.INTERNAL_SERVER_ERROR:
        raise TransportError(f"HTTP {status}: {response.text[:200]}", transient=True)
    if not response.is_success:
        raise ProviderOutputError(f"HTTP {status}: {response.text[:500]}", exit_status=status)
    return ProviderResponse(success=True, output=_extract_output(response), exit_status=0)


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0.0, float(value.strip()))
    except ValueError:
        return None


def _extract_output(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    if isinstance(payload, dict):
        for key in _OUTPUT_KEYS:
            value = payload.get(key)
            if isinstance(value, str):
                return value
    return response.text
