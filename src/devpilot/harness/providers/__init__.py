"""Provider variants: CLI subprocess agents and HTTP APIs."""

from devpilot.harness.providers.base import Provider, ProviderRequest, ProviderResponse
from devpilot.harness.providers.cli_provider import CliProvider
from devpilot.harness.providers.http_provider import HttpApiProvider

__all__ = [
    "CliProvider",
    "HttpApiProvider",
    "Provider",
    "ProviderRequest",
    "ProviderResponse",
]
