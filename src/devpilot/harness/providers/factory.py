"""Build concrete providers from configuration by kind."""

from __future__ import annotations

from collections.abc import Iterable

import httpx

from devpilot.config import ProviderSettings
from devpilot.harness.models import ProviderKind, ProviderRecord
from devpilot.harness.providers.base import Provider
from devpilot.harness.providers.cli_provider import CliProvider
from devpilot.harness.providers.http_provider import HttpApiProvider


def build_provider(
    settings: ProviderSettings,
    *,
    http_transport: httpx.BaseTransport | None = None,
) -> Provider:
    if settings.kind is ProviderKind.API:
        if not settings.endpoint:
            raise ValueError(f"Provider {settings.id!r} of kind api requires an endpoint.")
        return HttpApiProvider(
            endpoint=settings.endpoint,
            model=settings.model,
            api_key_env=settings.api_key_env,
            transport=http_transport,
        )
    if not settings.command_template:
        raise ValueError(f"Provider {settings.id!r} requires a command template.")
    return CliProvider(command_template=settings.command_template, model=settings.model)


def build_providers(providers: Iterable[ProviderSettings]) -> dict[str, Provider]:
    return {settings.id: build_provider(settings) for settings in providers}


def provider_records(providers: Iterable[ProviderSettings]) -> list[ProviderRecord]:
    """Fresh health records for the provider manager."""

    return [
        ProviderRecord(
            id=settings.id,
            priority=settings.priority,
            kind=settings.kind,
            max_retries=settings.max_retries,
            model_ids=settings.models,
        )
        for settings in providers
    ]
