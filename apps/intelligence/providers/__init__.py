"""
Triage provider registry.

Providers run an external coding agent over the prepared run files and
return its diagnosis.
"""

from django.conf import settings

from apps.intelligence.providers.base import (
    BaseTriageProvider,
    ProviderError,
    ProviderExitError,
    ProviderResult,
    ProviderRunRequest,
    ProviderTimeoutError,
)
from apps.intelligence.providers.codex import CodexTriageProvider
from apps.intelligence.providers.mock import MockTriageProvider
from apps.intelligence.providers.opencode import OpenCodeTriageProvider

# Registry of available providers
PROVIDERS: dict[str, type[BaseTriageProvider]] = {
    "mock": MockTriageProvider,
    "codex": CodexTriageProvider,
    "opencode": OpenCodeTriageProvider,
}


def get_provider(name: str = "mock", **kwargs) -> BaseTriageProvider:
    """
    Get a provider instance by name.

    Raises:
        KeyError: If provider name is not registered.
    """
    if name not in PROVIDERS:
        raise KeyError(f"Unknown provider: {name}. Available: {list(PROVIDERS.keys())}")
    return PROVIDERS[name](**kwargs)


def configured_provider_name() -> str:
    return (getattr(settings, "TRIAGE_PROVIDER", "opencode") or "opencode").lower()


def get_configured_provider(**kwargs) -> BaseTriageProvider:
    """Provider selected by ``TRIAGE_PROVIDER``."""
    return get_provider(configured_provider_name(), **kwargs)


def list_providers() -> list[str]:
    """List all registered provider names."""
    return list(PROVIDERS.keys())


__all__ = [
    "BaseTriageProvider",
    "CodexTriageProvider",
    "MockTriageProvider",
    "OpenCodeTriageProvider",
    "PROVIDERS",
    "ProviderError",
    "ProviderExitError",
    "ProviderResult",
    "ProviderRunRequest",
    "ProviderTimeoutError",
    "configured_provider_name",
    "get_configured_provider",
    "get_provider",
    "list_providers",
]
