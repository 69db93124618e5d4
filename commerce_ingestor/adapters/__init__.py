"""Adapter registry for supported providers."""

from ..exceptions import ProviderNotFoundError
from ..utils.config import GlobalSettings, get_settings
from .base import ProviderAdapter, WebhookEvent
from .google_analytics_adapter import GoogleAnalyticsAdapter
from .shopify_adapter import ShopifyAdapter
from .stripe_adapter import StripeAdapter

# Adapter registry - register new providers here
_ADAPTER_REGISTRY: dict[str, type[ProviderAdapter]] = {}


def register_adapter(name: str, adapter_class: type[ProviderAdapter]) -> None:
    """
    Register a new adapter class.

    Args:
        name: Provider identifier
        adapter_class: Adapter class to register
    """
    _ADAPTER_REGISTRY[name] = adapter_class


def get_adapter(name: str) -> type[ProviderAdapter]:
    """
    Get an adapter class by provider name.

    Raises:
        ProviderNotFoundError: If the provider is not registered
    """
    if name not in _ADAPTER_REGISTRY:
        available = sorted(_ADAPTER_REGISTRY.keys())
        available_display = ", ".join(available) if available else "none"
        raise ProviderNotFoundError(
            f"Provider '{name}' is not registered. Available providers: {available_display}."
        )
    return _ADAPTER_REGISTRY[name]


def build_adapter(name: str, settings: GlobalSettings | None = None) -> ProviderAdapter:
    """Instantiate the adapter for ``name`` with its configured settings block."""

    settings = settings or get_settings()
    adapter_class = get_adapter(name)
    return adapter_class(
        settings.provider_settings(name),
        replay_window_seconds=settings.replay_window_seconds,
    )


def list_adapters() -> list[str]:
    """Return list of registered provider names."""
    return list(_ADAPTER_REGISTRY.keys())


register_adapter("shopify", ShopifyAdapter)
register_adapter("stripe", StripeAdapter)
register_adapter("google_analytics", GoogleAnalyticsAdapter)

__all__ = [
    "ProviderAdapter",
    "WebhookEvent",
    "build_adapter",
    "get_adapter",
    "list_adapters",
    "register_adapter",
]
