"""Backend adapters normalizing native streams into canonical block events."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..client import TokenCounterRegistry
from .base import Provider, ProviderRequest, get_max_tokens_for_model
from .mock import MockProvider

if TYPE_CHECKING:
    from ...services.settings import Settings

__all__ = ["MockProvider", "Provider", "ProviderRequest", "create_provider", "get_max_tokens_for_model"]


def create_provider(settings: "Settings") -> Provider:
    """Instantiate the adapter named by ``settings.provider``."""

    if settings.provider == "mock":
        return MockProvider(supports_parallel_tool_use=settings.parallel_tool_calls)
    if settings.provider == "openai":
        from .openai import OpenAIProvider

        TokenCounterRegistry.global_instance().ensure_counter(settings.model)
        return OpenAIProvider(settings.client_settings())
    from .anthropic import AnthropicProvider

    return AnthropicProvider(settings.client_settings())
