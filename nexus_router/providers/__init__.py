"""Provider adapters and the adapter factory used by the connection pool."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional, Type

import httpx

from nexus_router.core.provider_config import ProviderConfig

from .base import DEFAULT_CONNECT_TIMEOUT_SECONDS, DEFAULT_TIMEOUT_SECONDS, ProviderAdapter
from .gemini import GeminiAdapter
from .openai_compatible import GroqAdapter, OpenAICompatibleAdapter

logger = logging.getLogger(__name__)

# (provider config, model name, credential) -> adapter
AdapterFactory = Callable[[ProviderConfig, str, str], ProviderAdapter]

# Registry for adapter classes keyed by ProviderConfig.adapter_kind
_ADAPTER_TYPES: Dict[str, Type[ProviderAdapter]] = {
    "openai": OpenAICompatibleAdapter,
    "openai_compatible": OpenAICompatibleAdapter,
    "groq": GroqAdapter,
    "gemini": GeminiAdapter,
}


def register_adapter_type(kind: str, adapter_class: Type[ProviderAdapter]) -> None:
    """Register an adapter class for a provider kind."""
    _ADAPTER_TYPES[kind.lower()] = adapter_class
    logger.debug(f"Registered adapter type {kind} -> {adapter_class.__name__}")


def adapter_class_for(config: ProviderConfig) -> Type[ProviderAdapter]:
    adapter_class = _ADAPTER_TYPES.get(config.adapter_kind)
    if adapter_class is not None:
        return adapter_class
    # Unknown kinds with an explicit endpoint are assumed to speak /chat/completions
    if config.base_url:
        return OpenAICompatibleAdapter
    raise ValueError(
        f"No adapter for provider '{config.name}' (kind '{config.adapter_kind}') and no base_url configured"
    )


def build_adapter(
    config: ProviderConfig,
    model: str,
    credential: str,
    *,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ProviderAdapter:
    """Construct the adapter for one candidate."""
    if model not in config.models:
        raise ValueError(f"Model '{model}' is not configured for provider '{config.name}'")

    adapter_class = adapter_class_for(config)
    return adapter_class(
        model_name=model,
        api_key=credential,
        base_url=config.base_url,
        http_client=http_client,
        timeout=timeout,
        connect_timeout=connect_timeout,
        provider_name=config.name,
    )


def make_adapter_factory(
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
) -> AdapterFactory:
    """Adapter factory with fixed timeouts, for handing to the connection pool."""

    def factory(config: ProviderConfig, model: str, credential: str) -> ProviderAdapter:
        return build_adapter(config, model, credential, timeout=timeout, connect_timeout=connect_timeout)

    return factory


__all__ = [
    "AdapterFactory",
    "GeminiAdapter",
    "GroqAdapter",
    "OpenAICompatibleAdapter",
    "ProviderAdapter",
    "adapter_class_for",
    "build_adapter",
    "make_adapter_factory",
    "register_adapter_type",
]
