from typing import Dict, Any, Optional
import httpx

from ..core.error_handling import ErrorHandler, ErrorContext
from .base import BaseProvider
from .openai import OpenAICompatibleProvider
from .ollama import OllamaProvider

PROVIDER_TYPES = {
    "openai": OpenAICompatibleProvider,
    "ollama": OllamaProvider,
}


def get_provider_instance(provider_type: str, provider_config: Dict[str, Any], client: httpx.AsyncClient) -> BaseProvider:
    provider_class = PROVIDER_TYPES.get((provider_type or "").lower())
    if provider_class is None:
        raise ValueError(f"Unsupported provider type: {provider_type!r}")
    return provider_class(provider_config, client)


def resolve_provider(config_manager, client: httpx.AsyncClient, provider_name: Optional[str] = None,
                     context: Optional[ErrorContext] = None,
                     overrides: Optional[Dict[str, Any]] = None) -> BaseProvider:
    """
    Build the adapter for a configured provider.

    Raises:
        HTTPException: 404 when the provider is unknown, 500 when its config is unusable
    """
    context = context or ErrorContext()
    name = provider_name or config_manager.default_provider
    provider_config = config_manager.get_provider_config(name)
    if provider_config is None:
        raise ErrorHandler.handle_provider_not_found(name, context)

    if overrides:
        provider_config.update({k: v for k, v in overrides.items() if v})

    # type defaults to the provider name, so "ollama:" with only base_url works
    provider_type = provider_config.get("type") or provider_config["name"]
    try:
        return get_provider_instance(provider_type, provider_config, client)
    except ValueError as e:
        context.provider_name = provider_config["name"]
        raise ErrorHandler.handle_provider_config_error(str(e), context, original_exception=e)


__all__ = [
    "BaseProvider",
    "OpenAICompatibleProvider",
    "OllamaProvider",
    "PROVIDER_TYPES",
    "get_provider_instance",
    "resolve_provider",
]
