import httpx
from typing import Dict, Any, List, Optional

from ..core.config_manager import ConfigManager
from ..core.error_handling import ErrorHandler, ErrorContext
from ..core.exceptions import NetworkError, UpstreamHTTPError, UpstreamParseError
from ..core.logging import logger
from ..providers import resolve_provider


class ModelService:
    def __init__(self, config_manager: ConfigManager, httpx_client: httpx.AsyncClient):
        self.config_manager = config_manager
        self.httpx_client = httpx_client

    async def list_models(self, provider_name: Optional[str] = None,
                          overrides: Optional[Dict[str, Any]] = None,
                          request_id: Optional[str] = None,
                          user_settings: Optional[Dict[str, Any]] = None) -> List[Dict[str, str]]:
        """
        Models the provider currently serves, as [{"id": ...}].

        user_settings are the caller's saved provider and connection; overrides
        (base_url / api_key) win over both and let a client probe a backend
        before saving it.
        """
        context = ErrorContext(request_id=request_id)
        name, connection = self.config_manager.provider_choice(user_settings, provider_name)
        connection.update({k: v for k, v in (overrides or {}).items() if v})
        provider = resolve_provider(
            self.config_manager, self.httpx_client, name,
            context=context, overrides=connection
        )
        try:
            models = await provider.list_models()
        except (UpstreamHTTPError, NetworkError, UpstreamParseError) as e:
            raise ErrorHandler.handle_model_discovery_error(provider.name, e, context)

        logger.debug(f"Discovered {len(models)} models", provider_name=provider.name, request_id=request_id)
        return models
