import httpx
import pytest
from fastapi import HTTPException

from njchat_relay.services.model_service import ModelService
from tests.test_utils import make_client


def _handler(request: httpx.Request):
    if request.url.host == "ollama.test":
        return httpx.Response(200, json={"models": [{"name": "llama3"}, {"name": "qwen3"}]})
    if request.url.host == "other.test":
        return httpx.Response(200, json={"data": [{"id": "lm-model"}]})
    return httpx.Response(503, text="unavailable")


class TestModelService:

    @pytest.mark.asyncio
    async def test_default_provider(self, config_manager):
        async with make_client(_handler) as client:
            models = await ModelService(config_manager, client).list_models()

        assert models == [{"id": "llama3"}, {"id": "qwen3"}]

    @pytest.mark.asyncio
    async def test_upstream_failure_is_502(self, config_manager):
        async with make_client(_handler) as client:
            with pytest.raises(HTTPException) as exc_info:
                await ModelService(config_manager, client).list_models("openai")

        assert exc_info.value.status_code == 502
        assert exc_info.value.detail["error"]["code"] == "model_discovery_error"
        assert "unavailable" in exc_info.value.detail["error"]["message"]

    @pytest.mark.asyncio
    async def test_unreachable_backend_is_502(self, config_manager):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(refuse) as client:
            with pytest.raises(HTTPException) as exc_info:
                await ModelService(config_manager, client).list_models("ollama")

        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_unknown_provider_is_404(self, config_manager):
        async with make_client(_handler) as client:
            with pytest.raises(HTTPException) as exc_info:
                await ModelService(config_manager, client).list_models("nope")

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_overrides_reach_another_backend(self, config_manager):
        async with make_client(_handler) as client:
            models = await ModelService(config_manager, client).list_models(
                "openai", overrides={"base_url": "http://other.test", "api_key": None}
            )

        assert models == [{"id": "lm-model"}]

    @pytest.mark.asyncio
    async def test_saved_user_connection(self, config_manager):
        saved = {"provider": "openai", "baseUrl": "http://other.test"}

        async with make_client(_handler) as client:
            service = ModelService(config_manager, client)
            assert await service.list_models(user_settings=saved) == [{"id": "lm-model"}]
            # explicitly asking for another provider ignores the saved connection
            assert await service.list_models("ollama", user_settings=saved) == [{"id": "llama3"}, {"id": "qwen3"}]

    @pytest.mark.asyncio
    async def test_overrides_beat_saved_connection(self, config_manager):
        saved = {"provider": "openai", "baseUrl": "http://down.test"}

        async with make_client(_handler) as client:
            models = await ModelService(config_manager, client).list_models(
                "openai", overrides={"base_url": "http://other.test"}, user_settings=saved
            )

        assert models == [{"id": "lm-model"}]
