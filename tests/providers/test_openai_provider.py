"""
Tests for the OpenAI-compatible adapter against a simulated backend.
"""

import json

import httpx
import pytest

from njchat_relay.core.exceptions import NetworkError, UpstreamHTTPError
from njchat_relay.core.models import ChatTurnRequest
from njchat_relay.providers import OpenAICompatibleProvider, get_provider_instance
from tests.test_utils import FakeClock, make_client, openai_delta, sse_body, stream_response

CONFIG = {"name": "lmstudio", "base_url": "http://openai.test/", "api_key": "sk-test"}


def _request(**kwargs):
    defaults = {"model": "qwen", "messages": [{"role": "user", "content": "hi"}]}
    defaults.update(kwargs)
    return ChatTurnRequest(**defaults)


async def _outputs(provider, request=None):
    return [o async for o in provider.stream_chat(request or _request())]


class TestOpenAIStreaming:

    @pytest.mark.asyncio
    async def test_fragments_and_upstream_usage(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return stream_response(sse_body(
                openai_delta("Hel"),
                openai_delta("lo"),
                {"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}},
            ))

        async with make_client(handler) as client:
            outputs = await _outputs(OpenAICompatibleProvider(CONFIG, client),
                                     _request(temperature=0.3, max_tokens=64))

        assert [o.text for o in outputs if o.is_fragment] == ["Hel", "lo"]
        usages = [o.usage for o in outputs if o.usage is not None]
        assert len(usages) == 1
        assert usages[0].to_dict() == {"promptTokens": 3, "completionTokens": 2, "totalTokens": 5}

        assert seen["url"] == "http://openai.test/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"] == {
            "model": "qwen",
            "messages": [{"role": "user", "content": "hi"}],
            "temperature": 0.3,
            "max_tokens": 64,
            "stream": True,
        }

    @pytest.mark.asyncio
    async def test_done_without_usage_yields_estimate(self):
        clock = FakeClock()

        def handler(request):
            return stream_response(sse_body(openai_delta("Hello"), openai_delta(" you")))

        async with make_client(handler) as client:
            outputs = await _outputs(OpenAICompatibleProvider(CONFIG, client, clock=clock))

        usage = outputs[-1].usage
        assert usage is not None
        assert usage.completion_tokens == 2  # 9 chars
        assert usage.prompt_tokens is None
        assert usage.tokens_per_second is None

    @pytest.mark.asyncio
    async def test_malformed_and_foreign_lines_are_skipped(self):
        chunks = [
            b": keep-alive comment\n\n",
            b"data: {not json}\n\n",
            b"event: ping\n\n",
        ] + sse_body(openai_delta("ok"))

        async with make_client(lambda r: stream_response(chunks)) as client:
            outputs = await _outputs(OpenAICompatibleProvider(CONFIG, client))

        assert [o.text for o in outputs if o.is_fragment] == ["ok"]

    @pytest.mark.asyncio
    async def test_records_split_across_reads(self):
        raw = b"".join(sse_body(openai_delta("Hello"), openai_delta(" world")))
        chunks = [raw[i:i + 7] for i in range(0, len(raw), 7)]

        async with make_client(lambda r: stream_response(chunks)) as client:
            outputs = await _outputs(OpenAICompatibleProvider(CONFIG, client))

        assert "".join(o.text for o in outputs if o.is_fragment) == "Hello world"

    @pytest.mark.asyncio
    async def test_non_streaming_json_fallback(self):
        body = {
            "choices": [{"message": {"role": "assistant", "content": "Hi there"}}],
            "usage": {"prompt_tokens": 4, "completion_tokens": 2, "total_tokens": 6},
        }

        async with make_client(lambda r: httpx.Response(200, json=body)) as client:
            outputs = await _outputs(OpenAICompatibleProvider(CONFIG, client))

        assert outputs[0].text == "Hi there"
        assert outputs[1].usage.total_tokens == 6

    @pytest.mark.asyncio
    async def test_non_streaming_fallback_without_usage_estimates(self):
        body = {"choices": [{"message": {"content": "abcd"}}]}

        async with make_client(lambda r: httpx.Response(200, json=body)) as client:
            outputs = await _outputs(OpenAICompatibleProvider(CONFIG, client))

        assert outputs[-1].usage.completion_tokens == 1

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        async with make_client(lambda r: httpx.Response(500, text="boom")) as client:
            with pytest.raises(UpstreamHTTPError) as exc_info:
                await _outputs(OpenAICompatibleProvider(CONFIG, client))

        assert exc_info.value.status_code == 500
        assert exc_info.value.body == "boom"
        assert "500" in exc_info.value.message and "boom" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler) as client:
            with pytest.raises(NetworkError):
                await _outputs(OpenAICompatibleProvider(CONFIG, client))

    @pytest.mark.asyncio
    async def test_drop_mid_stream(self):
        chunks = sse_body(openai_delta("partial"), done=False)

        def handler(request):
            return stream_response(chunks, error=httpx.ReadError("connection reset"))

        received = []
        async with make_client(handler) as client:
            with pytest.raises(NetworkError):
                async for output in OpenAICompatibleProvider(CONFIG, client).stream_chat(_request()):
                    received.append(output)

        assert [o.text for o in received] == ["partial"]


class TestOpenAIRequests:

    @pytest.mark.asyncio
    async def test_complete(self):
        def handler(request):
            assert json.loads(request.content)["stream"] is False
            return httpx.Response(200, json={"choices": [{"message": {"content": "Trip Ideas"}}]})

        async with make_client(handler) as client:
            provider = OpenAICompatibleProvider(CONFIG, client)
            text = await provider.complete("qwen", [{"role": "user", "content": "x"}],
                                           temperature=0.2, max_tokens=32)

        assert text == "Trip Ideas"

    @pytest.mark.asyncio
    async def test_list_models(self):
        def handler(request):
            assert request.url.path == "/v1/models"
            return httpx.Response(200, json={"data": [{"id": "qwen"}, {"name": "llama"}, {"other": 1}]})

        async with make_client(handler) as client:
            models = await OpenAICompatibleProvider(CONFIG, client).list_models()

        assert models == [{"id": "qwen"}, {"id": "llama"}]

    @pytest.mark.asyncio
    async def test_list_models_without_key_uses_lm_studio_token(self):
        def handler(request):
            assert request.headers["authorization"] == "Bearer lm-studio"
            return httpx.Response(200, json={"data": []})

        async with make_client(handler) as client:
            provider = OpenAICompatibleProvider({"base_url": "http://openai.test"}, client)
            assert await provider.list_models() == []


class TestProviderFactory:

    def test_known_types(self):
        client = httpx.AsyncClient()
        assert isinstance(get_provider_instance("openai", CONFIG, client), OpenAICompatibleProvider)
        assert isinstance(get_provider_instance("OpenAI", CONFIG, client), OpenAICompatibleProvider)

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            get_provider_instance("anthropic", CONFIG, httpx.AsyncClient())

    def test_missing_base_url(self):
        with pytest.raises(ValueError):
            OpenAICompatibleProvider({"name": "x"}, httpx.AsyncClient())

    def test_api_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("RELAY_TEST_KEY", "from-env")
        provider = OpenAICompatibleProvider(
            {"base_url": "http://openai.test", "api_key_env": "RELAY_TEST_KEY"}, httpx.AsyncClient()
        )
        assert provider.api_key == "from-env"
