"""
Тесты адаптера Ollama: кумулятивный контент и итоговая статистика
"""

import json

import httpx
import pytest

from njchat_relay.core.exceptions import NetworkError, UpstreamHTTPError
from njchat_relay.core.models import ChatTurnRequest
from njchat_relay.providers.ollama import OllamaProvider, cumulative_delta, usage_from_done_record
from tests.test_utils import make_client, ndjson_body, stream_response

CONFIG = {"name": "ollama", "base_url": "http://ollama.test"}
REQUEST = ChatTurnRequest(model="llama3", messages=[{"role": "user", "content": "hi"}],
                          temperature=0.4, max_tokens=100)


def _message(content, **extra):
    return {"model": "llama3", "message": {"role": "assistant", "content": content}, "done": False, **extra}


async def _outputs(client):
    return [o async for o in OllamaProvider(CONFIG, client).stream_chat(REQUEST)]


class TestCumulativeDelta:

    def test_extension(self):
        assert cumulative_delta("Hel", "Hello") == "lo"

    def test_first_update(self):
        assert cumulative_delta("", "Hel") == "Hel"

    def test_unchanged(self):
        assert cumulative_delta("Hello", "Hello") == ""

    def test_reset_emits_whole_string(self):
        assert cumulative_delta("Hello", "Hi") == "Hi"

    def test_usage_from_done_record(self):
        usage = usage_from_done_record({"done": True, "prompt_eval_count": 5, "eval_count": 3})
        assert usage.to_dict() == {"promptTokens": 5, "completionTokens": 3, "totalTokens": 8}

    def test_missing_counts_default_to_zero_total(self):
        assert usage_from_done_record({"done": True}).to_dict() == {"totalTokens": 0}

        usage = usage_from_done_record({"done": True, "eval_count": 3})
        assert usage.total_tokens == 3
        assert usage.to_dict() == {"completionTokens": 3, "totalTokens": 3}


class TestOllamaStreaming:

    @pytest.mark.asyncio
    async def test_cumulative_stream(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return stream_response(ndjson_body(
                _message("Hel"),
                _message("Hello"),
                {"done": True, "message": {"role": "assistant", "content": ""},
                 "prompt_eval_count": 5, "eval_count": 3},
            ), content_type="application/x-ndjson")

        async with make_client(handler) as client:
            outputs = await _outputs(client)

        assert [o.text for o in outputs if o.is_fragment] == ["Hel", "lo"]
        assert outputs[-1].usage.to_dict() == {"promptTokens": 5, "completionTokens": 3, "totalTokens": 8}

        assert seen["path"] == "/api/chat"
        assert seen["body"]["options"] == {"temperature": 0.4, "num_predict": 100}
        assert seen["body"]["stream"] is True

    @pytest.mark.asyncio
    async def test_reset_does_not_lose_text(self):
        chunks = ndjson_body(_message("Hello"), _message("Hi"), {"done": True})

        async with make_client(lambda r: stream_response(chunks)) as client:
            outputs = await _outputs(client)

        assert [o.text for o in outputs if o.is_fragment] == ["Hello", "Hi"]
        assert outputs[-1].usage.to_dict() == {"totalTokens": 0}

    @pytest.mark.asyncio
    async def test_malformed_line_skipped(self):
        chunks = [b"{oops\n"] + ndjson_body(_message("fine"), {"done": True, "eval_count": 1})

        async with make_client(lambda r: stream_response(chunks)) as client:
            outputs = await _outputs(client)

        assert [o.text for o in outputs if o.is_fragment] == ["fine"]
        assert outputs[-1].usage.to_dict() == {"completionTokens": 1, "totalTokens": 1}

    @pytest.mark.asyncio
    async def test_http_error(self):
        async with make_client(lambda r: httpx.Response(404, text='{"error":"model not found"}')) as client:
            with pytest.raises(UpstreamHTTPError) as exc_info:
                await _outputs(client)

        assert exc_info.value.status_code == 404
        assert "model not found" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_drop_mid_stream(self):
        def handler(request):
            return stream_response(ndjson_body(_message("Hel")), error=httpx.RemoteProtocolError("peer closed"))

        async with make_client(handler) as client:
            with pytest.raises(NetworkError):
                await _outputs(client)


class TestOllamaRequests:

    @pytest.mark.asyncio
    async def test_complete(self):
        def handler(request):
            body = json.loads(request.content)
            assert body["stream"] is False
            assert body["options"]["num_predict"] == 64
            return httpx.Response(200, json={"message": {"content": "Weekend Plans"}, "done": True})

        async with make_client(handler) as client:
            provider = OllamaProvider(CONFIG, client)
            assert await provider.complete("llama3", [{"role": "user", "content": "x"}], 0.2, 64) == "Weekend Plans"

    @pytest.mark.asyncio
    async def test_list_models(self):
        def handler(request):
            assert request.url.path == "/api/tags"
            return httpx.Response(200, json={"models": [{"name": "llama3:8b"}, {"name": "qwen3"}]})

        async with make_client(handler) as client:
            assert await OllamaProvider(CONFIG, client).list_models() == [{"id": "llama3:8b"}, {"id": "qwen3"}]

    def test_title_budget(self):
        assert OllamaProvider.title_max_tokens == 64
