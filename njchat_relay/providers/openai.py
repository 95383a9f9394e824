import httpx
import time
from typing import Dict, Any, AsyncIterator, Callable, List

from .base import BaseProvider
from ..core.logging import logger
from ..core.models import ChatTurnRequest, ProviderOutput, UsageStats
from ..services.relay.chunk_decoder import parse_json_record
from ..services.relay.usage_accumulator import UsageAccumulator

DONE_SENTINEL = "[DONE]"


def _first_choice(data: Dict[str, Any]) -> Dict[str, Any]:
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return {}


class OpenAICompatibleProvider(BaseProvider):
    """OpenAI chat-completions protocol (OpenAI, LM Studio, vLLM, llama.cpp server...)."""

    provider_type = "openai"

    def __init__(self, config: Dict[str, Any], client: httpx.AsyncClient,
                 clock: Callable[[], float] = time.monotonic):
        super().__init__(config, client, clock)
        self.headers["Content-Type"] = "application/json"

    def _build_body(self, messages: List[Dict[str, str]], model: str,
                    temperature: float, max_tokens: int, stream: bool) -> Dict[str, Any]:
        return {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": stream,
        }

    async def stream_chat(self, request: ChatTurnRequest) -> AsyncIterator[ProviderOutput]:
        body = self._build_body(request.messages, request.model, request.temperature,
                                request.max_tokens, stream=True)
        accumulator = UsageAccumulator(self.clock)
        usage_seen = False

        async with self._stream_request("/v1/chat/completions", body) as response:
            content_type = response.headers.get("content-type", "")

            # Some servers ignore stream=true and answer with one JSON document
            if "event-stream" not in content_type and "text/plain" not in content_type:
                logger.debug(f"Non-streaming response from {self.name}", content_type=content_type)
                raw = await response.aread()
                data = parse_json_record(raw.decode("utf-8", errors="replace"))
                content = (_first_choice(data).get("message") or {}).get("content") or ""
                if content:
                    accumulator.record_fragment(content)
                    yield ProviderOutput(text=content)
                usage = UsageStats.from_dict(data.get("usage"))
                yield ProviderOutput(usage=usage if usage is not None else accumulator.estimate())
                return

            async for line in self._iter_lines(response):
                if not line.startswith("data:"):
                    continue
                payload = line[len("data:"):].strip()
                if payload == DONE_SENTINEL:
                    if not usage_seen:
                        yield ProviderOutput(usage=accumulator.estimate())
                    return

                data = self._parse_record(payload)
                if data is None:
                    continue

                delta = _first_choice(data).get("delta")
                content = delta.get("content") if isinstance(delta, dict) else None
                if isinstance(content, str) and content:
                    accumulator.record_fragment(content)
                    yield ProviderOutput(text=content)

                if data.get("usage"):
                    usage = UsageStats.from_dict(data["usage"])
                    if usage is not None:
                        usage_seen = True
                        yield ProviderOutput(usage=usage)

        logger.debug(f"Stream from {self.name} ended without {DONE_SENTINEL}")

    async def complete(self, model: str, messages: List[Dict[str, str]],
                       temperature: float, max_tokens: int) -> str:
        body = self._build_body(messages, model, temperature, max_tokens, stream=False)
        data = await self._request_json("POST", "/v1/chat/completions",
                                        headers=self._auth_headers(), json=body)
        content = (_first_choice(data).get("message") or {}).get("content")
        return content if isinstance(content, str) else ""

    async def list_models(self) -> List[Dict[str, str]]:
        headers = {"Authorization": f"Bearer {self.api_key or 'lm-studio'}"}
        data = await self._request_json("GET", "/v1/models", headers=headers)
        models = data.get("data")
        if not isinstance(models, list):
            return []
        result = []
        for model in models:
            if not isinstance(model, dict):
                continue
            model_id = model.get("id") or model.get("name") or ""
            if model_id:
                result.append({"id": model_id})
        return result
