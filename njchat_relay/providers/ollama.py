import httpx
import time
from typing import Dict, Any, AsyncIterator, Callable, List

from .base import BaseProvider
from ..core.models import ChatTurnRequest, ProviderOutput, UsageStats


def cumulative_delta(previous: str, current: str) -> str:
    """
    New text in a cumulative update.

    When `current` does not extend `previous` (upstream reset or shrank) the
    whole of `current` is the fragment.
    """
    if current.startswith(previous):
        return current[len(previous):]
    return current


def usage_from_done_record(data: Dict[str, Any]) -> UsageStats:
    prompt_tokens = data.get("prompt_eval_count")
    completion_tokens = data.get("eval_count")
    return UsageStats(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=(prompt_tokens or 0) + (completion_tokens or 0),
    )


class OllamaProvider(BaseProvider):
    """Ollama native chat API: newline-delimited JSON with cumulative message content."""

    provider_type = "ollama"
    title_max_tokens = 64

    def __init__(self, config: Dict[str, Any], client: httpx.AsyncClient,
                 clock: Callable[[], float] = time.monotonic):
        super().__init__(config, client, clock)
        self.headers["Content-Type"] = "application/json"

    def _build_body(self, messages: List[Dict[str, str]], model: str,
                    temperature: float, max_tokens: int, stream: bool) -> Dict[str, Any]:
        # OpenAI-like parameters live under Ollama's 'options'
        return {
            "model": model,
            "messages": messages,
            "stream": stream,
            "options": {
                "temperature": temperature,
                "num_predict": max_tokens,
            },
        }

    async def stream_chat(self, request: ChatTurnRequest) -> AsyncIterator[ProviderOutput]:
        body = self._build_body(request.messages, request.model, request.temperature,
                                request.max_tokens, stream=True)
        previous = ""

        async with self._stream_request("/api/chat", body) as response:
            async for line in self._iter_lines(response):
                data = self._parse_record(line)
                if data is None:
                    continue

                message = data.get("message")
                if isinstance(message, dict) and isinstance(message.get("content"), str):
                    current = message["content"]
                    fragment = cumulative_delta(previous, current)
                    previous = current
                    if fragment:
                        yield ProviderOutput(text=fragment)

                if data.get("done"):
                    yield ProviderOutput(usage=usage_from_done_record(data))

    async def complete(self, model: str, messages: List[Dict[str, str]],
                       temperature: float, max_tokens: int) -> str:
        body = self._build_body(messages, model, temperature, max_tokens, stream=False)
        data = await self._request_json("POST", "/api/chat", headers=self._auth_headers(), json=body)
        content = (data.get("message") or {}).get("content")
        return content if isinstance(content, str) else ""

    async def list_models(self) -> List[Dict[str, str]]:
        data = await self._request_json("GET", "/api/tags", headers=self._auth_headers())
        models = data.get("models") or []
        return [{"id": m["name"]} for m in models if isinstance(m, dict) and m.get("name")]
