import httpx
import os
import time
from contextlib import asynccontextmanager
from typing import Dict, Any, AsyncIterator, Callable, List

from ..core.exceptions import UpstreamHTTPError, NetworkError, UpstreamParseError
from ..core.logging import logger
from ..core.models import ChatTurnRequest, ProviderOutput
from ..services.relay.chunk_decoder import ChunkDecoder, parse_json_record


class BaseProvider:
    """
    Capability interface for one backend protocol.

    Subclasses implement stream_chat / complete / list_models. Upstream
    failures are surfaced as UpstreamHTTPError or NetworkError and are never
    retried here.
    """

    provider_type = "base"
    title_max_tokens = 32

    def __init__(self, config: Dict[str, Any], client: httpx.AsyncClient,
                 clock: Callable[[], float] = time.monotonic):
        self.name = config.get("name") or self.provider_type
        self.base_url = (config.get("base_url") or "").rstrip("/")
        self.api_key_env = config.get("api_key_env")
        self.headers = dict(config.get("headers") or {})
        self.api_key = os.environ.get(self.api_key_env) if self.api_key_env else config.get("api_key")
        self.client = client
        self.clock = clock

        if not self.base_url:
            raise ValueError(f"Provider '{self.name}' base_url is not configured.")

        read_timeout = float(config.get("timeout", 120.0))
        # read: time between chunks, not total time
        self.stream_timeout = httpx.Timeout(connect=10.0, read=read_timeout, write=10.0, pool=10.0)

    def _auth_headers(self) -> Dict[str, str]:
        headers = dict(self.headers)
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    async def _read_error_body(response: httpx.Response) -> str:
        try:
            raw = await response.aread()
        except httpx.HTTPError:
            return "Unable to read error response from provider"
        return raw.decode("utf-8", errors="replace")

    def _network_error(self, error: httpx.RequestError) -> NetworkError:
        details = str(error) or type(error).__name__
        return NetworkError(f"Network error communicating with {self.name}: {details}", error)

    @asynccontextmanager
    async def _stream_request(self, url_path: str, request_body: Dict[str, Any]):
        """Open one streaming POST; yields the response once the status is known to be 2xx."""
        url = f"{self.base_url}{url_path}"
        logger.debug_data(
            title="Provider Request",
            data={"url": url, "request_body": request_body},
            request_id="-",
            component=f"{self.provider_type}_provider",
            data_flow="to_provider"
        )

        try:
            async with self.client.stream("POST", url,
                                          headers=self._auth_headers(),
                                          json=request_body,
                                          timeout=self.stream_timeout) as response:
                if not response.is_success:
                    body = await self._read_error_body(response)
                    raise UpstreamHTTPError(response.status_code, body, self.name)
                logger.debug(
                    f"Provider stream opened | provider={self.name} | status={response.status_code}",
                    content_type=response.headers.get("content-type", "")
                )
                yield response
        except httpx.RequestError as e:
            raise self._network_error(e) from e

    async def _iter_lines(self, response: httpx.Response) -> AsyncIterator[str]:
        """Complete, stripped, non-empty lines of a streamed body."""
        decoder = ChunkDecoder()
        async for chunk in response.aiter_bytes():
            for line in decoder.feed(chunk):
                line = line.strip()
                if line:
                    yield line
        decoder.finish()

    def _parse_record(self, line: str):
        """Parsed JSON object, or None for a malformed record (skipped, not fatal)."""
        try:
            return parse_json_record(line)
        except UpstreamParseError as e:
            logger.warning(
                f"Skipping malformed record from {self.name}: {e.message}",
                record_preview=line[:100]
            )
            return None

    async def _request_json(self, method: str, url_path: str, **kwargs) -> Dict[str, Any]:
        """Non-streaming request returning the decoded JSON body."""
        url = f"{self.base_url}{url_path}"
        try:
            response = await self.client.request(method, url, timeout=self.stream_timeout, **kwargs)
        except httpx.RequestError as e:
            raise self._network_error(e) from e

        if not response.is_success:
            raise UpstreamHTTPError(response.status_code, response.text, self.name)
        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamParseError(f"Provider {self.name} returned a non-JSON body", record=response.text[:200]) from e
        if not isinstance(data, dict):
            raise UpstreamParseError(f"Provider {self.name} returned an unexpected JSON body")
        return data

    def stream_chat(self, request: ChatTurnRequest) -> AsyncIterator[ProviderOutput]:
        """Raw fragments and usage for one streamed turn, in upstream order."""
        raise NotImplementedError

    async def complete(self, model: str, messages: List[Dict[str, str]],
                       temperature: float, max_tokens: int) -> str:
        """One non-streaming completion, returned as plain text."""
        raise NotImplementedError

    async def list_models(self) -> List[Dict[str, str]]:
        """Models the backend offers, as [{"id": ...}]."""
        raise NotImplementedError
