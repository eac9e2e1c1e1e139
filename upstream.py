"""
Upstream dispatcher: one outbound POST per client request.

Streamed responses are opened and checked before the client response is
committed, so non-2xx statuses and empty bodies can still be reported as a
JSON error. Buffered providers are read in full and reduced to one string.
"""

import logging
from typing import Any, AsyncIterator, Optional

import httpx

from gateway_errors import UpstreamError
from prompt_builder import OutboundRequest
from providers import ApiStyle, ProviderConfig

logger = logging.getLogger(__name__)


def _headers(provider: ProviderConfig) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {provider.credential}",
        "Content-Type": "application/json",
    }


class UpstreamReader:
    """Pull-based reader over a streamed httpx response.

    read() returns the next non-empty chunk, or b"" once the body is exhausted.
    """

    def __init__(self, response: httpx.Response):
        self._response = response
        self._chunks: AsyncIterator[bytes] = response.aiter_bytes()
        self._primed: Optional[bytes] = None
        self._closed = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def content_type(self) -> str:
        return self._response.headers.get("content-type", "")

    async def _next_chunk(self) -> bytes:
        while True:
            try:
                chunk = await self._chunks.__anext__()
            except StopAsyncIteration:
                return b""
            if chunk:
                return chunk

    async def prime(self) -> bytes:
        """Read the first chunk ahead of time; it is replayed by the next read()."""
        self._primed = await self._next_chunk()
        return self._primed

    async def read(self) -> bytes:
        if self._closed:
            return b""
        if self._primed is not None:
            chunk, self._primed = self._primed, None
            return chunk
        return await self._next_chunk()

    async def aclose(self) -> None:
        if not self._closed:
            self._closed = True
            await self._response.aclose()


def extract_completion(document: Any, api_style: ApiStyle) -> str:
    """Completion text of one buffered (non-streamed) upstream response."""
    try:
        choices = document["choices"]
        if api_style is ApiStyle.CHAT:
            return choices[-1]["message"].get("content") or ""
        return choices[0].get("text") or ""
    except (KeyError, IndexError, TypeError, AttributeError) as e:
        raise UpstreamError(f"Unexpected upstream response: {str(document)[:200]}") from e


class UpstreamDispatcher:
    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    async def _send(self, request: OutboundRequest, provider: ProviderConfig, stream: bool) -> httpx.Response:
        outbound = self._client.build_request(
            "POST", request.url, headers=_headers(provider), json=request.payload
        )
        try:
            return await self._client.send(outbound, stream=stream)
        except httpx.TimeoutException as e:
            logger.warning(f"Upstream {provider.provider_name} timed out | model={provider.model}")
            raise UpstreamError(f"Upstream request timed out: {e!r}") from e
        except httpx.RequestError as e:
            logger.warning(f"Upstream {provider.provider_name} request failed: {e} | model={provider.model}")
            raise UpstreamError(f"Failed to connect to upstream: {e}") from e

    async def open_stream(self, request: OutboundRequest, provider: ProviderConfig) -> UpstreamReader:
        """
        Issue the request in streaming mode.

        Raises:
            UpstreamError: non-2xx status (status and body verbatim), an empty
                body, or a transport failure.
        """
        response = await self._send(request, provider, stream=True)

        if not response.is_success:
            try:
                error_body = await response.aread()
            finally:
                await response.aclose()
            error_text = error_body.decode("utf-8", errors="replace")
            logger.error(f"Upstream error: {response.status_code} - {error_text}")
            raise UpstreamError.from_status(response.status_code, error_text)

        reader = UpstreamReader(response)
        try:
            first_chunk = await reader.prime()
        except httpx.HTTPError as e:
            await reader.aclose()
            raise UpstreamError(f"Failed reading upstream response: {e}") from e
        if not first_chunk:
            await reader.aclose()
            raise UpstreamError("Upstream returned no body")
        return reader

    async def complete(self, request: OutboundRequest, provider: ProviderConfig) -> str:
        """Buffered mode: read the whole body and extract the single completion."""
        response = await self._send(request, provider, stream=False)

        if not response.is_success:
            logger.error(f"Upstream error: {response.status_code} - {response.text}")
            raise UpstreamError.from_status(response.status_code, response.text)
        if not response.content:
            raise UpstreamError("Upstream returned no body")

        try:
            document = response.json()
        except ValueError as e:
            raise UpstreamError(f"Invalid JSON from upstream: {response.text[:200]}") from e
        return extract_completion(document, request.api_style)
