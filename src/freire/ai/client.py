"""Async transport for OpenAI-compatible streamed chat completions."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping, Protocol

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import ProviderError

__all__ = ["ClientSettings", "ModelTransport", "ProviderClient"]

LOGGER = logging.getLogger(__name__)
_ERROR_BODY_PREVIEW_CHARS = 500


class ModelTransport(Protocol):
    """Anything that can stream raw chat-completion bytes for a payload."""

    def stream_chat(self, payload: Mapping[str, Any]) -> AsyncIterator[bytes]:
        ...


@dataclass(slots=True)
class ClientSettings:
    """Connection settings for one provider endpoint."""

    base_url: str
    api_key: str
    provider: str = "openai"
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False

    @property
    def chat_url(self) -> str:
        return self.base_url.rstrip("/") + "/chat/completions"


class ProviderClient:
    """Streams chat completions from one provider.

    Only failures to open the connection are retried. Once the provider has
    answered, a non-success status raises :class:`ProviderError` straight
    away; switching providers is the fallback chain's decision.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=settings.request_timeout)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def provider(self) -> str:
        return self._settings.provider

    async def stream_chat(self, payload: Mapping[str, Any]) -> AsyncIterator[bytes]:
        """POST ``payload`` and yield the raw response body as it arrives."""

        LOGGER.debug(
            "Starting streamed chat completion via %s (%s) with %s message(s)",
            self.provider,
            payload.get("model"),
            len(payload.get("messages", ())),
        )
        if self._settings.debug_logging:
            LOGGER.debug("Request payload: %s", json.dumps(payload, ensure_ascii=False, default=str))
        request = self._client.build_request(
            "POST",
            self._settings.chat_url,
            json=dict(payload),
            headers=self._headers(),
        )
        response = await self._open(request)
        try:
            if not response.is_success:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise ProviderError(
                    f"{self.provider} returned HTTP {response.status_code}: "
                    f"{body[:_ERROR_BODY_PREVIEW_CHARS]}",
                    provider=self.provider,
                    status_code=response.status_code,
                    body=body,
                )
            try:
                async for chunk in response.aiter_bytes():
                    yield chunk
            except httpx.HTTPError as exc:
                raise ProviderError(
                    f"{self.provider} stream interrupted: {exc}",
                    provider=self.provider,
                ) from exc
        finally:
            await response.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> ProviderClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._settings.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if self._settings.default_headers:
            headers.update(self._settings.default_headers)
        return headers

    async def _open(self, request: httpx.Request) -> httpx.Response:
        try:
            async for attempt in self._retrying():
                with attempt:
                    return await self._client.send(request, stream=True)
        except httpx.TransportError as exc:
            raise ProviderError(
                f"Unable to reach {self.provider}: {exc}",
                provider=self.provider,
            ) from exc
        raise RuntimeError("Retry loop finished without a response")  # pragma: no cover

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(httpx.TransportError),
        )
