"""Network clients: the streaming chat transport and the suggestion upstream."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, MutableMapping, Protocol, cast

import httpx
from openai import AsyncOpenAI, APIConnectionError, APIStatusError, RateLimitError
from openai.types.chat import ChatCompletionMessageParam

from .errors import TransportError, UpstreamRateLimited, UpstreamUnavailable

LOGGER = logging.getLogger(__name__)

UPSTREAM_BODY_LIMIT = 500


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the suggestion upstream."""

    base_url: str
    api_key: str
    model: str
    auth_header: str = "api-subscription-key"
    request_timeout: float | None = 30.0
    temperature: float = 0.7
    max_tokens: int = 1000
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


class ChatTransport(Protocol):
    """Anything that can POST a chat payload and yield the body as text chunks."""

    def stream(self, payload: Mapping[str, Any]) -> AsyncIterator[str]:  # pragma: no cover - protocol stub
        ...


class HttpChatTransport:
    """Streams the chat endpoint's line-delimited body with ``httpx``."""

    def __init__(
        self,
        url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = 90.0,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self._url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = dict(headers or {})

    @property
    def url(self) -> str:
        return self._url

    async def stream(self, payload: Mapping[str, Any]) -> AsyncIterator[str]:
        """Yield decoded body chunks; raise :class:`TransportError` on failure."""

        LOGGER.debug("POST %s with %d message(s)", self._url, len(payload.get("messages") or ()))
        try:
            async with self._client.stream("POST", self._url, json=dict(payload), headers=self._headers) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace").strip()
                    message = f"Chat request failed with HTTP {response.status_code}"
                    if body:
                        message = f"{message}: {body[:200]}"
                    raise TransportError(message=message, status_code=response.status_code)
                async for chunk in response.aiter_text():
                    if chunk:
                        yield chunk
        except httpx.HTTPError as exc:
            raise TransportError(message=str(exc) or type(exc).__name__) from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class SuggestionClient:
    """Single-shot chat completions against the OpenAI-compatible upstream.

    The SDK's own retries are disabled; the suggestion orchestrator owns the
    retry schedule. Failures are translated into :mod:`cropwise.ai.errors`
    types so callers never handle SDK exceptions directly.
    """

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def complete(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Return the first choice's text, or ``""`` when the upstream sent none."""

        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": self._coerce_messages(messages),
            "temperature": self._settings.temperature if temperature is None else temperature,
            "max_tokens": self._settings.max_tokens if max_tokens is None else max_tokens,
        }
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)
        try:
            response = await self._client.chat.completions.create(**payload)
        except RateLimitError as exc:
            raise UpstreamRateLimited(details={"status_code": exc.status_code}) from exc
        except APIStatusError as exc:
            raise UpstreamUnavailable(
                message=f"Suggestion upstream returned HTTP {exc.status_code}",
                status_code=exc.status_code,
                body=_response_text(exc),
            ) from exc
        except (APIConnectionError, httpx.TimeoutException) as exc:
            raise UpstreamUnavailable(message=str(exc) or type(exc).__name__) from exc

        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""
        message = getattr(choices[0], "message", None)
        content = getattr(message, "content", None)
        return str(content or "")

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers: Dict[str, str] = dict(settings.default_headers or {})
        if settings.auth_header and settings.api_key:
            headers[settings.auth_header] = settings.api_key
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=headers or None,
        )

    def _coerce_messages(
        self, messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam]
    ) -> List[ChatCompletionMessageParam]:
        normalized: List[ChatCompletionMessageParam] = []
        for message in messages:
            if isinstance(message, MutableMapping):
                normalized.append(cast(ChatCompletionMessageParam, dict(message)))
            else:
                try:
                    normalized.append(cast(ChatCompletionMessageParam, dict(message)))
                except TypeError as exc:  # pragma: no cover
                    raise TypeError("Messages must be mapping-like objects") from exc
        if not normalized:
            raise ValueError("At least one message is required for a completion")
        return normalized

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("Suggestion prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("Suggestion prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover
            LOGGER.debug("Suggestion client close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            await result


def _response_text(exc: APIStatusError) -> str:
    try:
        text = exc.response.text
    except Exception:  # pragma: no cover - body already consumed
        text = json.dumps(exc.body) if exc.body is not None else ""
    return (text or "")[:UPSTREAM_BODY_LIMIT]


__all__ = [
    "ClientSettings",
    "ChatTransport",
    "HttpChatTransport",
    "SuggestionClient",
    "UPSTREAM_BODY_LIMIT",
]
