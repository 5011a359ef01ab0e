"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Iterable, Mapping

import httpx

UPSTREAM_URL = "https://upstream.test/v1"

Reply = httpx.Response | Exception


def completion_response(content: str, status_code: int = 200) -> httpx.Response:
    """OpenAI-shaped chat completion body carrying *content*."""

    body = {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 0,
        "model": "sarvam-m",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
    }
    return httpx.Response(status_code, json=body)


def error_response(status_code: int, message: str = "upstream error") -> httpx.Response:
    return httpx.Response(status_code, json={"error": {"message": message, "type": "error"}})


class ScriptedUpstream:
    """Replays one reply per request and records what was sent."""

    def __init__(self, replies: Iterable[Reply]) -> None:
        self._replies = list(replies)
        self.requests: list[dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(
            {
                "url": str(request.url),
                "headers": dict(request.headers),
                "json": json.loads(request.content or b"null"),
            }
        )
        if not self._replies:
            raise AssertionError("Upstream called more often than scripted")
        reply = self._replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeChatTransport:
    """Chat transport stub that yields canned chunks for each request."""

    def __init__(self, *turns: Iterable[str | Exception]) -> None:
        self._turns = [list(turn) for turn in turns]
        self.payloads: list[Mapping[str, Any]] = []
        self.closed = False

    async def stream(self, payload: Mapping[str, Any]) -> AsyncIterator[str]:
        self.payloads.append(payload)
        chunks = self._turns.pop(0) if self._turns else []
        for chunk in chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    async def aclose(self) -> None:
        self.closed = True
