"""Shared pytest fixtures."""

from __future__ import annotations

from typing import Any, Callable, Iterable

import httpx
import pytest
from openai import AsyncOpenAI

from cropwise.ai.client import ClientSettings, SuggestionClient
from cropwise.services.chat_store import InMemoryChatStore
from tests.helpers import UPSTREAM_URL, Reply, ScriptedUpstream


@pytest.fixture
def store() -> InMemoryChatStore:
    return InMemoryChatStore()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def record_sleep(sleeps: list[float]) -> Callable[[float], Any]:
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep


@pytest.fixture
def make_client() -> Callable[[Iterable[Reply]], tuple[SuggestionClient, ScriptedUpstream]]:
    """Build a :class:`SuggestionClient` whose HTTP traffic is scripted."""

    def _make(replies: Iterable[Reply]) -> tuple[SuggestionClient, ScriptedUpstream]:
        upstream = ScriptedUpstream(replies)
        settings = ClientSettings(base_url=UPSTREAM_URL, api_key="test-key", model="sarvam-m")
        openai_client = AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            max_retries=0,
            default_headers={settings.auth_header: settings.api_key},
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
        )
        return SuggestionClient(settings, client=openai_client), upstream

    return _make


@pytest.fixture
def exchange() -> list[dict[str, str]]:
    return [
        {"role": "user", "content": "How do I protect my onion crop from heavy rain?"},
        {"role": "assistant", "content": "Make raised beds and clear the drains before the storm."},
    ]
