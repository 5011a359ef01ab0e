"""Streaming chat and follow-up suggestion clients."""

from .client import ClientSettings, HttpChatTransport, SuggestionClient

__all__ = ["ClientSettings", "HttpChatTransport", "SuggestionClient"]
