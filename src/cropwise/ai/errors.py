"""Error types raised across the chat and suggestion pipelines.

Frame parse failures never surface as exceptions (the decoder skips the
line), so there is no class for them here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class ErrorCode:
    """Machine-readable identifiers attached to :class:`CropwiseError`."""

    TRANSPORT = "transport_error"
    UPSTREAM_RATE_LIMITED = "upstream_rate_limited"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"


@dataclass
class CropwiseError(Exception):
    """Base exception with a stable code and a human-readable message."""

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def __str__(self) -> str:
        return self.message


@dataclass
class TransportError(CropwiseError):
    """The chat request failed before or while the body was streaming."""

    error_code: str = field(default=ErrorCode.TRANSPORT)
    message: str = field(default="Chat request failed")
    details: dict[str, Any] = field(default_factory=dict)

    status_code: int | None = field(default=None)


@dataclass
class UpstreamRateLimited(CropwiseError):
    """The suggestion upstream answered HTTP 429."""

    error_code: str = field(default=ErrorCode.UPSTREAM_RATE_LIMITED)
    message: str = field(default="Rate limit exceeded")
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class UpstreamUnavailable(CropwiseError):
    """The suggestion upstream failed with a non-2xx status or no response."""

    error_code: str = field(default=ErrorCode.UPSTREAM_UNAVAILABLE)
    message: str = field(default="Suggestion upstream unavailable")
    details: dict[str, Any] = field(default_factory=dict)

    status_code: int | None = field(default=None)
    body: str | None = field(default=None)


__all__ = [
    "ErrorCode",
    "CropwiseError",
    "TransportError",
    "UpstreamRateLimited",
    "UpstreamUnavailable",
]
