"""Turn assembly and suggestion orchestration for the chat client."""

from .tool_tracker import ToolInvocationTracker
from .assembler import MessageAssembler, StateListener

# Follow-up suggestions
from .suggestions import (
    SingleFlightGuard,
    SuggestionGenerator,
    SuggestionOrchestrator,
    SuggestionResponse,
    SuggestionResult,
    compute_context_hash,
    handle_suggestion_request,
)

# Conversation driver
from .chat_session import ChatSession, ImageAttachment

__all__ = [
    "ToolInvocationTracker",
    "MessageAssembler",
    "StateListener",
    "SingleFlightGuard",
    "SuggestionGenerator",
    "SuggestionOrchestrator",
    "SuggestionResponse",
    "SuggestionResult",
    "compute_context_hash",
    "handle_suggestion_request",
    "ChatSession",
    "ImageAttachment",
]
