"""Follow-up suggestion generation for farming conversations.

The pipeline is: guard the input, call the upstream with a bounded retry
schedule, parse whatever text comes back, and fall back to heuristic
questions whenever any of that fails. Callers always get a
:class:`SuggestionResult`; exceptions never escape :meth:`SuggestionOrchestrator.generate`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from ...chat.message_model import ChatMessage, SuggestedQueriesRecord, as_role_content
from ...services.chat_store import DEFAULT_SCOPE_ID, ONBOARDING_SCOPE_ID, ChatStore
from ...services.settings import RetryPolicy
from ...services.telemetry import SuggestionOutcome, TelemetrySink, record_suggestion_outcome
from ...services.user_context import LocationContext, UserProfile
from ..client import UPSTREAM_BODY_LIMIT, SuggestionClient
from ..errors import CropwiseError, UpstreamRateLimited, UpstreamUnavailable
from ..heuristics import build_heuristic_queries
from ..suggestion_parser import MAX_SUGGESTIONS, parse_suggestions

LOGGER = logging.getLogger(__name__)

MessageLike = ChatMessage | Mapping[str, Any]
SleepFunc = Callable[[float], Awaitable[None]]

CONTEXT_HASH_WINDOW = 8
MESSAGE_CHAR_LIMIT = 500
NOT_CONFIGURED_ERROR = "Suggestion upstream is not configured"
EMPTY_RESPONSE_ERROR = "Upstream response contained no usable questions"

_SYSTEM_PROMPT = """Generate exactly {count} farming follow-up questions based on the recent conversation exchange.
{user_info}
Requirements:
- Same language as the user message{language_hint}
- Build on the assistant's advice with deeper/practical questions
- From farmer's perspective (what would they ask next)
- Each question 10-25 words, specific and actionable
- Consider user's crops ({crops}), experience level, and location

Return ONLY a valid JSON array of {count} strings.
Example: ["কি সার দেব?", "কখন রোপণ করব?", "দাম কত?", "রোগ হলে কি করব?"]"""


# =============================================================================
# Result and helpers
# =============================================================================


@dataclass(slots=True)
class SuggestionResult:
    """Outcome of one generation. ``queries`` never holds more than four items."""

    queries: list[str] = field(default_factory=list)
    fallback: bool = False
    error: str | None = None
    rate_limited: bool = False
    upstream_status: int | None = None
    upstream_body: str | None = None
    cached: bool = False
    skipped: bool = False
    context_hash: str = ""
    attempts: int = 0

    def __post_init__(self) -> None:
        self.queries = list(self.queries)[:MAX_SUGGESTIONS]

    def to_payload(self) -> dict[str, Any]:
        """Response body for the suggestion endpoint."""

        payload: dict[str, Any] = {"suggestedQueries": list(self.queries), "success": True}
        if self.fallback:
            payload["fallback"] = True
        if self.rate_limited:
            payload["rateLimited"] = True
        if self.upstream_status is not None:
            payload["upstreamStatus"] = self.upstream_status
        if self.upstream_body:
            payload["upstreamBody"] = self.upstream_body
        if self.error:
            payload["error"] = self.error
        return payload


def compute_context_hash(messages: Sequence[MessageLike], *, window: int = CONTEXT_HASH_WINDOW) -> str:
    """31-multiplier rolling hash over the last *window* ``role:content`` entries."""

    tail = list(messages)[-window:] if window > 0 else []
    base = "|".join("{}:{}".format(*as_role_content(message)) for message in tail)
    value = 0
    for char in base:
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    return format(value, "x")


def has_exchange(messages: Sequence[MessageLike]) -> bool:
    roles = {as_role_content(message)[0] for message in messages}
    return "user" in roles and "assistant" in roles


def last_exchange(messages: Sequence[MessageLike]) -> list[dict[str, str]]:
    """Return ``[last user, last assistant]`` as plain role/content dicts."""

    last_user: dict[str, str] | None = None
    last_assistant: dict[str, str] | None = None
    for message in reversed(messages):
        role, content = as_role_content(message)
        if role == "user" and last_user is None:
            last_user = {"role": role, "content": content}
        elif role == "assistant" and last_assistant is None:
            last_assistant = {"role": role, "content": content}
        if last_user and last_assistant:
            break
    return [entry for entry in (last_user, last_assistant) if entry is not None]


def sanitize_suggestions(raw_items: Iterable[Any], max_suggestions: int = MAX_SUGGESTIONS) -> list[str]:
    """Deduplicate and limit suggestion items; non-strings and blanks are dropped."""

    sanitized: list[str] = []
    seen: set[str] = set()
    limit = max(1, max_suggestions)
    for item in raw_items:
        if not isinstance(item, str):
            continue
        text = item.strip()
        if not text or text in seen:
            continue
        sanitized.append(text)
        seen.add(text)
        if len(sanitized) >= limit:
            break
    return sanitized


class SingleFlightGuard:
    """Allows at most one running generation per scope id.

    ``try_acquire`` checks and claims the scope without awaiting, so two
    coroutines on the same loop can never both win.
    """

    def __init__(self) -> None:
        self._active: set[str] = set()

    def try_acquire(self, scope_id: str) -> bool:
        if scope_id in self._active:
            return False
        self._active.add(scope_id)
        return True

    def release(self, scope_id: str) -> None:
        self._active.discard(scope_id)


# =============================================================================
# Generator: prompt, retries, parsing
# =============================================================================


class SuggestionGenerator:
    """Generates follow-up questions for the latest exchange of a conversation."""

    def __init__(
        self,
        client: SuggestionClient,
        *,
        policy: RetryPolicy | None = None,
        max_suggestions: int = MAX_SUGGESTIONS,
        message_char_limit: int = MESSAGE_CHAR_LIMIT,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._client = client
        self._policy = policy or RetryPolicy()
        self._max_suggestions = max(1, min(MAX_SUGGESTIONS, max_suggestions))
        self._char_limit = max(1, message_char_limit)
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def generate(
        self,
        history: Sequence[MessageLike],
        *,
        profile: UserProfile | None = None,
        location: LocationContext | None = None,
    ) -> SuggestionResult:
        """Run the upstream call with retries and resolve any failure to heuristics.

        Upstream failures are reported on the result rather than raised.
        """

        exchange = last_exchange(history)
        messages = self.build_messages(exchange, profile=profile, location=location)
        attempts = 0
        text = ""
        try:
            async for attempt in self._retrying():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    text = await self._client.complete(messages)
        except UpstreamRateLimited as exc:
            LOGGER.warning("Suggestion upstream still rate limited after %d attempt(s)", attempts)
            return self._fallback(
                exchange,
                error=exc.message,
                rate_limited=True,
                upstream_status=429,
                attempts=attempts,
            )
        except UpstreamUnavailable as exc:
            if exc.status_code is None:
                LOGGER.warning("Suggestion upstream unreachable after %d attempt(s): %s", attempts, exc)
            else:
                LOGGER.warning(
                    "Suggestion upstream failed with HTTP %s after %d attempt(s)", exc.status_code, attempts
                )
            body = exc.body[:UPSTREAM_BODY_LIMIT] if exc.body else None
            return self._fallback(
                exchange,
                error=exc.message,
                upstream_status=exc.status_code,
                upstream_body=body,
                attempts=attempts,
            )

        queries = parse_suggestions(text, max_suggestions=self._max_suggestions)
        if not queries:
            LOGGER.info("Suggestion upstream returned no usable questions; using heuristics")
            return self._fallback(exchange, error=EMPTY_RESPONSE_ERROR, attempts=attempts)
        return SuggestionResult(queries=queries, attempts=attempts)

    def build_messages(
        self,
        exchange: Sequence[Mapping[str, str]],
        *,
        profile: UserProfile | None = None,
        location: LocationContext | None = None,
    ) -> list[dict[str, str]]:
        """Build the system and user prompt for the completion."""

        transcript_lines: list[str] = []
        for entry in exchange:
            content = str(entry.get("content", ""))
            if len(content) > self._char_limit:
                content = f"{content[: self._char_limit]}..."
            transcript_lines.append(f"{entry.get('role') or 'user'}: {content}")
        transcript = "\n".join(transcript_lines)

        crops = profile.main_crops_joined if profile is not None and profile.main_crops else "general"
        language_hint = f" ({profile.language})" if profile is not None and profile.language else ""
        system_prompt = _SYSTEM_PROMPT.format(
            count=self._max_suggestions,
            user_info=_profile_block(profile, location),
            language_hint=language_hint,
            crops=crops,
        )
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": f"Context:\n{transcript}\n\nJSON array:"},
        ]

    async def aclose(self) -> None:
        await self._client.aclose()

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._policy.max_attempts),
            wait=self._wait_for,
            retry=retry_if_exception_type((UpstreamRateLimited, UpstreamUnavailable)),
            before_sleep=_log_retry,
            sleep=self._sleep,
        )

    def _wait_for(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        attempt = retry_state.attempt_number
        if isinstance(error, UpstreamRateLimited):
            return self._policy.rate_limit_delay(attempt)
        if isinstance(error, UpstreamUnavailable) and error.status_code is not None:
            return self._policy.status_delay(attempt)
        return self._policy.network_delay(attempt)

    def _fallback(self, exchange: Sequence[Mapping[str, str]], **details: Any) -> SuggestionResult:
        queries = build_heuristic_queries(exchange, limit=self._max_suggestions)
        return SuggestionResult(queries=queries, fallback=True, **details)


def _log_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0.0
    LOGGER.info(
        "Suggestion attempt %d failed (%s); retrying in %.2fs",
        retry_state.attempt_number,
        error,
        delay,
    )


def _profile_block(profile: UserProfile | None, location: LocationContext | None) -> str:
    if profile is None and location is None:
        return ""
    lines = ["", "USER PROFILE:"]
    if profile is not None:
        lines.extend(
            [
                f"- Name: {profile.name or 'Not specified'}",
                f"- Language: {profile.language or 'Not specified'}",
                f"- Experience: {profile.experience or 'Not specified'}",
                f"- Farm Type: {profile.farm_type or 'Not specified'}",
                f"- Farm Size: {profile.farm_size or 'Not specified'}",
                f"- Main Crops: {profile.main_crops_joined or 'Not specified'}",
            ]
        )
    if location is not None:
        coordinates = (
            f"{location.latitude}, {location.longitude}" if location.latitude is not None else "Not specified"
        )
        lines.extend(
            [
                f"- Location: {location.address or 'Not specified'}",
                f"- City: {location.city_name or 'Not specified'}",
                f"- State: {location.state_name or 'Not specified'}",
                f"- Farm Area: {location.area_size_acres or 'Not specified'}",
                f"- Coordinates: {coordinates}",
            ]
        )
    lines.extend(["", "Use this profile to make suggestions specific to their crops, experience level, location and farm context.", ""])
    return "\n".join(lines)


async def run_generation(
    generator: SuggestionGenerator | None,
    messages: Sequence[MessageLike],
    *,
    profile: UserProfile | None = None,
    location: LocationContext | None = None,
) -> SuggestionResult:
    """Generate with *generator*, resolving every failure to heuristic questions."""

    if generator is None:
        LOGGER.warning("%s; using heuristic suggestions", NOT_CONFIGURED_ERROR)
        return SuggestionResult(
            queries=build_heuristic_queries(messages),
            fallback=True,
            error=NOT_CONFIGURED_ERROR,
        )
    try:
        return await generator.generate(messages, profile=profile, location=location)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        LOGGER.exception("Suggestion generation failed unexpectedly")
        message = exc.message if isinstance(exc, CropwiseError) else (str(exc) or type(exc).__name__)
        return SuggestionResult(queries=build_heuristic_queries(messages), fallback=True, error=message)


# =============================================================================
# Orchestrator: guard, cache, persistence
# =============================================================================


class SuggestionOrchestrator:
    """Scope-aware front end over :class:`SuggestionGenerator`.

    Results are stored under the requested scope and mirrored into the
    default scope so the landing view always shows the latest suggestions.
    """

    def __init__(
        self,
        generator: SuggestionGenerator | None,
        store: ChatStore,
        *,
        guard: SingleFlightGuard | None = None,
        telemetry_sink: TelemetrySink | None = None,
        default_scope_id: str = DEFAULT_SCOPE_ID,
    ) -> None:
        self._generator = generator
        self._store = store
        self._guard = guard or SingleFlightGuard()
        self._telemetry_sink = telemetry_sink
        self._default_scope = default_scope_id

    @property
    def guard(self) -> SingleFlightGuard:
        return self._guard

    async def generate(
        self,
        messages: Sequence[MessageLike],
        *,
        scope_id: str | None = None,
        profile: UserProfile | None = None,
        location: LocationContext | None = None,
        force: bool = False,
    ) -> SuggestionResult:
        scope = scope_id or self._default_scope
        if not messages or not has_exchange(messages):
            LOGGER.debug("Skipping suggestions for %s: no user/assistant exchange yet", scope)
            return SuggestionResult()

        context_hash = compute_context_hash(messages)
        if not self._guard.try_acquire(scope):
            LOGGER.debug("Suggestions already generating for %s; skipping", scope)
            return SuggestionResult(skipped=True, context_hash=context_hash)

        started = time.perf_counter()
        try:
            if not force:
                cached = self._cached(scope, context_hash)
                if cached is not None:
                    self._record(scope, cached, started)
                    return cached
            result = await run_generation(self._generator, messages, profile=profile, location=location)
            result.context_hash = context_hash
            self._persist(result.queries, context_hash, (scope, self._default_scope))
            self._record(scope, result, started)
            return result
        finally:
            self._guard.release(scope)

    async def generate_onboarding(
        self,
        profile: UserProfile | None = None,
        location: LocationContext | None = None,
        *,
        thread_id: str | None = None,
    ) -> SuggestionResult:
        """Seed suggestions from a synthetic welcome exchange for a new user."""

        if not self._guard.try_acquire(ONBOARDING_SCOPE_ID):
            return SuggestionResult(skipped=True)
        started = time.perf_counter()
        try:
            exchange = build_onboarding_exchange(profile, location)
            context_hash = compute_context_hash(exchange)
            result = await run_generation(self._generator, exchange, profile=profile, location=location)
            result.context_hash = context_hash
            scopes = [self._default_scope, ONBOARDING_SCOPE_ID]
            if thread_id:
                scopes.append(thread_id)
            self._persist(result.queries, context_hash, scopes)
            self._record(ONBOARDING_SCOPE_ID, result, started)
            return result
        finally:
            self._guard.release(ONBOARDING_SCOPE_ID)

    def load(self, scope_id: str | None = None) -> SuggestedQueriesRecord | None:
        """Stored suggestions for *scope_id*, falling back to default then onboarding."""

        record = self._store.get_suggested_queries(scope_id or self._default_scope)
        if record is None and not scope_id:
            record = self._store.get_suggested_queries(ONBOARDING_SCOPE_ID)
        return record

    def clear(self, scope_id: str | None = None) -> None:
        """Remove one scope's suggestions, or every scope when *scope_id* is omitted."""

        self._store.clear_suggested_queries(scope_id)

    async def aclose(self) -> None:
        if self._generator is not None:
            await self._generator.aclose()

    def _cached(self, scope: str, context_hash: str) -> SuggestionResult | None:
        record = self._store.get_suggested_queries(scope)
        if record is None or record.id != scope or not record.queries:
            return None
        if record.context_hash != context_hash:
            return None
        LOGGER.debug("Reusing cached suggestions for %s", scope)
        return SuggestionResult(queries=list(record.queries), cached=True, context_hash=context_hash)

    def _persist(self, queries: list[str], context_hash: str, scopes: Iterable[str]) -> None:
        cleaned = sanitize_suggestions(queries)
        if not cleaned:
            return
        written: set[str] = set()
        for scope in scopes:
            if scope in written:
                continue
            written.add(scope)
            try:
                self._store.save_suggested_queries(cleaned, context_hash, scope)
            except OSError as exc:
                LOGGER.error("Failed to save suggested queries for %s: %s", scope, exc)

    def _record(self, scope: str, result: SuggestionResult, started: float) -> None:
        outcome = SuggestionOutcome(
            scope_id=scope,
            query_count=len(result.queries),
            fallback=result.fallback,
            rate_limited=result.rate_limited,
            cached=result.cached,
            upstream_status=result.upstream_status,
            error=result.error,
            attempts=result.attempts,
            elapsed_ms=(time.perf_counter() - started) * 1000.0,
        )
        record_suggestion_outcome(outcome, self._telemetry_sink)


# =============================================================================
# Onboarding exchange
# =============================================================================

_ODIA_LANGUAGES = {"ଓଡ଼ିଆ", "odia", "oriya", "or"}
_HINDI_LANGUAGES = {"हिंदी", "हिन्दी", "hindi", "hi"}


def build_onboarding_exchange(
    profile: UserProfile | None,
    location: LocationContext | None,
) -> list[dict[str, str]]:
    """Synthetic welcome exchange in the farmer's language."""

    language = (profile.language if profile is not None else "").strip()
    key = language.lower()
    name = profile.name if profile is not None else ""
    crops = profile.main_crops_joined if profile is not None else ""
    city = location.city_name if location is not None else ""

    if language in _ODIA_LANGUAGES or key in _ODIA_LANGUAGES:
        welcome = "ନମସ୍କାର! ମୁଁ ଆପଣଙ୍କର କୃଷି ସହାୟକ। ଆପଣଙ୍କ ଫସଲ ବିଷୟରେ କୌଣସି ପ୍ରଶ୍ନ ଅଛି କି?"
        reply = (
            f"ନମସ୍କାର {name or 'କୃଷକ ଭାଇ'}! ମୁଁ ଆପଣଙ୍କର {crops or 'ଫସଲ'} ଚାଷ ପାଇଁ ସାହାଯ୍ୟ କରିବାକୁ ଏଠାରେ ଅଛି। "
            f"ଆପଣଙ୍କ {city or 'ଅଞ୍ଚଳ'}ର ପାଣିପାଗ ଓ ବଜାର ଦର ବିଷୟରେ ମଧ୍ୟ ସୂଚନା ଦେଇପାରିବି।"
        )
    elif language in _HINDI_LANGUAGES or key in _HINDI_LANGUAGES:
        welcome = "नमस्कार! मैं आपका कृषि सहायक हूँ। आपकी फसल के बारे में कोई सवाल है?"
        reply = (
            f"नमस्कार {name or 'किसान भाई'}! मैं आपकी {crops or 'फसल'} की खेती में मदद करने के लिए यहाँ हूँ। "
            f"आपके {city or 'क्षेत्र'} के मौसम और बाज़ार भाव की जानकारी भी दे सकता हूँ।"
        )
    else:
        welcome = "Hello! I am your farming assistant. Do you have any questions about your crops?"
        reply = (
            f"Hello {name or 'Farmer'}! I'm here to help with your {crops or 'crops'} farming. "
            f"I can also provide weather and market information for {city or 'your area'}."
        )
    return [
        {"role": "user", "content": welcome},
        {"role": "assistant", "content": reply},
    ]


# =============================================================================
# HTTP-shaped handler
# =============================================================================


@dataclass(slots=True)
class SuggestionResponse:
    status_code: int
    payload: dict[str, Any]


async def handle_suggestion_request(
    body: Mapping[str, Any] | None,
    generator: SuggestionGenerator | None,
) -> SuggestionResponse:
    """Serve one suggestion request body.

    Only a missing or empty ``messages`` list is rejected (400). Every
    upstream failure, persisting rate limits included, degrades to heuristic
    questions with status 200; the payload carries ``rateLimited`` and the
    upstream diagnostics.
    """

    messages = body.get("messages") if isinstance(body, Mapping) else None
    if not isinstance(messages, list) or not messages:
        LOGGER.info("Rejecting suggestion request without messages")
        return SuggestionResponse(400, {"error": "No messages provided"})
    entries = [entry for entry in messages if isinstance(entry, Mapping)]
    if len(entries) < 2 or not has_exchange(entries):
        return SuggestionResponse(200, {"suggestedQueries": [], "success": True, "fallback": True})

    raw_profile = body.get("userProfile")
    raw_location = body.get("locationContext")
    profile = UserProfile.from_dict(raw_profile) if isinstance(raw_profile, Mapping) else None
    location = LocationContext.from_selected_location(raw_location) if isinstance(raw_location, Mapping) else None

    result = await run_generation(generator, entries, profile=profile, location=location)
    if result.rate_limited:
        LOGGER.info("Suggestion upstream rate limited; answering with fallback questions")
    return SuggestionResponse(200, result.to_payload())


__all__ = [
    "CONTEXT_HASH_WINDOW",
    "MESSAGE_CHAR_LIMIT",
    "SuggestionResult",
    "SuggestionResponse",
    "SingleFlightGuard",
    "SuggestionGenerator",
    "SuggestionOrchestrator",
    "build_onboarding_exchange",
    "compute_context_hash",
    "handle_suggestion_request",
    "has_exchange",
    "last_exchange",
    "run_generation",
    "sanitize_suggestions",
]
