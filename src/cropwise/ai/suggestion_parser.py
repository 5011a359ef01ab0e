"""Extract follow-up questions from free-form model output.

Models asked for "a JSON array of 4 strings" answer with anything from a
clean array to prose around a half-quoted, truncated list. The strategies
below run from strictest to most permissive; the first one that yields a
usable question wins::

    >>> parse_suggestions('Here are some: ["When to sow?", "Which fertiliser now?"]')
    ['When to sow?', 'Which fertiliser now?']
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Iterable, Sequence

LOGGER = logging.getLogger(__name__)

MAX_SUGGESTIONS = 4
MIN_QUESTION_CHARS = 5
QUESTION_MARKS = ("?", "？")

_WHITESPACE = re.compile(r"\s+")
_ARRAY = re.compile(r"\[.*\]")
_TRAILING_COMMA = re.compile(r",\s*(?=[\]}])")
_COMMA_OUTSIDE_QUOTES = re.compile(r',(?=(?:[^"]*"[^"]*")*[^"]*$)')
_QUOTED_QUESTION = re.compile(r'"[^"]*[?？][^"]*"')
_BARE_QUESTION = re.compile(r'[^\[\]"\n?？]{8,}[?？]')
_ENUMERATION = re.compile(r"^(?:\d+\s*[.):-]|[-*•])\s*")
_EDGE_QUOTES = re.compile(r"^[\"'`\s]+|[\"'`\s]+$")
_CONTAINER_KEYS = ("suggestions", "questions", "suggestedQueries", "queries")

Strategy = Callable[[str], list[Any]]


def parse_suggestions(text: str | None, *, max_suggestions: int = MAX_SUGGESTIONS) -> list[str]:
    """Return at most *max_suggestions* questions found in *text*.

    Never raises; unusable input yields ``[]``.
    """

    if not text or not isinstance(text, str):
        return []
    cleaned = _WHITESPACE.sub(" ", text.strip())
    strategies: Sequence[tuple[str, Strategy, str]] = (
        ("direct", _parse_direct, cleaned),
        ("repair", _parse_repaired_array, cleaned),
        ("quoted", _extract_quoted_questions, cleaned),
        ("bare", _extract_bare_questions, text),
    )
    for name, strategy, source in strategies:
        try:
            candidates = strategy(source)
        except (ValueError, TypeError, RecursionError) as exc:
            LOGGER.debug("Suggestion strategy %s failed: %s", name, exc)
            continue
        suggestions = sanitize_questions(candidates, max_suggestions)
        if suggestions:
            LOGGER.debug("Suggestion strategy %s produced %d question(s)", name, len(suggestions))
            return suggestions
    LOGGER.debug("No suggestion strategy produced usable questions")
    return []


def sanitize_questions(raw_items: Iterable[Any], max_suggestions: int = MAX_SUGGESTIONS) -> list[str]:
    """Keep trimmed strings that read as questions, deduplicated, in order."""

    sanitized: list[str] = []
    seen: set[str] = set()
    limit = max(1, max_suggestions)
    for item in raw_items:
        if not isinstance(item, str):
            continue
        text = item.strip()
        if len(text) <= MIN_QUESTION_CHARS or text in seen:
            continue
        if not any(mark in text for mark in QUESTION_MARKS):
            continue
        sanitized.append(text)
        seen.add(text)
        if len(sanitized) >= limit:
            break
    return sanitized


def _parse_direct(cleaned: str) -> list[Any]:
    if cleaned.startswith("[") and cleaned.endswith("]"):
        return _as_list(json.loads(cleaned))
    if cleaned.startswith("{") and cleaned.endswith("}"):
        return _as_list(json.loads(cleaned))
    return []


def _parse_repaired_array(cleaned: str) -> list[Any]:
    match = _ARRAY.search(cleaned)
    if match is None:
        return []
    candidate = _TRAILING_COMMA.sub("", match.group(0))
    try:
        return _as_list(json.loads(candidate))
    except json.JSONDecodeError:
        return _split_loose_items(candidate[1:-1])


def _split_loose_items(inner: str) -> list[str]:
    """Rebuild items from an array body with bare or single-quoted entries."""

    items: list[str] = []
    for raw in _COMMA_OUTSIDE_QUOTES.split(inner):
        item = raw.strip()
        if not item:
            continue
        if len(item) >= 2 and item[0] == item[-1] == '"':
            try:
                decoded = json.loads(item)
            except json.JSONDecodeError:
                decoded = item[1:-1]
            items.append(str(decoded))
        else:
            items.append(_EDGE_QUOTES.sub("", item))
    return items


def _extract_quoted_questions(cleaned: str) -> list[str]:
    return [match[1:-1].strip() for match in _QUOTED_QUESTION.findall(cleaned)]


def _extract_bare_questions(text: str) -> list[str]:
    found: list[str] = []
    for line in text.splitlines():
        for match in _BARE_QUESTION.findall(line):
            question = _EDGE_QUOTES.sub("", match)
            question = _ENUMERATION.sub("", question).strip()
            if len(question) > 8:
                found.append(question)
    return found


def _as_list(parsed: Any) -> list[Any]:
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        for key in _CONTAINER_KEYS:
            value = parsed.get(key)
            if isinstance(value, list):
                return value
        return list(parsed.values())
    if isinstance(parsed, str):
        return [parsed]
    return []


__all__ = ["parse_suggestions", "sanitize_questions", "MAX_SUGGESTIONS", "QUESTION_MARKS"]
