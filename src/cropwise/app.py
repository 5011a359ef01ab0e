"""Command-line bootstrap for the Cropwise farming assistant client."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence, TextIO

from .ai.client import ClientSettings, HttpChatTransport, SuggestionClient
from .ai.orchestration.assembler import StateListener
from .ai.orchestration.chat_session import ChatSession
from .ai.orchestration.suggestions import SuggestionGenerator, SuggestionOrchestrator, SuggestionResult
from .chat.message_model import RequestStatus, StreamingState
from .chat.threads import ThreadCoordinator
from .services.chat_store import JsonChatStore
from .services.settings import Settings, SettingsStore, redact_secret
from .services.telemetry import InMemoryTelemetrySink
from .services.user_context import UserContextProvider, UserProfile
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_LOGGER = logging.getLogger(__name__)
_STORE_FILENAME = "chat_store.json"


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Log to the rotating file; debug runs also echo records to stderr."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, console=debug, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except Exception as exc:  # pragma: no cover - corrupt store
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def build_client_settings(settings: Settings, *, debug_logging: bool = False) -> ClientSettings:
    return ClientSettings(
        base_url=settings.suggestion_base_url,
        api_key=settings.suggestion_api_key,
        model=settings.suggestion_model,
        auth_header=settings.suggestion_auth_header,
        request_timeout=settings.suggestion_timeout,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        default_headers=settings.default_headers,
        debug_logging=debug_logging or settings.debug_logging,
    )


def build_suggestion_generator(settings: Settings, *, debug_logging: bool = False) -> SuggestionGenerator | None:
    """Construct the generator, or ``None`` when no upstream key is configured."""

    if not settings.suggestion_api_key.strip():
        _LOGGER.info("No suggestion API key configured; suggestions will use heuristics.")
        return None
    try:
        client = SuggestionClient(build_client_settings(settings, debug_logging=debug_logging))
    except Exception as exc:  # pragma: no cover - dependency/config errors
        _LOGGER.warning("Suggestion client unavailable: %s", exc)
        return None
    return SuggestionGenerator(
        client,
        policy=settings.retry_policy(),
        max_suggestions=settings.max_suggestions,
        message_char_limit=settings.message_char_limit,
    )


def build_session(
    settings: Settings,
    *,
    profile: UserProfile | None = None,
    on_state_change: StateListener | None = None,
    debug_logging: bool = False,
) -> ChatSession:
    """Wire storage, transport and suggestions into a :class:`ChatSession`."""

    store = JsonChatStore(settings.resolved_data_dir() / _STORE_FILENAME)
    threads = ThreadCoordinator(store, debounce_seconds=settings.thread_save_debounce)
    transport = HttpChatTransport(
        settings.chat_url,
        timeout=settings.request_timeout,
        headers=settings.default_headers,
    )
    suggestions = SuggestionOrchestrator(
        build_suggestion_generator(settings, debug_logging=debug_logging),
        store,
        telemetry_sink=InMemoryTelemetrySink(),
    )
    return ChatSession(
        transport,
        threads,
        context=UserContextProvider(profile),
        suggestions=suggestions,
        on_state_change=on_state_change,
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the `cropwise` console script."""

    args = _parse_cli_args(argv)

    debug = args.debug or _env_flag("CROPWISE_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("CROPWISE_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    overrides = {"data_dir": args.data_dir} if args.data_dir else None
    settings = load_settings(resolved_path, store=settings_store, overrides=overrides)

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)
        debug = True

    match args.command:
        case "settings":
            _dump_settings(settings, settings_store)
            return 0
        case "chat":
            return asyncio.run(_run_chat(settings, args, debug_logging=debug))
        case "suggest":
            return asyncio.run(_run_suggest(settings, args, debug_logging=debug))
    return 2


async def _run_chat(settings: Settings, args: argparse.Namespace, *, debug_logging: bool) -> int:
    profile = UserProfile(language=args.language or "", main_crops=list(args.crops or []))

    def _report(state: StreamingState) -> None:
        if state.current_step:
            _LOGGER.debug("%s (%d tool call(s))", state.current_step, len(state.tool_calls))

    session = build_session(settings, profile=profile, on_state_change=_report, debug_logging=debug_logging)
    if args.thread:
        if not session.open_thread(args.thread):
            print(f"Unknown thread '{args.thread}'", file=sys.stderr)
            return 1
    message = None
    failed = False
    try:
        message = await session.send(args.message)
        failed = session.state.request_status is RequestStatus.ERROR
        if message is not None and args.suggest:
            result = await session.refresh_suggestions()
            if result is not None:
                _print_suggestions(result)
    finally:
        session.threads.flush()
        await session.aclose()
    if message is None:
        print("No response received.", file=sys.stderr)
        return 1
    print(message.content)
    return 1 if failed else 0


async def _run_suggest(settings: Settings, args: argparse.Namespace, *, debug_logging: bool) -> int:
    generator = build_suggestion_generator(settings, debug_logging=debug_logging)
    store = JsonChatStore(settings.resolved_data_dir() / _STORE_FILENAME)
    orchestrator = SuggestionOrchestrator(generator, store)
    profile = UserProfile(language=args.language or "")
    messages = [
        {"role": "user", "content": args.user},
        {"role": "assistant", "content": args.assistant},
    ]
    try:
        result = await orchestrator.generate(messages, profile=profile, force=args.force)
    finally:
        await orchestrator.aclose()
    _print_suggestions(result)
    return 0


def _print_suggestions(result: SuggestionResult, *, stream: TextIO | None = None) -> None:
    destination = stream or sys.stdout
    json.dump(result.to_payload(), destination, ensure_ascii=False, indent=2)
    destination.write("\n")


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="cropwise",
        description="Talk to the Cropwise farming assistant or generate follow-up questions.",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.cropwise/settings.json path.",
    )
    parser.add_argument("--data-dir", metavar="DIR", help="Directory holding the chat store.")
    subcommands = parser.add_subparsers(dest="command", required=True)

    chat = subcommands.add_parser("chat", help="Send one message and print the assistant reply.")
    chat.add_argument("message", help="Message text to send.")
    chat.add_argument("--thread", metavar="ID", help="Continue an existing thread.")
    chat.add_argument("--language", help="Preferred reply language.")
    chat.add_argument("--crop", dest="crops", action="append", default=[], help="Main crop (repeatable).")
    chat.add_argument("--suggest", action="store_true", help="Print follow-up questions after the reply.")

    suggest = subcommands.add_parser("suggest", help="Generate follow-up questions for one exchange.")
    suggest.add_argument("--user", required=True, help="The farmer's message.")
    suggest.add_argument("--assistant", required=True, help="The assistant's reply.")
    suggest.add_argument("--language", help="Preferred question language.")
    suggest.add_argument("--force", action="store_true", help="Ignore cached suggestions.")

    subcommands.add_parser("settings", help="Print the effective settings with secrets redacted.")
    return parser.parse_args(argv)


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["suggestion_api_key"] = redact_secret(settings.suggestion_api_key)
    metadata = {
        "path": str(store.path),
        "key_file": str(store.vault.key_path),
        "environment_variables": _active_env_overrides(),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("CROPWISE_"))
