"""Tests for the settings persistence layer."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from cropwise.services.settings import RetryPolicy, SecretVault, Settings, SettingsStore, redact_secret


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "CROPWISE_CHAT_URL",
        "CROPWISE_SUGGESTION_BASE_URL",
        "CROPWISE_SUGGESTION_API_KEY",
        "CROPWISE_SUGGESTION_MODEL",
        "CROPWISE_DATA_DIR",
        "CROPWISE_DEBUG_LOGGING",
        "CROPWISE_REQUEST_TIMEOUT",
        "CROPWISE_TEMPERATURE",
        "CROPWISE_MAX_RETRIES",
    ):
        monkeypatch.delenv(name, raising=False)


def test_load_returns_defaults_when_file_missing(tmp_path: Path) -> None:
    store = SettingsStore(tmp_path / "settings.json", vault=SecretVault(key_path=tmp_path / "key"))

    assert store.load() == Settings()


def test_save_and_load_roundtrip_encrypts_api_key(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    store = SettingsStore(path)
    original = Settings(
        chat_url="https://farm.example/api/chat",
        suggestion_api_key="super-secret",
        suggestion_model="sarvam-m",
        max_retries=4,
        default_headers={"X-Test": "1"},
    )

    store.save(original)
    raw = json.loads(path.read_text(encoding="utf-8"))
    reloaded = SettingsStore(path).load()

    assert "suggestion_api_key" not in raw
    assert raw["suggestion_api_key_ciphertext"]
    assert raw["version"] == 1
    assert "super-secret" not in path.read_text(encoding="utf-8")
    assert reloaded == original


def test_plaintext_api_key_in_file_is_ignored(tmp_path: Path) -> None:
    target = tmp_path / "settings.json"
    target.write_text(
        json.dumps({"suggestion_api_key": "plain-key", "suggestion_model": "sarvam-m"}),
        encoding="utf-8",
    )

    settings = SettingsStore(target).load()

    assert settings.suggestion_api_key == ""
    assert settings.suggestion_model == "sarvam-m"


def test_key_from_another_vault_is_dropped(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    SettingsStore(path, vault=SecretVault(tmp_path / "old.key")).save(Settings(suggestion_api_key="secret"))

    settings = SettingsStore(path, vault=SecretVault(tmp_path / "new.key")).load()

    assert settings.suggestion_api_key == ""


def test_unknown_fields_are_ignored(tmp_path: Path) -> None:
    target = tmp_path / "settings.json"
    target.write_text(json.dumps({"version": 1, "theme": "dark", "temperature": 0.2}), encoding="utf-8")

    settings = SettingsStore(target).load()

    assert settings.temperature == 0.2


def test_environment_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CROPWISE_CHAT_URL", "https://env.example/api/chat")
    monkeypatch.setenv("CROPWISE_DEBUG_LOGGING", "yes")
    monkeypatch.setenv("CROPWISE_MAX_RETRIES", "5")
    monkeypatch.setenv("CROPWISE_TEMPERATURE", "0.3")
    monkeypatch.setenv("CROPWISE_REQUEST_TIMEOUT", "not-a-number")

    settings = SettingsStore(tmp_path / "settings.json").load()

    assert settings.chat_url == "https://env.example/api/chat"
    assert settings.debug_logging is True
    assert settings.max_retries == 5
    assert settings.temperature == 0.3
    assert settings.request_timeout == Settings().request_timeout


def test_cli_overrides_apply_before_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = SettingsStore(tmp_path / "settings.json")
    store.save(Settings(suggestion_model="stored-model"))
    monkeypatch.setenv("CROPWISE_DATA_DIR", "/srv/env")

    settings = store.load(overrides={"data_dir": "/srv/cli", "suggestion_model": None, "bogus": 1})

    assert settings.suggestion_model == "stored-model"
    assert settings.resolved_data_dir() == Path("/srv/env")


def test_retry_policy_from_settings() -> None:
    settings = Settings(max_retries=3, rate_limit_backoff_base=3.0, status_backoff_step=0.5)

    policy = settings.retry_policy()

    assert policy == RetryPolicy(max_retries=3, rate_limit_base_seconds=3.0, status_step_seconds=0.5)
    assert policy.max_attempts == 4
    assert policy.rate_limit_delay(3) == 9.0


def test_vault_round_trip(tmp_path: Path) -> None:
    vault = SecretVault(tmp_path / "settings.key")

    token = vault.encrypt("api-123")

    assert token != "api-123"
    assert vault.decrypt(token) == "api-123"
    assert vault.encrypt("") == ""
    assert vault.decrypt(None) == ""
    assert SecretVault(tmp_path / "settings.key").decrypt(token) == "api-123"
    assert (tmp_path / "settings.key").exists()


def test_vault_rejects_garbage_token(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        SecretVault(tmp_path / "settings.key").decrypt("not-a-token")


@pytest.mark.parametrize(
    ("value", "expected"),
    [("", ""), ("abc", "***"), ("sk-12345678", "sk*******78")],
)
def test_redact_secret(value: str, expected: str) -> None:
    assert redact_secret(value) == expected
