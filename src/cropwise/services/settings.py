"""Runtime settings for the Cropwise client and their on-disk form."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "RetryPolicy",
    "DEFAULT_DATA_DIR",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
DEFAULT_DATA_DIR = Path.home() / ".cropwise"
_DEFAULT_SETTINGS_PATH = DEFAULT_DATA_DIR / "settings.json"
_SETTINGS_VERSION = 1
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_API_KEY_FIELD = "suggestion_api_key_ciphertext"


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in _TRUE_VALUES


# environment variable -> (Settings field, parser)
_ENV_OVERRIDES: Mapping[str, tuple[str, Callable[[str], Any]]] = {
    "CROPWISE_CHAT_URL": ("chat_url", str),
    "CROPWISE_SUGGESTION_BASE_URL": ("suggestion_base_url", str),
    "CROPWISE_SUGGESTION_API_KEY": ("suggestion_api_key", str),
    "CROPWISE_SUGGESTION_MODEL": ("suggestion_model", str),
    "CROPWISE_DATA_DIR": ("data_dir", str),
    "CROPWISE_DEBUG_LOGGING": ("debug_logging", _parse_bool),
    "CROPWISE_REQUEST_TIMEOUT": ("request_timeout", float),
    "CROPWISE_TEMPERATURE": ("temperature", float),
    "CROPWISE_MAX_RETRIES": ("max_retries", int),
}


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Backoff schedule for the suggestion upstream.

    ``attempt`` below is the 1-based number of the attempt that just failed.
    """

    max_retries: int = 2
    rate_limit_base_seconds: float = 2.0
    status_step_seconds: float = 0.75
    network_step_seconds: float = 1.0

    @property
    def max_attempts(self) -> int:
        return max(0, self.max_retries) + 1

    def rate_limit_delay(self, attempt: int) -> float:
        """Exponential wait after a 429: 1s, 2s, 4s... for base 2."""

        return float(self.rate_limit_base_seconds ** max(0, attempt - 1))

    def status_delay(self, attempt: int) -> float:
        return self.status_step_seconds * max(1, attempt)

    def network_delay(self, attempt: int) -> float:
        return self.network_step_seconds * max(1, attempt)


@dataclass(slots=True)
class Settings:
    """Chat endpoint, suggestion upstream and local storage options."""

    chat_url: str = "http://localhost:3000/api/chat"
    suggestion_base_url: str = "https://api.sarvam.ai/v1"
    suggestion_api_key: str = ""
    suggestion_model: str = "sarvam-m"
    suggestion_auth_header: str = "api-subscription-key"
    temperature: float = 0.7
    max_tokens: int = 1000
    request_timeout: float = 90.0
    suggestion_timeout: float = 30.0
    max_retries: int = 2
    rate_limit_backoff_base: float = 2.0
    status_backoff_step: float = 0.75
    network_backoff_step: float = 1.0
    message_char_limit: int = 500
    max_suggestions: int = 4
    thread_save_debounce: float = 0.1
    data_dir: str | None = None
    debug_logging: bool = False
    default_headers: dict[str, str] = field(default_factory=dict)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=max(0, int(self.max_retries)),
            rate_limit_base_seconds=self.rate_limit_backoff_base,
            status_step_seconds=self.status_backoff_step,
            network_step_seconds=self.network_backoff_step,
        )

    def resolved_data_dir(self) -> Path:
        return Path(self.data_dir).expanduser() if self.data_dir else DEFAULT_DATA_DIR


class SecretVault:
    """Fernet encryption for the suggestion API key.

    The key lives in its own file beside the settings and is created with
    owner-only permissions on first use.
    """

    def __init__(self, key_path: Path) -> None:
        self._key_path = key_path
        self._fernet: Fernet | None = None

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        return self._cipher().encrypt(secret.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str | None) -> str:
        """Return the plaintext; raises :class:`ValueError` for a foreign or damaged token."""

        if not token:
            return ""
        try:
            return self._cipher().decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeEncodeError) as exc:
            raise ValueError(f"API key cannot be decrypted with {self._key_path}") from exc

    def _cipher(self) -> Fernet:
        if self._fernet is None:
            if self._key_path.exists():
                key = self._key_path.read_bytes().strip()
            else:
                key = Fernet.generate_key()
                self._key_path.parent.mkdir(parents=True, exist_ok=True)
                self._key_path.write_bytes(key)
                if os.name != "nt":  # pragma: no cover - depends on OS
                    os.chmod(self._key_path, 0o600)
            self._fernet = Fernet(key)
        return self._fernet


class SettingsStore:
    """Reads and writes :class:`Settings` as JSON with an encrypted API key."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Stored values, then CLI *overrides*, then ``CROPWISE_*`` variables."""

        settings = self._read()
        if overrides:
            settings = _with_overrides(settings, overrides, source="CLI")
        env_values = self._environment_values()
        if env_values:
            settings = _with_overrides(settings, env_values, source="environment")
        return settings

    def save(self, settings: Settings) -> Path:
        """Write *settings* through a temporary file so readers never see half a file."""

        data = asdict(settings)
        api_key = data.pop("suggestion_api_key", "")
        if api_key:
            data[_API_KEY_FIELD] = self._vault.encrypt(api_key)
        data["version"] = _SETTINGS_VERSION

        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read(self) -> Settings:
        if not self._path.exists():
            return Settings()
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return Settings()
        if not isinstance(payload, Mapping):
            return Settings()

        known = {item.name for item in fields(Settings)} - {"suggestion_api_key"}
        settings = _with_overrides(Settings(), {k: v for k, v in payload.items() if k in known}, source="file")
        try:
            api_key = self._vault.decrypt(payload.get(_API_KEY_FIELD))
        except ValueError as exc:
            LOGGER.warning("Ignoring stored API key: %s", exc)
            api_key = ""
        return replace(settings, suggestion_api_key=api_key) if api_key else settings

    @staticmethod
    def _environment_values() -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for env_name, (field_name, parse) in _ENV_OVERRIDES.items():
            raw = os.environ.get(env_name)
            if raw is None:
                continue
            try:
                values[field_name] = parse(raw)
            except ValueError:
                LOGGER.warning("Ignoring %s=%r: expected %s", env_name, raw, parse.__name__)
        return values


def _with_overrides(settings: Settings, values: Mapping[str, Any], *, source: str) -> Settings:
    known = {item.name for item in fields(Settings)}
    accepted = {key: value for key, value in values.items() if key in known and value is not None}
    if not accepted:
        return settings
    LOGGER.debug("Applying %s settings: %s", source, sorted(accepted))
    return replace(settings, **accepted)


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
