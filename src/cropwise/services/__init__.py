"""Service layer helpers (settings, storage, telemetry)."""

from .settings import RetryPolicy, Settings, SettingsStore

__all__ = ["RetryPolicy", "Settings", "SettingsStore"]
