from __future__ import annotations
"""Application settings persistence helpers."""

from dataclasses import asdict, dataclass
import json
from pathlib import Path

SIGN_VERSIONS = ("v1", "v4")
LOG_LEVELS = ("", "info", "debug")


@dataclass
class AppSettings:
    """Defaults applied when a command line flag is not given."""

    retry_times: int = 10
    connect_timeout: int = 120
    read_timeout: int = 1200
    sign_version: str = "v1"
    loglevel: str = ""
    default_profile: str = ""


def _positive_int(value: object, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    if number <= 0:
        return default
    return number


def _choice(value: object, choices: tuple[str, ...], default: str) -> str:
    if not isinstance(value, str):
        return default
    normalized = value.strip().lower()
    return normalized if normalized in choices else default


class SettingsStorage:
    """JSON-backed persistence for :class:`AppSettings`."""

    def __init__(self, storage_path: str | Path | None = None):
        if storage_path is None:
            storage_path = Path.home() / ".pyoss_settings.json"
        self._path = Path(storage_path)

    def load(self) -> AppSettings:
        if not self._path.exists():
            return AppSettings()
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return AppSettings()
        if not isinstance(data, dict):
            return AppSettings()
        default_profile = data.get("default_profile", "")
        return AppSettings(
            retry_times=_positive_int(data.get("retry_times"), AppSettings.retry_times),
            connect_timeout=_positive_int(data.get("connect_timeout"), AppSettings.connect_timeout),
            read_timeout=_positive_int(data.get("read_timeout"), AppSettings.read_timeout),
            sign_version=_choice(data.get("sign_version"), SIGN_VERSIONS, AppSettings.sign_version),
            loglevel=_choice(data.get("loglevel"), LOG_LEVELS, AppSettings.loglevel),
            default_profile=default_profile if isinstance(default_profile, str) else "",
        )

    def save(self, settings: AppSettings) -> None:
        payload = asdict(settings)
        payload["retry_times"] = max(int(settings.retry_times), 1)
        payload["connect_timeout"] = max(int(settings.connect_timeout), 1)
        payload["read_timeout"] = max(int(settings.read_timeout), 1)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
