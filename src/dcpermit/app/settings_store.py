from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dcpermit.app.runtime_paths import app_root, default_data_root

_APP_SETTINGS_DIRNAME = "dcpermit"
_LEGACY_SETTINGS_PATH = app_root() / "config" / "settings.json"


def _resolve_settings_path() -> Path:
    env = os.environ
    if os.name == "nt":
        appdata = str(env.get("APPDATA", "") or "").strip()
        if appdata:
            return Path(appdata) / _APP_SETTINGS_DIRNAME / "config" / "settings.json"
        localappdata = str(env.get("LOCALAPPDATA", "") or "").strip()
        if localappdata:
            return Path(localappdata) / _APP_SETTINGS_DIRNAME / "config" / "settings.json"
    else:
        xdg_config_home = str(env.get("XDG_CONFIG_HOME", "") or "").strip()
        if xdg_config_home:
            return Path(xdg_config_home) / _APP_SETTINGS_DIRNAME / "settings.json"
        home = str(env.get("HOME", "") or "").strip()
        if home:
            return Path(home) / ".config" / _APP_SETTINGS_DIRNAME / "settings.json"

    return _LEGACY_SETTINGS_PATH


_DATA_STORAGE_FOLDER_KEY = "dataStorageFolder"
_DATA_STORAGE_BACKEND_KEY = "dataStorageBackend"
_SUPABASE_URL_KEY = "supabaseUrl"
_SUPABASE_API_KEY = "supabaseApiKey"
_SUPABASE_SCHEMA_KEY = "supabaseSchema"
_SUPABASE_PERMITS_TABLE_KEY = "supabasePermitsTable"
DEFAULT_DATA_STORAGE_BACKEND = "local_sqlite"
DEFAULT_SUPABASE_SCHEMA = "public"
DEFAULT_SUPABASE_PERMITS_TABLE = "work_permits"
SUPPORTED_DATA_STORAGE_BACKENDS: tuple[str, ...] = (
    DEFAULT_DATA_STORAGE_BACKEND,
    "supabase",
)


@dataclass(frozen=True, slots=True)
class SupabaseSettings:
    url: str = ""
    api_key: str = ""
    schema: str = DEFAULT_SUPABASE_SCHEMA
    permits_table: str = DEFAULT_SUPABASE_PERMITS_TABLE

    @property
    def configured(self) -> bool:
        return bool(self.url and self.api_key)

    def to_mapping(self, *, redact_api_key: bool = False) -> dict[str, str]:
        api_key = self.api_key
        if redact_api_key and api_key:
            api_key = "********"
        return {
            "url": self.url,
            "api_key": api_key,
            "schema": self.schema,
            "permits_table": self.permits_table,
        }


def settings_path() -> Path:
    """Settings location; ``DCPERMIT_SETTINGS_PATH`` overrides the platform default."""
    override = str(os.environ.get("DCPERMIT_SETTINGS_PATH", "") or "").strip()
    if override:
        return Path(override).expanduser()
    return _resolve_settings_path()


def load_settings() -> dict[str, Any]:
    path = settings_path()
    if not path.exists():
        return {}
    try:
        raw = path.read_text(encoding="utf-8")
        data = json.loads(raw)
    except (OSError, ValueError):
        return {}
    if not isinstance(data, dict):
        return {}
    return data


def save_settings(settings: dict[str, Any]) -> None:
    path = settings_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(settings, indent=2), encoding="utf-8")


def normalize_data_storage_folder(
    value: str | Path | None,
    *,
    default: Path | None = None,
) -> Path:
    fallback = Path(default) if default is not None else default_data_root()
    candidate: Path
    if isinstance(value, Path):
        candidate = value
    elif isinstance(value, str):
        text = value.strip()
        candidate = Path(text) if text else fallback
    else:
        candidate = fallback

    candidate = candidate.expanduser()
    if not candidate.is_absolute():
        candidate = app_root() / candidate
    try:
        return candidate.resolve()
    except OSError:
        return candidate


def load_data_storage_folder(default: Path | None = None) -> Path:
    fallback = normalize_data_storage_folder(default)
    value = load_settings().get(_DATA_STORAGE_FOLDER_KEY)
    if not isinstance(value, str) or not value.strip():
        return fallback
    return normalize_data_storage_folder(value, default=fallback)


def save_data_storage_folder(value: str | Path | None) -> Path:
    resolved = normalize_data_storage_folder(value)
    settings = load_settings()
    settings[_DATA_STORAGE_FOLDER_KEY] = str(resolved)
    save_settings(settings)
    return resolved


def normalize_data_storage_backend(
    value: str | None,
    *,
    default: str = DEFAULT_DATA_STORAGE_BACKEND,
) -> str:
    fallback = str(default or DEFAULT_DATA_STORAGE_BACKEND).strip().lower()
    if fallback not in SUPPORTED_DATA_STORAGE_BACKENDS:
        fallback = DEFAULT_DATA_STORAGE_BACKEND

    normalized = str(value or "").strip().lower()
    if normalized in SUPPORTED_DATA_STORAGE_BACKENDS:
        return normalized
    return fallback


def load_data_storage_backend(default: str = DEFAULT_DATA_STORAGE_BACKEND) -> str:
    value = load_settings().get(_DATA_STORAGE_BACKEND_KEY)
    return normalize_data_storage_backend(value if isinstance(value, str) else None, default=default)


def save_data_storage_backend(value: str) -> str:
    resolved = normalize_data_storage_backend(value)
    settings = load_settings()
    settings[_DATA_STORAGE_BACKEND_KEY] = resolved
    save_settings(settings)
    return resolved


def normalize_supabase_settings(
    value: SupabaseSettings | dict[str, Any] | None,
) -> SupabaseSettings:
    if isinstance(value, SupabaseSettings):
        raw = value.to_mapping()
    elif isinstance(value, dict):
        raw = value
    else:
        raw = {}

    url = str(raw.get("url", "") or "").strip().rstrip("/")
    api_key = str(raw.get("api_key", "") or "").strip()
    schema = str(raw.get("schema", "") or "").strip() or DEFAULT_SUPABASE_SCHEMA
    permits_table = str(raw.get("permits_table", "") or "").strip() or DEFAULT_SUPABASE_PERMITS_TABLE
    return SupabaseSettings(
        url=url,
        api_key=api_key,
        schema=schema,
        permits_table=permits_table,
    )


def load_supabase_settings(default: SupabaseSettings | None = None) -> SupabaseSettings:
    fallback = normalize_supabase_settings(default)
    settings = load_settings()
    return normalize_supabase_settings(
        {
            "url": settings.get(_SUPABASE_URL_KEY, fallback.url),
            "api_key": settings.get(_SUPABASE_API_KEY, fallback.api_key),
            "schema": settings.get(_SUPABASE_SCHEMA_KEY, fallback.schema),
            "permits_table": settings.get(_SUPABASE_PERMITS_TABLE_KEY, fallback.permits_table),
        }
    )


def save_supabase_settings(value: SupabaseSettings | dict[str, Any]) -> SupabaseSettings:
    normalized = normalize_supabase_settings(value)
    settings = load_settings()
    settings[_SUPABASE_URL_KEY] = normalized.url
    settings[_SUPABASE_API_KEY] = normalized.api_key
    settings[_SUPABASE_SCHEMA_KEY] = normalized.schema
    settings[_SUPABASE_PERMITS_TABLE_KEY] = normalized.permits_table
    save_settings(settings)
    return normalized
