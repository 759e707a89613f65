from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from dcpermit.app.data_store import (
    BACKEND_LOCAL_SQLITE,
    BACKEND_SUPABASE,
    PermitStore,
    SupabasePermitStoreConfig,
    create_permit_store,
)
from dcpermit.app.settings_store import (
    DEFAULT_SUPABASE_PERMITS_TABLE,
    DEFAULT_SUPABASE_SCHEMA,
    SupabaseSettings,
    load_data_storage_backend,
    load_data_storage_folder,
    load_supabase_settings,
    normalize_data_storage_backend,
    normalize_supabase_settings,
)


@dataclass(frozen=True, slots=True)
class StorageRuntimeSelection:
    backend: str
    data_root: Path
    permit_store: PermitStore
    supabase_settings: SupabaseSettings
    warnings: tuple[str, ...] = ()


def build_storage_runtime(
    *,
    backend: str,
    data_root: Path | str,
    supabase_settings: SupabaseSettings | None = None,
    environ: Mapping[str, str] | None = None,
) -> StorageRuntimeSelection:
    normalized_backend = normalize_data_storage_backend(backend, default=BACKEND_LOCAL_SQLITE)
    normalized_root = _normalize_path(Path(data_root))
    resolved_supabase = resolve_supabase_settings(supabase_settings, environ=environ)
    warnings: list[str] = []

    effective_backend = normalized_backend
    store_config: SupabasePermitStoreConfig | None = None
    if effective_backend == BACKEND_SUPABASE:
        if not resolved_supabase.configured:
            effective_backend = BACKEND_LOCAL_SQLITE
            warnings.append(
                "Supabase backend is selected, but URL/API key is missing. "
                "Falling back to local SQLite storage."
            )
        else:
            store_config = SupabasePermitStoreConfig.from_mapping(
                {
                    "url": resolved_supabase.url,
                    "api_key": resolved_supabase.api_key,
                    "schema": resolved_supabase.schema,
                    "table": resolved_supabase.permits_table,
                }
            )

    permit_store = create_permit_store(
        effective_backend,
        normalized_root,
        supabase_config=store_config,
    )
    return StorageRuntimeSelection(
        backend=effective_backend,
        data_root=normalized_root,
        permit_store=permit_store,
        supabase_settings=resolved_supabase,
        warnings=tuple(warnings),
    )


def build_storage_runtime_from_settings(
    *,
    environ: Mapping[str, str] | None = None,
) -> StorageRuntimeSelection:
    """Select the permit store from the saved settings file and the environment."""
    return build_storage_runtime(
        backend=load_data_storage_backend(),
        data_root=load_data_storage_folder(),
        supabase_settings=load_supabase_settings(),
        environ=environ,
    )


def resolve_supabase_settings(
    value: SupabaseSettings | None,
    *,
    environ: Mapping[str, str] | None = None,
) -> SupabaseSettings:
    stored = normalize_supabase_settings(value)
    env = os.environ if environ is None else environ

    url = stored.url or _first_env(
        env,
        (
            "DCPERMIT_SUPABASE_URL",
            "SUPABASE_URL",
            "VITE_SUPABASE_URL",
        ),
    )
    api_key = stored.api_key or _first_env(
        env,
        (
            "DCPERMIT_SUPABASE_API_KEY",
            "SUPABASE_SERVICE_ROLE_KEY",
            "SUPABASE_ANON_KEY",
            "VITE_SUPABASE_ANON_KEY",
        ),
    )
    # Stored values are already defaulted; the environment only overrides a default.
    schema = stored.schema
    if schema == DEFAULT_SUPABASE_SCHEMA:
        schema = _first_env(env, ("DCPERMIT_SUPABASE_SCHEMA",)) or schema
    permits_table = stored.permits_table
    if permits_table == DEFAULT_SUPABASE_PERMITS_TABLE:
        permits_table = _first_env(env, ("DCPERMIT_SUPABASE_TABLE",)) or permits_table

    return normalize_supabase_settings(
        {
            "url": url,
            "api_key": api_key,
            "schema": schema,
            "permits_table": permits_table,
        }
    )


def _first_env(values: Mapping[str, str], keys: tuple[str, ...]) -> str:
    for key in keys:
        value = str(values.get(key, "") or "").strip()
        if value:
            return value
    return ""


def _normalize_path(path: Path) -> Path:
    expanded = path.expanduser()
    try:
        return expanded.resolve()
    except OSError:
        return expanded
