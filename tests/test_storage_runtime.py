"""Tests for settings persistence and permit store selection."""

import pytest

from dcpermit.app import settings_store
from dcpermit.app.data_store import LocalSqlitePermitStore, SupabasePermitStore
from dcpermit.app.settings_store import SupabaseSettings
from dcpermit.app.storage_runtime import (
    build_storage_runtime,
    build_storage_runtime_from_settings,
    resolve_supabase_settings,
)


@pytest.fixture
def settings_file(tmp_path, monkeypatch):
    path = tmp_path / "config" / "settings.json"
    monkeypatch.setenv("DCPERMIT_SETTINGS_PATH", str(path))
    return path


def test_settings_round_trip(settings_file, tmp_path):
    assert settings_store.load_settings() == {}
    assert settings_store.save_data_storage_backend("SUPABASE") == "supabase"
    saved_folder = settings_store.save_data_storage_folder(tmp_path / "permits")
    settings_store.save_supabase_settings({"url": "https://x.supabase.co/", "api_key": "k"})

    assert settings_file.exists()
    assert settings_store.load_data_storage_backend() == "supabase"
    assert settings_store.load_data_storage_folder() == saved_folder
    assert settings_store.load_supabase_settings() == SupabaseSettings(url="https://x.supabase.co", api_key="k")


def test_corrupt_settings_file_reads_as_empty(settings_file):
    settings_file.parent.mkdir(parents=True)
    settings_file.write_text("{not json", encoding="utf-8")
    assert settings_store.load_settings() == {}
    assert settings_store.load_data_storage_backend() == "local_sqlite"


def test_unknown_backend_normalizes_to_default():
    assert settings_store.normalize_data_storage_backend("postgres") == "local_sqlite"
    assert settings_store.normalize_data_storage_backend(" Supabase ") == "supabase"


def test_supabase_settings_redact_api_key():
    settings = SupabaseSettings(url="https://x", api_key="secret")
    assert settings.to_mapping(redact_api_key=True)["api_key"] == "********"


def test_environment_fills_missing_supabase_settings():
    resolved = resolve_supabase_settings(
        None,
        environ={
            "VITE_SUPABASE_URL": "https://env.supabase.co",
            "VITE_SUPABASE_ANON_KEY": "anon",
            "DCPERMIT_SUPABASE_TABLE": "dc_permits",
        },
    )
    assert resolved.url == "https://env.supabase.co"
    assert resolved.api_key == "anon"
    assert resolved.permits_table == "dc_permits"


def test_saved_settings_win_over_environment():
    resolved = resolve_supabase_settings(
        SupabaseSettings(url="https://saved.supabase.co", api_key="saved", permits_table="mine"),
        environ={"SUPABASE_URL": "https://env.supabase.co", "DCPERMIT_SUPABASE_TABLE": "other"},
    )
    assert resolved.url == "https://saved.supabase.co"
    assert resolved.permits_table == "mine"


def test_supabase_without_credentials_falls_back_to_sqlite(tmp_path):
    runtime = build_storage_runtime(backend="supabase", data_root=tmp_path, environ={})
    assert runtime.backend == "local_sqlite"
    assert isinstance(runtime.permit_store, LocalSqlitePermitStore)
    assert runtime.warnings


def test_supabase_with_credentials_builds_rest_store(tmp_path):
    runtime = build_storage_runtime(
        backend="supabase",
        data_root=tmp_path,
        environ={"SUPABASE_URL": "https://env.supabase.co", "SUPABASE_ANON_KEY": "anon"},
    )
    assert runtime.backend == "supabase"
    assert isinstance(runtime.permit_store, SupabasePermitStore)
    assert runtime.permit_store.config.table == "work_permits"
    assert runtime.warnings == ()


def test_runtime_from_saved_settings(settings_file, tmp_path):
    settings_store.save_data_storage_folder(tmp_path / "store")
    runtime = build_storage_runtime_from_settings(environ={})
    assert runtime.backend == "local_sqlite"
    assert runtime.data_root == (tmp_path / "store").resolve()
