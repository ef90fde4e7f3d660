from __future__ import annotations

import importlib.util
import warnings

from backend.app import config
from backend.app.config import Settings, get_settings


def test_get_settings_reads_environment(monkeypatch):
    monkeypatch.setenv("CONTENT_FLOW_MASTER_KEY", "master")
    monkeypatch.setenv("SETTINGS_BACKEND", "couchdb")
    monkeypatch.setenv("SETTINGS_FILE", "/tmp/settings.json")
    monkeypatch.setenv("COUCHDB_URL", "http://example.test:5984")
    monkeypatch.setenv("COUCHDB_DB", "db-test")
    monkeypatch.setenv("SETTINGS_DOC_ID", "doc-test")
    monkeypatch.setenv("PROVIDER_TIMEOUT_SECONDS", "12.5")
    monkeypatch.setenv("CACHE_MAX_ENTRIES", "64")
    monkeypatch.setenv("CACHE_HITS_CONSUME_RATE_LIMIT", "true")
    monkeypatch.setenv("OPENAI_BASE_URL", "http://openai.test/v1")
    monkeypatch.setenv("ANTHROPIC_MODEL", "claude-test")
    monkeypatch.setenv("GOOGLE_MODEL", "gemini-test")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("LOG_FILE", "/tmp/app.log")

    settings = get_settings()

    assert settings.master_key == "master"
    assert settings.settings_backend == "couchdb"
    assert settings.settings_file == "/tmp/settings.json"
    assert settings.couchdb_url == "http://example.test:5984"
    assert settings.couchdb_db == "db-test"
    assert settings.settings_doc_id == "doc-test"
    assert settings.provider_timeout_seconds == 12.5
    assert settings.cache_max_entries == 64
    assert settings.cache_hits_consume_rate_limit is True
    assert settings.openai_base_url == "http://openai.test/v1"
    assert settings.anthropic_model == "claude-test"
    assert settings.google_model == "gemini-test"
    assert settings.log_level == "DEBUG"
    assert settings.log_file == "/tmp/app.log"


def test_defaults_without_environment(monkeypatch):
    for name in ("CONTENT_FLOW_MASTER_KEY", "SETTINGS_BACKEND", "CACHE_HITS_CONSUME_RATE_LIMIT"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings(_env_file=None)

    assert settings.master_key == ""
    assert settings.settings_backend == "file"
    assert settings.provider_timeout_seconds == 30.0
    assert settings.cache_hits_consume_rate_limit is False


def test_get_settings_is_cached(monkeypatch):
    monkeypatch.setenv("OPENAI_MODEL", "first")
    first = get_settings()

    monkeypatch.setenv("OPENAI_MODEL", "second")
    second = get_settings()

    assert first is second
    assert second.openai_model == "first"


def test_settings_fields_do_not_trigger_namespace_warnings():
    module_spec = importlib.util.spec_from_file_location("config_fresh", config.__file__)
    fresh = importlib.util.module_from_spec(module_spec)

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        module_spec.loader.exec_module(fresh)

    assert [str(warning.message) for warning in caught if "namespace" in str(warning.message)] == []
