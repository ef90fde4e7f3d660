from __future__ import annotations

import httpx
from fastapi.testclient import TestClient
import pytest

from backend.app import main
from backend.app.config import Settings
from backend.app.services import build_services


class VendorStub:
    """Fake vendor endpoints keyed by host; records every outbound request."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.failures: dict[str, int] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        status = self.failures.get(host)
        if status:
            return httpx.Response(status, json={"error": {"message": f"{host} failed"}})
        if host == "openai.test":
            return httpx.Response(
                200,
                json={
                    "model": "gpt-test",
                    "choices": [{"message": {"content": "from openai"}, "finish_reason": "stop"}],
                    "usage": {"prompt_tokens": 5, "completion_tokens": 2},
                },
            )
        if host == "anthropic.test":
            return httpx.Response(
                200,
                json={
                    "model": "claude-test",
                    "content": [{"type": "text", "text": "from anthropic"}],
                    "stop_reason": "end_turn",
                },
            )
        return httpx.Response(
            200,
            json={"candidates": [{"content": {"parts": [{"text": "from google"}]}, "finishReason": "STOP"}]},
        )

    def hosts(self) -> list[str]:
        return [request.url.host for request in self.requests]


@pytest.fixture
def vendor() -> VendorStub:
    return VendorStub()


@pytest.fixture
def api_client(monkeypatch, tmp_path, vendor):
    """Build a FastAPI test client over a real service graph and stubbed vendors."""

    settings = Settings(
        _env_file=None,
        CONTENT_FLOW_MASTER_KEY="test-master-key",
        SETTINGS_FILE=str(tmp_path / "settings.json"),
        OPENAI_BASE_URL="https://openai.test/v1",
        ANTHROPIC_BASE_URL="https://anthropic.test/v1",
        GOOGLE_BASE_URL="https://google.test/v1beta",
    )
    http_client = httpx.Client(transport=httpx.MockTransport(vendor))
    monkeypatch.setattr(main, "settings", settings)
    monkeypatch.setattr(main, "setup_logging", lambda *_args, **_kwargs: None)
    monkeypatch.setattr(main, "build_services", lambda cfg: build_services(cfg, http_client=http_client))

    with TestClient(main.app) as client:
        yield client


def settings_form(**overrides) -> dict:
    form = {
        "default_provider": "openai",
        "cache_enabled": True,
        "requests_per_minute": 10,
        "cache_ttl_seconds": 1800,
        "rate_limit_enabled": True,
        "max_content_length": 5000,
        "api_keys": {},
    }
    form.update(overrides)
    return form


def test_settings_defaults_on_first_read(api_client):
    response = api_client.get("/api/settings")

    assert response.status_code == 200
    payload = response.json()
    assert payload["default_provider"] == "openai"
    assert payload["requests_per_minute"] == 10
    assert payload["api_keys"] == {"openai": "", "anthropic": "", "google": ""}
    assert payload["configured"] == {"openai": False, "anthropic": False, "google": False}
    assert payload["version"] == 1


def test_put_settings_round_trip_matches_next_get(api_client):
    form = settings_form(
        default_provider="anthropic",
        cache_enabled=False,
        requests_per_minute=25,
        api_keys={"anthropic": "sk-ant-REDACTED"},
    )

    saved = api_client.put("/api/settings", json=form)
    fetched = api_client.get("/api/settings")

    assert saved.status_code == 200
    assert saved.json() == fetched.json()
    payload = fetched.json()
    assert payload["default_provider"] == "anthropic"
    assert payload["cache_enabled"] is False
    assert payload["requests_per_minute"] == 25
    assert payload["configured"]["anthropic"] is True
    assert payload["api_keys"]["anthropic"].startswith("sk-")
    assert "sk-ant-REDACTED" not in fetched.text


def test_put_settings_keeps_clears_and_sets_keys(api_client):
    api_client.put(
        "/api/settings",
        json=settings_form(api_keys={"openai": "sk-openai-1234567890", "google": "g-key-1234567890"}),
    )

    response = api_client.put(
        "/api/settings",
        json=settings_form(api_keys={"openai": None, "google": ""}),
    )

    configured = response.json()["configured"]
    assert configured == {"openai": True, "anthropic": False, "google": False}


def test_put_settings_rejects_out_of_range_value(api_client):
    before = api_client.get("/api/settings").json()

    response = api_client.put("/api/settings", json=settings_form(requests_per_minute=0))

    assert response.status_code == 400
    assert response.json()["detail"]["field"] == "requests_per_minute"
    assert api_client.get("/api/settings").json() == before


def test_put_settings_rejects_unknown_provider(api_client):
    response = api_client.put("/api/settings", json=settings_form(default_provider="mistral"))

    assert response.status_code == 400
    assert response.json()["detail"]["field"] == "default_provider"


def test_malformed_body_is_400(api_client):
    response = api_client.put("/api/settings", json={"default_provider": "openai"})

    assert response.status_code == 400


def test_generate_without_provider_is_400_with_hint(api_client, vendor):
    response = api_client.post("/api/generate", json={"prompt": "Hello"})

    assert response.status_code == 400
    assert "Possible fix" in response.json()["detail"]
    assert vendor.requests == []


def test_generate_then_cached_repeat(api_client, vendor):
    api_client.put("/api/settings", json=settings_form(api_keys={"openai": "sk-openai-1234567890"}))

    first = api_client.post("/api/generate", json={"prompt": "Write a tagline"})
    second = api_client.post("/api/generate", json={"prompt": "Write a tagline"})

    assert first.status_code == 200
    assert first.json()["text"] == "from openai"
    assert first.json()["cached"] is False
    assert first.json()["completion_tokens"] == 2
    assert second.json()["cached"] is True
    assert vendor.hosts() == ["openai.test"]


def test_improve_uses_requested_provider(api_client, vendor):
    api_client.put(
        "/api/settings",
        json=settings_form(api_keys={"openai": "sk-openai-1234567890", "google": "g-key-1234567890"}),
    )

    response = api_client.post(
        "/api/improve",
        json={"content": "teh draft", "mode": "grammar", "provider": "google"},
    )

    assert response.status_code == 200
    assert response.json()["provider"] == "google"
    assert response.json()["text"] == "from google"


def test_improve_rejects_unknown_mode(api_client):
    response = api_client.post("/api/improve", json={"content": "draft", "mode": "poetry"})

    assert response.status_code == 400


def test_generate_over_length_is_400(api_client):
    api_client.put(
        "/api/settings",
        json=settings_form(max_content_length=100, api_keys={"openai": "sk-openai-1234567890"}),
    )

    response = api_client.post("/api/generate", json={"prompt": "x" * 101})

    assert response.status_code == 400
    assert response.json()["detail"]["field"] == "prompt"


def test_rate_limited_request_is_429_with_retry_after(api_client):
    api_client.put(
        "/api/settings",
        json=settings_form(requests_per_minute=1, api_keys={"openai": "sk-openai-1234567890"}),
    )

    api_client.post("/api/generate", json={"prompt": "one"})
    response = api_client.post("/api/generate", json={"prompt": "two"})

    assert response.status_code == 429
    assert 1 <= int(response.headers["Retry-After"]) <= 60


def test_fallback_response_reports_both_providers(api_client, vendor):
    api_client.put(
        "/api/settings",
        json=settings_form(
            api_keys={"openai": "sk-openai-1234567890", "anthropic": "sk-ant-1234567890"}
        ),
    )
    vendor.failures["openai.test"] = 503

    response = api_client.post("/api/generate", json={"prompt": "Hello"})

    assert response.status_code == 200
    assert response.json()["provider"] == "anthropic"
    assert response.json()["fallback_from"] == "openai"
    assert vendor.hosts() == ["openai.test", "anthropic.test"]


def test_auth_failure_is_502_without_fallback(api_client, vendor):
    api_client.put(
        "/api/settings",
        json=settings_form(
            api_keys={"openai": "sk-openai-1234567890", "anthropic": "sk-ant-1234567890"}
        ),
    )
    vendor.failures["openai.test"] = 401

    response = api_client.post("/api/generate", json={"prompt": "Hello"})

    assert response.status_code == 502
    assert response.json()["detail"]["kind"] == "auth_failed"
    assert vendor.hosts() == ["openai.test"]


def test_all_providers_failed_is_502(api_client, vendor):
    api_client.put(
        "/api/settings",
        json=settings_form(
            api_keys={"openai": "sk-openai-1234567890", "google": "g-key-1234567890"}
        ),
    )
    vendor.failures["openai.test"] = 500
    vendor.failures["google.test"] = 504

    response = api_client.post("/api/generate", json={"prompt": "Hello"})

    assert response.status_code == 502
    assert len(response.json()["detail"]["errors"]) == 2


def test_status_reports_configuration_without_credentials(api_client):
    api_client.put(
        "/api/settings",
        json=settings_form(api_keys={"openai": "sk-openai-1234567890"}),
    )
    api_client.post("/api/generate", json={"prompt": "Hello"})

    response = api_client.get("/api/status")

    payload = response.json()
    assert response.status_code == 200
    assert payload["providers"] == {"openai": True, "anthropic": False, "google": False}
    assert payload["default_provider"] == "openai"
    assert payload["cache"]["size"] == 1
    assert payload["cache"]["ttl_seconds"] == 1800
    assert payload["rate_limit"]["window_usage"] == {"openai": 1}
    assert payload["settings_version"] == 2
    assert "sk-openai" not in response.text


def test_delete_cache_clears_entries(api_client, vendor):
    api_client.put("/api/settings", json=settings_form(api_keys={"openai": "sk-openai-1234567890"}))
    api_client.post("/api/generate", json={"prompt": "Hello"})

    cleared = api_client.delete("/api/cache")
    again = api_client.post("/api/generate", json={"prompt": "Hello"})

    assert cleared.json() == {"cleared": 1}
    assert again.json()["cached"] is False
    assert len(vendor.requests) == 2


def test_provider_connection_test(api_client, vendor):
    api_client.put("/api/settings", json=settings_form(api_keys={"anthropic": "sk-ant-1234567890"}))

    ok = api_client.post("/api/providers/anthropic/test")
    vendor.failures["anthropic.test"] = 401
    failed = api_client.post("/api/providers/anthropic/test")
    missing = api_client.post("/api/providers/google/test")
    unknown = api_client.post("/api/providers/mistral/test")

    assert ok.json() == {"provider": "anthropic", "operational": True, "model": "claude-test", "error": None}
    assert failed.status_code == 200
    assert failed.json()["operational"] is False
    assert "auth_failed" in failed.json()["error"]
    assert missing.status_code == 400
    assert unknown.status_code == 400


def test_startup_fails_without_master_key(monkeypatch, tmp_path):
    settings = Settings(_env_file=None, SETTINGS_FILE=str(tmp_path / "settings.json"))
    monkeypatch.setattr(main, "settings", settings)
    monkeypatch.setattr(main, "setup_logging", lambda *_args, **_kwargs: None)

    with pytest.raises(RuntimeError, match="CONTENT_FLOW_MASTER_KEY"):
        with TestClient(main.app):
            pass
