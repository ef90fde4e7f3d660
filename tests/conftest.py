from __future__ import annotations

import pytest

from backend.app.config import get_settings
from backend.app.errors import ProviderError
from backend.app.prompts import load_prompt
from backend.app.providers import Completion
from backend.app.secret_codec import SecretCodec, derive_fernet_key
from backend.app.settings_store import JsonFileSettingsBackend, SettingsStore

MASTER_KEY = "test-master-key"


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    get_settings.cache_clear()
    load_prompt.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(scope="session")
def fernet_key() -> bytes:
    return derive_fernet_key(MASTER_KEY)


@pytest.fixture
def codec(fernet_key) -> SecretCodec:
    return SecretCodec(fernet_key)


@pytest.fixture
def settings_path(tmp_path):
    return tmp_path / "settings.json"


@pytest.fixture
def store(settings_path, codec) -> SettingsStore:
    return SettingsStore(JsonFileSettingsBackend(settings_path), codec)


class FakeAdapter:
    """Adapter double that records calls and replays scripted outcomes."""

    def __init__(self, provider, outcomes=None) -> None:
        self.provider = provider
        self.outcomes = list(outcomes or [])
        self.calls: list[tuple] = []

    def _next(self, operation: str, text: str) -> Completion:
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, ProviderError):
                raise outcome
            return outcome
        return Completion(
            text=f"{self.provider.value}:{operation}:{text}",
            model=f"{self.provider.value}-model",
            finish_reason="stop",
        )

    def generate(self, prompt, options):
        self.calls.append(("generate", prompt, options))
        return self._next("generate", prompt)

    def improve(self, content, mode, options):
        self.calls.append(("improve", content, mode, options))
        return self._next("improve", content)


class FakeAdapterFactory:
    """Hands out one ``FakeAdapter`` per provider and records revealed keys."""

    def __init__(self) -> None:
        self.adapters: dict = {}
        self.keys: list[tuple] = []

    def adapter(self, provider) -> FakeAdapter:
        if provider not in self.adapters:
            self.adapters[provider] = FakeAdapter(provider)
        return self.adapters[provider]

    def __call__(self, provider, api_key):
        self.keys.append((provider, api_key))
        return self.adapter(provider)

    @property
    def total_calls(self) -> int:
        return sum(len(adapter.calls) for adapter in self.adapters.values())


@pytest.fixture
def adapter_factory() -> FakeAdapterFactory:
    return FakeAdapterFactory()
