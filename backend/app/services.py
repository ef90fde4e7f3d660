from __future__ import annotations

"""Builds the service graph (store, limiter, cache, orchestrator) from config.

Everything the routes need hangs off one ``Services`` object created at
startup, so the settings store is fully constructed before any request can
reach it.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
import logging

import httpx

from .cache import ResponseCache
from .config import Settings
from .couchdb import CouchDBClient
from .models import Provider, SettingsRecord
from .orchestrator import Orchestrator
from .providers import ProviderAdapter, create_adapter
from .rate_limiter import RateLimiter
from .secret_codec import SecretCodec
from .settings_store import (
    CouchDBSettingsBackend,
    JsonFileSettingsBackend,
    SettingsBackend,
    SettingsStore,
)

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Live service objects shared by the HTTP routes."""

    store: SettingsStore
    limiter: RateLimiter
    cache: ResponseCache
    orchestrator: Orchestrator
    http_client: httpx.Client
    couchdb: CouchDBClient | None = None
    _closers: list[Callable[[], None]] = field(default_factory=list)

    def close(self) -> None:
        """Release listeners and HTTP connection pools."""

        for closer in self._closers:
            closer()
        self._closers.clear()
        self.http_client.close()
        if self.couchdb is not None:
            self.couchdb.close()


def provider_endpoints(settings: Settings) -> dict[Provider, tuple[str, str]]:
    """Return ``(base_url, default_model)`` per provider."""

    return {
        Provider.OPENAI: (settings.openai_base_url, settings.openai_model),
        Provider.ANTHROPIC: (settings.anthropic_base_url, settings.anthropic_model),
        Provider.GOOGLE: (settings.google_base_url, settings.google_model),
    }


def cache_invalidation_listener(cache: ResponseCache):
    """Return a settings listener that drops cache entries made stale by a write."""

    def on_settings_changed(previous: SettingsRecord, current: SettingsRecord) -> None:
        if not current.cache_enabled and previous.cache_enabled:
            removed = cache.invalidate_all()
            logger.info("Cache disabled; dropped %s entries", removed)
            return

        default_changed = previous.default_provider != current.default_provider
        default_credential_changed = previous.provider_credentials.get(
            current.default_provider
        ) != current.provider_credentials.get(current.default_provider)
        if default_changed or default_credential_changed:
            removed = cache.invalidate_all()
            logger.info("Default provider settings changed; dropped %s cache entries", removed)
            return

        for provider in Provider:
            if previous.provider_credentials.get(provider) != current.provider_credentials.get(provider):
                removed = cache.invalidate_provider(provider)
                logger.info("Credential for %s changed; dropped %s cache entries", provider.value, removed)

    return on_settings_changed


def build_backend(settings: Settings) -> tuple[SettingsBackend, CouchDBClient | None]:
    """Create the configured persistence backend for the settings record."""

    if settings.settings_backend == "couchdb":
        client = CouchDBClient(settings.couchdb_url, settings.couchdb_db)
        client.ensure_db()
        return CouchDBSettingsBackend(client, settings.settings_doc_id), client
    return JsonFileSettingsBackend(settings.settings_file), None


def build_services(
    settings: Settings,
    backend: SettingsBackend | None = None,
    http_client: httpx.Client | None = None,
) -> Services:
    """Wire the full service graph; fails fast without a master key."""

    if not settings.master_key:
        raise RuntimeError(
            "Startup failed: CONTENT_FLOW_MASTER_KEY is not set. "
            "Possible fix: export a long random value before starting the service."
        )

    codec = SecretCodec.from_master_key(settings.master_key)
    couchdb = None
    if backend is None:
        backend, couchdb = build_backend(settings)
    store = SettingsStore(backend, codec)

    limiter = RateLimiter()
    cache = ResponseCache(
        enabled=lambda: store.get().cache_enabled,
        max_entries=settings.cache_max_entries,
    )
    client = http_client or httpx.Client(timeout=settings.provider_timeout_seconds)
    endpoints = provider_endpoints(settings)

    def adapter_factory(provider: Provider, api_key: str) -> ProviderAdapter:
        base_url, model = endpoints[provider]
        return create_adapter(
            provider,
            api_key,
            client,
            base_url=base_url,
            model=model,
            timeout=settings.provider_timeout_seconds,
        )

    orchestrator = Orchestrator(
        store,
        limiter,
        cache,
        adapter_factory,
        cache_hits_consume_rate_limit=settings.cache_hits_consume_rate_limit,
    )
    unsubscribe = store.subscribe(cache_invalidation_listener(cache))

    logger.info(
        "Services ready: backend=%s configured=%s",
        settings.settings_backend,
        [provider.value for provider in store.configured_providers()],
    )
    return Services(
        store=store,
        limiter=limiter,
        cache=cache,
        orchestrator=orchestrator,
        http_client=client,
        couchdb=couchdb,
        _closers=[unsubscribe],
    )
