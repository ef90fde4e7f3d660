from __future__ import annotations

"""AI request orchestration: provider resolution, caching, rate limiting, fallback.

One request moves through ``resolve -> cache check -> rate check -> call ->
store``. When ``cache_hits_consume_rate_limit`` is set the rate check runs
before the cache lookup, so cached answers also count against the window.
No lock is held while a provider call is in flight.
"""

from collections.abc import Callable
from dataclasses import dataclass
import logging

from .cache import ResponseCache, fingerprint
from .errors import (
    AllProvidersFailed,
    ContentFlowError,
    InvalidGenerationRequest,
    NoProviderConfigured,
    ProviderError,
    RateLimited,
)
from .models import (
    GenerationOptions,
    GenerationRequest,
    ImprovementMode,
    Provider,
    SettingsRecord,
)
from .providers import Completion, ProviderAdapter
from .rate_limiter import RateLimiter
from .settings_store import SettingsStore

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[Provider, str], ProviderAdapter]

CONNECTION_TEST_PROMPT = "Reply with the single word: ok"
CONNECTION_TEST_OPTIONS = GenerationOptions(max_tokens=16, temperature=0.0)


@dataclass(frozen=True)
class GenerationResult:
    """Completion plus attribution for one orchestrated request."""

    completion: Completion
    provider: Provider
    cached: bool
    fingerprint: str
    fallback_from: Provider | None = None


def _input_field(operation: str) -> str:
    return "prompt" if operation == "generate" else "content"


def _fallback_order(primary: Provider, configured: list[Provider]) -> list[Provider]:
    """Configured providers after ``primary`` in declaration order, wrapping around."""

    ordered = list(Provider)
    start = ordered.index(primary) + 1
    rotated = ordered[start:] + ordered[:start]
    return [provider for provider in rotated if provider != primary and provider in configured]


class Orchestrator:
    """Runs generate/improve requests against the configured providers."""

    def __init__(
        self,
        store: SettingsStore,
        limiter: RateLimiter,
        cache: ResponseCache,
        adapter_factory: AdapterFactory,
        cache_hits_consume_rate_limit: bool = False,
    ) -> None:
        self.store = store
        self.limiter = limiter
        self.cache = cache
        self.adapter_factory = adapter_factory
        self.cache_hits_consume_rate_limit = cache_hits_consume_rate_limit

    def generate(
        self,
        prompt: str,
        provider: Provider | None = None,
        options: GenerationOptions | None = None,
    ) -> GenerationResult:
        """Generate new content from ``prompt``."""

        return self.execute(
            GenerationRequest(
                operation="generate",
                text=prompt,
                provider=provider,
                options=options or GenerationOptions(),
            )
        )

    def improve(
        self,
        content: str,
        mode: ImprovementMode = ImprovementMode.STYLE,
        provider: Provider | None = None,
        options: GenerationOptions | None = None,
    ) -> GenerationResult:
        """Improve existing ``content`` in the given mode."""

        return self.execute(
            GenerationRequest(
                operation="improve",
                text=content,
                provider=provider,
                options=options or GenerationOptions(),
                mode=mode,
            )
        )

    def execute(self, request: GenerationRequest) -> GenerationResult:
        """Run one request through cache, rate limiter and provider adapters."""

        # Read before the snapshot: a write that lands in between bumps the
        # generation, so this request's result is not cached.
        generation = self.cache.generation
        settings = self.store.get()
        self._validate(request, settings)
        primary = self._resolve(request.provider, settings)

        option_set = request.options.model_dump()
        if request.operation == "improve":
            option_set["mode"] = (request.mode or ImprovementMode.STYLE).value
        key = fingerprint(primary, request.operation, request.text, option_set)

        if self.cache_hits_consume_rate_limit:
            self._admit(primary, settings)
            cached = self._cached_result(key)
            if cached is not None:
                return cached
        else:
            cached = self._cached_result(key)
            if cached is not None:
                return cached
            self._admit(primary, settings)

        try:
            completion = self._call(primary, request, settings)
            served_by, fallback_from = primary, None
        except ProviderError as exc:
            if not exc.retryable:
                logger.warning("%s failed without fallback: %s", primary.value, exc.kind.value)
                raise
            completion, served_by = self._fallback(primary, request, settings, exc)
            fallback_from = primary

        self.cache.put(
            key,
            completion,
            provider=served_by,
            ttl=settings.cache_ttl_seconds,
            requested_provider=primary,
            generation=generation,
        )
        logger.info(
            "%s served by %s (fallback_from=%s)",
            request.operation,
            served_by.value,
            fallback_from.value if fallback_from else None,
        )
        return GenerationResult(
            completion=completion,
            provider=served_by,
            cached=False,
            fingerprint=key,
            fallback_from=fallback_from,
        )

    def test_connection(self, provider: Provider) -> Completion:
        """Send a minimal prompt straight to ``provider``, bypassing the cache."""

        provider = Provider(provider)
        settings = self.store.get()
        if provider not in settings.configured_providers():
            raise NoProviderConfigured(f"No API key is configured for {provider.value}.")
        self._admit(provider, settings)
        api_key = self.store.reveal_for_call(provider, settings)
        adapter = self.adapter_factory(provider, api_key)
        return adapter.generate(CONNECTION_TEST_PROMPT, CONNECTION_TEST_OPTIONS)

    def _validate(self, request: GenerationRequest, settings: SettingsRecord) -> None:
        field = _input_field(request.operation)
        if not request.text or not request.text.strip():
            raise InvalidGenerationRequest(field, "must not be empty")
        if len(request.text) > settings.max_content_length:
            raise InvalidGenerationRequest(
                field,
                f"exceeds the maximum length of {settings.max_content_length} characters",
            )

    def _resolve(self, requested: Provider | None, settings: SettingsRecord) -> Provider:
        configured = settings.configured_providers()
        preferred = Provider(requested) if requested else settings.default_provider
        if preferred in configured:
            return preferred
        if not configured:
            raise NoProviderConfigured()
        logger.info(
            "%s has no credential; using %s",
            preferred.value,
            configured[0].value,
        )
        return configured[0]

    def _cached_result(self, key: str) -> GenerationResult | None:
        entry = self.cache.get(key)
        if entry is None:
            return None
        served_by = Provider(entry.provider)
        requested = Provider(entry.requested_provider or entry.provider)
        logger.debug("Cache hit for %s", key[:12])
        return GenerationResult(
            completion=entry.completion,
            provider=served_by,
            cached=True,
            fingerprint=key,
            fallback_from=requested if requested != served_by else None,
        )

    def _admit(self, provider: Provider, settings: SettingsRecord) -> None:
        if not settings.rate_limit_enabled:
            return
        admission = self.limiter.admit(provider, settings.requests_per_minute)
        if not admission.allowed:
            logger.warning(
                "Rate limit reached for %s; retry after %.1fs",
                provider.value,
                admission.retry_after,
            )
            raise RateLimited(provider.value, admission.retry_after)

    def _call(self, provider: Provider, request: GenerationRequest, settings: SettingsRecord) -> Completion:
        api_key = self.store.reveal_for_call(provider, settings)
        if not api_key:
            raise NoProviderConfigured(f"No API key is configured for {provider.value}.")
        adapter = self.adapter_factory(provider, api_key)
        if request.operation == "improve":
            return adapter.improve(
                request.text,
                request.mode or ImprovementMode.STYLE,
                request.options,
            )
        return adapter.generate(request.text, request.options)

    def _fallback(
        self,
        primary: Provider,
        request: GenerationRequest,
        settings: SettingsRecord,
        primary_error: ProviderError,
    ) -> tuple[Completion, Provider]:
        candidates = _fallback_order(primary, settings.configured_providers())
        if not candidates:
            logger.warning("%s failed (%s); no fallback configured", primary.value, primary_error.kind.value)
            raise AllProvidersFailed([primary_error])

        fallback = candidates[0]
        logger.warning(
            "%s failed (%s); falling back to %s",
            primary.value,
            primary_error.kind.value,
            fallback.value,
        )
        try:
            self._admit(fallback, settings)
            return self._call(fallback, request, settings), fallback
        except (ProviderError, RateLimited) as fallback_error:
            errors: list[ContentFlowError] = [primary_error, fallback_error]
            raise AllProvidersFailed(errors) from fallback_error
