from __future__ import annotations

"""FastAPI entrypoint and HTTP route handlers for the content-flow AI core.

This module wires together:
- configuration and the service graph built at startup
- settings read/write endpoints for the admin form
- generate/improve endpoints backed by the request orchestrator
- status, cache and provider connection-test endpoints
- translation of core failures into HTTP status codes
"""

from contextlib import asynccontextmanager
import logging
import math

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .errors import (
    AllProvidersFailed,
    ContentFlowError,
    DecryptionError,
    InvalidGenerationRequest,
    NoProviderConfigured,
    ProviderError,
    RateLimited,
    SettingsValidationError,
    SettingsWriteConflict,
)
from .log import setup_logging
from .models import (
    CacheClearResponse,
    CacheStatus,
    GenerateRequest,
    GenerationResponse,
    ImproveRequest,
    Provider,
    ProviderTestResponse,
    RateLimitStatus,
    SettingsRecord,
    SettingsResponse,
    SettingsUpdateRequest,
    StatusResponse,
)
from .orchestrator import GenerationResult
from .services import Services, build_services
from .settings_store import SettingsSnapshot

logger = logging.getLogger(__name__)

settings = get_settings()
services: Services | None = None


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Application lifecycle hook.

    Startup:
    - configures logging
    - builds the service graph (fails fast without a master key)
    Shutdown:
    - closes HTTP clients owned by the service graph
    """

    global services

    setup_logging(settings.log_level, settings.log_file)
    owned = services is None
    if owned:
        services = build_services(settings)
    yield
    if owned and services is not None:
        services.close()
        services = None


app = FastAPI(title="Content Flow AI Core", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed request bodies as 400 rather than FastAPI's default 422."""

    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


def _services() -> Services:
    """Return the live service graph or 503 while the app is starting."""

    if services is None:
        raise HTTPException(status_code=503, detail="Service is not ready")
    return services


def _http_error(exc: ContentFlowError) -> HTTPException:
    """Translate a core failure into the matching HTTP error."""

    if isinstance(exc, (SettingsValidationError, InvalidGenerationRequest)):
        return HTTPException(
            status_code=400,
            detail={"field": exc.field, "message": exc.message},
        )
    if isinstance(exc, NoProviderConfigured):
        return HTTPException(status_code=400, detail=f"{exc} Possible fix: {exc.possible_fix}")
    if isinstance(exc, RateLimited):
        return HTTPException(
            status_code=429,
            detail=str(exc),
            headers={"Retry-After": str(max(1, math.ceil(exc.retry_after)))},
        )
    if isinstance(exc, SettingsWriteConflict):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, DecryptionError):
        logger.error("Credential decryption failed: %s", exc)
        return HTTPException(status_code=500, detail=str(exc))
    if isinstance(exc, AllProvidersFailed):
        return HTTPException(
            status_code=502,
            detail={
                "message": str(exc),
                "errors": [str(error) for error in exc.errors],
            },
        )
    if isinstance(exc, ProviderError):
        return HTTPException(
            status_code=502,
            detail={"message": str(exc), "kind": exc.kind.value},
        )
    return HTTPException(status_code=500, detail=str(exc))


def _settings_response(snapshot: SettingsSnapshot) -> SettingsResponse:
    """Render one published record for the admin form, credentials masked."""

    record, version = snapshot
    masked = _services().store.masked_credentials(record)
    return SettingsResponse(
        default_provider=record.default_provider,
        cache_enabled=record.cache_enabled,
        requests_per_minute=record.requests_per_minute,
        cache_ttl_seconds=record.cache_ttl_seconds,
        rate_limit_enabled=record.rate_limit_enabled,
        max_content_length=record.max_content_length,
        api_keys=masked,
        configured={provider: bool(record.provider_credentials.get(provider)) for provider in Provider},
        version=version,
    )


def _apply_settings_form(form: SettingsUpdateRequest):
    """Build a store mutator applying the submitted form to the current record."""

    store = _services().store

    def mutate(current: SettingsRecord) -> dict:
        credentials = dict(current.provider_credentials)
        for provider, value in form.api_keys.items():
            if value is None:
                continue
            secret = value.strip()
            if secret:
                credentials[provider] = store.seal(secret)
            else:
                credentials.pop(provider, None)
        return {
            "default_provider": form.default_provider,
            "provider_credentials": credentials,
            "cache_enabled": form.cache_enabled,
            "requests_per_minute": form.requests_per_minute,
            "cache_ttl_seconds": form.cache_ttl_seconds,
            "rate_limit_enabled": form.rate_limit_enabled,
            "max_content_length": form.max_content_length,
        }

    return mutate


def _generation_response(result: GenerationResult) -> GenerationResponse:
    completion = result.completion
    return GenerationResponse(
        text=completion.text,
        provider=result.provider,
        model=completion.model,
        cached=result.cached,
        fallback_from=result.fallback_from,
        finish_reason=completion.finish_reason,
        prompt_tokens=completion.prompt_tokens,
        completion_tokens=completion.completion_tokens,
    )


@app.get("/api/settings", response_model=SettingsResponse)
def read_settings() -> SettingsResponse:
    """Return the exact persisted settings (credentials masked)."""

    return _settings_response(_services().store.snapshot())


@app.put("/api/settings", response_model=SettingsResponse)
def write_settings(payload: SettingsUpdateRequest) -> SettingsResponse:
    """Validate and persist the full settings record."""

    store = _services().store
    try:
        saved = store.commit(_apply_settings_form(payload))
    except ContentFlowError as exc:
        raise _http_error(exc) from exc
    return _settings_response(saved)


@app.post("/api/generate", response_model=GenerationResponse)
def generate(payload: GenerateRequest) -> GenerationResponse:
    """Generate new content with the resolved provider."""

    try:
        result = _services().orchestrator.generate(
            payload.prompt,
            provider=payload.provider,
            options=payload.options,
        )
    except ContentFlowError as exc:
        raise _http_error(exc) from exc
    return _generation_response(result)


@app.post("/api/improve", response_model=GenerationResponse)
def improve(payload: ImproveRequest) -> GenerationResponse:
    """Improve existing content in the requested mode."""

    try:
        result = _services().orchestrator.improve(
            payload.content,
            mode=payload.mode,
            provider=payload.provider,
            options=payload.options,
        )
    except ContentFlowError as exc:
        raise _http_error(exc) from exc
    return _generation_response(result)


@app.get("/api/status", response_model=StatusResponse)
def status() -> StatusResponse:
    """Report provider configuration, cache and rate-limit state; never credentials."""

    live = _services()
    record, version = live.store.snapshot()
    cache_stats = live.cache.stats()
    configured = record.configured_providers()
    return StatusResponse(
        providers={provider: provider in configured for provider in Provider},
        default_provider=record.default_provider,
        cache=CacheStatus(
            enabled=record.cache_enabled,
            ttl_seconds=record.cache_ttl_seconds,
            size=cache_stats["size"],
            hits=cache_stats["hits"],
            misses=cache_stats["misses"],
            writes=cache_stats["writes"],
            evictions=cache_stats["evictions"],
            hit_ratio=cache_stats["hit_ratio"],
        ),
        rate_limit=RateLimitStatus(
            enabled=record.rate_limit_enabled,
            requests_per_minute=record.requests_per_minute,
            window_usage={
                Provider(name): count
                for name, count in live.limiter.usage().items()
                if name in {provider.value for provider in Provider}
            },
        ),
        settings_version=version,
    )


@app.delete("/api/cache", response_model=CacheClearResponse)
def clear_cache() -> CacheClearResponse:
    """Drop every cached response."""

    cleared = _services().cache.invalidate_all()
    logger.info("Cache cleared via API: %s entries", cleared)
    return CacheClearResponse(cleared=cleared)


@app.post("/api/providers/{provider}/test", response_model=ProviderTestResponse)
def check_provider(provider: Provider) -> ProviderTestResponse:
    """Check that the stored credential for ``provider`` works."""

    try:
        completion = _services().orchestrator.test_connection(provider)
    except ProviderError as exc:
        logger.warning("Connection test failed for %s: %s", provider.value, exc.kind.value)
        return ProviderTestResponse(provider=provider, operational=False, error=str(exc))
    except ContentFlowError as exc:
        raise _http_error(exc) from exc
    return ProviderTestResponse(provider=provider, operational=True, model=completion.model)
