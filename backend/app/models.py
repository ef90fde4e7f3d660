from __future__ import annotations

"""Pydantic domain and API contract models.

These models define:
- the persisted settings record and its bounds
- generation options and the ephemeral generation request
- request/response payloads for FastAPI endpoints
"""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Provider(str, Enum):
    """Supported AI vendors; declaration order is the fallback order."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


class ImprovementMode(str, Enum):
    """Content improvement styles offered by the editor toolbar."""

    GRAMMAR = "grammar"
    STYLE = "style"
    CLARITY = "clarity"
    ENGAGEMENT = "engagement"
    SEO = "seo"


Operation = Literal["generate", "improve"]


class SettingsRecord(BaseModel):
    """Single persisted configuration record.

    ``provider_credentials`` holds opaque references produced by the secret
    codec, never raw API keys. Unknown fields are ignored on read so older
    processes can load records written by newer ones.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    default_provider: Provider = Provider.OPENAI
    provider_credentials: dict[Provider, str] = Field(default_factory=dict)
    cache_enabled: bool = True
    requests_per_minute: int = Field(default=10, ge=1, le=100)
    cache_ttl_seconds: int = Field(default=1800, ge=300, le=86400)
    rate_limit_enabled: bool = True
    max_content_length: int = Field(default=5000, ge=100, le=50000)

    @field_validator("provider_credentials", mode="after")
    @classmethod
    def drop_unset_credentials(cls, value: dict[Provider, str]) -> dict[Provider, str]:
        """Treat empty references as "unset" by removing them."""

        return {provider: ref for provider, ref in value.items() if ref}

    def configured_providers(self) -> list[Provider]:
        """Providers holding a credential, in fallback order."""

        return [provider for provider in Provider if self.provider_credentials.get(provider)]


class GenerationOptions(BaseModel):
    """Per-request tuning; ``None`` fields fall back to adapter defaults."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_tokens: int | None = Field(default=None, ge=1, le=8192)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    model: str | None = None
    system_prompt: str | None = None

    @field_validator("model", "system_prompt", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        """Normalize blank strings from form inputs to ``None``."""

        if isinstance(value, str) and not value.strip():
            return None
        return value


class GenerationRequest(BaseModel):
    """Ephemeral orchestrator input for one generate/improve call."""

    model_config = ConfigDict(frozen=True)

    operation: Operation
    text: str
    provider: Provider | None = None
    options: GenerationOptions = Field(default_factory=GenerationOptions)
    mode: ImprovementMode | None = None


class GenerateRequest(BaseModel):
    """Payload for ``POST /api/generate``."""

    prompt: str
    provider: Provider | None = None
    options: GenerationOptions | None = None


class ImproveRequest(BaseModel):
    """Payload for ``POST /api/improve``."""

    content: str
    mode: ImprovementMode = ImprovementMode.STYLE
    provider: Provider | None = None
    options: GenerationOptions | None = None


class GenerationResponse(BaseModel):
    """Result returned by generate/improve endpoints."""

    text: str
    provider: Provider
    model: str
    cached: bool
    fallback_from: Provider | None = None
    finish_reason: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0


class SettingsUpdateRequest(BaseModel):
    """Full settings record submitted by the admin form.

    ``api_keys`` semantics per provider: missing or ``null`` keeps the current
    credential, ``""`` clears it, any other value replaces it.
    """

    default_provider: str
    cache_enabled: bool
    requests_per_minute: int
    cache_ttl_seconds: int
    rate_limit_enabled: bool
    max_content_length: int
    api_keys: dict[Provider, str | None] = Field(default_factory=dict)


class SettingsResponse(BaseModel):
    """Exact persisted settings as rendered by the admin form."""

    default_provider: Provider
    cache_enabled: bool
    requests_per_minute: int
    cache_ttl_seconds: int
    rate_limit_enabled: bool
    max_content_length: int
    api_keys: dict[Provider, str]
    configured: dict[Provider, bool]
    version: int


class CacheStatus(BaseModel):
    """Cache configuration and counters for the status endpoint."""

    enabled: bool
    ttl_seconds: int
    size: int
    hits: int
    misses: int
    writes: int
    evictions: int
    hit_ratio: float


class RateLimitStatus(BaseModel):
    """Rate limiter configuration and live window usage."""

    enabled: bool
    requests_per_minute: int
    window_usage: dict[Provider, int] = Field(default_factory=dict)


class StatusResponse(BaseModel):
    """Introspection payload; never includes credentials."""

    providers: dict[Provider, bool]
    default_provider: Provider
    cache: CacheStatus
    rate_limit: RateLimitStatus
    settings_version: int


class CacheClearResponse(BaseModel):
    """Response for ``DELETE /api/cache``."""

    cleared: int


class ProviderTestResponse(BaseModel):
    """Outcome of a provider connection test."""

    provider: Provider
    operational: bool
    model: str | None = None
    error: str | None = None
