from __future__ import annotations

"""HTTP adapters for the supported AI vendors.

Adapters translate a prompt into one vendor call and the vendor response into
a ``Completion``. They know nothing about settings, caching or rate limiting;
every failure is reported as a ``ProviderError`` carrying a failure kind the
orchestrator can act on.
"""

from dataclasses import dataclass
import logging
from typing import Any, Protocol

import httpx

from .errors import ProviderError, ProviderErrorKind
from .models import GenerationOptions, ImprovementMode, Provider
from .prompts import improvement_prompts, load_prompt

logger = logging.getLogger(__name__)

GENERATE_DEFAULTS = {"max_tokens": 1500, "temperature": 0.7}
IMPROVE_DEFAULTS = {"max_tokens": 2000, "temperature": 0.5}
ANTHROPIC_VERSION = "2023-06-01"

_STATUS_KINDS: dict[int, ProviderErrorKind] = {
    401: ProviderErrorKind.AUTH_FAILED,
    403: ProviderErrorKind.AUTH_FAILED,
    429: ProviderErrorKind.RATE_LIMITED_BY_VENDOR,
    400: ProviderErrorKind.INVALID_REQUEST,
    404: ProviderErrorKind.INVALID_REQUEST,
    413: ProviderErrorKind.INVALID_REQUEST,
    422: ProviderErrorKind.INVALID_REQUEST,
    408: ProviderErrorKind.TIMEOUT,
    504: ProviderErrorKind.TIMEOUT,
}


@dataclass(frozen=True)
class Completion:
    """Generated text plus the metadata reported by the vendor."""

    text: str
    model: str
    finish_reason: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0


class ProviderAdapter(Protocol):
    """Uniform interface over the vendor APIs."""

    def generate(self, prompt: str, options: GenerationOptions) -> Completion: ...

    def improve(
        self,
        content: str,
        mode: ImprovementMode,
        options: GenerationOptions,
    ) -> Completion: ...


def classify_status(status_code: int) -> ProviderErrorKind:
    """Map a non-2xx vendor status to a failure kind."""

    kind = _STATUS_KINDS.get(status_code)
    if kind is not None:
        return kind
    if status_code >= 500:
        return ProviderErrorKind.UNAVAILABLE
    return ProviderErrorKind.INVALID_REQUEST


def _error_detail(response: httpx.Response) -> str:
    """Best-effort vendor error message without echoing request data."""

    try:
        payload = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str):
        return error
    return f"HTTP {response.status_code}"


def _token_count(usage, key: str) -> int:
    """Token counter from a vendor usage block; 0 when absent or malformed."""

    value = usage.get(key) if isinstance(usage, dict) else None
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value


class _HttpAdapter:
    """Shared request/response plumbing for the vendor adapters."""

    provider: Provider

    def __init__(
        self,
        api_key: str,
        client: httpx.Client,
        base_url: str,
        model: str,
        timeout: float = 30.0,
    ) -> None:
        if not api_key:
            raise ValueError(f"{self.provider.value} adapter requires an API key")
        self.api_key = api_key
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def generate(self, prompt: str, options: GenerationOptions) -> Completion:
        """Generate new content from a free-form prompt."""

        system = options.system_prompt or load_prompt("generate_system")
        return self._call(system, prompt, options, GENERATE_DEFAULTS)

    def improve(
        self,
        content: str,
        mode: ImprovementMode,
        options: GenerationOptions,
    ) -> Completion:
        """Rewrite ``content`` according to the improvement mode."""

        system, user = improvement_prompts(mode, content)
        return self._call(options.system_prompt or system, user, options, IMPROVE_DEFAULTS)

    def _call(
        self,
        system: str,
        user: str,
        options: GenerationOptions,
        defaults: dict[str, Any],
    ) -> Completion:
        model = options.model or self.model
        max_tokens = options.max_tokens or defaults["max_tokens"]
        temperature = (
            options.temperature if options.temperature is not None else defaults["temperature"]
        )
        return self._complete(system, user, model, max_tokens, temperature)

    def _complete(
        self,
        system: str,
        user: str,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> Completion:
        raise NotImplementedError

    def _error(self, kind: ProviderErrorKind, message: str, status_code: int | None = None) -> ProviderError:
        return ProviderError(kind, message, provider=self.provider.value, status_code=status_code)

    def _post_json(self, url: str, headers: dict[str, str], payload: dict[str, Any]) -> dict[str, Any]:
        """POST a JSON body and return the decoded JSON response.

        Transport and HTTP failures are classified into ``ProviderError``.
        """

        try:
            response = self.client.post(url, headers=headers, json=payload, timeout=self.timeout)
        except httpx.TimeoutException as exc:
            logger.warning("%s request timed out", self.provider.value)
            raise self._error(ProviderErrorKind.TIMEOUT, "request timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("%s transport error: %s", self.provider.value, type(exc).__name__)
            raise self._error(ProviderErrorKind.UNAVAILABLE, f"transport error: {exc}") from exc

        if response.status_code >= 400:
            kind = classify_status(response.status_code)
            logger.warning(
                "%s returned HTTP %s (%s)",
                self.provider.value,
                response.status_code,
                kind.value,
            )
            raise self._error(kind, _error_detail(response), response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            raise self._error(ProviderErrorKind.UNAVAILABLE, "response body is not JSON") from exc
        if not isinstance(data, dict):
            raise self._error(ProviderErrorKind.UNAVAILABLE, "response body is not a JSON object")
        return data


class OpenAIAdapter(_HttpAdapter):
    """OpenAI chat completions API."""

    provider = Provider.OPENAI

    def _complete(self, system, user, model, max_tokens, temperature) -> Completion:
        data = self._post_json(
            f"{self.base_url}/chat/completions",
            headers={"Authorization": f"Bearer {self.api_key}"},
            payload={
                "model": model,
                "messages": [
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                "max_tokens": max_tokens,
                "temperature": temperature,
            },
        )
        try:
            choice = data["choices"][0]
            text = choice["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise self._error(ProviderErrorKind.UNAVAILABLE, "unexpected response shape") from exc
        usage = data.get("usage")
        return Completion(
            text=(text or "").strip(),
            model=data.get("model", model),
            finish_reason=choice.get("finish_reason"),
            prompt_tokens=_token_count(usage, "prompt_tokens"),
            completion_tokens=_token_count(usage, "completion_tokens"),
        )


class AnthropicAdapter(_HttpAdapter):
    """Anthropic messages API."""

    provider = Provider.ANTHROPIC

    def _complete(self, system, user, model, max_tokens, temperature) -> Completion:
        data = self._post_json(
            f"{self.base_url}/messages",
            headers={
                "x-api-key": self.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            },
            payload={
                "model": model,
                "system": system,
                "messages": [{"role": "user", "content": user}],
                "max_tokens": max_tokens,
                "temperature": min(temperature, 1.0),
            },
        )
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise self._error(ProviderErrorKind.UNAVAILABLE, "unexpected response shape")
        text = "".join(
            block.get("text") or ""
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        )
        usage = data.get("usage")
        return Completion(
            text=text.strip(),
            model=data.get("model", model),
            finish_reason=data.get("stop_reason"),
            prompt_tokens=_token_count(usage, "input_tokens"),
            completion_tokens=_token_count(usage, "output_tokens"),
        )


class GoogleAdapter(_HttpAdapter):
    """Google Gemini ``generateContent`` API."""

    provider = Provider.GOOGLE

    def _complete(self, system, user, model, max_tokens, temperature) -> Completion:
        data = self._post_json(
            f"{self.base_url}/models/{model}:generateContent",
            headers={"x-goog-api-key": self.api_key},
            payload={
                "systemInstruction": {"parts": [{"text": system}]},
                "contents": [{"role": "user", "parts": [{"text": user}]}],
                "generationConfig": {
                    "maxOutputTokens": max_tokens,
                    "temperature": temperature,
                },
            },
        )
        candidates = data.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            raise self._error(ProviderErrorKind.UNAVAILABLE, "response contained no candidates")
        candidate = candidates[0]
        if not isinstance(candidate, dict):
            raise self._error(ProviderErrorKind.UNAVAILABLE, "unexpected response shape")
        finish_reason = candidate.get("finishReason")
        if finish_reason == "SAFETY":
            raise self._error(
                ProviderErrorKind.INVALID_REQUEST,
                "content was blocked by the provider safety filters",
            )
        content = candidate.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            parts = []
        text = "".join(part.get("text") or "" for part in parts if isinstance(part, dict))
        usage = data.get("usageMetadata")
        return Completion(
            text=text.strip(),
            model=model,
            finish_reason=finish_reason.lower() if finish_reason else None,
            prompt_tokens=_token_count(usage, "promptTokenCount"),
            completion_tokens=_token_count(usage, "candidatesTokenCount"),
        )


ADAPTER_TYPES: dict[Provider, type[_HttpAdapter]] = {
    Provider.OPENAI: OpenAIAdapter,
    Provider.ANTHROPIC: AnthropicAdapter,
    Provider.GOOGLE: GoogleAdapter,
}


def create_adapter(
    provider: Provider,
    api_key: str,
    client: httpx.Client,
    base_url: str,
    model: str,
    timeout: float = 30.0,
) -> ProviderAdapter:
    """Build the adapter for ``provider``."""

    adapter_type = ADAPTER_TYPES[Provider(provider)]
    return adapter_type(api_key, client, base_url=base_url, model=model, timeout=timeout)
