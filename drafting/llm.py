"""
Generation client for the drafting engine.

Calls the configured text provider and reports the outcome as a
GenerationResult instead of raising, so the caller decides what a
failure means:
- model_not_found: the endpoint rejected the model; one fallback retry
- upstream: anything else (network, timeout, 5xx, unusable payload)

Providers: gemini, openai, anthropic, ollama.
"""
import asyncio
import hashlib
import json
import os
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel

from shared.errors import ConfigurationError, ModelUnavailable, UpstreamError

from .catalog import ModelCatalogCache, resolve_fallback
from .schemas import DEFAULT_MODELS, GenerationSettings, LLMConfig, PromptPair, _normalize_provider, resolve_model

logger = structlog.get_logger()

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"

# Gemini 429 handling: 2 extra attempts, waits of GEMINI_BACKOFF_BASE * 2**attempt
GEMINI_MAX_RETRIES = 2
GEMINI_BACKOFF_BASE = 2.0

_MODEL_NOT_FOUND_MARKERS = (
    "not found",
    "not supported",
    "does not exist",
    "model_not_found",
    "unknown model",
)


# =============================================================================
# DEV CACHE (for speeding up development iteration)
# =============================================================================
# Enable with LLM_DEV_CACHE=true in .env
# Clear all: rm -rf /tmp/llm_dev_cache/

LLM_DEV_CACHE_DIR = Path("/tmp/llm_dev_cache")


def _is_dev_cache_enabled(config: Optional[dict] = None) -> bool:
    """Check if LLM dev cache is enabled via config or env var."""
    flag = (config or {}).get("dev_cache") or os.environ.get("LLM_DEV_CACHE", "")
    return str(flag).lower() in ("true", "1", "yes")


def _get_cache_key(node_name: str, data: Any) -> str:
    """Generate a cache key from node name and input data."""
    data_str = json.dumps(data, sort_keys=True, default=str)
    hash_val = hashlib.sha256(data_str.encode()).hexdigest()[:16]
    return f"{node_name}_{hash_val}"


def _get_cached_response(node_name: str, data: Any, config: Optional[dict] = None) -> Optional[dict]:
    """Get cached LLM response if exists and dev cache is enabled."""
    if not _is_dev_cache_enabled(config):
        return None

    cache_key = _get_cache_key(node_name, data)
    cache_file = LLM_DEV_CACHE_DIR / f"{cache_key}.json"

    if cache_file.exists():
        try:
            with open(cache_file, "r") as f:
                cached = json.load(f)
                logger.info("llm_dev_cache_hit", node=node_name, cache_key=cache_key)
                return cached
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("llm_dev_cache_read_error", error=str(e))

    return None


def _save_to_cache(node_name: str, data: Any, response: dict, config: Optional[dict] = None) -> None:
    """Save LLM response to dev cache."""
    if not _is_dev_cache_enabled(config):
        return

    try:
        LLM_DEV_CACHE_DIR.mkdir(parents=True, exist_ok=True)
        cache_key = _get_cache_key(node_name, data)
        cache_file = LLM_DEV_CACHE_DIR / f"{cache_key}.json"

        with open(cache_file, "w") as f:
            json.dump(response, f, indent=2, default=str)

        logger.info("llm_dev_cache_saved", node=node_name, cache_key=cache_key)
    except OSError as e:
        logger.warning("llm_dev_cache_write_error", error=str(e))


# =============================================================================
# RESULT TYPE
# =============================================================================

class FailureKind(str, Enum):
    MODEL_NOT_FOUND = "model_not_found"
    UPSTREAM = "upstream"


class GenerationResult(BaseModel):
    """Outcome of one generation call (after at most one fallback retry)."""
    text: Optional[str] = None
    model: str
    failure: Optional[FailureKind] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    fallback_used: bool = False

    @property
    def ok(self) -> bool:
        return self.failure is None

    def unwrap(self) -> str:
        """Return the text or raise the matching error."""
        if self.failure == FailureKind.MODEL_NOT_FOUND:
            raise ModelUnavailable(self.error or f"Model not available: {self.model}", model=self.model)
        if self.failure is not None:
            raise UpstreamError(self.error or "Generation failed", status_code=self.status_code)
        return self.text or ""


def is_model_not_found(status_code: int, body: str) -> bool:
    """404, or a 400 whose body says the model is unknown/unsupported."""
    if status_code == 404:
        return True
    if status_code == 400:
        lowered = (body or "").lower()
        return any(marker in lowered for marker in _MODEL_NOT_FOUND_MARKERS)
    return False


def _failed(model: str, response: httpx.Response) -> GenerationResult:
    body = response.text
    kind = FailureKind.MODEL_NOT_FOUND if is_model_not_found(response.status_code, body) else FailureKind.UPSTREAM
    return GenerationResult(
        model=model,
        failure=kind,
        error=f"HTTP {response.status_code}: {body[:300]}",
        status_code=response.status_code,
    )


# =============================================================================
# CONFIGURATION
# =============================================================================

_CREDENTIALS = {
    "gemini": ("google_api_key", "GOOGLE_API_KEY (or GEMINI_API_KEY)"),
    "openai": ("openai_api_key", "OPENAI_API_KEY"),
    "anthropic": ("anthropic_api_key", "ANTHROPIC_API_KEY"),
}


def _get_llm_config(
    ctx,
    llm_config: Optional[LLMConfig] = None,
    provider_preference: Optional[str] = None,
) -> dict:
    """
    Get LLM configuration with cascading priority.

    Resolution order (first non-None wins):
    1. Node params (llm_config.model - registry name like "Gemini 2.5 Pro" or raw id)
    2. Request provider preference
    3. Environment variables (.env: LLM_PROVIDER + LLM_MODEL)
    4. Defaults (gemini / DEFAULT_MODELS)

    Args:
        ctx: Execution context with access to secrets
        llm_config: Optional override from node params (can be dict or LLMConfig)
        provider_preference: Provider named by the request, if any

    Returns:
        dict with provider, model, temperature, tier, and API keys
    """
    provider = None
    model = None
    temperature = None
    tier = None

    # 1. Model field from node params
    if llm_config:
        model_value = llm_config.get("model") if isinstance(llm_config, dict) else llm_config.model
        if model_value:
            resolved_provider, resolved_model = resolve_model(model_value)
            if resolved_provider:
                provider = resolved_provider
                model = resolved_model
            else:
                # Raw model id; provider comes from the remaining sources
                model = model_value
        temp_value = llm_config.get("temperature") if isinstance(llm_config, dict) else llm_config.temperature
        if temp_value is not None:
            temperature = temp_value
        tier = llm_config.get("tier") if isinstance(llm_config, dict) else llm_config.tier

    # 2./3. Request preference, then environment
    env_provider = ctx.get_secret("LLM_PROVIDER")
    if not provider:
        provider = provider_preference or env_provider or "gemini"
    provider = _normalize_provider(provider)

    # LLM_MODEL only applies to the provider it was configured for
    if not model and (not env_provider or _normalize_provider(env_provider) == provider):
        model = ctx.get_secret("LLM_MODEL")

    # 4. Defaults
    if not model:
        model = DEFAULT_MODELS.get(provider, DEFAULT_MODELS["gemini"])

    return {
        "provider": provider,
        "model": model,
        "temperature": temperature,  # None means use the call's settings
        "tier": tier or ctx.get_secret("LLM_TIER") or "quality",
        "ollama_host": ctx.get_secret("OLLAMA_HOST") or "http://localhost:11434",
        "openai_api_key": ctx.get_secret("OPENAI_API_KEY"),
        "anthropic_api_key": ctx.get_secret("ANTHROPIC_API_KEY"),
        "google_api_key": ctx.get_secret("GOOGLE_API_KEY") or ctx.get_secret("GEMINI_API_KEY"),
        "dev_cache": ctx.get_secret("LLM_DEV_CACHE"),
    }


def require_credentials(config: dict) -> None:
    """
    Fail fast when the chosen provider has no credential.

    Raises:
        ConfigurationError: Unknown provider or missing API key
    """
    provider = config.get("provider")
    if provider == "ollama":
        return
    if provider not in _CREDENTIALS:
        raise ConfigurationError(f"Unknown LLM provider: {provider}")
    key_field, env_name = _CREDENTIALS[provider]
    if not config.get(key_field):
        raise ConfigurationError(f"{env_name} is not configured")


# =============================================================================
# PROVIDER CALLS
# =============================================================================

async def _call_openai(
    client: httpx.AsyncClient,
    prompt: PromptPair,
    model: str,
    config: dict,
    settings: GenerationSettings,
) -> GenerationResult:
    """Call OpenAI chat completions."""
    request_body = {
        "model": model,
        "messages": [
            {"role": "system", "content": prompt.system_prompt},
            {"role": "user", "content": prompt.user_prompt},
        ],
        "max_tokens": settings.max_output_tokens,
        "temperature": settings.temperature,
    }
    if settings.json_mode:
        request_body["response_format"] = {"type": "json_object"}

    response = await client.post(
        "https://api.openai.com/v1/chat/completions",
        headers={
            "Authorization": f"Bearer {config['openai_api_key']}",
            "Content-Type": "application/json",
        },
        json=request_body,
        timeout=settings.timeout,
    )
    if response.status_code >= 400:
        return _failed(model, response)

    data = response.json()
    try:
        content = data["choices"][0]["message"]["content"] or ""
    except (KeyError, IndexError, TypeError):
        return GenerationResult(model=model, failure=FailureKind.UPSTREAM, error=f"Unexpected OpenAI payload: {str(data)[:300]}")
    return GenerationResult(model=model, text=content)


async def _call_anthropic(
    client: httpx.AsyncClient,
    prompt: PromptPair,
    model: str,
    config: dict,
    settings: GenerationSettings,
) -> GenerationResult:
    """Call Anthropic messages API."""
    user_prompt = prompt.user_prompt
    if settings.json_mode:
        user_prompt += "\n\nRespond with the JSON object only."

    request_body = {
        "model": model,
        "max_tokens": settings.max_output_tokens,
        "temperature": settings.temperature,
        "system": prompt.system_prompt,
        "messages": [{"role": "user", "content": user_prompt}],
    }

    response = await client.post(
        "https://api.anthropic.com/v1/messages",
        headers={
            "x-api-key": config["anthropic_api_key"],
            "Content-Type": "application/json",
            "anthropic-version": "2023-06-01",
        },
        json=request_body,
        timeout=settings.timeout,
    )
    if response.status_code >= 400:
        return _failed(model, response)

    data = response.json()
    try:
        text = "".join(block.get("text") or "" for block in data.get("content") or [] if block.get("type") == "text")
    except (TypeError, AttributeError):
        return GenerationResult(model=model, failure=FailureKind.UPSTREAM, error=f"Unexpected Anthropic payload: {str(data)[:300]}")
    return GenerationResult(model=model, text=text)


async def _call_ollama(
    client: httpx.AsyncClient,
    prompt: PromptPair,
    model: str,
    config: dict,
    settings: GenerationSettings,
) -> GenerationResult:
    """Call Ollama API using the chat endpoint."""
    ollama_host = config["ollama_host"]

    logger.info("calling_ollama", host=ollama_host, model=model, prompt_len=len(prompt.user_prompt), json_mode=settings.json_mode)

    request_body = {
        "model": model,
        "messages": [
            {"role": "system", "content": prompt.system_prompt},
            {"role": "user", "content": prompt.user_prompt},
        ],
        "stream": False,
        "options": {
            "num_predict": settings.max_output_tokens,
            "temperature": settings.temperature,
        },
    }
    if settings.json_mode:
        request_body["format"] = "json"

    response = await client.post(f"{ollama_host}/api/chat", json=request_body, timeout=settings.timeout)
    if response.status_code >= 400:
        return _failed(model, response)

    data = response.json()
    message = data.get("message") if isinstance(data, dict) else None
    if not isinstance(message, dict):
        return GenerationResult(model=model, failure=FailureKind.UPSTREAM, error=f"Unexpected Ollama payload: {str(data)[:300]}")
    content = message.get("content") or ""
    logger.info("ollama_response", content_len=len(content), content_preview=content[:200] if content else "EMPTY")
    return GenerationResult(model=model, text=content)


async def _call_gemini(
    client: httpx.AsyncClient,
    prompt: PromptPair,
    model: str,
    config: dict,
    settings: GenerationSettings,
) -> GenerationResult:
    """
    Call Google Gemini generateContent.

    API docs: https://ai.google.dev/gemini-api/docs/text-generation
    """
    # Gemini 2.5 models are "thinking" models: maxOutputTokens covers BOTH
    # thinking tokens AND response tokens, so boost it to avoid truncated JSON.
    is_thinking_model = "2.5" in model or "thinking" in model.lower()
    max_tokens = settings.max_output_tokens
    effective_max_tokens = max(max_tokens * 4, 8000) if is_thinking_model else max_tokens

    logger.info(
        "calling_gemini",
        model=model,
        prompt_len=len(prompt.user_prompt),
        json_mode=settings.json_mode,
        is_thinking_model=is_thinking_model,
        max_tokens_requested=max_tokens,
        max_tokens_effective=effective_max_tokens,
        temperature=settings.temperature,
    )

    request_body = {
        "systemInstruction": {"parts": [{"text": prompt.system_prompt}]},
        "contents": [
            {
                "role": "user",
                "parts": [{"text": prompt.user_prompt}],
            }
        ],
        "generationConfig": {
            "maxOutputTokens": effective_max_tokens,
            "temperature": settings.temperature,
        },
    }
    if settings.json_mode:
        request_body["generationConfig"]["responseMimeType"] = "application/json"

    url = f"{GEMINI_API_BASE}/models/{model}:generateContent"

    # Retry with exponential backoff for rate limits (429)
    for attempt in range(GEMINI_MAX_RETRIES + 1):
        response = await client.post(
            url,
            headers={
                "Content-Type": "application/json",
                "x-goog-api-key": config["google_api_key"],
            },
            json=request_body,
            timeout=settings.timeout,
        )

        if response.status_code == 429 and attempt < GEMINI_MAX_RETRIES:
            wait_time = GEMINI_BACKOFF_BASE * (2 ** attempt)
            logger.warning(
                "gemini_rate_limited_retrying",
                attempt=attempt + 1,
                max_retries=GEMINI_MAX_RETRIES,
                wait_time=wait_time,
            )
            await asyncio.sleep(wait_time)
            continue

        if response.status_code >= 400:
            return _failed(model, response)

        data = response.json()

        # Response: {"candidates": [{"content": {"parts": [{"text": "..."}]}}]}
        try:
            candidate = data["candidates"][0]
            parts = candidate["content"].get("parts") or []
            # Thinking models may interleave thought parts; keep the answer text only
            content = "".join(p.get("text") or "" for p in parts if not p.get("thought"))
            finish_reason = candidate.get("finishReason")
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            logger.error("gemini_parse_error", error=str(e), full_response=str(data)[:500])
            return GenerationResult(model=model, failure=FailureKind.UPSTREAM, error=f"Failed to parse Gemini response: {str(data)[:300]}")

        logger.info(
            "gemini_response",
            content_len=len(content),
            finish_reason=finish_reason,
            content_preview=content[:200] if content else "EMPTY",
        )
        return GenerationResult(model=model, text=content)

    # Loop only exits via return; kept for type checkers
    return GenerationResult(model=model, failure=FailureKind.UPSTREAM, error="Gemini call failed after all retries")


_PROVIDER_CALLS = {
    "gemini": _call_gemini,
    "openai": _call_openai,
    "anthropic": _call_anthropic,
    "ollama": _call_ollama,
}


async def _call_model(
    client: httpx.AsyncClient,
    prompt: PromptPair,
    model: str,
    config: dict,
    settings: GenerationSettings,
) -> GenerationResult:
    """One attempt against one model. Transport errors become upstream failures."""
    call = _PROVIDER_CALLS[config["provider"]]
    try:
        return await call(client, prompt, model, config, settings)
    except httpx.TimeoutException as e:
        logger.error("llm_call_timeout", provider=config["provider"], model=model, timeout=settings.timeout)
        return GenerationResult(model=model, failure=FailureKind.UPSTREAM, error=f"Timed out after {settings.timeout}s: {e}")
    except (httpx.HTTPError, json.JSONDecodeError) as e:
        logger.error("llm_call_failed", provider=config["provider"], model=model, error=str(e))
        return GenerationResult(model=model, failure=FailureKind.UPSTREAM, error=str(e))
    except (KeyError, IndexError, TypeError, AttributeError, ValueError) as e:
        logger.error("llm_payload_unexpected", provider=config["provider"], model=model, error=str(e))
        return GenerationResult(model=model, failure=FailureKind.UPSTREAM, error=f"Unexpected response payload: {e}")


# =============================================================================
# PUBLIC ENTRY POINT
# =============================================================================

async def generate(
    prompt: PromptPair,
    config: dict,
    settings: Optional[GenerationSettings] = None,
    client: Optional[httpx.AsyncClient] = None,
    catalog_cache: Optional[ModelCatalogCache] = None,
) -> GenerationResult:
    """
    Generate text with the configured model, falling back once if the model is rejected.

    Args:
        prompt: System + user prompt
        config: LLM configuration dict (see _get_llm_config)
        settings: Generation parameters (temperature, token budget, JSON hint, timeout)
        client: Optional httpx client (creates one if not provided)
        catalog_cache: Optional model catalog cache shared across requests

    Returns:
        GenerationResult; check .failure or call .unwrap()

    Raises:
        ConfigurationError: Missing credential, before any network call
        NoModelAvailable: The model was rejected and no fallback could be resolved
    """
    settings = settings or GenerationSettings()
    require_credentials(config)

    if config.get("temperature") is not None:
        settings = settings.model_copy(update={"temperature": config["temperature"]})

    model = config["model"]
    cache_data = {
        "system": prompt.system_prompt,
        "prompt": prompt.user_prompt,
        "provider": config["provider"],
        "model": model,
        "max_tokens": settings.max_output_tokens,
    }
    cached = _get_cached_response("llm_raw", cache_data, config)
    if cached:
        return GenerationResult(model=cached.get("model", model), text=cached.get("response", ""))

    close_client = False
    if client is None:
        client = httpx.AsyncClient(timeout=settings.timeout)
        close_client = True

    try:
        result = await _call_model(client, prompt, model, config, settings)

        if result.failure == FailureKind.MODEL_NOT_FOUND:
            logger.warning("model_not_found", provider=config["provider"], model=model, error=(result.error or "")[:200])
            # NoModelAvailable propagates to the caller
            fallback = await resolve_fallback(
                model,
                config.get("tier") or "quality",
                config,
                client=client,
                cache=catalog_cache,
            )
            result = await _call_model(client, prompt, fallback, config, settings)
            result.fallback_used = True

    finally:
        if close_client:
            await client.aclose()

    if result.ok:
        _save_to_cache("llm_raw", cache_data, {"response": result.text, "model": result.model}, config)
        logger.info(
            "llm_generation_complete",
            provider=config["provider"],
            model=result.model,
            fallback_used=result.fallback_used,
            response_len=len(result.text or ""),
        )
    else:
        logger.error(
            "llm_generation_failed",
            provider=config["provider"],
            model=result.model,
            failure=result.failure.value,
            error=(result.error or "")[:200],
        )

    return result
