"""
Model catalog resolver.

Lists the text models the configured credential can call and picks a
fallback when the endpoint rejects the requested model. Only used after a
model-not-found failure, never on the happy path.
"""
import time
from typing import Dict, List, Optional, Tuple

import httpx
import structlog

from shared.errors import NoModelAvailable, UpstreamError

from .schemas import ModelCatalogEntry

logger = structlog.get_logger()

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
CATALOG_TIMEOUT = 15

# Ordered preference lists per provider and tier.
# Matched exactly first, then as a name prefix (e.g. "gemini-2.5-pro" matches
# "gemini-2.5-pro-preview-05-06").
FALLBACK_PREFERENCES: Dict[str, Dict[str, List[str]]] = {
    "gemini": {
        "quality": ["gemini-2.5-pro", "gemini-1.5-pro", "gemini-2.5-flash", "gemini-2.0-flash", "gemini-1.5-flash"],
        "fast": ["gemini-2.5-flash", "gemini-2.0-flash", "gemini-2.5-flash-lite", "gemini-1.5-flash"],
    },
    "openai": {
        "quality": ["gpt-4.1", "gpt-4o", "gpt-4-turbo", "gpt-4o-mini"],
        "fast": ["gpt-4o-mini", "gpt-4.1-mini", "gpt-3.5-turbo"],
    },
    "anthropic": {
        "quality": ["claude-sonnet-4", "claude-opus-4", "claude-3-7-sonnet", "claude-3-5-sonnet"],
        "fast": ["claude-3-5-haiku", "claude-3-haiku"],
    },
    "ollama": {
        "quality": ["llama3.1", "qwen2.5", "mistral"],
        "fast": ["llama3.2", "qwen2.5", "llama3.1"],
    },
}

# Gemini model families that list generateContent but cannot write articles
_NON_TEXT_MARKERS = ("embedding", "image", "tts", "aqa", "imagen", "veo")


class ModelCatalogCache:
    """
    Time-bounded catalog cache keyed by provider.

    Optional: pass one instance into resolve_fallback / generate to share
    catalog lookups across requests. Omitting it just means one extra
    listing call per fallback event.
    """

    def __init__(self, ttl_seconds: float = 300):
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[str, Tuple[float, List[ModelCatalogEntry]]] = {}

    def get(self, provider: str) -> Optional[List[ModelCatalogEntry]]:
        cached = self._entries.get(provider)
        if not cached:
            return None
        stored_at, entries = cached
        if self.ttl_seconds and time.monotonic() - stored_at > self.ttl_seconds:
            self._entries.pop(provider, None)
            return None
        return entries

    def put(self, provider: str, entries: List[ModelCatalogEntry]) -> None:
        self._entries[provider] = (time.monotonic(), list(entries))


def _strip_model_prefix(name: str) -> str:
    return name[len("models/"):] if name.startswith("models/") else name


def _gemini_entry(model: dict) -> ModelCatalogEntry:
    name = _strip_model_prefix(model.get("name", ""))
    methods = model.get("supportedGenerationMethods") or []
    supports = "generateContent" in methods and not any(m in name.lower() for m in _NON_TEXT_MARKERS)
    return ModelCatalogEntry(name=name, supports_generation=supports)


async def _get_json(client: httpx.AsyncClient, url: str, **kwargs) -> dict:
    try:
        response = await client.get(url, timeout=CATALOG_TIMEOUT, **kwargs)
    except httpx.HTTPError as e:
        raise UpstreamError(f"Model listing failed: {e}") from e
    if response.status_code >= 400:
        raise UpstreamError(
            f"Model listing failed ({response.status_code}): {response.text[:200]}",
            status_code=response.status_code,
        )
    try:
        return response.json()
    except ValueError as e:
        raise UpstreamError(f"Model listing returned invalid JSON: {e}") from e


async def list_models(
    config: dict,
    client: Optional[httpx.AsyncClient] = None,
) -> List[ModelCatalogEntry]:
    """
    Fetch the model catalog for the configured provider.

    Args:
        config: LLM config dict (provider + credentials, see _get_llm_config)
        client: Optional httpx client (creates one if not provided)

    Returns:
        Every listed model, with supports_generation set for text models

    Raises:
        UpstreamError: If the listing endpoint fails
    """
    provider = config["provider"]

    close_client = False
    if client is None:
        client = httpx.AsyncClient(timeout=CATALOG_TIMEOUT)
        close_client = True

    try:
        if provider == "gemini":
            entries: List[ModelCatalogEntry] = []
            page_token = None
            while True:
                params = {"pageSize": 1000}
                if page_token:
                    params["pageToken"] = page_token
                data = await _get_json(
                    client,
                    f"{GEMINI_API_BASE}/models",
                    headers={"x-goog-api-key": config.get("google_api_key") or ""},
                    params=params,
                )
                entries.extend(_gemini_entry(m) for m in data.get("models", []))
                page_token = data.get("nextPageToken")
                if not page_token:
                    break

        elif provider == "openai":
            data = await _get_json(
                client,
                "https://api.openai.com/v1/models",
                headers={"Authorization": f"Bearer {config.get('openai_api_key') or ''}"},
            )
            entries = [
                ModelCatalogEntry(
                    name=m["id"],
                    supports_generation=m["id"].startswith(("gpt-", "o1", "o3", "o4")),
                )
                for m in data.get("data", [])
                if m.get("id")
            ]

        elif provider == "anthropic":
            data = await _get_json(
                client,
                "https://api.anthropic.com/v1/models",
                headers={
                    "x-api-key": config.get("anthropic_api_key") or "",
                    "anthropic-version": "2023-06-01",
                },
            )
            entries = [ModelCatalogEntry(name=m["id"]) for m in data.get("data", []) if m.get("id")]

        elif provider == "ollama":
            data = await _get_json(client, f"{config['ollama_host']}/api/tags")
            entries = [
                ModelCatalogEntry(name=m["name"].split(":")[0] if m["name"].endswith(":latest") else m["name"])
                for m in data.get("models", [])
                if m.get("name")
            ]

        else:
            raise ValueError(f"Unknown LLM provider: {provider}")

    except (KeyError, TypeError, AttributeError) as e:
        raise UpstreamError(f"Unexpected {provider} model listing payload: {e}") from e

    finally:
        if close_client:
            await client.aclose()

    logger.info("model_catalog_fetched", provider=provider, count=len(entries))
    return entries


def select_fallback(
    entries: List[ModelCatalogEntry],
    requested_model: Optional[str],
    tier: str,
    provider: str,
) -> Optional[str]:
    """
    Pick a fallback model from a catalog.

    First name matching the tier's preference list (exact, then prefix),
    else the first callable entry, else None. The rejected model is never
    returned.
    """
    rejected = _strip_model_prefix(requested_model or "")
    candidates = [
        e.name for e in entries
        if e.supports_generation and e.name and e.name != rejected
    ]
    if not candidates:
        return None

    preferences = FALLBACK_PREFERENCES.get(provider, {}).get(tier) or []
    for preferred in preferences:
        if preferred in candidates:
            return preferred
        for name in candidates:
            if name.startswith(preferred):
                return name

    return candidates[0]


async def resolve_fallback(
    requested_model: Optional[str],
    tier: str,
    config: dict,
    client: Optional[httpx.AsyncClient] = None,
    cache: Optional[ModelCatalogCache] = None,
) -> str:
    """
    Resolve a replacement for a rejected model.

    Raises:
        NoModelAvailable: If the catalog cannot be fetched or has no callable model
    """
    provider = config["provider"]

    entries = cache.get(provider) if cache else None
    if entries is None:
        try:
            entries = await list_models(config, client=client)
        except UpstreamError as e:
            logger.error("model_catalog_failed", provider=provider, error=str(e))
            raise NoModelAvailable(
                f"Could not list {provider} models to replace {requested_model}: {e}",
                model=requested_model,
            ) from e
        if cache:
            cache.put(provider, entries)

    fallback = select_fallback(entries, requested_model, tier, provider)
    if not fallback:
        logger.error("no_fallback_model", provider=provider, rejected=requested_model, catalog_size=len(entries))
        raise NoModelAvailable(
            f"No callable {provider} model available to replace {requested_model}",
            model=requested_model,
        )

    logger.warning("model_fallback_resolved", provider=provider, rejected=requested_model, fallback=fallback, tier=tier)
    return fallback
