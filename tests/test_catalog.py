import httpx
import pytest

from drafting import catalog
from drafting.catalog import (
    ModelCatalogCache,
    list_models,
    resolve_fallback,
    select_fallback,
)
from drafting.schemas import ModelCatalogEntry
from shared.errors import NoModelAvailable, UpstreamError

GEMINI_CONFIG = {"provider": "gemini", "google_api_key": "test-key"}


def entries(*names, callable_=True):
    return [ModelCatalogEntry(name=n, supports_generation=callable_) for n in names]


# =============================================================================
# SELECTION
# =============================================================================

def test_prefers_exact_preference_match():
    catalog_entries = entries("gemini-2.0-flash", "gemini-1.5-pro", "gemini-2.5-flash")
    assert select_fallback(catalog_entries, "gemini-2.5-pro", "quality", "gemini") == "gemini-1.5-pro"


def test_prefix_match_for_dated_names():
    catalog_entries = entries("gemini-2.0-flash", "gemini-2.5-pro-preview-05-06")
    assert select_fallback(catalog_entries, "gemini-ultra", "quality", "gemini") == "gemini-2.5-pro-preview-05-06"


def test_tier_changes_preference():
    catalog_entries = entries("gemini-2.5-pro", "gemini-2.5-flash")
    assert select_fallback(catalog_entries, "gemini-3-pro", "fast", "gemini") == "gemini-2.5-flash"
    assert select_fallback(catalog_entries, "gemini-3-pro", "quality", "gemini") == "gemini-2.5-pro"


def test_rejected_model_never_returned():
    catalog_entries = entries("gemini-2.5-pro", "gemini-2.0-flash")
    assert select_fallback(catalog_entries, "models/gemini-2.5-pro", "quality", "gemini") == "gemini-2.0-flash"


def test_first_callable_entry_when_no_preference_matches():
    catalog_entries = entries("custom-a", callable_=False) + entries("custom-b", "custom-c")
    assert select_fallback(catalog_entries, "missing", "quality", "gemini") == "custom-b"


def test_none_when_nothing_callable():
    assert select_fallback(entries("text-embedding-004", callable_=False), "x", "quality", "gemini") is None
    assert select_fallback([], "x", "quality", "gemini") is None


# =============================================================================
# LISTING
# =============================================================================

@pytest.mark.asyncio
async def test_list_gemini_models_follows_pages():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        assert request.headers["x-goog-api-key"] == "test-key"
        if "pageToken" not in request.url.params:
            return httpx.Response(200, json={
                "models": [
                    {"name": "models/gemini-2.5-pro", "supportedGenerationMethods": ["generateContent", "countTokens"]},
                    {"name": "models/text-embedding-004", "supportedGenerationMethods": ["embedContent"]},
                ],
                "nextPageToken": "page-2",
            })
        assert request.url.params["pageToken"] == "page-2"
        return httpx.Response(200, json={
            "models": [
                {"name": "models/gemini-2.5-flash-image", "supportedGenerationMethods": ["generateContent"]},
                {"name": "models/gemini-2.0-flash", "supportedGenerationMethods": ["generateContent"]},
            ],
        })

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await list_models(GEMINI_CONFIG, client=client)

    assert len(seen) == 2
    assert [(e.name, e.supports_generation) for e in result] == [
        ("gemini-2.5-pro", True),
        ("text-embedding-004", False),
        ("gemini-2.5-flash-image", False),
        ("gemini-2.0-flash", True),
    ]


@pytest.mark.asyncio
async def test_list_openai_models_marks_chat_models():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer sk-test"
        return httpx.Response(200, json={"data": [{"id": "gpt-4o"}, {"id": "whisper-1"}, {"id": "o3-mini"}]})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await list_models({"provider": "openai", "openai_api_key": "sk-test"}, client=client)

    assert {e.name: e.supports_generation for e in result} == {"gpt-4o": True, "whisper-1": False, "o3-mini": True}


@pytest.mark.asyncio
async def test_list_ollama_models_strips_latest_tag():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [{"name": "llama3.1:latest"}, {"name": "qwen2.5:14b"}]})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await list_models({"provider": "ollama", "ollama_host": "http://ollama.test"}, client=client)

    assert [e.name for e in result] == ["llama3.1", "qwen2.5:14b"]


@pytest.mark.asyncio
async def test_list_models_http_error_is_upstream_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(UpstreamError) as exc_info:
            await list_models(GEMINI_CONFIG, client=client)

    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [{"models": None}, [{"name": "models/gemini-2.5-flash"}], {"models": ["gemini-2.5-flash"]}])
async def test_list_models_unexpected_payload_is_upstream_error(payload):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=payload)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(UpstreamError):
            await list_models(GEMINI_CONFIG, client=client)


# =============================================================================
# RESOLUTION + CACHE
# =============================================================================

def _catalog_handler(calls, names):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(200, json={
            "models": [{"name": f"models/{n}", "supportedGenerationMethods": ["generateContent"]} for n in names],
        })
    return handler


@pytest.mark.asyncio
async def test_resolve_fallback_uses_cache():
    calls = []
    cache = ModelCatalogCache(ttl_seconds=300)

    async with httpx.AsyncClient(transport=httpx.MockTransport(_catalog_handler(calls, ["gemini-2.5-flash"]))) as client:
        first = await resolve_fallback("gemini-2.5-pro", "quality", GEMINI_CONFIG, client=client, cache=cache)
        second = await resolve_fallback("gemini-2.5-pro", "quality", GEMINI_CONFIG, client=client, cache=cache)

    assert first == second == "gemini-2.5-flash"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_resolve_fallback_without_candidates_raises():
    calls = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(_catalog_handler(calls, ["gemini-2.5-pro"]))) as client:
        with pytest.raises(NoModelAvailable):
            await resolve_fallback("gemini-2.5-pro", "quality", GEMINI_CONFIG, client=client)


@pytest.mark.asyncio
async def test_resolve_fallback_listing_failure_raises_no_model():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(NoModelAvailable) as exc_info:
            await resolve_fallback("gemini-2.5-pro", "quality", GEMINI_CONFIG, client=client)

    assert exc_info.value.model == "gemini-2.5-pro"


def test_cache_entries_expire(monkeypatch):
    now = [1000.0]
    monkeypatch.setattr(catalog.time, "monotonic", lambda: now[0])

    cache = ModelCatalogCache(ttl_seconds=60)
    cache.put("gemini", entries("gemini-2.5-flash"))
    assert [e.name for e in cache.get("gemini")] == ["gemini-2.5-flash"]

    now[0] += 61
    assert cache.get("gemini") is None
    assert cache.get("openai") is None
