"""
Image orchestration for generated articles.

Generates a cover image and up to three figures, uploads them through the
storage backend and swaps the figure placeholder tokens in the article
body for markdown images. Every image is optional: failures degrade to an
external image search (cover), the cover image (figures), or nothing.

Image generation chain (IMAGE_PROVIDER=gemini, the default):
- gemini-3-pro-image-preview   (generateContent, IMAGE modality)
- gemini-2.5-flash-image       (generateContent, IMAGE modality)
- Imagen                       (predict; model picked by purpose, then the fast model)
IMAGE_MODEL forces a single model.

IMAGE_PROVIDER=openai (the default when LLM_PROVIDER is openai) uses the
OpenAI images endpoint (dall-e-3) instead.
"""
import asyncio
import base64
import binascii
import re
from typing import List, Optional, Tuple
from urllib.parse import quote

import httpx
import structlog

from shared.errors import ImageGenerationFailure
from shared.storage import InlineStorage, generate_file_name

from .prompts import figure_placeholder, strip_placeholders
from .schemas import Audience, FigureDescriptor, GenerationResponse, _normalize_provider

logger = structlog.get_logger()

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"

GEMINI_IMAGE_MODEL = "gemini-3-pro-image-preview"
GEMINI_FLASH_IMAGE_MODEL = "gemini-2.5-flash-image"

IMAGEN_MODEL_BY_PURPOSE = {
    "cover": "imagen-4.0-ultra-generate-001",
    "illustration": "imagen-4.0-ultra-generate-001",
    "chart": "imagen-4.0-generate-001",
}
IMAGEN_FALLBACK_MODEL = "imagen-4.0-fast-generate-001"

OPENAI_IMAGES_URL = "https://api.openai.com/v1/images/generations"
OPENAI_IMAGE_MODEL = "dall-e-3"
OPENAI_IMAGE_SIZE = "1792x1024"

IMAGE_TIMEOUT = 120
SEARCH_TIMEOUT = 8
SEARCH_USER_AGENT = "ai-medical-blog/1.0 (cover search)"
WIKIMEDIA_API_URL = "https://commons.wikimedia.org/w/api.php"
UNSPLASH_FEATURED_URL = "https://source.unsplash.com/featured/1200x675/"

MAX_FIGURES = 3

_FIGURE_NUMBER_RE = re.compile(r"FIGURE_(\d+)_URL")


def _get_image_config(ctx) -> dict:
    """Get image generation configuration from context secrets (team .env)."""
    llm_provider = _normalize_provider(ctx.get_secret("LLM_PROVIDER") or "")
    provider = _normalize_provider(ctx.get_secret("IMAGE_PROVIDER") or "") or (
        "openai" if llm_provider == "openai" else "gemini"
    )
    return {
        "provider": provider,  # gemini, openai
        "openai_api_key": ctx.get_secret("OPENAI_API_KEY"),
        "google_api_key": ctx.get_secret("GOOGLE_API_KEY") or ctx.get_secret("GEMINI_API_KEY"),
        "image_model": ctx.get_secret("IMAGE_MODEL"),  # None = default chain
        "search_provider": (ctx.get_secret("COVER_IMAGE_SEARCH_PROVIDER") or "wikimedia").lower(),
    }


def extension_from_mime(mime_type: str) -> str:
    if mime_type == "image/jpeg":
        return "jpg"
    if mime_type == "image/webp":
        return "webp"
    return "png"


def has_image_credentials(image_config: dict) -> bool:
    if image_config.get("provider") == "openai":
        return bool(image_config.get("openai_api_key"))
    return bool(image_config.get("google_api_key"))


def _is_gemini_image_model(model: str) -> bool:
    lowered = model.lower()
    return not lowered.startswith("imagen") and ("image" in lowered or "nano-banana" in lowered)


# =============================================================================
# IMAGE GENERATION
# =============================================================================

async def _generate_with_gemini(
    client: httpx.AsyncClient,
    prompt: str,
    model: str,
    api_key: str,
) -> Tuple[bytes, str]:
    """generateContent with the IMAGE response modality. Returns (bytes, mime type)."""
    try:
        response = await client.post(
            f"{GEMINI_API_BASE}/models/{model}:generateContent",
            headers={
                "Content-Type": "application/json",
                "x-goog-api-key": api_key,
            },
            json={
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": {
                    "responseModalities": ["IMAGE", "TEXT"],
                },
            },
            timeout=IMAGE_TIMEOUT,
        )
    except httpx.HTTPError as e:
        raise ImageGenerationFailure(f"{model} request failed: {e}") from e

    if response.status_code >= 400:
        raise ImageGenerationFailure(f"{model} generation failed ({response.status_code}): {response.text[:200]}")

    try:
        data = response.json()
    except ValueError as e:
        raise ImageGenerationFailure(f"{model} returned invalid JSON: {e}") from e
    if data.get("error"):
        raise ImageGenerationFailure(f"{model} API error: {data['error'].get('message')}")

    try:
        parts = data["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError):
        raise ImageGenerationFailure(f"{model} returned no parts")

    image_part = next((p["inlineData"] for p in parts if p.get("inlineData", {}).get("data")), None)
    if not image_part:
        raise ImageGenerationFailure(f"{model} returned no image data")

    try:
        image_bytes = base64.b64decode(image_part["data"])
    except (binascii.Error, ValueError) as e:
        raise ImageGenerationFailure(f"{model} returned invalid base64: {e}") from e

    return image_bytes, image_part.get("mimeType") or "image/png"


async def _generate_with_imagen(
    client: httpx.AsyncClient,
    prompt: str,
    model: str,
    api_key: str,
) -> Tuple[bytes, str]:
    """Imagen predict API. Returns (bytes, mime type)."""
    try:
        response = await client.post(
            f"{GEMINI_API_BASE}/models/{model}:predict",
            headers={
                "Content-Type": "application/json",
                "x-goog-api-key": api_key,
            },
            json={
                "instances": [{"prompt": prompt}],
                "parameters": {"sampleCount": 1},
            },
            timeout=IMAGE_TIMEOUT,
        )
    except httpx.HTTPError as e:
        raise ImageGenerationFailure(f"{model} request failed: {e}") from e

    if response.status_code >= 400:
        raise ImageGenerationFailure(f"{model} generation failed ({response.status_code}): {response.text[:200]}")

    try:
        predictions = response.json().get("predictions") or [{}]
    except ValueError as e:
        raise ImageGenerationFailure(f"{model} returned invalid JSON: {e}") from e
    prediction = predictions[0]
    nested = prediction.get("image") or {}
    encoded = prediction.get("bytesBase64Encoded") or nested.get("bytesBase64Encoded")
    mime_type = prediction.get("mimeType") or nested.get("mimeType") or "image/png"
    if not encoded:
        raise ImageGenerationFailure(f"{model} returned no image bytes")

    try:
        return base64.b64decode(encoded), mime_type
    except (binascii.Error, ValueError) as e:
        raise ImageGenerationFailure(f"{model} returned invalid base64: {e}") from e


async def _generate_with_openai(
    client: httpx.AsyncClient,
    prompt: str,
    model: str,
    api_key: str,
) -> Tuple[bytes, str]:
    """OpenAI images API (base64 response). Returns (bytes, mime type)."""
    try:
        response = await client.post(
            OPENAI_IMAGES_URL,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": model,
                "prompt": prompt,
                "n": 1,
                "size": OPENAI_IMAGE_SIZE,
                "quality": "standard",
                "response_format": "b64_json",
            },
            timeout=IMAGE_TIMEOUT,
        )
    except httpx.HTTPError as e:
        raise ImageGenerationFailure(f"{model} request failed: {e}") from e

    if response.status_code >= 400:
        raise ImageGenerationFailure(f"{model} generation failed ({response.status_code}): {response.text[:200]}")

    try:
        encoded = response.json()["data"][0]["b64_json"]
    except ValueError as e:
        raise ImageGenerationFailure(f"{model} returned invalid JSON: {e}") from e
    except (KeyError, IndexError, TypeError):
        raise ImageGenerationFailure(f"{model} returned no image data")
    if not encoded:
        raise ImageGenerationFailure(f"{model} returned no image data")

    try:
        return base64.b64decode(encoded), "image/png"
    except (binascii.Error, ValueError) as e:
        raise ImageGenerationFailure(f"{model} returned invalid base64: {e}") from e


_IMAGE_CALLS = {
    "gemini": _generate_with_gemini,
    "imagen": _generate_with_imagen,
    "openai": _generate_with_openai,
}


def _model_chain(purpose: str, override: Optional[str], provider: str = "gemini") -> List[Tuple[str, str]]:
    if provider == "openai":
        if override and override.lower().startswith(("dall-e", "gpt-image")):
            return [("openai", override)]
        return [("openai", OPENAI_IMAGE_MODEL)]
    if override:
        if _is_gemini_image_model(override):
            return [("gemini", override)]
        chain = [("imagen", override)]
    else:
        chain = [
            ("gemini", GEMINI_IMAGE_MODEL),
            ("gemini", GEMINI_FLASH_IMAGE_MODEL),
            ("imagen", IMAGEN_MODEL_BY_PURPOSE.get(purpose, IMAGEN_FALLBACK_MODEL)),
        ]
    if chain[-1][1] != IMAGEN_FALLBACK_MODEL:
        chain.append(("imagen", IMAGEN_FALLBACK_MODEL))
    return chain


async def generate_image_bytes(
    prompt: str,
    purpose: str,
    image_config: dict,
    client: httpx.AsyncClient,
) -> Tuple[bytes, str]:
    """
    Run the image model chain until one model returns an image.

    Raises:
        ImageGenerationFailure: If every model in the chain failed
    """
    provider = image_config.get("provider") or "gemini"
    if not has_image_credentials(image_config):
        if provider == "openai":
            raise ImageGenerationFailure("OPENAI_API_KEY is not configured")
        raise ImageGenerationFailure("GOOGLE_API_KEY (or GEMINI_API_KEY) is not configured")
    api_key = image_config["openai_api_key"] if provider == "openai" else image_config["google_api_key"]

    errors = []
    for kind, model in _model_chain(purpose, image_config.get("image_model"), provider):
        try:
            image_bytes, mime_type = await _IMAGE_CALLS[kind](client, prompt, model, api_key)
        except ImageGenerationFailure as e:
            logger.warning("image_model_failed", model=model, purpose=purpose, error=str(e)[:200])
            errors.append(str(e))
            continue
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            logger.warning("image_payload_unexpected", model=model, purpose=purpose, error=str(e)[:200])
            errors.append(f"{model} returned an unexpected payload: {e}")
            continue
        logger.info("image_generated", provider=provider, model=model, purpose=purpose, size=len(image_bytes), prompt=prompt[:50])
        return image_bytes, mime_type

    raise ImageGenerationFailure("All image models failed: " + " | ".join(errors))


async def generate_and_upload(
    prompt: str,
    name: str,
    prefix: str,
    purpose: str,
    image_config: dict,
    storage,
    client: httpx.AsyncClient,
) -> str:
    """Generate one image and upload it. Returns the public URL."""
    image_bytes, mime_type = await generate_image_bytes(prompt, purpose, image_config, client)
    file_name = generate_file_name(f"{name}.{extension_from_mime(mime_type)}", prefix)
    try:
        return await storage.upload(image_bytes, file_name, mime_type)
    except (OSError, ValueError) as e:
        raise ImageGenerationFailure(f"Upload of {file_name} failed: {e}") from e


# =============================================================================
# EXTERNAL IMAGE SEARCH
# =============================================================================

def build_search_query(
    title: str,
    audience: Audience,
    category: Optional[str] = None,
    tags: Optional[List[str]] = None,
) -> str:
    parts = ["ophthalmology", title]
    if category:
        parts.append(category)
    if tags:
        parts.extend(tags[:5])
    parts.append("patient education" if audience == "patient" else "clinical")
    return " ".join(" ".join(parts).split())


def _unsplash_url(query: str) -> str:
    return f"{UNSPLASH_FEATURED_URL}?{quote(query, safe='')}"


async def find_cover_image_url(
    title: str,
    audience: Audience,
    category: Optional[str] = None,
    tags: Optional[List[str]] = None,
    provider: str = "wikimedia",
    client: Optional[httpx.AsyncClient] = None,
) -> Optional[str]:
    """
    Best-effort cover image from an external search. Never raises.

    wikimedia: Commons file search (ns 6), first result with an image MIME
    type; falls back to a topic-based Unsplash featured URL.
    unsplash: the Unsplash featured URL without any API call.
    """
    query = build_search_query(title, audience, category, tags)

    if provider == "unsplash":
        return _unsplash_url(query)

    close_client = False
    if client is None:
        client = httpx.AsyncClient(timeout=SEARCH_TIMEOUT)
        close_client = True

    try:
        response = await client.get(
            WIKIMEDIA_API_URL,
            params={
                "action": "query",
                "format": "json",
                "origin": "*",
                "generator": "search",
                "gsrnamespace": "6",
                "gsrlimit": "8",
                "gsrsearch": query,
                "prop": "imageinfo",
                "iiprop": "url|mime",
                "iiurlwidth": "1200",
            },
            headers={"User-Agent": SEARCH_USER_AGENT},
            timeout=SEARCH_TIMEOUT,
        )
        if response.status_code >= 400:
            logger.warning("cover_search_failed", status=response.status_code, body=response.text[:200])
        else:
            pages = (response.json().get("query") or {}).get("pages") or {}
            for page in pages.values():
                info = (page.get("imageinfo") or [{}])[0]
                mime = info.get("mime")
                url = info.get("thumburl") or info.get("url")
                if url and (not mime or mime.startswith("image/")):
                    logger.info("cover_search_hit", provider="wikimedia", url=url)
                    return url
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("cover_search_error", error=str(e))
    except (KeyError, IndexError, TypeError, AttributeError) as e:
        logger.warning("cover_search_payload_unexpected", error=str(e))
    finally:
        if close_client:
            await client.aclose()

    return _unsplash_url(query)


# =============================================================================
# PLACEHOLDER SUBSTITUTION
# =============================================================================

def synthesize_cover_prompt(title: str) -> str:
    return (
        f'Professional medical illustration related to ophthalmology for an article titled "{title}". '
        "Clean, modern medical aesthetic. No text in the image."
    )


def figure_markdown(figure: FigureDescriptor, url: str, index: int) -> str:
    alt = re.sub(r"[\[\]\n]+", " ", figure.alt or figure.caption or f"Ilustracja {index}").strip()
    caption = re.sub(r"[*\n]+", " ", figure.caption).strip()
    image = f"![{alt}]({url})"
    return f"{image}\n*{caption}*" if caption else image


def _figure_tokens(figure: FigureDescriptor, index: int) -> List[str]:
    """
    Tokens standing for this figure. A declared placeholder wins over the
    figure's list position; both token forms of its number are matched.
    """
    declared = figure.placeholder.strip()
    if declared:
        match = _FIGURE_NUMBER_RE.search(declared)
        if not match:
            return [declared]
        number = int(match.group(1))
    else:
        number = index
    tokens = [declared, figure_placeholder(number), f"{{{{FIGURE_{number}_URL}}}}"]
    unique = []
    for token in tokens:
        if token and token not in unique:
            unique.append(token)
    return unique


def replace_figure_tokens(content: str, tokens: List[str], markdown: str) -> Tuple[str, int]:
    """
    Replace every occurrence of any token, bare or as a link/image target,
    with markdown. Returns (content, replacements).
    """
    total = 0
    for token in tokens:
        pattern = re.compile(r"!?\[[^\]\n]*\]\(\s*" + re.escape(token) + r"\s*\)|" + re.escape(token))
        content, count = pattern.subn(lambda _m: markdown, content)
        total += count
    return content, total


# =============================================================================
# PUBLIC ENTRY POINT
# =============================================================================

async def attach_images(
    response: GenerationResponse,
    figures: List[FigureDescriptor],
    wants_images: bool,
    cover_prompt: Optional[str] = None,
    audience: Audience = "patient",
    image_config: Optional[dict] = None,
    storage=None,
    client: Optional[httpx.AsyncClient] = None,
) -> GenerationResponse:
    """
    Attach cover and figure images to an enforced response.

    Without wants_images or without a key for the image provider only the
    external search runs. Figures beyond MAX_FIGURES are ignored. The
    returned content never contains placeholder tokens.
    """
    image_config = image_config or {}
    storage = storage or InlineStorage()
    search_provider = image_config.get("search_provider") or "wikimedia"
    figures = list(figures or [])[:MAX_FIGURES]

    close_client = False
    if client is None:
        client = httpx.AsyncClient(timeout=IMAGE_TIMEOUT)
        close_client = True

    try:
        has_key = has_image_credentials(image_config)
        if not wants_images or not has_key:
            logger.info("image_generation_skipped", wants_images=wants_images, has_key=has_key)
            cover_url = response.generated_image_url or await find_cover_image_url(
                response.title,
                audience,
                response.suggested_category,
                response.suggested_tags,
                provider=search_provider,
                client=client,
            )
            return response.model_copy(update={
                "content": strip_placeholders(response.content),
                "generated_image_url": cover_url,
            })

        # Cover: generated, else searched
        cover_url = None
        try:
            cover_url = await generate_and_upload(
                cover_prompt or synthesize_cover_prompt(response.title),
                "cover",
                "ai-cover",
                "cover",
                image_config,
                storage,
                client,
            )
        except ImageGenerationFailure as e:
            logger.warning("cover_image_generation_failed", error=str(e)[:300])
        if not cover_url:
            cover_url = await find_cover_image_url(
                response.title,
                audience,
                response.suggested_category,
                response.suggested_tags,
                provider=search_provider,
                client=client,
            )

        # Figures: independent, concurrent, isolated
        async def generate_figure(index: int, figure: FigureDescriptor) -> Optional[str]:
            if not figure.prompt:
                logger.warning("figure_without_prompt", index=index, figure_id=figure.id)
                return None
            try:
                return await generate_and_upload(
                    figure.prompt,
                    figure.id or f"figure-{index}",
                    "ai-figure",
                    figure.type,
                    image_config,
                    storage,
                    client,
                )
            except ImageGenerationFailure as e:
                logger.error("figure_image_failed", index=index, figure_id=figure.id, error=str(e)[:300])
                return None

        figure_urls = await asyncio.gather(
            *(generate_figure(i, figure) for i, figure in enumerate(figures, start=1))
        )

    finally:
        if close_client:
            await client.aclose()

    content = response.content
    generated = 0
    for index, (figure, url) in enumerate(zip(figures, figure_urls), start=1):
        if url:
            generated += 1
        else:
            url = cover_url
        if not url:
            continue
        content, replaced = replace_figure_tokens(content, _figure_tokens(figure, index), figure_markdown(figure, url, index))
        if not replaced:
            logger.info("figure_placeholder_not_in_content", index=index, figure_id=figure.id)

    content = strip_placeholders(content)

    logger.info(
        "images_attached",
        has_cover=bool(cover_url),
        figures_requested=len(figures),
        figures_generated=generated,
    )

    return response.model_copy(update={
        "content": content,
        "generated_image_url": cover_url,
    })
