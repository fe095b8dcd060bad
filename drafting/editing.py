"""
Editing nodes for an existing article.

- improve_article_content: rewrite the markdown body for the audience
- generate_seo_meta: ask the model for SEO metadata, then enforce the caps

Both degrade instead of failing: the input content, or enforcer-derived
metadata, is returned when generation does not produce anything usable.
"""
from typing import Optional

import httpx
import structlog

from shared.errors import ConfigurationError, ModelUnavailable, UpstreamError

from .catalog import ModelCatalogCache
from .enforcer import content_is_thin, effective_length, enforce
from .llm import _get_llm_config, generate, require_credentials
from .prompts import PLACEHOLDER_RE, build_improve_prompt, build_seo_meta_prompt
from .recovery import parse_seo_meta, strip_code_fences
from .schemas import (
    GenerateSEOMetaInput,
    GenerateSEOMetaOutput,
    GenerationSettings,
    ImproveContentInput,
    ImproveContentOutput,
    PartialResponseFields,
)

logger = structlog.get_logger()

IMPROVE_SETTINGS = GenerationSettings(
    temperature=0.4,
    max_output_tokens=4096,
    json_mode=False,
)

SEO_SETTINGS = GenerationSettings(
    temperature=0.3,
    max_output_tokens=512,
    json_mode=True,
    timeout=30.0,
)


def _checked_config(ctx, params) -> dict:
    config = _get_llm_config(ctx, params.llm_config, params.provider_preference)
    try:
        require_credentials(config)
    except ConfigurationError as e:
        logger.error("editing_configuration_error", provider=config["provider"], error=str(e))
        ctx.report_output({
            "status": "error",
            "error": str(e),
        })
        raise
    return config


# =============================================================================
# CONTENT IMPROVEMENT
# =============================================================================

async def improve_article_content(
    ctx,
    params: ImproveContentInput,
    catalog_cache: Optional[ModelCatalogCache] = None,
) -> ImproveContentOutput:
    """
    Rewrite an article body to be more engaging and better structured.

    The rewrite is rejected (and the input returned) when generation fails,
    comes back thin, or drops figure placeholders the input still had.

    Raises:
        ConfigurationError: No credential for the resolved provider
    """
    ctx.report_input({
        "content_length": len(params.content or ""),
        "audience": params.audience,
        "provider": params.provider_preference,
    })
    config = _checked_config(ctx, params)
    client: Optional[httpx.AsyncClient] = getattr(ctx, "http_client", None)

    improved = None
    model_used = config["model"]
    try:
        result = await generate(
            build_improve_prompt(params.content, params.audience),
            config,
            IMPROVE_SETTINGS,
            client=client,
            catalog_cache=catalog_cache,
        )
        model_used = result.model
        improved = strip_code_fences(result.unwrap())
    except (ModelUnavailable, UpstreamError) as e:
        logger.warning("improve_generation_failed", error=str(e), error_type=type(e).__name__)

    reason = None
    if improved is None:
        reason = "generation_failed"
    elif content_is_thin(improved):
        reason = "thin_output"
    elif len(PLACEHOLDER_RE.findall(improved)) < len(PLACEHOLDER_RE.findall(params.content or "")):
        reason = "placeholders_dropped"

    if reason:
        logger.warning("improve_rejected", reason=reason, model=model_used)
        ctx.report_output({
            "status": "success",
            "improved": False,
            "reason": reason,
            "model_used": model_used,
        })
        return ImproveContentOutput(content=params.content, improved=False, model_used=model_used)

    logger.info(
        "content_improved",
        model=model_used,
        before_len=effective_length(params.content),
        after_len=effective_length(improved),
    )
    ctx.report_output({
        "status": "success",
        "improved": True,
        "content_preview": improved[:200],
        "model_used": model_used,
    })
    return ImproveContentOutput(content=improved, improved=True, model_used=model_used)


# =============================================================================
# SEO METADATA
# =============================================================================

async def suggest_seo_meta(
    title: str,
    content: str,
    config: dict,
    client: Optional[httpx.AsyncClient] = None,
    catalog_cache: Optional[ModelCatalogCache] = None,
) -> PartialResponseFields:
    """
    Ask the model for SEO title, description and keywords.

    Returns the recovered fields (possibly empty). Generation failures are
    logged and absorbed; a missing credential still raises ConfigurationError.
    """
    try:
        result = await generate(
            build_seo_meta_prompt(title, content),
            config,
            SEO_SETTINGS,
            client=client,
            catalog_cache=catalog_cache,
        )
        text = result.unwrap()
    except (ModelUnavailable, UpstreamError) as e:
        logger.warning("seo_meta_generation_failed", error=str(e), error_type=type(e).__name__)
        return PartialResponseFields()
    return parse_seo_meta(text)


def apply_seo_meta(
    title: str,
    content: str,
    suggested: PartialResponseFields,
) -> PartialResponseFields:
    """Combine the article with suggested SEO fields, ready for enforce()."""
    return PartialResponseFields(
        title=title,
        content=content,
        seo_title=suggested.seo_title,
        seo_description=suggested.seo_description,
        keywords=list(suggested.keywords),
        strategy=suggested.strategy,
    )


async def generate_seo_meta(
    ctx,
    params: GenerateSEOMetaInput,
    catalog_cache: Optional[ModelCatalogCache] = None,
) -> GenerateSEOMetaOutput:
    """
    Generate SEO metadata for an existing article.

    The model's suggestion goes through the content enforcer, so caps and
    keyword counts hold even when the model ignores them or fails.

    Raises:
        ConfigurationError: No credential for the resolved provider
    """
    ctx.report_input({
        "title": params.title[:200],
        "content_length": len(params.content or ""),
        "audience": params.audience,
        "provider": params.provider_preference,
    })
    config = _checked_config(ctx, params)

    suggested = await suggest_seo_meta(
        params.title,
        params.content,
        config,
        client=getattr(ctx, "http_client", None),
        catalog_cache=catalog_cache,
    )
    generated = bool(suggested.seo_title or suggested.seo_description or suggested.keywords)
    response = enforce(apply_seo_meta(params.title, params.content, suggested), params.audience)

    logger.info(
        "seo_meta_generated",
        generated=generated,
        title=response.seo_meta.title,
        keywords=len(response.seo_meta.keywords),
    )
    ctx.report_output({
        "status": "success",
        "generated": generated,
        "seo_title": response.seo_meta.title,
        "seo_description": response.seo_meta.description,
        "keywords": response.seo_meta.keywords,
    })
    return GenerateSEOMetaOutput(
        seo_meta=response.seo_meta,
        generated=generated,
        model_used=config["model"],
    )
