"""
Article generation node.

Turns extracted document text into a publishable GenerationResponse:
prompt -> generation (with one model fallback) -> recovery parse -> optional
rescue -> enforcement -> images -> final enforcement. Only a missing
credential reaches the caller; every other failure degrades the article
instead of aborting it.
"""
from typing import Optional

import httpx
import structlog

from shared.errors import ConfigurationError, ModelUnavailable, UpstreamError
from shared.storage import get_storage

from .catalog import ModelCatalogCache
from .enforcer import content_is_thin, effective_length, enforce
from .images import _get_image_config, attach_images
from .llm import _get_llm_config, generate, require_credentials
from .prompts import RESCUE_DOCUMENT_CHARS, build_prompt, normalize_document_text, strip_placeholders
from .recovery import parse
from .rescue import merge_rescue, rescue
from .schemas import (
    GenerateArticleInput,
    GenerateArticleOutput,
    GenerationRequest,
    PartialResponseFields,
)

logger = structlog.get_logger()


def _count_images(content: str) -> int:
    return strip_placeholders(content or "").count("![")


async def generate_article(
    ctx,
    params: GenerateArticleInput,
    catalog_cache: Optional[ModelCatalogCache] = None,
) -> GenerateArticleOutput:
    """
    Generate a blog article from document text.

    Args:
        ctx: Execution context (secrets, config, reporting, optional http_client)
        params: Document text, audience, provider preference and image switch
        catalog_cache: Optional model catalog cache shared across requests

    Returns:
        GenerateArticleOutput whose response always satisfies the article contract

    Raises:
        ConfigurationError: No credential for the resolved provider
    """
    config = _get_llm_config(ctx, params.llm_config, params.provider_preference)
    request = GenerationRequest(
        document_text=params.document_text,
        audience=params.audience,
        provider_preference=config["provider"],
        wants_images=params.wants_images,
        llm_config=params.llm_config,
    )

    ctx.report_input({
        "document_length": len(request.document_text or ""),
        "audience": request.audience,
        "wants_images": request.wants_images,
        "provider": config["provider"],
        "model": config["model"],
        "tier": config.get("tier"),
    })

    try:
        require_credentials(config)
    except ConfigurationError as e:
        logger.error("article_configuration_error", provider=config["provider"], error=str(e))
        ctx.report_output({
            "status": "error",
            "error": str(e),
        })
        raise

    client: Optional[httpx.AsyncClient] = getattr(ctx, "http_client", None)

    # 1. Primary generation
    raw_text = ""
    model_used = config["model"]
    fallback_used = False
    try:
        result = await generate(
            build_prompt(request.document_text, request.audience),
            config,
            client=client,
            catalog_cache=catalog_cache,
        )
        model_used = result.model
        fallback_used = result.fallback_used
        raw_text = result.unwrap()
    except (ModelUnavailable, UpstreamError) as e:
        logger.warning("article_generation_failed", error=str(e), error_type=type(e).__name__)

    # 2. Recovery
    fields = parse(raw_text)
    logger.info(
        "article_parsed",
        strategy=fields.strategy,
        content_len=effective_length(fields.content),
        figures=len(fields.figures),
    )

    # 3. Rescue when the article came back too thin
    rescued = False
    if content_is_thin(fields.content):
        excerpt = normalize_document_text(request.document_text, RESCUE_DOCUMENT_CHARS)
        rescue_fields = await rescue(
            excerpt,
            request.audience,
            config,
            client=client,
            catalog_cache=catalog_cache,
        )
        if rescue_fields is not None:
            fields = merge_rescue(fields, rescue_fields, request.audience)
            rescued = True

    # 4. Enforce, keeping figure placeholders for the image step
    response = enforce(fields, request.audience, keep_placeholders=True)
    images_before = _count_images(response.content)

    # 5. Images
    response = await attach_images(
        response,
        fields.figures,
        request.wants_images,
        cover_prompt=fields.cover_image_prompt,
        audience=request.audience,
        image_config=_get_image_config(ctx),
        storage=get_storage(ctx),
        client=client,
    )
    images_generated = max(_count_images(response.content) - images_before, 0)
    if response.generated_image_url:
        images_generated += 1

    # 6. Final pass: caps, lists and category hold at exit
    response = enforce(PartialResponseFields.from_response(response), request.audience)

    logger.info(
        "article_generated",
        title=response.title[:80],
        strategy=fields.strategy,
        model=model_used,
        fallback_used=fallback_used,
        rescued=rescued,
        images=images_generated,
        category=response.suggested_category,
    )

    ctx.report_output({
        "title": response.title,
        "content_preview": response.content[:200],
        "strategy": fields.strategy,
        "model_used": model_used,
        "fallback_used": fallback_used,
        "rescued": rescued,
        "images_generated": images_generated,
        "suggested_category": response.suggested_category,
        "status": "success",
    })

    return GenerateArticleOutput(
        response=response,
        strategy=fields.strategy,
        model_used=model_used,
        fallback_used=fallback_used,
        rescued=rescued,
        images_generated=images_generated,
        status="success",
    )
