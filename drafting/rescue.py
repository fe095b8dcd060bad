"""
Rescue regeneration: one simplified second pass when the first article came back too thin.
"""
from typing import Optional

import httpx
import structlog

from .catalog import ModelCatalogCache
from .enforcer import EXCERPT_MIN, content_is_thin
from .llm import generate
from .prompts import build_rescue_prompt
from .recovery import parse
from .schemas import Audience, GenerationSettings, PartialResponseFields, allowed_categories

logger = structlog.get_logger()

RESCUE_SETTINGS = GenerationSettings(
    temperature=0.4,
    max_output_tokens=2048,
    json_mode=True,
    timeout=45.0,
)


async def rescue(
    document_excerpt: str,
    audience: Audience,
    config: dict,
    client: Optional[httpx.AsyncClient] = None,
    catalog_cache: Optional[ModelCatalogCache] = None,
) -> Optional[PartialResponseFields]:
    """
    Ask for a shorter, paraphrased article and parse it.

    Returns None when the call fails or the content is still thin. Never
    raises: a failed rescue just leaves the enforcer's safety net in charge.
    """
    try:
        prompt = build_rescue_prompt(document_excerpt, audience)
        result = await generate(prompt, config, RESCUE_SETTINGS, client=client, catalog_cache=catalog_cache)
        text = result.unwrap()
    except Exception as e:
        logger.warning("rescue_generation_failed", error=str(e), error_type=type(e).__name__)
        return None

    fields = parse(text)
    if content_is_thin(fields.content):
        logger.warning("rescue_content_still_thin", content_len=len(fields.content or ""), strategy=fields.strategy)
        return None

    logger.info("rescue_succeeded", content_len=len(fields.content or ""), strategy=fields.strategy, model=result.model)
    return fields


def merge_rescue(
    fields: PartialResponseFields,
    rescued: Optional[PartialResponseFields],
    audience: Optional[Audience] = None,
) -> PartialResponseFields:
    """
    Fill empty or invalid fields from the rescue result.

    Fields that are already valid are never overwritten, and empty rescued
    values are never copied.
    """
    if rescued is None:
        return fields

    updates = {}

    if content_is_thin(fields.content) and rescued.content:
        updates["content"] = rescued.content
        updates["strategy"] = rescued.strategy
    if not fields.title and rescued.title:
        updates["title"] = rescued.title
    if len(fields.excerpt or "") < EXCERPT_MIN and rescued.excerpt:
        updates["excerpt"] = rescued.excerpt
    if not fields.seo_title and rescued.seo_title:
        updates["seo_title"] = rescued.seo_title
    if not fields.seo_description and rescued.seo_description:
        updates["seo_description"] = rescued.seo_description
    if not fields.keywords and rescued.keywords:
        updates["keywords"] = list(rescued.keywords)
    if not fields.suggested_tags and rescued.suggested_tags:
        updates["suggested_tags"] = list(rescued.suggested_tags)
    if not fields.cover_image_prompt and rescued.cover_image_prompt:
        updates["cover_image_prompt"] = rescued.cover_image_prompt
    if not fields.figures and rescued.figures:
        updates["figures"] = list(rescued.figures)

    category_valid = bool(fields.suggested_category)
    if category_valid and audience:
        allowed = [c.lower() for c in allowed_categories(audience)]
        category_valid = fields.suggested_category.strip().lower() in allowed
    if not category_valid and rescued.suggested_category:
        updates["suggested_category"] = rescued.suggested_category

    logger.info("rescue_merged", fields=sorted(updates.keys()))
    return fields.model_copy(update=updates)
