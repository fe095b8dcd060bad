"""
Article drafting engine.

Turns extracted medical document text into a structured Polish blog article.
"""

from .article import (
    generate_article,
)

from .editing import (
    improve_article_content,
    generate_seo_meta,
    suggest_seo_meta,
)

from .llm import (
    generate,
    require_credentials,
    FailureKind,
    GenerationResult,
)

from .catalog import (
    ModelCatalogCache,
    list_models,
    select_fallback,
    resolve_fallback,
)

from .prompts import (
    build_prompt,
    build_rescue_prompt,
    figure_placeholder,
    strip_placeholders,
)

from .recovery import (
    parse,
    parse_seo_meta,
)

from .enforcer import (
    enforce,
    content_is_thin,
)

from .rescue import (
    rescue,
    merge_rescue,
)

from .images import (
    attach_images,
    find_cover_image_url,
)

from .schemas import (
    GenerateArticleInput,
    GenerateArticleOutput,
    GenerateSEOMetaInput,
    GenerateSEOMetaOutput,
    ImproveContentInput,
    ImproveContentOutput,
    GenerationRequest,
    GenerationResponse,
    GenerationSettings,
    FigureDescriptor,
    LLMConfig,
    PartialResponseFields,
    PromptPair,
    SEOMeta,
    allowed_categories,
)
