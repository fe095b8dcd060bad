"""
Prompt templates for article generation.

All prompt constants used by the drafting nodes are centralized here,
together with the figure placeholder token helpers, since the prompt
defines the token format the rest of the pipeline has to recognise.
"""
import re

from .schemas import Audience, PromptPair, allowed_categories

# Input caps (characters)
MAX_DOCUMENT_CHARS = 24000
RESCUE_DOCUMENT_CHARS = 6000

TARGET_WORD_COUNT = 400


# =============================================================================
# FIGURE PLACEHOLDERS
# =============================================================================
# The model marks figure positions with a URL-shaped token. If a token is never
# substituted it renders as a dead link, and the final sweep removes it.

PLACEHOLDER_URL_TEMPLATE = "https://www.google.com/search?q=%7B%7BFIGURE_{n}_URL%7D%7D"

PLACEHOLDER_RE = re.compile(
    r"https?://www\.google\.com/search\?q=%7B%7BFIGURE_\d+_URL%7D%7D"
    r"|\{\{FIGURE_\d+_URL\}\}"
)

# Image markup whose target is a placeholder token
_PLACEHOLDER_IMAGE_RE = re.compile(
    r"!\[[^\]\n]*\]\(\s*(?:" + PLACEHOLDER_RE.pattern + r")\s*\)"
)
_EXCESS_NEWLINES_RE = re.compile(r"\n{3,}")


def figure_placeholder(n: int) -> str:
    """Placeholder token for the n-th (1-based) figure."""
    return PLACEHOLDER_URL_TEMPLATE.format(n=n)


def strip_placeholders(text: str) -> str:
    """Remove every placeholder token (and image markup around one), collapse blank lines."""
    if not text:
        return text
    cleaned = _PLACEHOLDER_IMAGE_RE.sub("", text)
    cleaned = PLACEHOLDER_RE.sub("", cleaned)
    return _EXCESS_NEWLINES_RE.sub("\n\n", cleaned).strip()


def normalize_document_text(text: str, max_chars: int = MAX_DOCUMENT_CHARS) -> str:
    """Collapse whitespace and cap at max_chars, cutting at a word boundary."""
    collapsed = " ".join((text or "").split())
    if len(collapsed) <= max_chars:
        return collapsed
    cut = collapsed[:max_chars]
    space = cut.rfind(" ")
    return cut[:space] if space > 0 else cut


# =============================================================================
# SYSTEM PROMPTS
# =============================================================================

PATIENT_SYSTEM_PROMPT = """You are a medical content writer specializing in ophthalmology content for patients.
Write in simple, accessible Polish language. Avoid medical jargon or explain it when necessary.
Focus on being educational, reassuring, and practical.
Format the content with clear headings, bullet points where appropriate, and easy-to-understand explanations."""


PROFESSIONAL_SYSTEM_PROMPT = """You are the Editor-in-Chief of a high-impact scientific journal specializing in ophthalmology.
Your task is to write a concise editorial review of the provided article, targeted specifically at ophthalmologists and optometrists.
Write in sophisticated, academic Polish appropriate for peer-reviewed literature.
Adopt an authoritative, analytical, and objective tone.
Structure the review to include:

Editorial Summary: A high-level synthesis of the article's subject.

Key Highlights: Extract the most important data points, specific study findings, statistical outcomes, or distinct clinical protocols found in the text.

Clinical Impact: Explicitly explain why this matters for daily practice (e.g., diagnostics, treatment efficacy, patient management).

Ground all claims strictly in the provided document content. If the document does not contain a detail, do not invent it."""


PATIENT_AUDIENCE_INSTRUCTIONS = """AudienceInstructions (patient):
- Keep language simple and reassuring.
- Explain any unavoidable medical terms briefly."""


PROFESSIONAL_AUDIENCE_INSTRUCTIONS = """AudienceInstructions (professional):
- Use headings aligned with: **Streszczenie redakcyjne**, **Kluczowe informacje**, **Znaczenie kliniczne**.
- Extract only details present in the document (numbers, protocols, outcomes); do not invent details or citations."""


def system_prompt_for(audience: Audience) -> str:
    return PROFESSIONAL_SYSTEM_PROMPT if audience == "professional" else PATIENT_SYSTEM_PROMPT


def _audience_instructions(audience: Audience) -> str:
    return PROFESSIONAL_AUDIENCE_INSTRUCTIONS if audience == "professional" else PATIENT_AUDIENCE_INSTRUCTIONS


# =============================================================================
# RESPONSE SCHEMA
# =============================================================================

RESPONSE_SCHEMA = """Required JSON format:
{{
  "title": "Article title",
  "content": "Full article content in markdown format (must include placeholders like {placeholder} where images should appear)",
  "excerpt": "A brief 2-3 sentence summary (max 160 characters)",
  "seoMeta": {{
    "title": "SEO optimized title (max 60 characters)",
    "description": "SEO meta description (max 160 characters)",
    "keywords": ["keyword1", "keyword2", "keyword3"]
  }},
  "suggestedTags": ["tag1", "tag2"],
  "suggestedCategory": "One of: {categories}",
  "coverImagePrompt": "A short prompt for a cover image relevant to the article (no text on image).",
  "figures": [
    {{
      "id": "figure_1",
      "type": "illustration|chart",
      "alt": "Alt text in Polish",
      "caption": "Short caption in Polish",
      "placeholder": "{placeholder}",
      "prompt": "Image generation prompt in English. If chart, include exact data and style instructions."
    }}
  ]
}}

Constraints:
- seoMeta.keywords: 3 to 5 non-empty strings.
- suggestedTags: 2 to 4 non-empty strings.
- figures: at most 3 entries; placeholder N must be exactly {placeholder_pattern}."""


def response_schema_for(audience: Audience) -> str:
    return RESPONSE_SCHEMA.format(
        placeholder=figure_placeholder(1),
        placeholder_pattern=PLACEHOLDER_URL_TEMPLATE.replace("{n}", "<N>"),
        categories=", ".join(allowed_categories(audience)),
    )


# =============================================================================
# ARTICLE PROMPTS
# =============================================================================

ARTICLE_PROMPT = """Based on the following medical document content, create a blog article/review in Polish.
Target word count: ~{word_count} words for the main content (aim for {word_min}-{word_max}).
IMPORTANT: word count refers ONLY to the "content" field (the markdown article body), excluding title, excerpt, SEO meta, tags/categories, and excluding URLs/placeholders.

Document content: {document_text}

IMPORTANT:
- Return a SINGLE valid JSON object (no markdown, no code fences, no extra text).
- In "content" markdown, include up to 3 figure placeholder URL tokens exactly once each where images should appear, e.g. {placeholder}.
{audience_instructions}

{response_schema}"""


RESCUE_PROMPT = """The previous attempt to turn this document into an article failed. Try again with a shorter article.

Write a short blog article in Polish (200-300 words in "content") based on the document excerpt below.
Paraphrase in your own words; do NOT copy sentences from the document.
Return a SINGLE valid JSON object and nothing else. Escape every double quote inside string values.
Figures are optional; skip them if unsure.
{audience_instructions}

Document excerpt: {document_text}

{response_schema}"""


def build_prompt(
    document_text: str,
    audience: Audience,
    max_chars: int = MAX_DOCUMENT_CHARS,
) -> PromptPair:
    """
    Build the system + user prompt for one article generation call.

    The document is whitespace-collapsed and capped at max_chars before
    being embedded, so prompt size stays bounded for any input.
    """
    user_prompt = ARTICLE_PROMPT.format(
        word_count=TARGET_WORD_COUNT,
        word_min=TARGET_WORD_COUNT - 20,
        word_max=TARGET_WORD_COUNT + 50,
        document_text=normalize_document_text(document_text, max_chars),
        placeholder=figure_placeholder(1),
        audience_instructions=_audience_instructions(audience),
        response_schema=response_schema_for(audience),
    )
    return PromptPair(system_prompt=system_prompt_for(audience), user_prompt=user_prompt)


def build_rescue_prompt(document_excerpt: str, audience: Audience) -> PromptPair:
    """Simplified prompt for the second, smaller generation pass."""
    user_prompt = RESCUE_PROMPT.format(
        document_text=normalize_document_text(document_excerpt, RESCUE_DOCUMENT_CHARS),
        audience_instructions=_audience_instructions(audience),
        response_schema=response_schema_for(audience),
    )
    return PromptPair(system_prompt=system_prompt_for(audience), user_prompt=user_prompt)


# =============================================================================
# EDITING PROMPTS
# =============================================================================

SEO_PREVIEW_CHARS = 1000

IMPROVE_PROMPT = """Improve and enhance the following Polish article content while maintaining the same message and information.
Make it more engaging and well-structured.
Keep every markdown image and every figure placeholder exactly as it is.
Return only the improved markdown content (no code fences, no commentary):

{content}"""


SEO_SYSTEM_PROMPT = """You are an SEO editor for a Polish ophthalmology blog.
Write metadata in Polish that is accurate to the article and free of clickbait."""

SEO_META_PROMPT = """Generate SEO metadata for the following article in Polish. Respond with only JSON.

Title: {title}
Content preview: {content_preview}

Required format:
{{
  "title": "SEO title (max 60 chars)",
  "description": "Meta description (max 160 chars)",
  "keywords": ["keyword1", "keyword2", "keyword3", "keyword4", "keyword5"]
}}"""


def _cap_markdown(text: str, max_chars: int) -> str:
    """Cap markdown at max_chars on a word boundary, keeping line structure."""
    text = (text or "").strip()
    if len(text) <= max_chars:
        return text
    cut = text[:max_chars]
    space = max(cut.rfind(" "), cut.rfind("\n"))
    return cut[:space].rstrip() if space > 0 else cut


def build_improve_prompt(
    content: str,
    audience: Audience,
    max_chars: int = MAX_DOCUMENT_CHARS,
) -> PromptPair:
    """Rewrite prompt for an existing article body; the audience system prompt is reused."""
    user_prompt = IMPROVE_PROMPT.format(content=_cap_markdown(content, max_chars))
    return PromptPair(system_prompt=system_prompt_for(audience), user_prompt=user_prompt)


def build_seo_meta_prompt(title: str, content: str) -> PromptPair:
    user_prompt = SEO_META_PROMPT.format(
        title=" ".join((title or "").split()),
        content_preview=normalize_document_text(strip_placeholders(content or ""), SEO_PREVIEW_CHARS),
    )
    return PromptPair(system_prompt=SEO_SYSTEM_PROMPT, user_prompt=user_prompt)
