"""
Content enforcer.

Repairs recovered fields into a GenerationResponse that satisfies the
article contract: length caps, non-empty keyword/tag lists, a category
from the audience allow-list, minimum content length and no leftover
figure placeholders. Pure and total; every rule is a no-op on input that
already satisfies it, so enforcing twice changes nothing.
"""
import re
from typing import Iterable, List, Optional, Tuple

import structlog

from .prompts import PLACEHOLDER_RE, strip_placeholders
from .schemas import (
    Audience,
    GenerationResponse,
    PartialResponseFields,
    SEOMeta,
    allowed_categories,
)

logger = structlog.get_logger()

MIN_CONTENT_CHARS = 120

SEO_TITLE_MAX = 60
SEO_DESCRIPTION_MAX = 160
EXCERPT_MAX = 160
EXCERPT_MIN = 40
TITLE_MAX = 120

KEYWORDS_MIN = 3
KEYWORDS_MAX = 5
TAGS_MIN = 2
TAGS_MAX = 4

ELLIPSIS = "…"
DEFAULT_TITLE = "Nowy artykuł"

PLACEHOLDER_BODY = (
    "Ten artykuł jest w przygotowaniu. Automatycznie wygenerowana treść okazała się "
    "niekompletna, dlatego redakcja uzupełni ją po weryfikacji materiału źródłowego. "
    "Zapraszamy wkrótce."
)

# Domain glossary in priority order: (keyword, lowercase stems matched as substrings)
KEYWORD_GLOSSARY: List[Tuple[str, Tuple[str, ...]]] = [
    ("zaćma", ("zaćm",)),
    ("jaskra", ("jaskr",)),
    ("zwyrodnienie plamki", ("zwyrodnienie plamki", "zwyrodnienia plamki", "amd")),
    ("retinopatia cukrzycowa", ("retinopati",)),
    ("keratokonus", ("keratokonus", "stożek rogówki")),
    ("zespół suchego oka", ("suchego oka", "suche oko")),
    ("krótkowzroczność", ("krótkowzroczn",)),
    ("dalekowzroczność", ("dalekowzroczn",)),
    ("astygmatyzm", ("astygmatyzm",)),
    ("prezbiopia", ("prezbiopi", "starczowzroczn")),
    ("zapalenie spojówek", ("spojówk", "spojówek")),
    ("ciśnienie wewnątrzgałkowe", ("wewnątrzgałkow",)),
    ("anty-VEGF", ("vegf",)),
    ("tomografia optyczna", ("tomografi",)),
    ("soczewki kontaktowe", ("soczewki kontaktowe", "soczewek kontaktowych")),
    ("soczewka", ("soczew",)),
    ("siatkówka", ("siatków",)),
    ("rogówka", ("rogów",)),
    ("okulista", ("okulist",)),
    ("wzrok", ("wzrok", "widzeni")),
]

GENERIC_KEYWORDS = ["okulistyka", "zdrowie oczu", "wzrok", "profilaktyka", "okulista"]

_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s+(.+?)\s*#*\s*$", re.MULTILINE)
_IMAGE_RE = re.compile(r"!\[[^\]\n]*\]\([^)\n]*\)")
_LINK_RE = re.compile(r"\[([^\]\n]*)\]\([^)\n]*\)")
_LIST_MARKER_RE = re.compile(r"^\s*(?:[-+*]|\d+[.)])\s+", re.MULTILINE)
_MARKDOWN_PUNCT_RE = re.compile(r"[#*_`>|~]+")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?…])\s+")
_WORD_RE = re.compile(r"[^\W\d_]+(?:-[^\W\d_]+)*")
_TITLE_TRIM_RE = re.compile(r'^[\s#"]+|[\s"]+$')


# =============================================================================
# TEXT HELPERS
# =============================================================================

def _collapse(text: str) -> str:
    return " ".join((text or "").split())


def flatten_markdown(content: str) -> str:
    """Plain text view of markdown: no images, links, headings markers, emphasis or placeholders."""
    text = PLACEHOLDER_RE.sub("", content or "")
    text = _IMAGE_RE.sub(" ", text)
    text = _LINK_RE.sub(r"\1", text)
    text = _LIST_MARKER_RE.sub("", text)
    text = _MARKDOWN_PUNCT_RE.sub(" ", text)
    return _collapse(text)


def effective_length(content: Optional[str]) -> int:
    """Content length with placeholders (and image markup around them) removed, whitespace collapsed."""
    return len(_collapse(strip_placeholders(content or "")))


def content_is_thin(content: Optional[str]) -> bool:
    return effective_length(content) < MIN_CONTENT_CHARS


def truncate_at_word(text: str, limit: int, marker: str = ELLIPSIS) -> str:
    """
    Cap text at limit characters, cutting at the last whole word and
    appending marker. Text already within the limit is returned as is.
    """
    if len(text) <= limit:
        return text

    budget = max(limit - len(marker), 1)
    head = text[:budget]
    if text[budget] != " ":
        space = head.rfind(" ")
        if space > 0:
            head = head[:space]
    head = head.rstrip(" ,;:-–")
    return head + marker


def _dedupe(items: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for item in items:
        key = item.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(item)
    return result


def _clean_terms(items: Iterable[str]) -> List[str]:
    cleaned = (_collapse(str(item)).strip(" ,.;:#") for item in items or [])
    return _dedupe(item for item in cleaned if item)


# =============================================================================
# RULES
# =============================================================================

def derive_title(content: str) -> str:
    """First markdown heading, else first sentence, else the default title."""
    match = _HEADING_RE.search(content or "")
    if match:
        heading = _collapse(_MARKDOWN_PUNCT_RE.sub(" ", match.group(1)))
        if heading:
            return truncate_at_word(heading, TITLE_MAX)

    flat = flatten_markdown(content)
    if flat:
        first_sentence = _SENTENCE_SPLIT_RE.split(flat, maxsplit=1)[0].rstrip(".!?… ")
        if first_sentence:
            return truncate_at_word(first_sentence, TITLE_MAX)

    return DEFAULT_TITLE


def _clean_title(title: Optional[str]) -> Optional[str]:
    if not title:
        return None
    cleaned = _collapse(_TITLE_TRIM_RE.sub("", title))
    return cleaned or None


def placeholder_article(title: str) -> str:
    return f"# {title}\n\n{PLACEHOLDER_BODY}"


def derive_excerpt(content: str) -> str:
    """Leading sentences of the flattened content, at most EXCERPT_MAX characters."""
    flat = flatten_markdown(content)
    excerpt = ""
    for sentence in _SENTENCE_SPLIT_RE.split(flat):
        candidate = f"{excerpt} {sentence}".strip()
        if len(candidate) > EXCERPT_MAX:
            break
        excerpt = candidate

    if len(excerpt) < EXCERPT_MIN:
        excerpt = truncate_at_word(flat, EXCERPT_MAX)
    return excerpt


def _title_words(title: str) -> List[str]:
    return [w.lower() for w in _WORD_RE.findall(title or "") if len(w) >= 3][:2]


def glossary_keywords(text: str, limit: int = KEYWORDS_MAX) -> List[str]:
    """Glossary terms found in text (case-insensitive substring), in glossary order."""
    lowered = (text or "").lower()
    found = []
    for keyword, stems in KEYWORD_GLOSSARY:
        if any(stem in lowered for stem in stems):
            found.append(keyword)
            if len(found) >= limit:
                break
    return found


def enforce_keywords(keywords: List[str], content: str, title: str) -> List[str]:
    cleaned = _clean_terms(keywords)

    if not cleaned:
        cleaned = glossary_keywords(content)
        if len(cleaned) < 2:
            cleaned = _dedupe(cleaned + GENERIC_KEYWORDS[:2] + _title_words(title))

    if len(cleaned) < KEYWORDS_MIN:
        padding = glossary_keywords(content) + _title_words(title) + GENERIC_KEYWORDS
        cleaned = _dedupe(cleaned + padding)

    return cleaned[:KEYWORDS_MAX]


def enforce_tags(tags: List[str], keywords: List[str]) -> List[str]:
    cleaned = _clean_terms(tags)
    if not cleaned:
        cleaned = list(keywords[:3])
    if len(cleaned) < TAGS_MIN:
        cleaned = _dedupe(cleaned + keywords + GENERIC_KEYWORDS)
    return cleaned[:TAGS_MAX]


def enforce_category(category: Optional[str], audience: Audience, content: str, title: str) -> str:
    """
    Canonical allow-list member for category.

    Unknown categories are replaced by the allowed label that occurs most
    often in content + title (ties by allow-list order; first label if none occur).
    """
    allowed = allowed_categories(audience)
    if category:
        wanted = _collapse(category).lower()
        for label in allowed:
            if label.lower() == wanted:
                return label

    haystack = f"{content or ''} {title or ''}".lower()
    best_label = allowed[0]
    best_score = 0
    for label in allowed:
        score = haystack.count(label.lower())
        if score > best_score:
            best_label, best_score = label, score

    if category:
        logger.info("category_replaced", suggested=category, resolved=best_label, score=best_score)
    return best_label


# =============================================================================
# PUBLIC ENTRY POINT
# =============================================================================

def enforce(
    fields: PartialResponseFields,
    audience: Audience,
    keep_placeholders: bool = False,
) -> GenerationResponse:
    """
    Build a contract-compliant GenerationResponse from recovered fields.

    Args:
        fields: Parser output (any field may be missing)
        audience: Selects the category allow-list
        keep_placeholders: Leave figure placeholders in content (image step still to run)

    Returns:
        GenerationResponse; never raises
    """
    content = (fields.content or "").strip()
    title = _clean_title(fields.title)

    if content_is_thin(content):
        title = title or _clean_title(derive_title(content)) or DEFAULT_TITLE
        logger.warning("content_too_short_placeholder_used", content_len=effective_length(content), title=title[:80])
        content = placeholder_article(title)
    else:
        title = title or _clean_title(derive_title(content)) or DEFAULT_TITLE

    if not keep_placeholders and PLACEHOLDER_RE.search(content):
        content = strip_placeholders(content)

    excerpt = _collapse(fields.excerpt or "")
    if len(excerpt) < EXCERPT_MIN:
        excerpt = derive_excerpt(content)
    excerpt = truncate_at_word(excerpt, EXCERPT_MAX)

    seo_title = truncate_at_word(_collapse(fields.seo_title or "") or title, SEO_TITLE_MAX)
    seo_description = truncate_at_word(_collapse(fields.seo_description or "") or excerpt, SEO_DESCRIPTION_MAX)

    keywords = enforce_keywords(fields.keywords, content, title)
    tags = enforce_tags(fields.suggested_tags, keywords)
    category = enforce_category(fields.suggested_category, audience, content, title)

    return GenerationResponse(
        title=title,
        content=content,
        excerpt=excerpt,
        seo_meta=SEOMeta(title=seo_title, description=seo_description, keywords=keywords),
        suggested_tags=tags,
        suggested_category=category,
        generated_image_url=fields.generated_image_url or None,
    )
