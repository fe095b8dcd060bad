"""
Output recovery parser.

Turns whatever the text model returned into PartialResponseFields.
Strategies, in order:
1. direct      - strip fences, json.loads the first '{' .. last '}'
2. plain_text  - the output is not JSON at all; it becomes the content
3. scanner     - JSON-like but broken; recover fields one by one

A normalizer runs after every strategy and unwraps responses that were
double-encoded into a single string field.

parse() never raises.
"""
import json
import re
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import structlog
from pydantic import ValidationError

from shared.errors import MalformedOutput

from .schemas import (
    FieldValue,
    FigureDescriptor,
    MissingValue,
    ParsedValue,
    PartialResponseFields,
    RawValue,
)

logger = structlog.get_logger()

MAX_NESTING_DEPTH = 3

_FENCE_START_RE = re.compile(r"^```[A-Za-z-]*\s*")
_FENCE_END_RE = re.compile(r"\s*```$")

_ESCAPES = {
    "n": "\n",
    "r": "\r",
    "t": "\t",
    '"': '"',
    "\\": "\\",
    "/": "/",
    "b": "\b",
    "f": "\f",
}

# Fields that may carry a whole double-encoded response
_NESTING_CANDIDATES = ("content", "title", "excerpt", "seo_title", "seo_description")


# =============================================================================
# TOLERANT SCANNER
# =============================================================================

class ScanState(Enum):
    SEARCHING = "searching"
    IN_STRING = "in_string"
    ESCAPED = "escaped"
    DONE = "done"


def read_string_literal(raw: str, start: int) -> Tuple[str, int, bool]:
    """
    Decode the JSON string literal whose opening quote is at raw[start].

    Returns:
        (decoded text, index just past the closing quote, terminated)
        An unterminated literal returns everything decoded up to the end.
    """
    out: List[str] = []
    state = ScanState.IN_STRING
    i = start + 1
    n = len(raw)

    while i < n and state is not ScanState.DONE:
        ch = raw[i]
        if state is ScanState.IN_STRING:
            if ch == "\\":
                state = ScanState.ESCAPED
            elif ch == '"':
                state = ScanState.DONE
            else:
                out.append(ch)
        elif state is ScanState.ESCAPED:
            if ch == "u":
                code, consumed = _read_unicode_escape(raw, i)
                out.append(code)
                i += consumed
            else:
                out.append(_ESCAPES.get(ch, ch))
            state = ScanState.IN_STRING
        i += 1

    return "".join(out), i, state is ScanState.DONE


def _read_unicode_escape(raw: str, u_index: int) -> Tuple[str, int]:
    """Decode \\uXXXX (and a following low surrogate). Returns (text, extra chars consumed)."""
    hex_digits = raw[u_index + 1:u_index + 5]
    if len(hex_digits) != 4 or not all(c in "0123456789abcdefABCDEF" for c in hex_digits):
        return "u", 0

    code = int(hex_digits, 16)
    if 0xD800 <= code <= 0xDBFF and raw[u_index + 5:u_index + 7] == "\\u":
        low_digits = raw[u_index + 7:u_index + 11]
        if len(low_digits) == 4 and all(c in "0123456789abcdefABCDEF" for c in low_digits):
            low = int(low_digits, 16)
            if 0xDC00 <= low <= 0xDFFF:
                combined = 0x10000 + ((code - 0xD800) << 10) + (low - 0xDC00)
                return chr(combined), 10

    if 0xD800 <= code <= 0xDFFF:
        # Lone surrogate; not representable in UTF-8 output
        return "\ufffd", 4
    return chr(code), 4


def _skip_whitespace(raw: str, i: int) -> int:
    n = len(raw)
    while i < n and raw[i] in " \t\r\n":
        i += 1
    return i


def _balanced_end(raw: str, start: int) -> Optional[int]:
    """
    Index just past the bracket that closes raw[start] ('{' or '[').
    Brackets inside string literals are ignored. None if never closed.
    """
    depth = 0
    i = start
    n = len(raw)
    while i < n:
        ch = raw[i]
        if ch == '"':
            _, i, terminated = read_string_literal(raw, i)
            if not terminated:
                return None
            continue
        if ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    return None


def _key_positions(raw: str, key: str) -> List[Tuple[int, int]]:
    """
    Every occurrence of "key": as (depth, index just past the colon).

    Depth is the bracket depth at the key: 1 for keys of the outermost
    object. A corrupted literal can desynchronise this walk, so callers
    also fall back to a plain text search.
    """
    found: List[Tuple[int, int]] = []
    depth = 0
    state = ScanState.SEARCHING
    literal_start = 0
    i = 0
    n = len(raw)
    while i < n:
        ch = raw[i]
        if state is ScanState.SEARCHING:
            if ch == '"':
                state = ScanState.IN_STRING
                literal_start = i
            elif ch in "{[":
                depth += 1
            elif ch in "}]":
                depth -= 1
        elif state is ScanState.IN_STRING:
            if ch == "\\":
                state = ScanState.ESCAPED
            elif ch == '"':
                after = _skip_whitespace(raw, i + 1)
                if after < n and raw[after] == ":":
                    if read_string_literal(raw, literal_start)[0] == key:
                        found.append((depth, after + 1))
                    i = after
                state = ScanState.SEARCHING
        elif state is ScanState.ESCAPED:
            state = ScanState.IN_STRING
        i += 1
    return found


def find_key(raw: str, key: str) -> Optional[int]:
    """
    Index just past the colon following "key".

    Prefers an occurrence at the outermost object's own depth, so the top
    level "title" wins over "seoMeta.title"; else the first occurrence.
    """
    positions = _key_positions(raw, key)
    for depth, index in positions:
        if depth == 1:
            return index

    match = re.search(r'"' + re.escape(key) + r'"\s*:', raw)
    if match:
        return match.end()
    if positions:
        return positions[0][1]
    return None


def extract_string(raw: str, key: str, allow_partial: bool = False) -> Optional[str]:
    """
    Decoded string value of key, or None.

    An unterminated value (truncated output) returns None unless
    allow_partial, in which case the decoded prefix is returned.
    """
    pos = find_key(raw, key)
    if pos is None:
        return None
    i = _skip_whitespace(raw, pos)
    if i >= len(raw) or raw[i] != '"':
        return None
    text, _, terminated = read_string_literal(raw, i)
    if not terminated and not allow_partial:
        return None
    return text


def extract_array(raw: str, key: str) -> Optional[List[str]]:
    """
    String elements of the array value of key, up to its closing ']'.

    Non-string elements are skipped. None if the key is missing or its
    value is not an array.
    """
    pos = find_key(raw, key)
    if pos is None:
        return None
    i = _skip_whitespace(raw, pos)
    if i >= len(raw) or raw[i] != "[":
        return None

    items: List[str] = []
    i += 1
    n = len(raw)
    while i < n:
        ch = raw[i]
        if ch == "]":
            break
        if ch == '"':
            text, i, terminated = read_string_literal(raw, i)
            if not terminated:
                break
            items.append(text)
            continue
        if ch in "{[":
            end = _balanced_end(raw, i)
            if end is None:
                break
            i = end
            continue
        i += 1
    return items


def extract_object_section(raw: str, key: str) -> Optional[str]:
    """
    The balanced {...} substring that is the value of key.

    If the object is never closed, the remainder of the text is returned
    so its own fields can still be scanned.
    """
    pos = find_key(raw, key)
    if pos is None:
        return None
    i = _skip_whitespace(raw, pos)
    if i >= len(raw) or raw[i] != "{":
        return None
    end = _balanced_end(raw, i)
    return raw[i:end] if end is not None else raw[i:]


def extract_object_list(raw: str, key: str) -> List[str]:
    """Balanced {...} elements of the array value of key. Unclosed elements are dropped."""
    pos = find_key(raw, key)
    if pos is None:
        return []
    i = _skip_whitespace(raw, pos)
    if i >= len(raw) or raw[i] != "[":
        return []

    sections: List[str] = []
    i += 1
    n = len(raw)
    while i < n:
        ch = raw[i]
        if ch == "]":
            break
        if ch == "{":
            end = _balanced_end(raw, i)
            if end is None:
                break
            sections.append(raw[i:end])
            i = end
            continue
        if ch == '"':
            _, i, terminated = read_string_literal(raw, i)
            if not terminated:
                break
            continue
        i += 1
    return sections


# =============================================================================
# STRATEGIES
# =============================================================================

def strip_code_fences(text: str) -> str:
    trimmed = (text or "").strip()
    trimmed = _FENCE_START_RE.sub("", trimmed)
    trimmed = _FENCE_END_RE.sub("", trimmed)
    return trimmed.strip()


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """json.loads the first '{' .. last '}' span. None unless it yields an object."""
    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last <= first:
        return None
    try:
        data = json.loads(text[first:last + 1])
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def looks_json_like(text: str) -> bool:
    stripped = text.lstrip()
    return stripped.startswith(("{", "[")) or '"content"' in text


def _first(raw: str, *keys: str, allow_partial: bool = False) -> Optional[str]:
    for key in keys:
        value = extract_string(raw, key, allow_partial=allow_partial)
        if value is not None:
            return value
    return None


def _scan_list_or_string(raw: str, *keys: str) -> Optional[Any]:
    for key in keys:
        items = extract_array(raw, key)
        if items is not None:
            return items
        value = extract_string(raw, key)
        if value is not None:
            return value
    return None


def scan_mapping(raw: str) -> Dict[str, Any]:
    """
    Rebuild as much of the response object as the scanner can recover.

    The result uses the same keys as the model's JSON, so it goes through
    the same field collection as a directly parsed object.
    """
    mapping: Dict[str, Any] = {}

    for key in ("title", "excerpt", "suggestedCategory", "coverImagePrompt"):
        value = extract_string(raw, key)
        if value is not None:
            mapping[key] = value

    content = _first(raw, "content", allow_partial=True)
    if content is not None:
        mapping["content"] = content

    seo_section = extract_object_section(raw, "seoMeta") or extract_object_section(raw, "seo_meta")
    if seo_section is not None:
        mapping["seoMeta"] = extract_json_object(seo_section) or _scan_seo(seo_section)
    else:
        seo_text = _first(raw, "seoMeta", "seo_meta")
        if seo_text is not None:
            mapping["seoMeta"] = seo_text

    tags = _scan_list_or_string(raw, "suggestedTags", "suggested_tags", "tags")
    if tags is not None:
        mapping["suggestedTags"] = tags

    # Some models put keywords at the top level
    keywords = extract_array(raw, "keywords")
    if keywords is not None:
        mapping["keywords"] = keywords

    figures = [
        extract_json_object(section) or _scan_figure(section)
        for section in extract_object_list(raw, "figures")
    ]
    if figures:
        mapping["figures"] = figures

    return mapping


def _scan_seo(section: str) -> Dict[str, Any]:
    seo: Dict[str, Any] = {}
    for key in ("title", "description"):
        value = extract_string(section, key)
        if value is not None:
            seo[key] = value
    keywords = _scan_list_or_string(section, "keywords")
    if keywords is not None:
        seo["keywords"] = keywords
    return seo


def _scan_figure(section: str) -> Dict[str, Any]:
    figure: Dict[str, Any] = {}
    for key in ("id", "type", "alt", "caption", "placeholder", "prompt"):
        value = extract_string(section, key)
        if value is not None:
            figure[key] = value
    return figure


# =============================================================================
# FIELD COLLECTION
# =============================================================================

def _to_field_value(value: Any) -> FieldValue:
    if value is None:
        return MissingValue()
    if isinstance(value, str):
        return RawValue(text=value)
    if isinstance(value, (dict, list)):
        return ParsedValue(data=value)
    return RawValue(text=str(value))


def _pick(mapping: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if mapping.get(key) is not None:
            return mapping[key]
    return None


def _seo_mapping(value: Any) -> Dict[str, Any]:
    """seoMeta as an object, a JSON string, or something unusable."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip().startswith("{"):
        return extract_json_object(value) or _scan_seo(value)
    return {}


def collect_fields(mapping: Dict[str, Any]) -> Dict[str, FieldValue]:
    """Flatten a response mapping into named field values."""
    seo = _seo_mapping(_pick(mapping, "seoMeta", "seo_meta", "seo"))
    return {
        "title": _to_field_value(mapping.get("title")),
        "content": _to_field_value(mapping.get("content")),
        "excerpt": _to_field_value(_pick(mapping, "excerpt", "summary")),
        "seo_title": _to_field_value(seo.get("title")),
        "seo_description": _to_field_value(seo.get("description")),
        "keywords": _to_field_value(seo.get("keywords") or mapping.get("keywords")),
        "suggested_tags": _to_field_value(_pick(mapping, "suggestedTags", "suggested_tags", "tags")),
        "suggested_category": _to_field_value(_pick(mapping, "suggestedCategory", "suggested_category", "category")),
        "cover_image_prompt": _to_field_value(_pick(mapping, "coverImagePrompt", "cover_image_prompt")),
        "figures": _to_field_value(mapping.get("figures")),
    }


def _is_present(value: FieldValue) -> bool:
    if isinstance(value, MissingValue):
        return False
    if isinstance(value, RawValue):
        return bool(value.text.strip())
    return bool(value.data)


def _has_article_fields(fields: Dict[str, FieldValue]) -> bool:
    """A parsed object only counts as the response if it carries title, content or excerpt."""
    return any(_is_present(fields[name]) for name in ("title", "content", "excerpt"))


# =============================================================================
# NORMALIZER
# =============================================================================

def _nested_candidate(value: FieldValue) -> Optional[Tuple[int, Any]]:
    """(size, payload) if the value looks like an embedded response object."""
    if isinstance(value, RawValue) and value.text.strip().startswith("{"):
        return len(value.text), value.text
    if isinstance(value, ParsedValue) and isinstance(value.data, dict):
        return len(json.dumps(value.data, default=str)), value.data
    return None


def _mapping_from_payload(payload: Any) -> Dict[str, Any]:
    if isinstance(payload, dict):
        return payload
    return extract_json_object(payload) or scan_mapping(payload)


def normalize_fields(fields: Dict[str, FieldValue], depth: int = 0) -> Dict[str, FieldValue]:
    """
    Unwrap double-encoded responses.

    Text fields whose value is itself a JSON object are candidates. The
    longest candidate is unwrapped first and its fields override the outer
    ones; shorter candidates only fill fields that are still missing. A
    candidate field keeps its value only if an unwrapped blob supplies one.
    """
    candidates = []
    for name in _NESTING_CANDIDATES:
        found = _nested_candidate(fields[name])
        if found:
            candidates.append((found[0], name, found[1]))
    if not candidates:
        return fields

    result = dict(fields)
    for name in (c[1] for c in candidates):
        result[name] = MissingValue()

    if depth >= MAX_NESTING_DEPTH:
        logger.warning("nested_output_depth_exceeded", depth=depth, fields=[c[1] for c in candidates])
        return result

    # Longest first; stable on ties by field order
    candidates.sort(key=lambda c: -c[0])
    for rank, (size, name, payload) in enumerate(candidates):
        nested = normalize_fields(collect_fields(_mapping_from_payload(payload)), depth + 1)
        logger.info("nested_output_unwrapped", field=name, size=size, depth=depth + 1, rank=rank)
        for key, value in nested.items():
            if not _is_present(value):
                continue
            if rank == 0 or not _is_present(result[key]):
                result[key] = value

    return result


# =============================================================================
# RESOLUTION
# =============================================================================

def _text(value: FieldValue) -> Optional[str]:
    if isinstance(value, RawValue):
        stripped = value.text.strip()
        return stripped or None
    return None


def _string_list(value: FieldValue) -> List[str]:
    if isinstance(value, ParsedValue) and isinstance(value.data, list):
        items = value.data
    elif isinstance(value, RawValue):
        text = value.text.strip()
        items = None
        if text.startswith("["):
            try:
                decoded = json.loads(text)
                items = decoded if isinstance(decoded, list) else None
            except json.JSONDecodeError:
                items = None
        if items is None:
            items = re.split(r"[,;\n]", text)
    else:
        return []
    return [str(item).strip() for item in items if item is not None and str(item).strip()]


def _figures(value: FieldValue) -> List[FigureDescriptor]:
    if not (isinstance(value, ParsedValue) and isinstance(value.data, list)):
        return []
    figures = []
    for item in value.data:
        if not isinstance(item, dict):
            continue
        try:
            figures.append(FigureDescriptor.model_validate(item))
        except ValidationError as e:
            logger.warning("figure_descriptor_invalid", error=str(e)[:200])
    return figures


def resolve_fields(fields: Dict[str, FieldValue], strategy: str) -> PartialResponseFields:
    return PartialResponseFields(
        title=_text(fields["title"]),
        content=_text(fields["content"]),
        excerpt=_text(fields["excerpt"]),
        seo_title=_text(fields["seo_title"]),
        seo_description=_text(fields["seo_description"]),
        keywords=_string_list(fields["keywords"]),
        suggested_tags=_string_list(fields["suggested_tags"]),
        suggested_category=_text(fields["suggested_category"]),
        cover_image_prompt=_text(fields["cover_image_prompt"]),
        figures=_figures(fields["figures"]),
        strategy=strategy,
    )


# =============================================================================
# PUBLIC ENTRY POINT
# =============================================================================

def parse(raw_text: Optional[str]) -> PartialResponseFields:
    """
    Recover response fields from raw model output.

    Never raises: on total failure an empty PartialResponseFields is
    returned and the enforcer fills in the rest.
    """
    try:
        return _parse(raw_text or "")
    except MalformedOutput as e:
        logger.warning("output_unrecoverable", error=str(e), raw_preview=(raw_text or "")[:200])
        return PartialResponseFields()
    except Exception as e:
        logger.error("output_recovery_failed", error=str(e), raw_preview=(raw_text or "")[:200])
        return PartialResponseFields()


def _parse(raw_text: str) -> PartialResponseFields:
    cleaned = strip_code_fences(raw_text)
    if not cleaned:
        logger.warning("output_empty")
        return PartialResponseFields()

    data = extract_json_object(cleaned)
    fields = collect_fields(data) if data is not None else None
    if fields is not None and _has_article_fields(fields):
        strategy = "direct"
    elif not looks_json_like(cleaned):
        strategy = "plain_text"
        fields = collect_fields({"content": cleaned})
    else:
        strategy = "scanner"
        mapping = scan_mapping(cleaned)
        if not mapping:
            raise MalformedOutput("JSON-like output with no recoverable fields")
        fields = collect_fields(mapping)

    fields = normalize_fields(fields)
    result = resolve_fields(fields, strategy)

    logger.info(
        "output_recovered",
        strategy=strategy,
        has_title=result.title is not None,
        content_len=len(result.content or ""),
        keywords=len(result.keywords),
        figures=len(result.figures),
    )
    return result


def parse_seo_meta(raw_text: Optional[str]) -> PartialResponseFields:
    """
    Recover a bare SEO object ({"title", "description", "keywords"}).

    Only the seo_* fields and keywords are filled. Never raises.
    """
    try:
        cleaned = strip_code_fences(raw_text or "")
        start = cleaned.find("{")
        payload: Any = cleaned[start:] if start != -1 else None
        data = extract_json_object(cleaned) if payload else None
        if data is not None:
            # Some models wrap the object in the article schema's seoMeta key
            payload = _pick(data, "seoMeta", "seo_meta", "seo") or data
        fields = collect_fields({"seoMeta": payload})
        result = PartialResponseFields(
            seo_title=_text(fields["seo_title"]),
            seo_description=_text(fields["seo_description"]),
            keywords=_string_list(fields["keywords"]),
        )
    except Exception as e:
        logger.error("seo_meta_recovery_failed", error=str(e), raw_preview=(raw_text or "")[:200])
        return PartialResponseFields()

    if result.seo_title or result.seo_description or result.keywords:
        result.strategy = "direct" if data is not None else "scanner"
    logger.info(
        "seo_meta_recovered",
        strategy=result.strategy,
        has_title=result.seo_title is not None,
        keywords=len(result.keywords),
    )
    return result
