import json

import pytest

from drafting.recovery import (
    MAX_NESTING_DEPTH,
    extract_array,
    extract_string,
    find_key,
    parse,
    read_string_literal,
    strip_code_fences,
)


# =============================================================================
# SCANNER PRIMITIVES
# =============================================================================

def test_read_string_literal_decodes_escapes():
    raw = '"linia\\n\\"cytat\\" \\u0107"'
    text, end, terminated = read_string_literal(raw, 0)
    assert text == 'linia\n"cytat" ć'
    assert end == len(raw)
    assert terminated is True


def test_read_string_literal_unterminated_returns_prefix():
    text, end, terminated = read_string_literal('"Zaćma to zmętn', 0)
    assert text == "Zaćma to zmętn"
    assert terminated is False


def test_read_string_literal_surrogate_pair():
    text, _, _ = read_string_literal('"\\ud83d\\udc41 oko"', 0)
    assert text == "\U0001F441 oko"


def test_read_string_literal_lone_surrogate_replaced():
    text, _, _ = read_string_literal('"\\ud83d tekst"', 0)
    assert text == "\ufffd tekst"


def test_find_key_prefers_top_level_over_nested():
    raw = '{"seoMeta": {"title": "SEO"}, "title": "Top", "content": "abc'
    assert extract_string(raw, "title") == "Top"


def test_find_key_ignores_key_text_inside_values():
    raw = '{"content": "not a \\"title\\": key", "title": "Real"}'
    assert extract_string(raw, "title") == "Real"


def test_find_key_missing():
    assert find_key('{"a": 1}', "title") is None


def test_extract_string_unterminated_needs_allow_partial():
    raw = '{"content": "Początek artykułu'
    assert extract_string(raw, "content") is None
    assert extract_string(raw, "content", allow_partial=True) == "Początek artykułu"


def test_extract_array_skips_non_strings():
    raw = '{"tags": ["a", 1, {"x": "y"}, "b"], "next": 2}'
    assert extract_array(raw, "tags") == ["a", "b"]


def test_extract_array_not_an_array():
    assert extract_array('{"tags": "a, b"}', "tags") is None


@pytest.mark.parametrize(
    "text, expected",
    [
        ('```json\n{"a": 1}\n```', '{"a": 1}'),
        ('```\n{"a": 1}```', '{"a": 1}'),
        ('  {"a": 1}  ', '{"a": 1}'),
    ],
)
def test_strip_code_fences(text, expected):
    assert strip_code_fences(text) == expected


# =============================================================================
# STRATEGIES
# =============================================================================

def test_direct_round_trip(cataract_article):
    result = parse(json.dumps(cataract_article, ensure_ascii=False))

    assert result.strategy == "direct"
    assert result.title == cataract_article["title"]
    assert result.content == cataract_article["content"]
    assert result.excerpt == cataract_article["excerpt"]
    assert result.seo_title == cataract_article["seoMeta"]["title"]
    assert result.seo_description == cataract_article["seoMeta"]["description"]
    assert result.suggested_tags == ["zaćma", "soczewka"]
    assert result.suggested_category == "Okulistyka"
    assert result.cover_image_prompt == cataract_article["coverImagePrompt"]
    assert len(result.figures) == 1
    assert result.figures[0].placeholder == cataract_article["figures"][0]["placeholder"]


def test_direct_with_fences_and_preamble(cataract_article):
    raw = "Oto artykuł:\n```json\n" + json.dumps(cataract_article) + "\n```"
    result = parse(raw)
    assert result.strategy == "direct"
    assert result.title == cataract_article["title"]


def test_plain_text_becomes_content():
    raw = "# Jaskra\n\nJaskra to grupa chorób nerwu wzrokowego."
    result = parse(raw)
    assert result.strategy == "plain_text"
    assert result.content == raw
    assert result.title is None


def test_prose_with_inline_json_snippet_stays_plain_text():
    raw = (
        "# Jaskra\n\nJaskra to grupa chorób nerwu wzrokowego. "
        "Przykład zapisu pomiaru: {\"cisnienie\": 21}. Leczenie obniża ciśnienie wewnątrzgałkowe."
    )
    result = parse(raw)

    assert result.strategy == "plain_text"
    assert result.content == raw


def test_json_object_without_article_fields_is_not_direct():
    raw = '{"cisnienie": 21, "oko": "prawe"}'
    result = parse(raw)
    assert result.strategy == "empty"
    assert result.content is None


def test_truncated_mid_content_keeps_earlier_fields():
    raw = (
        '{"title": "Zaćma", '
        '"seoMeta": {"title": "Zaćma SEO", "description": "Opis zaćmy", "keywords": ["zaćma", "soczewka"]}, '
        '"content": "# Zaćma\\n\\nZaćma to zmętnienie soczew'
    )
    result = parse(raw)

    assert result.strategy == "scanner"
    assert result.title == "Zaćma"
    assert result.seo_title == "Zaćma SEO"
    assert result.seo_description == "Opis zaćmy"
    assert result.keywords == ["zaćma", "soczewka"]
    assert result.content == "# Zaćma\n\nZaćma to zmętnienie soczew"


def test_figures_type_normalized():
    raw = json.dumps({
        "content": "x",
        "figures": [
            {"id": "f1", "type": "illustration|chart", "prompt": "p"},
            {"id": "f2", "type": "bar chart", "prompt": "p"},
            "not a figure",
        ],
    })
    result = parse(raw)
    assert [f.type for f in result.figures] == ["illustration", "chart"]


# =============================================================================
# DOUBLE ENCODING
# =============================================================================

def test_double_encoded_content_unwrapped(cataract_article):
    raw = json.dumps({"content": json.dumps(cataract_article, ensure_ascii=False)})
    result = parse(raw)

    assert result.strategy == "direct"
    assert result.title == cataract_article["title"]
    assert result.content == cataract_article["content"]
    assert result.seo_title == cataract_article["seoMeta"]["title"]


def test_triple_encoded_content_unwrapped():
    inner = {"title": "Jaskra", "content": "Jaskra uszkadza nerw wzrokowy."}
    raw = json.dumps({"content": json.dumps({"content": json.dumps(inner)})})
    result = parse(raw)
    assert result.title == "Jaskra"
    assert result.content == "Jaskra uszkadza nerw wzrokowy."


def test_double_encoded_title_unwrapped(cataract_article):
    raw = json.dumps({"title": json.dumps(cataract_article, ensure_ascii=False), "content": "Krótko."})
    result = parse(raw)

    assert result.strategy == "direct"
    assert result.title == cataract_article["title"]
    assert result.content == cataract_article["content"]
    assert result.seo_title == cataract_article["seoMeta"]["title"]


def test_longest_nested_candidate_wins():
    long_blob = json.dumps({"title": "Długi", "content": "Treść długiego wariantu artykułu " * 5})
    short_blob = json.dumps({"title": "Krótki", "excerpt": "Tylko z krótkiego"})
    raw = json.dumps({"title": short_blob, "content": long_blob})
    result = parse(raw)

    assert result.title == "Długi"
    assert result.excerpt == "Tylko z krótkiego"
    assert result.content.startswith("Treść długiego")


def test_nesting_beyond_depth_limit_is_dropped():
    payload = {"title": "Najgłębszy", "content": "dno"}
    for _ in range(MAX_NESTING_DEPTH + 2):
        payload = {"content": json.dumps(payload)}
    result = parse(json.dumps(payload))
    assert not (result.content or "").startswith("{")
    assert result.title is None


def test_truncated_double_encoded_content():
    inner = '{"title": "Zaćma", "content": "Zaćma to choroba soczewki, która'
    raw = json.dumps({"content": inner})
    result = parse(raw)
    assert result.title == "Zaćma"
    assert result.content == "Zaćma to choroba soczewki, która"


# =============================================================================
# CORRUPTED OUTPUT BATTERY
# =============================================================================

@pytest.mark.parametrize(
    "raw, expected_title, expected_content",
    [
        # Trailing comma
        ('{"title": "Jaskra", "content": "Opis jaskry",}', "Jaskra", "Opis jaskry"),
        # Output cut off after the title
        ('{"title": "Jaskra", "conte', "Jaskra", None),
        # Unicode escapes in a broken object
        ('{"title": "Za\\u0107ma", "content": "Tre\\u015b\\u0107"', "Zaćma", "Treść"),
        # Raw newline inside a string literal
        ('{"title": "Jaskra", "content": "Linia 1\nLinia 2"', "Jaskra", "Linia 1\nLinia 2"),
        # Fenced, missing closing brace
        ('```json\n{"title": "AMD", "content": "Zwyrodnienie plamki"\n```', "AMD", "Zwyrodnienie plamki"),
        # Unescaped quote cuts content short but keeps the title
        ('{"title": "Jaskra", "content": "Tak zwany "cichy złodziej wzroku"", }', "Jaskra", "Tak zwany"),
    ],
)
def test_corrupted_outputs_recover_fields(raw, expected_title, expected_content):
    result = parse(raw)
    assert result.strategy == "scanner"
    assert result.title == expected_title
    assert result.content == expected_content


@pytest.mark.parametrize(
    "raw",
    [
        None,
        "",
        "   ",
        "```json\n```",
        "{'title': 'single quotes'}",
        "[1, 2, 3]",
        '{"title": ',
        '{"seoMeta": {"title": "x"',
        "\x00\x01{",
    ],
)
def test_parse_never_raises(raw):
    result = parse(raw)
    assert result.strategy in ("direct", "plain_text", "scanner", "empty")


def test_unrecoverable_json_like_output_is_empty():
    result = parse("{'title': 'single quotes'}")
    assert result.strategy == "empty"
    assert result.title is None
    assert result.content is None


def test_tags_given_as_string_are_split():
    raw = '{"title": "A", "suggestedTags": "zaćma, soczewka; okulista"'
    result = parse(raw)
    assert result.suggested_tags == ["zaćma", "soczewka", "okulista"]


def test_seo_meta_given_as_json_string():
    raw = json.dumps({
        "title": "A",
        "content": "B",
        "seoMeta": json.dumps({"title": "SEO A", "description": "Opis", "keywords": ["k1", "k2", "k3"]}),
    })
    result = parse(raw)
    assert result.seo_title == "SEO A"
    assert result.keywords == ["k1", "k2", "k3"]
