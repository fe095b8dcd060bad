import json

import pytest

from drafting.enforcer import (
    DEFAULT_TITLE,
    ELLIPSIS,
    EXCERPT_MAX,
    KEYWORDS_MAX,
    KEYWORDS_MIN,
    PLACEHOLDER_BODY,
    SEO_DESCRIPTION_MAX,
    SEO_TITLE_MAX,
    TAGS_MAX,
    TAGS_MIN,
    content_is_thin,
    derive_title,
    enforce,
    enforce_category,
    glossary_keywords,
    truncate_at_word,
)
from drafting.prompts import PLACEHOLDER_RE, figure_placeholder
from drafting.recovery import parse
from drafting.schemas import GenerationResponse, PartialResponseFields, SEOMeta, allowed_categories

BODY = (
    "Jaskra to przewlekła choroba nerwu wzrokowego, która przez długi czas nie daje objawów. "
    "Regularny pomiar ciśnienia wewnątrzgałkowego u okulisty pozwala wykryć ją na wczesnym etapie. "
    "Leczenie polega najczęściej na stosowaniu kropli obniżających ciśnienie w oku."
)


def assert_contract(response, audience="patient"):
    assert len(response.seo_meta.title) <= SEO_TITLE_MAX
    assert len(response.seo_meta.description) <= SEO_DESCRIPTION_MAX
    assert len(response.excerpt) <= EXCERPT_MAX
    assert KEYWORDS_MIN <= len(response.seo_meta.keywords) <= KEYWORDS_MAX
    assert TAGS_MIN <= len(response.suggested_tags) <= TAGS_MAX
    assert response.suggested_category in allowed_categories(audience)
    assert PLACEHOLDER_RE.search(response.content) is None
    assert response.title


# =============================================================================
# HELPERS
# =============================================================================

def test_truncate_at_word_cuts_at_boundary():
    assert truncate_at_word("Ala ma kota i psa", 10) == "Ala ma" + ELLIPSIS


def test_truncate_at_word_leaves_short_text():
    assert truncate_at_word("Krótki tytuł", 60) == "Krótki tytuł"


def test_truncate_single_long_word():
    result = truncate_at_word("a" * 100, 20)
    assert len(result) <= 20
    assert result.endswith(ELLIPSIS)


def test_content_is_thin_ignores_placeholders():
    padded = "Krótko. " + f"![x]({figure_placeholder(1)})" * 10
    assert content_is_thin(padded)
    assert not content_is_thin(BODY)


def test_derive_title_from_heading():
    assert derive_title("# **Jaskra** w praktyce\n\nTreść") == "Jaskra w praktyce"


def test_derive_title_from_first_sentence():
    assert derive_title("Jaskra to choroba. Druga część.") == "Jaskra to choroba"


def test_derive_title_empty():
    assert derive_title("") == DEFAULT_TITLE


def test_glossary_keywords_in_priority_order():
    text = "Pacjent z jaskrą i zaćmą trafił do okulisty."
    assert glossary_keywords(text) == ["zaćma", "jaskra", "okulista"]


# =============================================================================
# RULES
# =============================================================================

def test_long_fields_truncated():
    fields = PartialResponseFields(
        title="Jaskra",
        content=BODY,
        excerpt="Bardzo długi opis jaskry " * 20,
        seo_title="Jaskra czyli cichy złodziej wzroku i wszystko co musisz o niej wiedzieć",
        seo_description="Opis " * 60,
        keywords=["jaskra"] + [f"słowo{i}" for i in range(10)],
        suggested_tags=[f"tag{i}" for i in range(10)],
        suggested_category="Choroby",
    )
    response = enforce(fields, "patient")

    assert_contract(response)
    assert response.seo_meta.title.endswith(ELLIPSIS)
    assert response.seo_meta.description.endswith(ELLIPSIS)
    assert len(response.seo_meta.keywords) == KEYWORDS_MAX
    assert len(response.suggested_tags) == TAGS_MAX


def test_empty_keywords_use_glossary():
    fields = PartialResponseFields(title="Jaskra", content=BODY, keywords=[])
    response = enforce(fields, "patient")

    keywords = response.seo_meta.keywords
    assert keywords[0] == "jaskra"
    assert "ciśnienie wewnątrzgałkowe" in keywords
    assert KEYWORDS_MIN <= len(keywords) <= KEYWORDS_MAX


def test_keywords_padded_to_minimum():
    fields = PartialResponseFields(title="Jaskra", content=BODY, keywords=["jaskra"])
    response = enforce(fields, "patient")
    assert response.seo_meta.keywords[0] == "jaskra"
    assert len(response.seo_meta.keywords) >= KEYWORDS_MIN


def test_keywords_deduplicated_case_insensitive():
    fields = PartialResponseFields(title="Jaskra", content=BODY, keywords=["Jaskra", "jaskra", " jaskra ", "okulista", "wzrok"])
    response = enforce(fields, "patient")
    assert response.seo_meta.keywords == ["Jaskra", "okulista", "wzrok"]


def test_tags_fall_back_to_keywords():
    fields = PartialResponseFields(title="Jaskra", content=BODY, keywords=["jaskra", "okulista", "wzrok"])
    response = enforce(fields, "patient")
    assert response.suggested_tags == ["jaskra", "okulista", "wzrok"]


@pytest.mark.parametrize(
    "suggested, audience, expected",
    [
        ("Choroby", "patient", "Choroby"),
        ("  choroby ", "patient", "Choroby"),
        ("diagnostyka", "professional", "Diagnostyka"),
    ],
)
def test_category_canonicalized(suggested, audience, expected):
    assert enforce_category(suggested, audience, BODY, "Jaskra") == expected


def test_unknown_category_scored_by_content():
    content = "Leczenie zaćmy. Leczenie operacyjne. Po zabiegu leczenie trwa kilka tygodni."
    assert enforce_category("Okulistyka", "patient", content, "Zaćma") == "Leczenie"


def test_unknown_category_without_matches_uses_first_label():
    assert enforce_category(None, "professional", "bez dopasowań", "tytuł") == allowed_categories("professional")[0]


def test_patient_category_not_accepted_for_professional():
    result = enforce_category("Choroby", "professional", BODY, "Jaskra")
    assert result in allowed_categories("professional")


def test_thin_content_replaced_with_placeholder_article():
    response = enforce(PartialResponseFields(title="Zaćma", content="Za krótko."), "patient")

    assert response.title == "Zaćma"
    assert response.content.startswith("# Zaćma")
    assert PLACEHOLDER_BODY in response.content
    assert_contract(response)


def test_empty_fields_produce_complete_response():
    response = enforce(PartialResponseFields(), "professional")
    assert response.title == DEFAULT_TITLE
    assert_contract(response, "professional")


def test_placeholders_kept_or_swept():
    content = BODY + f"\n\n![Rysunek]({figure_placeholder(1)})\n\n\n\nKoniec. {{{{FIGURE_2_URL}}}}"
    fields = PartialResponseFields(title="Jaskra", content=content)

    kept = enforce(fields, "patient", keep_placeholders=True)
    assert PLACEHOLDER_RE.search(kept.content)

    swept = enforce(fields, "patient")
    assert PLACEHOLDER_RE.search(swept.content) is None
    assert "![Rysunek]" not in swept.content
    assert "\n\n\n" not in swept.content


def test_title_cleaned_of_markdown_and_quotes():
    response = enforce(PartialResponseFields(title='## "Jaskra"  ', content=BODY), "patient")
    assert response.title == "Jaskra"


# =============================================================================
# IDEMPOTENCE
# =============================================================================

@pytest.mark.parametrize(
    "fields, audience",
    [
        (PartialResponseFields(), "patient"),
        (PartialResponseFields(content="Krótko"), "professional"),
        (PartialResponseFields(title="Jaskra", content=BODY), "patient"),
        (
            PartialResponseFields(
                title="  Jaskra: " + "bardzo długi tytuł " * 10,
                content=BODY + f"\n\n![x]({figure_placeholder(1)})",
                excerpt="Krótki",
                seo_title="S" * 80,
                seo_description="opis " * 50,
                keywords=["a", "b", "c", "d", "e", "f"],
                suggested_tags=["#tag", "tag", "inny;"],
                suggested_category="Nieznana",
            ),
            "patient",
        ),
        (PartialResponseFields(content="# Nagłówek\n\n" + BODY, suggested_category="badania"), "professional"),
    ],
)
def test_enforce_is_idempotent(fields, audience):
    once = enforce(fields, audience)
    twice = enforce(PartialResponseFields.from_response(once), audience)
    assert twice == once
    assert_contract(once, audience)


# =============================================================================
# VALID RESPONSES
# =============================================================================

VALID_RESPONSE = GenerationResponse(
    title="Jaskra: cichy złodziej wzroku",
    content="# Jaskra\n\n" + BODY,
    excerpt="Jaskra długo nie daje objawów, dlatego regularne badanie ciśnienia w oku jest tak ważne.",
    seo_meta=SEOMeta(
        title="Jaskra: objawy, badania i leczenie",
        description="Czym jest jaskra, jak ją wcześnie wykryć i jak wygląda leczenie kroplami obniżającymi ciśnienie w oku.",
        keywords=["jaskra", "ciśnienie wewnątrzgałkowe", "nerw wzrokowy", "krople do oczu"],
    ),
    suggested_tags=["jaskra", "profilaktyka", "badanie wzroku"],
    suggested_category="Choroby",
)


def test_valid_response_passes_through_unchanged():
    fields = PartialResponseFields.from_response(VALID_RESPONSE)
    assert enforce(fields, "patient") == VALID_RESPONSE


def test_valid_json_response_parses_and_enforces_unchanged():
    raw = json.dumps({
        "title": VALID_RESPONSE.title,
        "content": VALID_RESPONSE.content,
        "excerpt": VALID_RESPONSE.excerpt,
        "seoMeta": VALID_RESPONSE.seo_meta.model_dump(),
        "suggestedTags": VALID_RESPONSE.suggested_tags,
        "suggestedCategory": VALID_RESPONSE.suggested_category,
    }, ensure_ascii=False)

    fields = parse(raw)

    assert fields.strategy == "direct"
    assert enforce(fields, "patient") == VALID_RESPONSE
