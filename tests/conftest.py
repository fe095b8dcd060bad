import base64
import json
import sys
from pathlib import Path

import httpx
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from shared.context import NodeContext

# Secrets the nodes read; cleared so a developer's shell cannot leak into tests
SECRET_NAMES = [
    "LLM_PROVIDER",
    "LLM_MODEL",
    "LLM_TIER",
    "LLM_DEV_CACHE",
    "GOOGLE_API_KEY",
    "GEMINI_API_KEY",
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "OLLAMA_HOST",
    "IMAGE_PROVIDER",
    "IMAGE_MODEL",
    "STORAGE_PROVIDER",
    "STORAGE_ROOT",
    "STORAGE_PUBLIC_URL",
    "COVER_IMAGE_SEARCH_PROVIDER",
]

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    for name in SECRET_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DRAFTING_DISABLE_DOTENV", "1")


@pytest.fixture
def make_ctx():
    """Build a NodeContext with explicit secrets and an optional mocked transport."""

    def _make(secrets=None, handler=None, config=None):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler)) if handler else None
        return NodeContext(secrets=secrets or {}, config=config, env_file=None, http_client=client)

    return _make


def gemini_text(text: str) -> dict:
    """generateContent payload carrying one text part."""
    return {
        "candidates": [
            {
                "content": {"parts": [{"text": text}], "role": "model"},
                "finishReason": "STOP",
            }
        ]
    }


def gemini_image(data: bytes = PNG_BYTES, mime_type: str = "image/png") -> dict:
    """generateContent payload carrying one inline image."""
    return {
        "candidates": [
            {
                "content": {
                    "parts": [{"inlineData": {"mimeType": mime_type, "data": base64.b64encode(data).decode("ascii")}}],
                }
            }
        ]
    }


def request_prompt(request: httpx.Request) -> str:
    """First text part of a Gemini request body."""
    body = json.loads(request.content)
    return body["contents"][0]["parts"][0]["text"]


CATARACT_CONTENT = (
    "# Zaćma: objawy i leczenie\n\n"
    "Zaćma to zmętnienie naturalnej soczewki oka, które stopniowo pogarsza ostrość widzenia. "
    "Najczęściej dotyczy osób po sześćdziesiątym roku życia, ale może pojawić się wcześniej, "
    "na przykład u chorych na cukrzycę.\n\n"
    "![Budowa oka z zaćmą](https://www.google.com/search?q=%7B%7BFIGURE_1_URL%7D%7D)\n\n"
    "## Leczenie\n\n"
    "Jedyną skuteczną metodą leczenia jest zabieg usunięcia zmętniałej soczewki i wszczepienia "
    "sztucznej soczewki wewnątrzgałkowej. Zabieg trwa zwykle kilkanaście minut."
)


@pytest.fixture
def cataract_article() -> dict:
    return {
        "title": "Zaćma: objawy i leczenie",
        "content": CATARACT_CONTENT,
        "excerpt": "Czym jest zaćma, jak ją rozpoznać i na czym polega jej leczenie operacyjne.",
        "seoMeta": {
            "title": "Zaćma: objawy i leczenie",
            "description": "Poznaj objawy zaćmy i dowiedz się, jak wygląda zabieg jej usunięcia.",
            "keywords": [],
        },
        "suggestedTags": ["zaćma", "soczewka"],
        "suggestedCategory": "Okulistyka",
        "coverImagePrompt": "Calm ophthalmology clinic, eye examination, soft light",
        "figures": [
            {
                "id": "figure_1",
                "type": "illustration",
                "alt": "Budowa oka z zaćmą",
                "caption": "Zmętniała soczewka w przekroju oka",
                "placeholder": "https://www.google.com/search?q=%7B%7BFIGURE_1_URL%7D%7D",
                "prompt": "Cross-section of a human eye with a clouded lens, medical illustration",
            }
        ],
    }
