"""
Pydantic schemas for the drafting engine.

Covers the public request/response records, the transient records that
flow between pipeline stages, and the node input/output models.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


Audience = Literal["patient", "professional"]
Provider = Literal["gemini", "openai", "anthropic", "ollama"]
Tier = Literal["quality", "fast"]


# Category allow-lists, in tie-break order
CATEGORY_ALLOW_LIST: Dict[str, List[str]] = {
    "patient": ["Choroby", "Profilaktyka", "Soczewki", "Leczenie", "Zdrowie oczu"],
    "professional": ["Badania", "Techniki operacyjne", "Diagnostyka", "Farmakoterapia", "Przypadki kliniczne"],
}


def allowed_categories(audience: str) -> List[str]:
    return CATEGORY_ALLOW_LIST.get(audience, CATEGORY_ALLOW_LIST["patient"])


# =============================================================================
# LLM MODEL REGISTRY
# =============================================================================
# Maps user-friendly model names to provider + API model ID
# Format: "Display Name" -> (provider, model_id)

LLM_MODEL_REGISTRY: Dict[str, tuple] = {
    # Google Gemini
    "Gemini 2.5 Pro": ("gemini", "gemini-2.5-pro"),
    "Gemini 2.5 Flash": ("gemini", "gemini-2.5-flash"),
    "Gemini 2.5 Flash Lite": ("gemini", "gemini-2.5-flash-lite"),
    "Gemini 2.0 Flash": ("gemini", "gemini-2.0-flash"),

    # Anthropic Claude
    "Claude Sonnet 4": ("anthropic", "claude-sonnet-4-20250514"),
    "Claude Opus 4": ("anthropic", "claude-opus-4-20250514"),
    "Claude 3.5 Haiku": ("anthropic", "claude-3-5-haiku-20241022"),

    # OpenAI
    "GPT-4.1": ("openai", "gpt-4.1"),
    "GPT-4o": ("openai", "gpt-4o"),
    "GPT-4o Mini": ("openai", "gpt-4o-mini"),

    # Local (Ollama)
    "Llama 3.1 (Local)": ("ollama", "llama3.1"),
    "Qwen 2.5 (Local)": ("ollama", "qwen2.5"),
}

# Used when neither params nor secrets name a model
DEFAULT_MODELS: Dict[str, str] = {
    "gemini": "gemini-2.5-pro",
    "openai": "gpt-4o",
    "anthropic": "claude-sonnet-4-20250514",
    "ollama": "llama3.1",
}


def resolve_model(model_name: Optional[str]) -> tuple:
    """
    Resolve a model name to (provider, model_id).

    Args:
        model_name: User-friendly model name (e.g., "Gemini 2.5 Pro")

    Returns:
        Tuple of (provider, model_id) or (None, None) if not found
    """
    if not model_name:
        return (None, None)
    return LLM_MODEL_REGISTRY.get(model_name, (None, None))


def _normalize_provider(v):
    if isinstance(v, str):
        v_lower = v.strip().lower()
        if v_lower in ("claude", "anthropic"):
            return "anthropic"
        if v_lower in ("google", "gemini"):
            return "gemini"
        return v_lower
    return v


# =============================================================================
# LLM CONFIGURATION
# =============================================================================

class LLMConfig(BaseModel):
    """
    LLM configuration for the generation nodes.

    Resolution order (first non-None wins):
    1. Node params (this object)
    2. Environment variables (.env: LLM_PROVIDER, LLM_MODEL, LLM_TIER)
    3. Provider defaults (DEFAULT_MODELS)

    `model` accepts either a registry display name ("Gemini 2.5 Pro") or a
    raw model id ("gemini-2.5-pro").
    """
    model: Optional[str] = Field(
        default=None,
        description="Model to use (e.g., 'Gemini 2.5 Pro', 'gpt-4o')"
    )
    temperature: Optional[float] = Field(
        default=None,
        ge=0,
        le=2,
        description="Temperature for LLM sampling"
    )
    tier: Optional[Tier] = Field(
        default=None,
        description="Preference tier used when a fallback model has to be picked"
    )


class GenerationSettings(BaseModel):
    """Per-call generation parameters."""
    temperature: float = 0.6
    max_output_tokens: int = 4096
    json_mode: bool = True
    timeout: float = Field(default=60.0, description="Seconds before the call is abandoned")


class PromptPair(BaseModel):
    """System + user prompt for one generation call."""
    system_prompt: str
    user_prompt: str


# =============================================================================
# CORE RECORDS
# =============================================================================

class GenerationRequest(BaseModel):
    """One article generation request. Immutable."""
    model_config = ConfigDict(frozen=True)

    document_text: str
    audience: Audience
    provider_preference: Provider = "gemini"
    wants_images: bool = True
    llm_config: Optional[LLMConfig] = None

    @field_validator("provider_preference", mode="before")
    @classmethod
    def normalize_provider(cls, v):
        """Accept 'claude' / 'google' aliases."""
        return _normalize_provider(v)


class SEOMeta(BaseModel):
    title: str = ""
    description: str = ""
    keywords: List[str] = Field(default_factory=list)


class GenerationResponse(BaseModel):
    """The article record handed to the persistence/publishing layer."""
    title: str
    content: str
    excerpt: str
    seo_meta: SEOMeta
    suggested_tags: List[str]
    suggested_category: str
    generated_image_url: Optional[str] = None


class FigureDescriptor(BaseModel):
    """A figure the model proposed. Consumed once by the image orchestrator."""
    id: str = ""
    type: Literal["illustration", "chart"] = "illustration"
    alt: str = ""
    caption: str = ""
    placeholder: str = ""
    prompt: str = ""

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v):
        """Models echo the schema ('illustration|chart') or invent types."""
        if isinstance(v, str) and "chart" in v.lower() and "illustration" not in v.lower():
            return "chart"
        return "illustration"

    @field_validator("id", "alt", "caption", "placeholder", "prompt", mode="before")
    @classmethod
    def coerce_text(cls, v):
        if v is None:
            return ""
        return v if isinstance(v, str) else str(v)


class ModelCatalogEntry(BaseModel):
    name: str
    supports_generation: bool = True


# =============================================================================
# PARSER FIELD VALUES
# =============================================================================
# A raw model field is a plain string, an already-parsed object, or absent.
# The normalizer works on these; concrete fields are resolved later.

class RawValue(BaseModel):
    kind: Literal["raw"] = "raw"
    text: str


class ParsedValue(BaseModel):
    kind: Literal["parsed"] = "parsed"
    data: Any


class MissingValue(BaseModel):
    kind: Literal["missing"] = "missing"


FieldValue = Annotated[Union[RawValue, ParsedValue, MissingValue], Field(discriminator="kind")]


class PartialResponseFields(BaseModel):
    """
    Whatever the parser managed to recover. Any field may be missing;
    the content enforcer turns this into a GenerationResponse.
    """
    title: Optional[str] = None
    content: Optional[str] = None
    excerpt: Optional[str] = None
    seo_title: Optional[str] = None
    seo_description: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    suggested_tags: List[str] = Field(default_factory=list)
    suggested_category: Optional[str] = None
    generated_image_url: Optional[str] = None
    cover_image_prompt: Optional[str] = None
    figures: List[FigureDescriptor] = Field(default_factory=list)
    strategy: Literal["direct", "plain_text", "scanner", "empty"] = "empty"

    @classmethod
    def from_response(cls, response: GenerationResponse) -> "PartialResponseFields":
        """Re-open an enforced response for another enforcement pass."""
        return cls(
            title=response.title,
            content=response.content,
            excerpt=response.excerpt,
            seo_title=response.seo_meta.title,
            seo_description=response.seo_meta.description,
            keywords=list(response.seo_meta.keywords),
            suggested_tags=list(response.suggested_tags),
            suggested_category=response.suggested_category,
            generated_image_url=response.generated_image_url,
            strategy="direct",
        )


# =============================================================================
# NODE SCHEMAS
# =============================================================================

class GenerateArticleInput(BaseModel):
    """Input for generate_article node."""
    document_text: str = Field(description="Plain text extracted from the source document(s)")
    audience: Audience = "patient"
    provider_preference: Optional[Provider] = Field(
        default=None,
        description="Text provider; falls back to LLM_PROVIDER, then gemini"
    )
    wants_images: bool = True
    llm_config: Optional[LLMConfig] = None

    @field_validator("provider_preference", mode="before")
    @classmethod
    def normalize_provider(cls, v):
        return _normalize_provider(v)


class GenerateArticleOutput(BaseModel):
    """Output from generate_article node."""
    model_config = ConfigDict(protected_namespaces=())

    response: GenerationResponse
    strategy: str = "empty"
    model_used: Optional[str] = None
    fallback_used: bool = False
    rescued: bool = False
    images_generated: int = Field(default=0, description="Images attached to the article, cover included")
    status: str = "success"


class ImproveContentInput(BaseModel):
    """Input for improve_article_content node."""
    content: str = Field(description="Markdown article body to rewrite")
    audience: Audience = "patient"
    provider_preference: Optional[Provider] = None
    llm_config: Optional[LLMConfig] = None

    @field_validator("provider_preference", mode="before")
    @classmethod
    def normalize_provider(cls, v):
        return _normalize_provider(v)


class ImproveContentOutput(BaseModel):
    """Output from improve_article_content node."""
    model_config = ConfigDict(protected_namespaces=())

    content: str
    improved: bool = Field(default=False, description="False when the input was returned unchanged")
    model_used: Optional[str] = None
    status: str = "success"


class GenerateSEOMetaInput(BaseModel):
    """Input for generate_seo_meta node."""
    title: str
    content: str
    audience: Audience = "patient"
    provider_preference: Optional[Provider] = None
    llm_config: Optional[LLMConfig] = None

    @field_validator("provider_preference", mode="before")
    @classmethod
    def normalize_provider(cls, v):
        return _normalize_provider(v)


class GenerateSEOMetaOutput(BaseModel):
    """Output from generate_seo_meta node."""
    model_config = ConfigDict(protected_namespaces=())

    seo_meta: SEOMeta
    generated: bool = Field(default=False, description="True when the model supplied at least one field")
    model_used: Optional[str] = None
    status: str = "success"
