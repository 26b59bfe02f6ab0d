from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

MAX_TEXT_LENGTH = 200_000
MAX_URL_LENGTH = 4096
MAX_URLS_PER_REQUEST = 100


class _WireModel(BaseModel):
    model_config = ConfigDict(
        extra="ignore",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class GroundingWeb(_WireModel):
    uri: str | None = None
    title: str | None = None


class GroundingChunk(_WireModel):
    web: GroundingWeb | None = None


def _default_chunk_indices() -> list[int]:
    return []


class GroundingSupport(_WireModel):
    grounding_chunk_indices: list[int] = Field(default_factory=_default_chunk_indices)


def _default_chunks() -> list[GroundingChunk]:
    return []


def _default_supports() -> list[GroundingSupport]:
    return []


class GroundingMetadata(_WireModel):
    """Citation data returned next to generated text.

    Accepts the camelCase wire shape (``groundingChunks``) as well as
    snake_case field names.
    """

    grounding_chunks: list[GroundingChunk] = Field(default_factory=_default_chunks)
    grounding_supports: list[GroundingSupport] = Field(default_factory=_default_supports)


class RenderRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    markdown: str = Field(max_length=MAX_TEXT_LENGTH)


class RenderResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    html: str


class NormalizeUrlsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    urls: list[str] = Field(max_length=MAX_URLS_PER_REQUEST)

    @field_validator("urls")
    @classmethod
    def _validate_url_lengths(cls, value: list[str]) -> list[str]:
        for url in value:
            if len(url) > MAX_URL_LENGTH:
                raise ValueError(f"urls entries must be at most {MAX_URL_LENGTH} characters")
        return value


class NormalizeUrlsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    urls: list[str]


class ResolveUrlRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str = Field(min_length=1, max_length=MAX_URL_LENGTH)
    verify: bool = False


class ResolveUrlResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str
    resolved_url: str
    changed: bool


class RewriteLinksRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str = Field(max_length=MAX_TEXT_LENGTH)


class RewriteLinksResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str


class SourceItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str
    title: str | None = None


class PrepareAnswerRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str = Field(max_length=MAX_TEXT_LENGTH)
    grounding_metadata: GroundingMetadata | None = None
    resolve_sources: bool = True


class PrepareAnswerResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    markdown: str
    html: str
    sources: list[SourceItem]
