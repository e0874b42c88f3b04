"""Pydantic request/response models for the generation endpoints.

Field names are exposed in camelCase (``base64Image``, ``mimeType``) to match
what the storytelling frontend sends; snake_case is accepted as well.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Shared parts
# ---------------------------------------------------------------------------


class ImagePayload(_CamelModel):
    """Inline image, base64 encoded."""

    base64_image: str
    mime_type: str = "image/png"


class CharacterPayload(_CamelModel):
    name: str
    profile: str = ""
    identity_locked: bool = False


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class TextGenerateRequest(_CamelModel):
    prompt: str


class ImageGenerateRequest(_CamelModel):
    prompt: str
    characters: list[CharacterPayload] = Field(default_factory=list)
    style_images: list[ImagePayload] = Field(default_factory=list)


class ImageEditBody(_CamelModel):
    """Edit an image sent inline, or one previously generated (``sourceUrl`` under /generated/)."""

    prompt: str
    base64_image: str | None = None
    mime_type: str | None = None
    source_url: str | None = None
    characters: list[CharacterPayload] = Field(default_factory=list)


class PortraitRequest(_CamelModel):
    name: str
    profile: str = ""


class ProfileRequest(_CamelModel):
    name: str
    description: str = ""
    images: list[ImagePayload] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class TextResponse(_CamelModel):
    text: str


class ImageResponse(_CamelModel):
    base64_image: str
    mime_type: str
    file_url: str = ""
    cache_hit: bool = False


class InspirationResponse(_CamelModel):
    prompt: str


class UsageResponse(_CamelModel):
    requests_today: int
    requests_per_day_limit: int
    images_this_minute: int
    images_per_minute_limit: int
    minute_reset_in_seconds: int
    daily_reset_in_seconds: int


class ErrorResponse(BaseModel):
    error: str
    message: str
    retryable: bool = False
    usage: UsageResponse | None = None
