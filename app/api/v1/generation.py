"""Generation API: text, image, edit, character and usage endpoints.

Provides:
  - POST /text: free-form text generation
  - POST /images: scene image from a prompt, characters and style references
  - POST /images/edit: edit an inline or previously generated image
  - POST /characters/portrait: full-body character portrait
  - POST /characters/profile: character blueprint from description + reference images
  - GET  /inspiration: random scene idea (never cached)
  - GET  /usage: current quota usage and reset countdowns
  - GET  /status: quota, concurrency and cache stats

Every generation response carries X-Usage-* headers and X-Cache: HIT|MISS.
"""

import asyncio
import base64
import binascii
import logging

from fastapi import APIRouter, Depends, Request, Response

from app.core.rate_limit import generation_limit, limiter
from app.gateway.errors import ValidationError
from app.gateway.gateway import GenerationGateway
from app.gateway.storage import mime_type_for
from app.gateway.types import CharacterBlueprint, GenerationResult, InlineImage
from app.schemas.generation import (
    CharacterPayload,
    ErrorResponse,
    ImageEditBody,
    ImageGenerateRequest,
    ImagePayload,
    ImageResponse,
    InspirationResponse,
    PortraitRequest,
    ProfileRequest,
    TextGenerateRequest,
    TextResponse,
    UsageResponse,
)
from app.services import storyteller

logger = logging.getLogger(__name__)

router = APIRouter(tags=["generation"])

# Body shape of every GatewayError response (see the handler in app.main)
ERROR_RESPONSES = {
    status_code: {"model": ErrorResponse} for status_code in (400, 422, 429, 502, 503, 504)
}


def get_gateway(request: Request) -> GenerationGateway:
    return request.app.state.gateway


def _decode_image(payload: ImagePayload) -> InlineImage:
    try:
        data = base64.b64decode(payload.base64_image, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("Image data is not valid base64.") from e
    return InlineImage(data=data, mime_type=payload.mime_type)


def _characters(items: list[CharacterPayload]) -> tuple[CharacterBlueprint, ...]:
    return tuple(CharacterBlueprint(name=c.name, profile=c.profile, identity_locked=c.identity_locked) for c in items)


def _set_headers(response: Response, gateway: GenerationGateway, result: GenerationResult | None = None) -> None:
    response.headers.update(gateway.get_usage_snapshot().to_headers())
    if result is not None:
        response.headers["X-Cache"] = "HIT" if result.cache_hit else "MISS"


def _image_response(result: GenerationResult) -> ImageResponse:
    return ImageResponse(
        base64_image=base64.b64encode(result.data).decode("ascii"),
        mime_type=result.mime_type,
        file_url=result.location,
        cache_hit=result.cache_hit,
    )


@router.post("/text", response_model=TextResponse, responses=ERROR_RESPONSES)
@limiter.limit(generation_limit)
async def generate_text(
    request: Request,
    response: Response,
    body: TextGenerateRequest,
    gateway: GenerationGateway = Depends(get_gateway),
):
    result = await gateway.generate_text(body.prompt)
    _set_headers(response, gateway, result)
    return TextResponse(text=result.text)


@router.post("/images", response_model=ImageResponse, responses=ERROR_RESPONSES)
@limiter.limit(generation_limit)
async def generate_image(
    request: Request,
    response: Response,
    body: ImageGenerateRequest,
    gateway: GenerationGateway = Depends(get_gateway),
):
    style_references = tuple(_decode_image(img) for img in body.style_images)
    result = await gateway.generate_image(body.prompt, _characters(body.characters), style_references)
    _set_headers(response, gateway, result)
    return _image_response(result)


@router.post("/images/edit", response_model=ImageResponse, responses=ERROR_RESPONSES)
@limiter.limit(generation_limit)
async def edit_image(
    request: Request,
    response: Response,
    body: ImageEditBody,
    gateway: GenerationGateway = Depends(get_gateway),
):
    if body.base64_image:
        source = _decode_image(ImagePayload(base64_image=body.base64_image, mime_type=body.mime_type or "image/png"))
    elif body.source_url and gateway.artifacts is not None:
        # Previously generated file under /generated/
        try:
            data = await asyncio.to_thread(gateway.artifacts.read, body.source_url)
            mime_type = mime_type_for(gateway.artifacts.path_for(body.source_url))
        except (ValueError, FileNotFoundError) as e:
            raise ValidationError(f"Unknown source image: {body.source_url}") from e
        source = InlineImage(data=data, mime_type=mime_type)
    else:
        raise ValidationError("Provide either base64Image or a sourceUrl under /generated/.")

    result = await gateway.edit_image(source.data, source.mime_type, body.prompt, _characters(body.characters))
    _set_headers(response, gateway, result)
    return _image_response(result)


@router.post("/characters/portrait", response_model=ImageResponse, responses=ERROR_RESPONSES)
@limiter.limit(generation_limit)
async def character_portrait(
    request: Request,
    response: Response,
    body: PortraitRequest,
    gateway: GenerationGateway = Depends(get_gateway),
):
    result = await storyteller.generate_character_portrait(gateway, body.name, body.profile)
    _set_headers(response, gateway, result)
    return _image_response(result)


@router.post("/characters/profile", response_model=TextResponse, responses=ERROR_RESPONSES)
@limiter.limit(generation_limit)
async def character_profile(
    request: Request,
    response: Response,
    body: ProfileRequest,
    gateway: GenerationGateway = Depends(get_gateway),
):
    images = [_decode_image(img) for img in body.images]
    text = await storyteller.create_character_profile(gateway, body.name, body.description, images)
    _set_headers(response, gateway)
    return TextResponse(text=text)


@router.get("/inspiration", response_model=InspirationResponse)
@limiter.limit(generation_limit)
async def inspiration(
    request: Request,
    response: Response,
    gateway: GenerationGateway = Depends(get_gateway),
):
    prompt = await storyteller.generate_inspirational_prompt(gateway)
    _set_headers(response, gateway)
    return InspirationResponse(prompt=prompt)


@router.get("/usage", response_model=UsageResponse)
async def usage(gateway: GenerationGateway = Depends(get_gateway)):
    """Current quota usage. Reading it never changes any counter."""
    return UsageResponse(**gateway.get_usage_snapshot().to_dict())


@router.get("/status")
async def status(gateway: GenerationGateway = Depends(get_gateway)):
    return gateway.get_status()
