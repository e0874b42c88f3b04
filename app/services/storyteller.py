"""Storyteller service: character and inspiration helpers built on the gateway."""

from __future__ import annotations

import logging
import re

from app.gateway.errors import GatewayError
from app.gateway.gateway import GenerationGateway
from app.gateway.types import GenerationResult, InlineImage

logger = logging.getLogger(__name__)

FALLBACK_INSPIRATION = "A brave knight discovers a glowing sword in a misty forest at dusk."

INSPIRATION_PROMPT = (
    "Generate a single, random, and highly imaginative scene description suitable for an AI image "
    "generator. Be creative and cinematic. Phrase it as a direct instruction. Examples: "
    "'A colossal ancient library carved into a glowing crystal mountain.', "
    "'A cybernetic fox spirit guarding a neon-lit torii gate in a rainy city.', "
    "'An astronaut discovering a garden of bioluminescent fungi inside a derelict starship.'"
)

_MARKUP_CHARS = re.compile(r'["*]')


def profile_prompt(name: str, description: str) -> str:
    return (
        "You are a character design expert. Your task is to create a detailed \"Character Blueprint\" "
        "based on the provided information. This blueprint will be used by an AI image generator to "
        "maintain character consistency across multiple scenes. Be specific, detailed, and use "
        "descriptive keywords.\n\n"
        f'Character Name: "{name}"\n'
        f'User Description: "{description}"\n\n'
        "Analyze the reference images (if any) and the description to extract key visual traits. "
        "Structure your output as a list of descriptors covering:\n"
        "- Face: Shape, eyes (color, shape), nose, mouth, hair (color, style, length), defining features.\n"
        "- Physique: Body type, height, build.\n"
        "- Attire: Typical outfit in detail (materials, colors, style, key items).\n"
        "- Color Palette: Dominant colors associated with the character.\n"
        "- Unique Identifiers: Anything else that makes this character unique.\n\n"
        "The final blueprint should be a concise but comprehensive paragraph that can be easily "
        "understood by the AI."
    )


def portrait_prompt(name: str, profile: str) -> str:
    return (
        f"A cinematic, full-body character portrait of {name}. "
        f"Neutral light gray studio background. {profile}"
    )


async def create_character_profile(
    gateway: GenerationGateway,
    name: str,
    description: str,
    images: list[InlineImage] | None = None,
) -> str:
    """Ask the text model for a character blueprint, optionally grounded on reference images."""
    result = await gateway.generate_text(profile_prompt(name, description), reference_images=tuple(images or ()))
    return result.text.strip()


async def generate_character_portrait(gateway: GenerationGateway, name: str, profile: str) -> GenerationResult:
    return await gateway.generate_image(portrait_prompt(name, profile))


async def generate_inspirational_prompt(gateway: GenerationGateway) -> str:
    """A random scene idea. Never cached; falls back to a fixed idea on any gateway error."""
    try:
        result = await gateway.generate_text(INSPIRATION_PROMPT, use_cache=False)
    except GatewayError as e:
        logger.warning("Inspiration prompt failed (%s), using fallback", e.kind)
        return FALLBACK_INSPIRATION

    text = _MARKUP_CHARS.sub("", result.text).strip()
    return text or FALLBACK_INSPIRATION
