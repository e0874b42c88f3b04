"""Prompt assembly for the remote call.

Turns a GenerationRequest into the ordered list of content parts sent to the
provider. Lives behind the remote boundary: the cache key is computed over
the request fields, not over this text.
"""

from __future__ import annotations

from app.gateway.types import (
    CharacterBlueprint,
    GenerationRequest,
    ImageEditRequest,
    ImageFromTextRequest,
    InlineImage,
    TextRequest,
)

BEST_PRACTICES_GUIDE = """Best practices:
- Be hyper-specific about setting, mood, lighting, camera, and materials.
- Provide purpose/context; maintain character consistency when blueprints provided.
- Iterate in small steps; keep character unchanged unless specified.
- Use photographic/cinematic language (wide-angle, macro, low-angle, 85mm portrait lens, Dutch angle).
- Use semantic negatives for cleanliness: no watermark, no text overlays, no extra limbs, no distortions, no signature."""

STYLE_REFERENCE_INSTRUCTION = (
    "Use the following image(s) ONLY as artistic style references. "
    "Emulate palette/lighting/texture. Do NOT copy content. Then render the described scene."
)


def character_blueprints(characters: tuple[CharacterBlueprint, ...]) -> str:
    return "\n\n".join(f"Character Name: {c.name}\nCharacter Blueprint: {c.profile}\n---" for c in characters)


def scene_prompt(prompt: str, characters: tuple[CharacterBlueprint, ...]) -> str:
    cast_note = (
        "The following characters appear in this scene. Adhere STRICTLY to their blueprints."
        if characters
        else ""
    )
    return (
        f"{BEST_PRACTICES_GUIDE}\n\n"
        "Task: Generate a single, high-quality, cinematic image for a visual narrative.\n\n"
        f'Scene Description: "{prompt}"\n\n'
        f"{cast_note}\n"
        f"{character_blueprints(characters)}\n\n"
        "Style Guidelines: Use precise camera/lighting/composition language. "
        "Favor realistic anatomy and clean outputs. Avoid text artifacts."
    )


def edit_prompt(prompt: str, locked: tuple[CharacterBlueprint, ...]) -> str:
    blueprint_text = ""
    if locked:
        blueprint_text = (
            "Reference the following character blueprints to maintain visual consistency for locked characters:\n"
            + "\n".join(f"Character: {c.name}\nBlueprint: {c.profile}\n---" for c in locked)
        )
    return f"{BEST_PRACTICES_GUIDE}\n\n{prompt}.\n{blueprint_text}"


def build_parts(request: GenerationRequest) -> list[str | InlineImage]:
    """Ordered content parts: text strings and inline images."""
    if isinstance(request, TextRequest):
        return [*request.reference_images, request.prompt]

    if isinstance(request, ImageFromTextRequest):
        text = scene_prompt(request.prompt, request.characters)
        if request.style_references:
            return [STYLE_REFERENCE_INSTRUCTION, *request.style_references, text]
        return [text]

    if isinstance(request, ImageEditRequest):
        return [edit_prompt(request.prompt, request.locked_characters), request.source]

    raise TypeError(f"Unsupported request type: {type(request).__name__}")
