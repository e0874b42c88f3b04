"""Vendor Adapters: the remote call boundary.

Each adapter translates a GenerationRequest into the vendor's HTTP protocol,
sends it, and returns a classified RemoteOutcome. Provider-specific details
(payload shape, safety block reasons, inline data parsing) stay here; the
rest of the gateway only sees Success / RetryableFailure / FatalFailure.

Gemini behaviors:
  - image kinds request IMAGE+TEXT response modalities
  - finishReason SAFETY / promptFeedback.blockReason → fatal client error
  - 200 without inline image data for an image request → fatal protocol error
"""

from __future__ import annotations

import base64
import logging
import time
from abc import ABC, abstractmethod

import httpx

from app.gateway.executor import classify_exception, classify_status, failure_for
from app.gateway.prompts import build_parts
from app.gateway.types import (
    FailureClass,
    FatalFailure,
    GenerationKind,
    GenerationRequest,
    InlineImage,
    RemoteOutcome,
    Success,
)

logger = logging.getLogger(__name__)


class BaseVendorAdapter(ABC):
    """Base class for all vendor adapters."""

    name: str = ""

    def __init__(self, api_key: str, **kwargs):
        self.api_key = api_key

    @abstractmethod
    async def send(self, request: GenerationRequest, model: str, timeout: float = 45.0) -> RemoteOutcome:
        """Send one attempt to the vendor and return a classified outcome."""
        ...


# ---------------------------------------------------------------------------
# Gemini Adapter (Google AI generateContent)
# ---------------------------------------------------------------------------


class GeminiAdapter(BaseVendorAdapter):
    """Google Gemini adapter for text and image generation."""

    name = "gemini"
    api_url_template = "{base_url}/models/{model}:generateContent"

    def __init__(self, api_key: str, base_url: str = "https://generativelanguage.googleapis.com/v1beta", **kwargs):
        super().__init__(api_key, **kwargs)
        self.base_url = base_url.rstrip("/")

    def build_payload(self, request: GenerationRequest) -> dict:
        parts: list[dict] = []
        for part in build_parts(request):
            if isinstance(part, InlineImage):
                parts.append(
                    {
                        "inlineData": {
                            "mimeType": part.mime_type,
                            "data": base64.b64encode(part.data).decode("ascii"),
                        }
                    }
                )
            else:
                parts.append({"text": part})

        payload: dict = {"contents": [{"role": "user", "parts": parts}]}
        if request.kind == GenerationKind.IMAGE:
            payload["generationConfig"] = {"responseModalities": ["IMAGE", "TEXT"]}
        return payload

    async def send(self, request: GenerationRequest, model: str, timeout: float = 45.0) -> RemoteOutcome:
        url = self.api_url_template.format(base_url=self.base_url, model=model)
        payload = self.build_payload(request)
        start = time.monotonic()

        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.post(
                    url,
                    json=payload,
                    params={"key": self.api_key},
                    headers={"Content-Type": "application/json"},
                )
        except httpx.HTTPError as e:
            logger.info("Gemini transport error after %dms: %s", int((time.monotonic() - start) * 1000), e)
            return classify_exception(e)

        logger.debug("Gemini %s responded %d in %dms", model, resp.status_code, int((time.monotonic() - start) * 1000))

        classification = classify_status(resp.status_code, _error_message(resp) if resp.status_code >= 400 else "")
        if classification is not None:
            message = _error_message(resp) or f"Gemini returned HTTP {resp.status_code}"
            return failure_for(classification, message, resp.status_code)

        try:
            data = resp.json()
        except ValueError:
            return FatalFailure(
                classification=FailureClass.PROTOCOL_ERROR,
                reason="Gemini returned a non-JSON response",
                status_code=resp.status_code,
            )

        return self.parse_response(request, data)

    @staticmethod
    def parse_response(request: GenerationRequest, data: dict) -> RemoteOutcome:
        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason", "")
            if block_reason:
                return FatalFailure(
                    classification=FailureClass.CLIENT_ERROR,
                    reason=f"The prompt was blocked by the provider ({block_reason}). Please change your input.",
                )
            return FatalFailure(classification=FailureClass.PROTOCOL_ERROR, reason="Gemini returned no candidates")

        candidate = candidates[0]
        if candidate.get("finishReason") in ("SAFETY", "PROHIBITED_CONTENT", "IMAGE_SAFETY"):
            return FatalFailure(
                classification=FailureClass.CLIENT_ERROR,
                reason="The request was rejected by the provider's safety filter. Please change your input.",
            )

        parts = (candidate.get("content") or {}).get("parts") or []

        if request.kind == GenerationKind.IMAGE:
            for part in parts:
                inline = part.get("inlineData") or part.get("inline_data")
                if inline and inline.get("data"):
                    try:
                        image_bytes = base64.b64decode(inline["data"])
                    except ValueError:
                        return FatalFailure(
                            classification=FailureClass.PROTOCOL_ERROR,
                            reason="Gemini returned undecodable image data",
                        )
                    mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
                    return Success(data=image_bytes, mime_type=mime_type)
            return FatalFailure(
                classification=FailureClass.PROTOCOL_ERROR,
                reason="The AI did not return an image. It may have declined the request.",
            )

        text = "".join(p.get("text", "") for p in parts if "text" in p)
        if not text:
            return FatalFailure(classification=FailureClass.PROTOCOL_ERROR, reason="Gemini returned an empty answer")
        return Success(data=text.encode("utf-8"), mime_type="text/plain")


def _error_message(resp: httpx.Response) -> str:
    """Pull the provider's error message out of an error body, if any."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:500]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        status = error.get("status", "")
        message = error.get("message", "")
        return f"{status}: {message}" if status else message
    return ""


ADAPTER_REGISTRY: dict[str, type[BaseVendorAdapter]] = {
    GeminiAdapter.name: GeminiAdapter,
}


def get_adapter(name: str, api_key: str, **kwargs) -> BaseVendorAdapter:
    """Factory to create an adapter by vendor name."""
    adapter_cls = ADAPTER_REGISTRY.get(name)
    if adapter_cls is None:
        raise ValueError(f"No adapter registered for vendor: {name}")
    return adapter_cls(api_key=api_key, **kwargs)
