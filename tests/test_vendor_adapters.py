"""Tests for the Gemini vendor adapter (mocked HTTP)."""

from __future__ import annotations

import base64
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.gateway.prompts import STYLE_REFERENCE_INSTRUCTION, build_parts
from app.gateway.types import (
    CharacterBlueprint,
    FailureClass,
    FatalFailure,
    ImageEditRequest,
    ImageFromTextRequest,
    InlineImage,
    RetryableFailure,
    Success,
    TextRequest,
)
from app.gateway.vendor_adapters import GeminiAdapter, get_adapter
from conftest import PNG_BYTES


def _make_httpx_response(status_code: int, json_data: dict | None = None, text: str = "") -> httpx.Response:
    """Create a proper httpx.Response with request set (needed for raise_for_status)."""
    request = httpx.Request("POST", "https://example.com")
    if json_data is not None:
        resp = httpx.Response(status_code, json=json_data, request=request)
    else:
        resp = httpx.Response(status_code, text=text, request=request)
    return resp


def _mock_gemini_text_response(text="Once upon a time", finish_reason="STOP"):
    return _make_httpx_response(
        200,
        json_data={
            "candidates": [
                {
                    "content": {"parts": [{"text": text}]},
                    "finishReason": finish_reason,
                }
            ],
        },
    )


def _mock_gemini_image_response(data: bytes = PNG_BYTES, mime_type: str = "image/png"):
    return _make_httpx_response(
        200,
        json_data={
            "candidates": [
                {
                    "content": {
                        "parts": [
                            {"text": "Here is your scene."},
                            {"inlineData": {"mimeType": mime_type, "data": base64.b64encode(data).decode()}},
                        ]
                    },
                    "finishReason": "STOP",
                }
            ],
        },
    )


def _mock_gemini_safety_response():
    return _make_httpx_response(
        200,
        json_data={
            "candidates": [
                {
                    "finishReason": "SAFETY",
                    "safetyRatings": [{"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "probability": "HIGH"}],
                }
            ],
        },
    )


def _patched_client(mock_client_cls, response=None, side_effect=None) -> AsyncMock:
    mock_client = AsyncMock()
    if side_effect is not None:
        mock_client.post.side_effect = side_effect
    else:
        mock_client.post.return_value = response
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=None)
    mock_client_cls.return_value = mock_client
    return mock_client


class TestGeminiAdapter:
    @pytest.mark.asyncio
    async def test_image_success(self):
        adapter = GeminiAdapter(api_key="test-key")
        req = ImageFromTextRequest(prompt="A lighthouse in a storm")

        with patch("app.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            mock_client = _patched_client(mock_client_cls, _mock_gemini_image_response())
            outcome = await adapter.send(req, "gemini-image", timeout=5.0)

        assert isinstance(outcome, Success)
        assert outcome.data == PNG_BYTES
        assert outcome.mime_type == "image/png"

        url = mock_client.post.call_args.args[0]
        assert url.endswith("/models/gemini-image:generateContent")
        assert mock_client.post.call_args.kwargs["params"] == {"key": "test-key"}
        mock_client_cls.assert_called_once_with(timeout=5.0)

    @pytest.mark.asyncio
    async def test_text_success(self):
        adapter = GeminiAdapter(api_key="test-key")

        with patch("app.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, _mock_gemini_text_response("Hello world"))
            outcome = await adapter.send(TextRequest(prompt="Say hello"), "gemini-text")

        assert isinstance(outcome, Success)
        assert outcome.data == b"Hello world"
        assert outcome.mime_type == "text/plain"

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        adapter = GeminiAdapter(api_key="test-key")

        with patch("app.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, _make_httpx_response(429, text="rate limited"))
            outcome = await adapter.send(TextRequest(prompt="Say hello"), "gemini-text")

        assert isinstance(outcome, RetryableFailure)
        assert outcome.classification == FailureClass.RATE_LIMITED
        assert outcome.status_code == 429

    @pytest.mark.asyncio
    async def test_resource_exhausted_body_is_rate_limit(self):
        adapter = GeminiAdapter(api_key="test-key")
        body = {"error": {"code": 400, "status": "RESOURCE_EXHAUSTED", "message": "Quota exceeded"}}

        with patch("app.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, _make_httpx_response(400, json_data=body))
            outcome = await adapter.send(TextRequest(prompt="Say hello"), "gemini-text")

        assert isinstance(outcome, RetryableFailure)
        assert outcome.classification == FailureClass.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_server_busy_503(self):
        adapter = GeminiAdapter(api_key="test-key")

        with patch("app.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, _make_httpx_response(503, text="The model is overloaded"))
            outcome = await adapter.send(ImageFromTextRequest(prompt="A castle"), "gemini-image")

        assert isinstance(outcome, RetryableFailure)
        assert outcome.classification == FailureClass.SERVER_ERROR
        assert "overloaded" in outcome.message

    @pytest.mark.asyncio
    async def test_bad_request_is_fatal(self):
        adapter = GeminiAdapter(api_key="test-key")
        body = {"error": {"code": 400, "status": "INVALID_ARGUMENT", "message": "Image too small"}}

        with patch("app.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, _make_httpx_response(400, json_data=body))
            outcome = await adapter.send(ImageFromTextRequest(prompt="A castle"), "gemini-image")

        assert isinstance(outcome, FatalFailure)
        assert outcome.classification == FailureClass.CLIENT_ERROR
        assert outcome.reason == "INVALID_ARGUMENT: Image too small"

    @pytest.mark.asyncio
    async def test_safety_block(self):
        adapter = GeminiAdapter(api_key="test-key")

        with patch("app.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, _mock_gemini_safety_response())
            outcome = await adapter.send(ImageFromTextRequest(prompt="A castle"), "gemini-image")

        assert isinstance(outcome, FatalFailure)
        assert outcome.classification == FailureClass.CLIENT_ERROR

    @pytest.mark.asyncio
    async def test_timeout(self):
        adapter = GeminiAdapter(api_key="test-key")

        with patch("app.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, side_effect=httpx.TimeoutException("timeout"))
            outcome = await adapter.send(TextRequest(prompt="Say hello"), "gemini-text", timeout=5.0)

        assert isinstance(outcome, RetryableFailure)
        assert outcome.classification == FailureClass.TIMEOUT

    @pytest.mark.asyncio
    async def test_non_json_body_is_protocol_error(self):
        adapter = GeminiAdapter(api_key="test-key")

        with patch("app.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, _make_httpx_response(200, text="<html>oops</html>"))
            outcome = await adapter.send(TextRequest(prompt="Say hello"), "gemini-text")

        assert isinstance(outcome, FatalFailure)
        assert outcome.classification == FailureClass.PROTOCOL_ERROR


class TestGeminiParseResponse:
    def test_prompt_block_reason(self):
        outcome = GeminiAdapter.parse_response(
            TextRequest(prompt="x"),
            {"promptFeedback": {"blockReason": "PROHIBITED_CONTENT"}},
        )
        assert isinstance(outcome, FatalFailure)
        assert outcome.classification == FailureClass.CLIENT_ERROR
        assert "PROHIBITED_CONTENT" in outcome.reason

    def test_no_candidates(self):
        outcome = GeminiAdapter.parse_response(TextRequest(prompt="x"), {})
        assert outcome.classification == FailureClass.PROTOCOL_ERROR

    def test_image_request_without_image(self):
        data = {"candidates": [{"content": {"parts": [{"text": "I cannot draw that."}]}, "finishReason": "STOP"}]}
        outcome = GeminiAdapter.parse_response(ImageFromTextRequest(prompt="x"), data)
        assert isinstance(outcome, FatalFailure)
        assert outcome.classification == FailureClass.PROTOCOL_ERROR

    def test_snake_case_inline_data(self):
        data = {
            "candidates": [
                {
                    "content": {
                        "parts": [{"inline_data": {"mime_type": "image/jpeg", "data": base64.b64encode(b"jpg").decode()}}]
                    }
                }
            ]
        }
        outcome = GeminiAdapter.parse_response(ImageFromTextRequest(prompt="x"), data)
        assert outcome == Success(data=b"jpg", mime_type="image/jpeg")

    def test_text_parts_joined(self):
        data = {"candidates": [{"content": {"parts": [{"text": "Once "}, {"text": "upon"}]}}]}
        outcome = GeminiAdapter.parse_response(TextRequest(prompt="x"), data)
        assert outcome == Success(data=b"Once upon", mime_type="text/plain")

    def test_empty_text(self):
        data = {"candidates": [{"content": {"parts": []}}]}
        outcome = GeminiAdapter.parse_response(TextRequest(prompt="x"), data)
        assert outcome.classification == FailureClass.PROTOCOL_ERROR


class TestGeminiPayload:
    def test_text_payload_has_no_image_modalities(self):
        payload = GeminiAdapter(api_key="k").build_payload(TextRequest(prompt="Say hello"))
        assert payload["contents"][0]["parts"] == [{"text": "Say hello"}]
        assert "generationConfig" not in payload

    def test_image_payload_with_style_references(self):
        req = ImageFromTextRequest(
            prompt="A lighthouse in a storm",
            characters=(CharacterBlueprint("Ava", "red cloak, silver hair"),),
            style_references=(InlineImage(PNG_BYTES, "image/png"),),
        )
        payload = GeminiAdapter(api_key="k").build_payload(req)
        parts = payload["contents"][0]["parts"]

        assert parts[0] == {"text": STYLE_REFERENCE_INSTRUCTION}
        assert parts[1]["inlineData"]["mimeType"] == "image/png"
        assert base64.b64decode(parts[1]["inlineData"]["data"]) == PNG_BYTES
        assert "A lighthouse in a storm" in parts[2]["text"]
        assert "Character Name: Ava" in parts[2]["text"]
        assert payload["generationConfig"] == {"responseModalities": ["IMAGE", "TEXT"]}

    def test_edit_parts_include_only_locked_blueprints(self):
        req = ImageEditRequest(
            source=InlineImage(PNG_BYTES),
            prompt="Make it night",
            characters=(
                CharacterBlueprint("Ava", "red cloak", identity_locked=True),
                CharacterBlueprint("Bo", "green hat"),
            ),
        )
        text, source = build_parts(req)
        assert "Make it night" in text
        assert "Character: Ava" in text
        assert "Character: Bo" not in text
        assert source == InlineImage(PNG_BYTES)


def test_get_adapter():
    adapter = get_adapter("gemini", "key", base_url="https://example.com/v1/")
    assert isinstance(adapter, GeminiAdapter)
    assert adapter.base_url == "https://example.com/v1"

    with pytest.raises(ValueError):
        get_adapter("unknown", "key")
