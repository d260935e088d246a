import asyncio
import json

import httpx
from PIL import Image

from conftest import gemini_image_response, png_bytes
from section_studio.services.gemini_images import (
    FailureReason,
    GeminiImageClient,
    GeneratedImage,
    GenerationFailure,
    ImageInput,
    ResponseWants,
    STYLE_REFERENCE_CAPTION,
    summarize_response,
)


def _invoke(handler, **kwargs):
    calls = []

    def _recording(request):
        calls.append(request)
        return handler(request)

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(_recording)) as client:
            gemini = GeminiImageClient(
                client, model="gemini-test", base_url="https://gemini.test/v1beta", timeout_seconds=5
            )
            kwargs.setdefault("api_key", "key-123")
            return await gemini.invoke(ImageInput(png_bytes(20, 10)), "make it nicer", **kwargs)

    return asyncio.run(_run()), calls


def test_invoke_posts_reference_then_primary_then_instruction():
    result, calls = _invoke(
        lambda request: gemini_image_response(Image.new("RGB", (40, 20))),
        reference=ImageInput(png_bytes(5, 5), "image/png"),
        temperature=0.1,
    )

    assert isinstance(result, GeneratedImage)
    assert result.image.size == (40, 20)
    assert len(calls) == 1
    request = calls[0]
    assert str(request.url) == "https://gemini.test/v1beta/models/gemini-test:generateContent"
    assert request.headers["x-goog-api-key"] == "key-123"
    body = json.loads(request.content)
    parts = body["contents"][0]["parts"]
    assert "inlineData" in parts[0]
    assert parts[1] == {"text": STYLE_REFERENCE_CAPTION}
    assert "inlineData" in parts[2]
    assert parts[3] == {"text": "make it nicer"}
    assert body["generationConfig"] == {"responseModalities": ["IMAGE"], "temperature": 0.1}


def test_first_image_part_wins_and_text_is_returned_when_wanted():
    def handler(request):
        response = gemini_image_response(Image.new("RGB", (8, 8)), text="done")
        payload = response.json()
        extra = gemini_image_response(Image.new("RGB", (99, 99))).json()["candidates"][0]["content"]["parts"][0]
        payload["candidates"][0]["content"]["parts"].append(extra)
        return httpx.Response(200, json=payload)

    result, _ = _invoke(handler, wants=ResponseWants(image=True, text=True))

    assert isinstance(result, GeneratedImage)
    assert result.image.size == (8, 8)
    assert result.text == "done"


def test_response_without_image_is_a_no_image_failure_with_summary():
    payload = {
        "candidates": [{"content": {"parts": [{"text": "I cannot do that"}]}, "finishReason": "SAFETY"}],
        "promptFeedback": {"blockReason": "OTHER"},
    }
    result, _ = _invoke(lambda request: httpx.Response(200, json=payload))

    assert isinstance(result, GenerationFailure)
    assert result.reason == FailureReason.NO_IMAGE_RETURNED
    assert "SAFETY" in result.details["summary"]
    assert "blockReason=OTHER" in result.message


def test_http_errors_flag_retryability():
    throttled, _ = _invoke(lambda request: httpx.Response(429, text="slow down"))
    rejected, _ = _invoke(lambda request: httpx.Response(400, text="bad image"))

    assert throttled.reason == FailureReason.HTTP_ERROR and throttled.retryable
    assert throttled.status_code == 429
    assert rejected.reason == FailureReason.HTTP_ERROR and not rejected.retryable


def test_timeouts_and_transport_errors_become_failures():
    def timeout(request):
        raise httpx.ReadTimeout("too slow", request=request)

    def unreachable(request):
        raise httpx.ConnectError("refused", request=request)

    timed_out, _ = _invoke(timeout)
    offline, calls = _invoke(unreachable)

    assert timed_out.reason == FailureReason.TIMEOUT
    assert offline.reason == FailureReason.NETWORK_ERROR
    assert len(calls) == 1


def test_missing_api_key_fails_without_a_request():
    result, calls = _invoke(lambda request: gemini_image_response(Image.new("RGB", (1, 1))), api_key=None)

    assert result.reason == FailureReason.NOT_CONFIGURED
    assert not result.retryable
    assert calls == []


def test_undecodable_inline_data_is_reported():
    payload = {"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": "aGVsbG8="}}]}}]}
    result, _ = _invoke(lambda request: httpx.Response(200, json=payload))

    assert result.reason == FailureReason.UNDECODABLE_IMAGE


def test_summarize_response_handles_non_dict():
    assert summarize_response(["x"]) == "type=list"
