import asyncio
import json

import httpx

from conftest import png_bytes
from section_studio.services.gemini_images import FailureReason, GeneratedImage, GenerationFailure, ImageInput
from section_studio.services.replicate_upscaler import ReplicateUpscaler, choose_scale

OUTPUT_URL = "https://replicate.delivery/out.png"


def _run(handler):
    async def _go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            upscaler = ReplicateUpscaler(
                client,
                api_token="r8_test",
                model="nightmareai/real-esrgan",
                model_version="v1",
                base_url="https://replicate.test/v1",
                timeout_seconds=5,
                poll_interval_seconds=0,
            )
            return await upscaler.upscale(ImageInput(png_bytes(10, 5)), scale=4)

    return asyncio.run(_go())


def test_choose_scale():
    assert choose_scale(800, 1500) == 2
    assert choose_scale(300, 1500) == 4


def test_upscale_polls_until_succeeded_and_downloads_output():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, str(request.url)))
        if request.method == "POST":
            body = json.loads(request.content)
            assert body["input"]["scale"] == 4
            assert body["input"]["image"].startswith("data:image/png;base64,")
            assert request.headers["authorization"] == "Bearer r8_test"
            return httpx.Response(201, json={"id": "p1", "status": "starting"})
        if str(request.url).endswith("/predictions/p1"):
            polls = sum(1 for method, url in seen if url.endswith("/predictions/p1"))
            status = "processing" if polls == 1 else "succeeded"
            return httpx.Response(200, json={"id": "p1", "status": status, "output": OUTPUT_URL})
        if str(request.url) == OUTPUT_URL:
            return httpx.Response(200, content=png_bytes(40, 20), headers={"content-type": "image/png"})
        return httpx.Response(404)

    result = _run(handler)

    assert isinstance(result, GeneratedImage)
    assert result.image.size == (40, 20)
    assert result.model == "nightmareai/real-esrgan"
    assert [url for _, url in seen].count("https://replicate.test/v1/predictions/p1") == 2


def test_failed_prediction_is_reported_without_download():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(201, json={"id": "p2", "status": "failed", "error": "CUDA out of memory"})
        raise AssertionError(f"unexpected request {request.url}")

    result = _run(handler)

    assert isinstance(result, GenerationFailure)
    assert result.reason == FailureReason.NO_IMAGE_RETURNED
    assert "CUDA out of memory" in result.message


def test_creation_error_status_is_an_http_failure():
    result = _run(lambda request: httpx.Response(422, json={"detail": "invalid version"}))

    assert result.reason == FailureReason.HTTP_ERROR
    assert result.status_code == 422
    assert not result.retryable


def test_non_json_prediction_body_is_a_failure_value():
    result = _run(lambda request: httpx.Response(200, text="<html>bad gateway</html>"))

    assert isinstance(result, GenerationFailure)
    assert result.reason == FailureReason.NO_IMAGE_RETURNED
    assert "could not be parsed" in result.message


def test_prediction_that_is_not_an_object_is_a_failure_value():
    result = _run(lambda request: httpx.Response(201, json=["p3", "starting"]))

    assert isinstance(result, GenerationFailure)
    assert result.reason == FailureReason.NO_IMAGE_RETURNED
