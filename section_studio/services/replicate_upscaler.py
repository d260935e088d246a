from __future__ import annotations

import asyncio
import base64
import logging
import time
from typing import Any, Optional

import httpx

from section_studio.services.gemini_images import FailureReason, GeneratedImage, GenerationFailure, ImageInput
from section_studio.services.images import ImageDecodeError, decode_image

logger = logging.getLogger(__name__)

_TERMINAL_STATUSES = {"succeeded", "failed", "canceled"}


def choose_scale(source_width: int, target_width: int) -> int:
    """Real-ESRGAN only offers 2x and 4x."""
    return 2 if source_width * 2 >= target_width else 4


class ReplicateUpscaler:
    """Specialised super-resolution model used as the second attempt of an upscale."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        api_token: str,
        model: str,
        model_version: str,
        base_url: str = "https://api.replicate.com/v1",
        timeout_seconds: float = 120.0,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        self.client = client
        self.api_token = api_token
        self.model = model
        self.model_version = model_version
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_token}", "Content-Type": "application/json"}

    def _failure(self, reason: FailureReason, message: str, **kwargs: Any) -> GenerationFailure:
        logger.warning("replicate.upscale_failed", extra={"model": self.model, "reason": reason.value, "error": message})
        return GenerationFailure(reason=reason, message=message, model=self.model, **kwargs)

    async def upscale(self, source: ImageInput, *, scale: int) -> GeneratedImage | GenerationFailure:
        data_uri = f"data:{source.mime_type};base64,{base64.b64encode(source.data).decode('ascii')}"
        payload = {
            "version": self.model_version,
            "input": {"image": data_uri, "scale": scale, "face_enhance": False},
        }
        deadline = time.monotonic() + self.timeout_seconds
        try:
            creation = await self.client.post(
                f"{self.base_url}/predictions", json=payload, headers=self._headers(), timeout=self.timeout_seconds
            )
            creation.raise_for_status()
            prediction = creation.json()
            prediction_id = prediction.get("id")
            status = prediction.get("status")
            while status not in _TERMINAL_STATUSES:
                if time.monotonic() >= deadline:
                    return self._failure(
                        FailureReason.TIMEOUT, f"Replicate prediction {prediction_id} did not finish in time"
                    )
                await asyncio.sleep(self.poll_interval_seconds)
                poll = await self.client.get(
                    f"{self.base_url}/predictions/{prediction_id}", headers=self._headers(), timeout=self.timeout_seconds
                )
                poll.raise_for_status()
                prediction = poll.json()
                status = prediction.get("status")
            if status != "succeeded":
                return self._failure(
                    FailureReason.NO_IMAGE_RETURNED,
                    f"Replicate prediction {prediction_id} finished with status {status}: {prediction.get('error')}",
                )
            output_url = self._output_url(prediction.get("output"))
            if not output_url:
                return self._failure(FailureReason.NO_IMAGE_RETURNED, "Replicate response did not include image output")
            image_response = await self.client.get(output_url, timeout=self.timeout_seconds)
            image_response.raise_for_status()
        except httpx.TimeoutException as exc:
            return self._failure(FailureReason.TIMEOUT, f"Replicate request timed out: {exc}")
        except httpx.HTTPStatusError as exc:
            code = exc.response.status_code
            return self._failure(
                FailureReason.HTTP_ERROR,
                f"Replicate request failed (status={code})",
                status_code=code,
                retryable=code == 429 or code >= 500,
            )
        except httpx.HTTPError as exc:
            return self._failure(FailureReason.NETWORK_ERROR, f"Replicate request failed: {exc}")
        except (ValueError, TypeError, AttributeError) as exc:
            # Non-JSON bodies (proxy error pages) and JSON that is not a prediction object.
            return self._failure(FailureReason.NO_IMAGE_RETURNED, f"Replicate response could not be parsed: {exc}")

        try:
            image = await asyncio.to_thread(decode_image, image_response.content)
        except ImageDecodeError as exc:
            return self._failure(FailureReason.UNDECODABLE_IMAGE, str(exc))
        mime_type = (image_response.headers.get("content-type") or "image/png").split(";")[0].strip()
        return GeneratedImage(image=image, data=image_response.content, mime_type=mime_type, model=self.model)

    @staticmethod
    def _output_url(output: Any) -> Optional[str]:
        if isinstance(output, str) and output:
            return output
        if isinstance(output, list) and output and isinstance(output[0], str):
            return output[0]
        return None
