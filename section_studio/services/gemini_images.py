from __future__ import annotations

import asyncio
import base64
import binascii
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from PIL import Image

from section_studio.services.images import ImageDecodeError, decode_image

logger = logging.getLogger(__name__)

STYLE_REFERENCE_CAPTION = (
    "Use this image ONLY as a style reference (colors, typography, lighting, mood). "
    "Do not copy its content or layout."
)


class FailureReason(str, enum.Enum):
    NO_IMAGE_RETURNED = "no_image_returned"
    TIMEOUT = "timeout"
    HTTP_ERROR = "http_error"
    NETWORK_ERROR = "network_error"
    NOT_CONFIGURED = "not_configured"
    UNDECODABLE_IMAGE = "undecodable_image"


@dataclass(frozen=True)
class ImageInput:
    data: bytes
    mime_type: str = "image/png"

    def as_part(self) -> dict[str, Any]:
        return {
            "inlineData": {
                "mimeType": self.mime_type,
                "data": base64.b64encode(self.data).decode("ascii"),
            }
        }


@dataclass(frozen=True)
class ResponseWants:
    image: bool = True
    text: bool = False

    def modalities(self) -> list[str]:
        out = []
        if self.text:
            out.append("TEXT")
        if self.image:
            out.append("IMAGE")
        return out


@dataclass
class GeneratedImage:
    image: Image.Image
    data: bytes
    mime_type: str
    model: str
    text: Optional[str] = None


@dataclass
class GenerationFailure:
    reason: FailureReason
    message: str
    model: str
    retryable: bool = True
    status_code: Optional[int] = None
    details: dict[str, Any] = field(default_factory=dict)


def _extract_first_inline_image(response_json: dict[str, Any]) -> Optional[tuple[bytes, str]]:
    candidates = response_json.get("candidates") or []
    for cand in candidates:
        content = cand.get("content") if isinstance(cand, dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            continue
        for part in parts:
            if not isinstance(part, dict):
                continue
            inline = part.get("inlineData") or part.get("inline_data")
            if not isinstance(inline, dict):
                continue
            data = inline.get("data")
            mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            if isinstance(data, str) and data:
                try:
                    return base64.b64decode(data), str(mime_type)
                except (binascii.Error, ValueError):
                    continue
    return None


def _extract_text(response_json: dict[str, Any]) -> Optional[str]:
    texts: list[str] = []
    for cand in response_json.get("candidates") or []:
        content = cand.get("content") if isinstance(cand, dict) else None
        for part in (content or {}).get("parts") or []:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                texts.append(part["text"])
    return "\n".join(texts) if texts else None


def summarize_response(response_json: Any) -> str:
    """Compact description of a response without image payloads, for logs and failure messages."""
    if not isinstance(response_json, dict):
        return f"type={type(response_json).__name__}"
    candidates = response_json.get("candidates") or []
    candidate_count = len(candidates) if isinstance(candidates, list) else 0

    finish_reasons: list[str] = []
    part_kinds: list[str] = []
    if isinstance(candidates, list):
        for cand in candidates[:3]:
            if not isinstance(cand, dict):
                continue
            finish = cand.get("finishReason") or cand.get("finish_reason")
            if isinstance(finish, str):
                finish_reasons.append(finish)
            content = cand.get("content") if isinstance(cand.get("content"), dict) else None
            parts = content.get("parts") if isinstance(content, dict) else None
            if isinstance(parts, list):
                for part in parts[:6]:
                    if not isinstance(part, dict):
                        continue
                    if "inlineData" in part or "inline_data" in part:
                        part_kinds.append("inlineData")
                    elif "text" in part:
                        part_kinds.append("text")
                    else:
                        part_kinds.append(",".join(sorted(part.keys()))[:60])

    bits = [
        f"candidateCount={candidate_count}",
        f"finishReasons={finish_reasons[:3]}",
        f"partKinds={part_kinds[:12]}",
    ]
    prompt_feedback = response_json.get("promptFeedback") or response_json.get("prompt_feedback")
    if isinstance(prompt_feedback, dict):
        block_reason = prompt_feedback.get("blockReason") or prompt_feedback.get("block_reason")
        if isinstance(block_reason, str) and block_reason.strip():
            bits.append(f"blockReason={block_reason.strip()}")
    return " ".join(bits)


class GeminiImageClient:
    """
    Image-in/image-out calls against the Gemini ``generateContent`` endpoint.

    Exactly one POST per ``invoke``; retries and fallbacks belong to the caller.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        model: str,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout_seconds: float = 90.0,
    ) -> None:
        self.client = client
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def build_payload(
        self,
        primary: ImageInput,
        prompt: str,
        *,
        reference: Optional[ImageInput] = None,
        wants: ResponseWants = ResponseWants(),
        temperature: Optional[float] = None,
    ) -> dict[str, Any]:
        parts: list[dict[str, Any]] = []
        if reference is not None:
            parts.append(reference.as_part())
            parts.append({"text": STYLE_REFERENCE_CAPTION})
        parts.append(primary.as_part())
        parts.append({"text": prompt})
        generation_config: dict[str, Any] = {"responseModalities": wants.modalities()}
        if temperature is not None:
            generation_config["temperature"] = temperature
        return {"contents": [{"role": "user", "parts": parts}], "generationConfig": generation_config}

    async def invoke(
        self,
        primary: ImageInput,
        prompt: str,
        *,
        api_key: Optional[str],
        reference: Optional[ImageInput] = None,
        wants: ResponseWants = ResponseWants(),
        temperature: Optional[float] = None,
    ) -> GeneratedImage | GenerationFailure:
        if not api_key:
            return GenerationFailure(
                reason=FailureReason.NOT_CONFIGURED,
                message="Generative model API key is not configured",
                model=self.model,
                retryable=False,
            )
        payload = self.build_payload(primary, prompt, reference=reference, wants=wants, temperature=temperature)
        url = f"{self.base_url}/models/{self.model}:generateContent"
        try:
            resp = await asyncio.wait_for(
                self.client.post(
                    url,
                    headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
                    json=payload,
                    timeout=self.timeout_seconds,
                ),
                timeout=self.timeout_seconds,
            )
            resp.raise_for_status()
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning("gemini.timeout", extra={"model": self.model, "timeoutSeconds": self.timeout_seconds})
            return GenerationFailure(
                reason=FailureReason.TIMEOUT,
                message=f"Generative call exceeded {self.timeout_seconds:g}s",
                model=self.model,
            )
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            body = exc.response.text[:500]
            logger.warning("gemini.http_error", extra={"model": self.model, "status": status_code, "body": body})
            return GenerationFailure(
                reason=FailureReason.HTTP_ERROR,
                message=f"Gemini image request failed (status={status_code}): {body}",
                model=self.model,
                retryable=status_code == 429 or status_code >= 500,
                status_code=status_code,
            )
        except httpx.HTTPError as exc:
            logger.warning("gemini.network_error", extra={"model": self.model, "error": str(exc)})
            return GenerationFailure(
                reason=FailureReason.NETWORK_ERROR,
                message=f"Gemini image request failed: {exc}",
                model=self.model,
            )

        try:
            data = resp.json()
        except ValueError:
            return GenerationFailure(
                reason=FailureReason.NO_IMAGE_RETURNED,
                message="Gemini response was not valid JSON",
                model=self.model,
            )
        extracted = _extract_first_inline_image(data) if isinstance(data, dict) else None
        if extracted is None:
            summary = summarize_response(data)
            logger.info("gemini.no_image_returned", extra={"model": self.model, "summary": summary})
            return GenerationFailure(
                reason=FailureReason.NO_IMAGE_RETURNED,
                message=f"Gemini image model '{self.model}' response did not include inline image data. {summary}",
                model=self.model,
                details={"summary": summary},
            )
        image_bytes, mime_type = extracted
        try:
            image = await asyncio.to_thread(decode_image, image_bytes)
        except ImageDecodeError as exc:
            return GenerationFailure(
                reason=FailureReason.UNDECODABLE_IMAGE,
                message=str(exc),
                model=self.model,
            )
        return GeneratedImage(
            image=image,
            data=image_bytes,
            mime_type=mime_type,
            model=self.model,
            text=_extract_text(data) if wants.text else None,
        )
