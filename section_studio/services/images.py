from __future__ import annotations

import asyncio
import base64
import binascii
import io
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

# Modes the resize and compositing code can work with directly.
_WORKING_MODES = {"RGB", "RGBA"}


class ImageFetchError(RuntimeError):
    pass


class ImageDecodeError(RuntimeError):
    pass


@dataclass(frozen=True)
class FetchedImage:
    data: bytes
    mime_type: str
    image: Image.Image

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height


def inspect_image_bytes(image_bytes: bytes) -> tuple[int, int, str]:
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
            fmt = img.format
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise ImageDecodeError("Unable to read image data.") from exc
    if not fmt:
        raise ImageDecodeError("Unable to determine image format.")
    return width, height, fmt


def decode_image(image_bytes: bytes) -> Image.Image:
    """Decode bytes into a fully loaded RGB or RGBA image."""
    if not image_bytes:
        raise ImageDecodeError("Image data is empty.")
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise ImageDecodeError(f"Unable to decode image: {exc}") from exc
    return to_working_mode(img)


def to_working_mode(img: Image.Image) -> Image.Image:
    if img.mode in _WORKING_MODES:
        return img
    if img.mode in ("P", "LA", "PA") or "transparency" in img.info:
        return img.convert("RGBA")
    return img.convert("RGB")


def encode_png(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG", optimize=False)
    return buf.getvalue()


def mime_type_for_format(fmt: Optional[str]) -> str:
    fmt_lower = (fmt or "").lower()
    if fmt_lower in ("jpeg", "jpg"):
        return "image/jpeg"
    if fmt_lower == "webp":
        return "image/webp"
    if fmt_lower == "gif":
        return "image/gif"
    return "image/png"


def _decode_data_uri(uri: str) -> tuple[bytes, str]:
    header, _, payload = uri.partition(",")
    if not payload or ";base64" not in header:
        raise ImageFetchError("Only base64 data URIs are supported.")
    mime_type = header[len("data:"):].split(";")[0] or "image/png"
    try:
        return base64.b64decode(payload, validate=True), mime_type
    except (binascii.Error, ValueError) as exc:
        raise ImageFetchError("Malformed base64 data URI.") from exc


class ImageFetcher:
    """Downloads section images over HTTP(S) or unpacks base64 data URIs."""

    def __init__(self, client: httpx.AsyncClient, *, timeout_seconds: float = 30.0, max_bytes: int = 40 * 1024 * 1024):
        self.client = client
        self.timeout_seconds = timeout_seconds
        self.max_bytes = max_bytes

    async def fetch_bytes(self, uri: str) -> tuple[bytes, str]:
        if not uri:
            raise ImageFetchError("Image URI is empty.")
        if uri.startswith("data:"):
            data, mime_type = _decode_data_uri(uri)
        else:
            try:
                resp = await self.client.get(uri, timeout=self.timeout_seconds, follow_redirects=True)
                resp.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise ImageFetchError(
                    f"Image download failed (status={exc.response.status_code}): {uri}"
                ) from exc
            except httpx.HTTPError as exc:
                raise ImageFetchError(f"Image download failed: {exc}") from exc
            data = resp.content
            mime_type = (resp.headers.get("content-type") or "").split(";")[0].strip()
        if not data:
            raise ImageFetchError(f"Image download returned no data: {uri[:120]}")
        if len(data) > self.max_bytes:
            raise ImageFetchError(f"Image exceeds {self.max_bytes} bytes: {uri[:120]}")
        return data, mime_type

    async def fetch(self, uri: str) -> FetchedImage:
        data, mime_type = await self.fetch_bytes(uri)
        image = await asyncio.to_thread(decode_image, data)
        if not mime_type.startswith("image/"):
            _, _, fmt = inspect_image_bytes(data)
            mime_type = mime_type_for_format(fmt)
        return FetchedImage(data=data, mime_type=mime_type, image=image)

    async def fetch_optional(self, uri: Optional[str], *, role: str) -> Optional[FetchedImage]:
        """Fetch context imagery; failures are logged and yield None."""
        if not uri:
            return None
        try:
            return await self.fetch(uri)
        except (ImageFetchError, ImageDecodeError) as exc:
            logger.warning("images.context_fetch_failed", extra={"role": role, "error": str(exc)})
            return None
