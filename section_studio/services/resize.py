from __future__ import annotations

from PIL import Image, ImageFilter

from section_studio.services.images import to_working_mode

# Light sharpening applied after enlargement.
UNSHARP_RADIUS = 1.0
UNSHARP_PERCENT = 60
UNSHARP_THRESHOLD = 2


def resize(img: Image.Image, width: int, height: int, *, sharpen: bool = False) -> Image.Image:
    """
    Deterministic Lanczos resample to exactly ``width`` x ``height``.

    This is the last-resort path of every pipeline, so it accepts any decoded
    image and never raises for one.
    """
    width = max(1, int(width))
    height = max(1, int(height))
    src = to_working_mode(img)
    if src.size == (width, height):
        out = src.copy()
    else:
        out = src.resize((width, height), Image.Resampling.LANCZOS)
    if sharpen:
        out = out.filter(
            ImageFilter.UnsharpMask(radius=UNSHARP_RADIUS, percent=UNSHARP_PERCENT, threshold=UNSHARP_THRESHOLD)
        )
    return out


def ensure_min_size(img: Image.Image, width: int, height: int) -> tuple[Image.Image, bool]:
    """Resize ``img`` up to the target when it is smaller on either axis; return (image, resized)."""
    if img.width >= width and img.height >= height:
        return img, False
    return resize(img, width, height, sharpen=True), True
