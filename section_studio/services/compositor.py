from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from PIL import Image

from section_studio.services.images import to_working_mode
from section_studio.services.resize import resize

logger = logging.getLogger(__name__)

# Relative difference between horizontal and vertical scale tolerated before we warn.
ASPECT_DRIFT_TOLERANCE = 0.02
CONTEXT_HEIGHT_RATIO = 0.15


@dataclass(frozen=True)
class ExpansionMeta:
    """Geometry of an expanded canvas, enough to map a generated image back onto the target."""

    top_offset: int
    bottom_offset: int
    target_width: int
    target_height: int

    @property
    def expanded_width(self) -> int:
        return self.target_width

    @property
    def expanded_height(self) -> int:
        return self.top_offset + self.target_height + self.bottom_offset

    @property
    def is_identity(self) -> bool:
        return self.top_offset == 0 and self.bottom_offset == 0

    def as_dict(self) -> dict:
        return {
            "topOffset": self.top_offset,
            "bottomOffset": self.bottom_offset,
            "targetWidth": self.target_width,
            "targetHeight": self.target_height,
            "expandedHeight": self.expanded_height,
        }


def default_context_height(neighbor_height: int, max_px: int = 100) -> int:
    return max(0, min(max_px, int(neighbor_height * CONTEXT_HEIGHT_RATIO)))


def _clamp_offset(offset: int, neighbor: Optional[Image.Image]) -> int:
    if neighbor is None or offset <= 0:
        return 0
    return min(int(offset), neighbor.height)


def _blank_like(img: Image.Image, size: tuple[int, int]) -> Image.Image:
    if img.mode == "RGBA":
        return Image.new("RGBA", size, (255, 255, 255, 255))
    return Image.new("RGB", size, (255, 255, 255))


def _match_mode(img: Image.Image, mode: str) -> Image.Image:
    return img if img.mode == mode else img.convert(mode)


def expand(
    target: Image.Image,
    top_neighbor: Optional[Image.Image] = None,
    bottom_neighbor: Optional[Image.Image] = None,
    top_offset: int = 0,
    bottom_offset: int = 0,
) -> tuple[Image.Image, ExpansionMeta]:
    """
    Stack edge strips of the neighbours around ``target``.

    The bottom ``top_offset`` rows of the top neighbour and the top
    ``bottom_offset`` rows of the bottom neighbour are resized to the target
    width (height preserved) and stacked as [top strip, target, bottom strip].
    """
    target = to_working_mode(target)
    width, height = target.size
    top = _clamp_offset(top_offset, top_neighbor)
    bottom = _clamp_offset(bottom_offset, bottom_neighbor)
    meta = ExpansionMeta(top_offset=top, bottom_offset=bottom, target_width=width, target_height=height)
    if meta.is_identity:
        return target.copy(), meta

    canvas = _blank_like(target, (width, meta.expanded_height))
    if top and top_neighbor is not None:
        strip = top_neighbor.crop((0, top_neighbor.height - top, top_neighbor.width, top_neighbor.height))
        canvas.paste(_match_mode(resize(strip, width, top), canvas.mode), (0, 0))
    canvas.paste(_match_mode(target, canvas.mode), (0, top))
    if bottom and bottom_neighbor is not None:
        strip = bottom_neighbor.crop((0, 0, bottom_neighbor.width, bottom))
        canvas.paste(_match_mode(resize(strip, width, bottom), canvas.mode), (0, top + height))
    return canvas, meta


def crop(generated: Image.Image, meta: ExpansionMeta) -> Image.Image:
    """
    Cut the target region back out of a generated expanded canvas.

    The model may answer at a different absolute resolution; coordinates are
    scaled by ``generated_height / expanded_height`` and the box is kept
    inside the generated image. The full width is retained.
    """
    gen_w, gen_h = generated.size
    if meta.is_identity:
        return generated.copy()

    scale = gen_h / meta.expanded_height
    scale_x = gen_w / meta.expanded_width
    if scale > 0 and abs(scale_x - scale) / scale > ASPECT_DRIFT_TOLERANCE:
        logger.warning(
            "compositor.aspect_drift",
            extra={"scaleX": round(scale_x, 4), "scaleY": round(scale, 4), "generated": [gen_w, gen_h], **meta.as_dict()},
        )

    crop_height = max(1, min(round(meta.target_height * scale), gen_h))
    crop_top = max(0, min(round(meta.top_offset * scale), gen_h - crop_height))
    return generated.crop((0, crop_top, gen_w, crop_top + crop_height))


def extend_canvas(img: Image.Image, top: int, bottom: int) -> tuple[Image.Image, ExpansionMeta]:
    """Place ``img`` on a white canvas with ``top``/``bottom`` empty rows for outpainting."""
    img = to_working_mode(img)
    top = max(0, int(top))
    bottom = max(0, int(bottom))
    meta = ExpansionMeta(top_offset=top, bottom_offset=bottom, target_width=img.width, target_height=img.height)
    canvas = _blank_like(img, (img.width, meta.expanded_height))
    canvas.paste(img, (0, top))
    return canvas, meta


def extend_edges(img: Image.Image, top: int, bottom: int) -> Image.Image:
    """Deterministic extension: stretch the first and last pixel rows into the new rows."""
    img = to_working_mode(img)
    canvas, meta = extend_canvas(img, top, bottom)
    if meta.top_offset:
        edge = img.crop((0, 0, img.width, 1))
        canvas.paste(edge.resize((img.width, meta.top_offset), Image.Resampling.NEAREST), (0, 0))
    if meta.bottom_offset:
        edge = img.crop((0, img.height - 1, img.width, img.height))
        canvas.paste(
            edge.resize((img.width, meta.bottom_offset), Image.Resampling.NEAREST),
            (0, meta.top_offset + img.height),
        )
    return canvas


def paste_original(generated: Image.Image, original: Image.Image, meta: ExpansionMeta) -> Image.Image:
    """Resize ``generated`` to the extended canvas and force the original pixels back into place."""
    out = resize(generated, meta.expanded_width, meta.expanded_height)
    out.paste(_match_mode(to_working_mode(original), out.mode), (0, meta.top_offset))
    return out
