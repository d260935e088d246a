from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from PIL import Image

from section_studio.config import Settings
from section_studio.db.enums import ImageSourceKindEnum, RegenerationModeEnum
from section_studio.schemas.regeneration import RegenerationRequest
from section_studio.services import compositor
from section_studio.services.gemini_images import GeminiImageClient, ImageInput
from section_studio.services.images import FetchedImage, ImageFetcher, encode_png
from section_studio.services.orchestrator import (
    AlternateUpscaleAttempt,
    Attempt,
    DeterministicAttempt,
    GenerativeAttempt,
    ItemPlan,
)
from section_studio.services.prompts import PromptContext, ReferenceKind, build_prompt, generation_temperature
from section_studio.services.replicate_upscaler import ReplicateUpscaler
from section_studio.services.resize import ensure_min_size, resize

logger = logging.getLogger(__name__)


@dataclass
class ItemContext:
    """Per-item inputs resolved from the database before any pixels are fetched."""

    section_id: UUID
    source_uri: str
    index: int
    count: int
    request: RegenerationRequest
    above_uri: Optional[str] = None
    below_uri: Optional[str] = None
    has_previous: bool = False
    has_next: bool = False
    stored_offsets: tuple[int, int] = (0, 0)
    reference: Optional[ImageInput] = None
    reference_kind: Optional[ReferenceKind] = None


class ModePolicyBase:
    mode: RegenerationModeEnum

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def source_kind(self, via_fallback: bool) -> ImageSourceKindEnum:
        return ImageSourceKindEnum(f"{self.mode.value}_fallback" if via_fallback else self.mode.value)

    def _plan(
        self,
        ctx: ItemContext,
        source: FetchedImage,
        model_input: Image.Image,
        *,
        expansion: Optional[compositor.ExpansionMeta] = None,
        enhance_only: bool = False,
        output_size: Optional[tuple[int, int]] = None,
    ) -> ItemPlan:
        prompt_ctx = PromptContext(
            mode=self.mode,
            source_size=source.image.size,
            output_size=output_size or model_input.size,
            item_index=ctx.index,
            item_count=ctx.count,
            has_previous=ctx.has_previous,
            has_next=ctx.has_next,
            reference=ctx.reference_kind if ctx.reference is not None else None,
            style=ctx.request.styleParams,
            expansion=expansion,
            restore=ctx.request.restore,
            enhance_only=enhance_only,
        )
        return ItemPlan(
            source=source,
            model_input=model_input,
            model_input_bytes=encode_png(model_input),
            canvas_size=model_input.size,
            prompt=build_prompt(prompt_ctx),
            temperature=generation_temperature(prompt_ctx),
            expansion=expansion,
            reference=ctx.reference,
            enhance_only=enhance_only,
        )

    async def prepare(self, ctx: ItemContext, fetcher: ImageFetcher) -> ItemPlan:
        raise NotImplementedError

    def finalize(self, plan: ItemPlan, generated: Image.Image) -> tuple[Image.Image, bool]:
        raise NotImplementedError

    def fallback(self, plan: ItemPlan) -> Image.Image:
        raise NotImplementedError

    def attempts(
        self,
        gemini: GeminiImageClient,
        *,
        api_key: Optional[str],
        upscaler: Optional[ReplicateUpscaler] = None,
    ) -> list[Attempt]:
        return [GenerativeAttempt(gemini, api_key=api_key), DeterministicAttempt(self)]


class UpscalePolicy(ModePolicyBase):
    mode = RegenerationModeEnum.upscale

    def target_width(self, request: RegenerationRequest) -> int:
        width = request.resolution or self.settings.UPSCALE_TARGET_WIDTH
        return min(width, self.settings.MAX_TARGET_WIDTH)

    async def prepare(self, ctx: ItemContext, fetcher: ImageFetcher) -> ItemPlan:
        source = await fetcher.fetch(ctx.source_uri)
        width, height = source.image.size
        target_w = self.target_width(ctx.request)
        if width >= target_w:
            return await asyncio.to_thread(self._plan, ctx, source, source.image, enhance_only=True)
        target = (target_w, round(height * target_w / width))
        # The model sees a Lanczos baseline already at the target size.
        baseline = await asyncio.to_thread(resize, source.image, *target)
        return await asyncio.to_thread(self._plan, ctx, source, baseline)

    def finalize(self, plan: ItemPlan, generated: Image.Image) -> tuple[Image.Image, bool]:
        return ensure_min_size(generated, *plan.canvas_size)

    def fallback(self, plan: ItemPlan) -> Image.Image:
        if plan.enhance_only:
            return plan.source.image.copy()
        return resize(plan.source.image, *plan.canvas_size, sharpen=True)

    def attempts(self, gemini, *, api_key, upscaler=None) -> list[Attempt]:
        chain: list[Attempt] = [GenerativeAttempt(gemini, api_key=api_key)]
        if upscaler is not None:
            chain.append(AlternateUpscaleAttempt(upscaler))
        chain.append(DeterministicAttempt(self))
        return chain


class _CanvasPolicy(ModePolicyBase):
    """Shared finalize/fallback for modes that may fold neighbour context into the canvas."""

    async def _expand_with_neighbors(
        self, ctx: ItemContext, fetcher: ImageFetcher, source: FetchedImage, offsets: Optional[tuple[int, int]]
    ) -> tuple[Image.Image, compositor.ExpansionMeta]:
        above = await fetcher.fetch_optional(ctx.above_uri, role="top_neighbor")
        below = await fetcher.fetch_optional(ctx.below_uri, role="bottom_neighbor")
        max_px = self.settings.BOUNDARY_CONTEXT_MAX_PX
        if offsets is None or offsets == (0, 0):
            top = compositor.default_context_height(above.height, max_px) if above else 0
            bottom = compositor.default_context_height(below.height, max_px) if below else 0
        else:
            top, bottom = offsets
        return await asyncio.to_thread(
            compositor.expand,
            source.image,
            above.image if above else None,
            below.image if below else None,
            top_offset=top,
            bottom_offset=bottom,
        )

    def finalize(self, plan: ItemPlan, generated: Image.Image) -> tuple[Image.Image, bool]:
        image, resized = ensure_min_size(generated, *plan.canvas_size)
        if plan.expansion is not None:
            image = compositor.crop(image, plan.expansion)
        return image, resized

    def fallback(self, plan: ItemPlan) -> Image.Image:
        return plan.source.image.copy()


class RestylePolicy(_CanvasPolicy):
    mode = RegenerationModeEnum.restyle

    async def prepare(self, ctx: ItemContext, fetcher: ImageFetcher) -> ItemPlan:
        source = await fetcher.fetch(ctx.source_uri)
        style = ctx.request.styleParams
        if style is not None and style.useBoundaryContext:
            canvas, meta = await self._expand_with_neighbors(ctx, fetcher, source, ctx.stored_offsets)
            return await asyncio.to_thread(self._plan, ctx, source, canvas, expansion=meta)
        return await asyncio.to_thread(self._plan, ctx, source, source.image)


class BoundaryRepairPolicy(_CanvasPolicy):
    mode = RegenerationModeEnum.boundary_repair

    async def prepare(self, ctx: ItemContext, fetcher: ImageFetcher) -> ItemPlan:
        source = await fetcher.fetch(ctx.source_uri)
        requested = ctx.request.boundaryOffsets
        offsets = (requested.top, requested.bottom) if requested is not None else ctx.stored_offsets
        canvas, meta = await self._expand_with_neighbors(ctx, fetcher, source, offsets)
        if meta.is_identity:
            logger.info("policies.boundary_without_context", extra={"sectionId": str(ctx.section_id)})
        return await asyncio.to_thread(self._plan, ctx, source, canvas, expansion=meta)


class RestorePolicy(ModePolicyBase):
    mode = RegenerationModeEnum.restore

    def extension(self, request: RegenerationRequest) -> tuple[int, int]:
        if request.restore is None:
            return 0, 0
        top, bottom = request.restore.extension()
        cap = self.settings.RESTORE_MAX_EXTENSION_PX
        return min(top, cap), min(bottom, cap)

    async def prepare(self, ctx: ItemContext, fetcher: ImageFetcher) -> ItemPlan:
        source = await fetcher.fetch(ctx.source_uri)
        top, bottom = self.extension(ctx.request)
        canvas, meta = await asyncio.to_thread(compositor.extend_canvas, source.image, top, bottom)
        return await asyncio.to_thread(self._plan, ctx, source, canvas, expansion=meta)

    def finalize(self, plan: ItemPlan, generated: Image.Image) -> tuple[Image.Image, bool]:
        resized = generated.size != plan.canvas_size
        return compositor.paste_original(generated, plan.source.image, plan.expansion), resized

    def fallback(self, plan: ItemPlan) -> Image.Image:
        meta = plan.expansion
        return compositor.extend_edges(plan.source.image, meta.top_offset, meta.bottom_offset)


_POLICIES: dict[RegenerationModeEnum, type[ModePolicyBase]] = {
    RegenerationModeEnum.upscale: UpscalePolicy,
    RegenerationModeEnum.restyle: RestylePolicy,
    RegenerationModeEnum.boundary_repair: BoundaryRepairPolicy,
    RegenerationModeEnum.restore: RestorePolicy,
}


def policy_for(mode: RegenerationModeEnum, settings: Settings) -> ModePolicyBase:
    return _POLICIES[mode](settings)
