from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Protocol

from PIL import Image

from section_studio.services.gemini_images import (
    GeminiImageClient,
    GeneratedImage,
    GenerationFailure,
    ImageInput,
    ResponseWants,
)
from section_studio.services.images import FetchedImage
from section_studio.services.compositor import ExpansionMeta
from section_studio.services.replicate_upscaler import ReplicateUpscaler, choose_scale

logger = logging.getLogger(__name__)

FALLBACK_MODEL = "lanczos"


class AttemptStatus(str, enum.Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


class ItemOutcomeKind(str, enum.Enum):
    succeeded = "succeeded"
    succeeded_via_fallback = "succeeded_via_fallback"
    failed = "failed"


@dataclass
class AttemptResult:
    status: AttemptStatus
    model: str
    image: Optional[Image.Image] = None
    message: Optional[str] = None
    billable: bool = False

    @classmethod
    def from_generation(cls, result: GeneratedImage | GenerationFailure) -> "AttemptResult":
        if isinstance(result, GeneratedImage):
            return cls(status=AttemptStatus.SUCCESS, model=result.model, image=result.image, billable=True)
        # Any model failure moves on to the next attempt; the deterministic path is always left.
        return cls(status=AttemptStatus.RETRYABLE, model=result.model, message=result.message)


@dataclass
class AttemptRecord:
    name: str
    model: str
    status: AttemptStatus
    duration_ms: int
    billable: bool = False
    message: Optional[str] = None


@dataclass
class ItemPlan:
    """Everything one work item needs once its pixels are fetched and its canvas is built."""

    source: FetchedImage
    model_input: Image.Image
    model_input_bytes: bytes
    canvas_size: tuple[int, int]
    prompt: str
    temperature: float
    expansion: Optional[ExpansionMeta] = None
    reference: Optional[ImageInput] = None
    enhance_only: bool = False

    @property
    def source_size(self) -> tuple[int, int]:
        return self.source.image.size


class ModePolicy(Protocol):
    def finalize(self, plan: ItemPlan, generated: Image.Image) -> tuple[Image.Image, bool]:
        """Map a model output to the final image; also report whether it had to be resized up."""

    def fallback(self, plan: ItemPlan) -> Image.Image:
        ...


class Attempt(Protocol):
    name: str
    is_fallback: bool

    async def run(self, plan: ItemPlan) -> AttemptResult:
        ...


class GenerativeAttempt:
    name = "generative"
    is_fallback = False

    def __init__(self, client: GeminiImageClient, *, api_key: Optional[str]) -> None:
        self.client = client
        self.api_key = api_key

    async def run(self, plan: ItemPlan) -> AttemptResult:
        result = await self.client.invoke(
            ImageInput(data=plan.model_input_bytes, mime_type="image/png"),
            plan.prompt,
            api_key=self.api_key,
            reference=plan.reference,
            wants=ResponseWants(image=True, text=False),
            temperature=plan.temperature,
        )
        return AttemptResult.from_generation(result)


class AlternateUpscaleAttempt:
    name = "alternate_upscale"
    is_fallback = False

    def __init__(self, upscaler: ReplicateUpscaler) -> None:
        self.upscaler = upscaler

    async def run(self, plan: ItemPlan) -> AttemptResult:
        if plan.enhance_only:
            return AttemptResult(
                status=AttemptStatus.RETRYABLE,
                model=self.upscaler.model,
                message="Source already meets the target width",
            )
        scale = choose_scale(plan.source.width, plan.canvas_size[0])
        result = await self.upscaler.upscale(
            ImageInput(data=plan.source.data, mime_type=plan.source.mime_type), scale=scale
        )
        return AttemptResult.from_generation(result)


class DeterministicAttempt:
    name = "deterministic"
    is_fallback = True

    def __init__(self, policy: ModePolicy) -> None:
        self.policy = policy

    async def run(self, plan: ItemPlan) -> AttemptResult:
        try:
            image = await asyncio.to_thread(self.policy.fallback, plan)
        except (OSError, ValueError) as exc:
            return AttemptResult(status=AttemptStatus.FATAL, model=FALLBACK_MODEL, message=str(exc))
        return AttemptResult(status=AttemptStatus.SUCCESS, model=FALLBACK_MODEL, image=image)


@dataclass
class ItemOutcome:
    kind: ItemOutcomeKind
    image: Optional[Image.Image] = None
    model: Optional[str] = None
    resized_up: bool = False
    message: Optional[str] = None
    attempts: list[AttemptRecord] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.kind != ItemOutcomeKind.failed

    @property
    def via_fallback(self) -> bool:
        return self.kind == ItemOutcomeKind.succeeded_via_fallback

    def billable_models(self) -> list[str]:
        return [record.model for record in self.attempts if record.billable]


async def _run_attempt(attempt: Attempt, plan: ItemPlan) -> AttemptResult:
    if attempt.is_fallback:
        return await attempt.run(plan)
    try:
        return await attempt.run(plan)
    except Exception as exc:  # noqa: BLE001
        logger.exception("orchestrator.attempt_crashed", extra={"attempt": attempt.name})
        return AttemptResult(
            status=AttemptStatus.RETRYABLE,
            model=attempt.name,
            message=f"{attempt.name} attempt crashed: {exc}",
        )


async def resolve_item(plan: ItemPlan, policy: ModePolicy, attempts: list[Attempt]) -> ItemOutcome:
    """Walk the attempt chain until one succeeds or a fatal result ends the item."""
    records: list[AttemptRecord] = []
    last_message: Optional[str] = None
    for attempt in attempts:
        started = time.monotonic()
        result = await _run_attempt(attempt, plan)
        records.append(
            AttemptRecord(
                name=attempt.name,
                model=result.model,
                status=result.status,
                duration_ms=int((time.monotonic() - started) * 1000),
                billable=result.billable,
                message=result.message,
            )
        )
        if result.status == AttemptStatus.SUCCESS and result.image is not None:
            if attempt.is_fallback:
                return ItemOutcome(
                    kind=ItemOutcomeKind.succeeded_via_fallback,
                    image=result.image,
                    model=result.model,
                    attempts=records,
                )
            image, resized = await asyncio.to_thread(policy.finalize, plan, result.image)
            if resized:
                logger.info(
                    "orchestrator.output_resized_up",
                    extra={"attempt": attempt.name, "generated": list(result.image.size), "canvas": list(plan.canvas_size)},
                )
            return ItemOutcome(
                kind=ItemOutcomeKind.succeeded,
                image=image,
                model=result.model,
                resized_up=resized,
                attempts=records,
            )
        last_message = result.message
        if result.status == AttemptStatus.FATAL:
            break
        logger.info("orchestrator.attempt_failed", extra={"attempt": attempt.name, "error": result.message})
    return ItemOutcome(
        kind=ItemOutcomeKind.failed,
        message=last_message or "All attempts failed",
        attempts=records,
    )
