from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol
from uuid import UUID

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from section_studio.config import Settings
from section_studio.db.enums import GenerationRunStatusEnum, HistoryActionEnum, RegenerationModeEnum
from section_studio.db.models import RegenerationHistoryEntry, Section
from section_studio.db.repositories import SectionsRepository
from section_studio.schemas.regeneration import RegenerationRequest
from section_studio.services.gemini_images import GeminiImageClient, ImageInput
from section_studio.services.history import HistoryTracker, NewImage, SectionNotFoundError, VersionCommitError
from section_studio.services.images import ImageDecodeError, ImageFetcher, ImageFetchError, encode_png
from section_studio.services.media_storage import MediaStorageError, StoredObject
from section_studio.services.orchestrator import ItemOutcome, ItemOutcomeKind, resolve_item
from section_studio.services.policies import ItemContext, ModePolicyBase, policy_for
from section_studio.services.progress import EventSink, ProgressReporter, QueueEventSink, encode_sse
from section_studio.services.prompts import ReferenceKind
from section_studio.services.replicate_upscaler import ReplicateUpscaler
from section_studio.services.usage import CredentialResolver, QuotaChecker, UsageRecorder

logger = logging.getLogger(__name__)

# Keeps abandoned jobs referenced until their in-flight item finishes.
_background_jobs: set[asyncio.Task] = set()


class ImageStore(Protocol):
    def put_image(self, data: bytes, *, content_type: str = "image/png", ext: str = "png") -> StoredObject:
        ...


@dataclass
class PipelineDeps:
    """Collaborators for one job, handed in explicitly so tests can swap any of them."""

    settings: Settings
    session_factory: Callable[[], Session]
    storage: ImageStore
    quota: QuotaChecker
    credentials: CredentialResolver
    usage: UsageRecorder
    transport: Optional[httpx.AsyncBaseTransport] = None

    def open_http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, timeout=self.settings.IMAGE_FETCH_TIMEOUT_SECONDS)

    def fetcher(self, client: httpx.AsyncClient) -> ImageFetcher:
        return ImageFetcher(
            client,
            timeout_seconds=self.settings.IMAGE_FETCH_TIMEOUT_SECONDS,
            max_bytes=self.settings.IMAGE_FETCH_MAX_BYTES,
        )

    def gemini(self, client: httpx.AsyncClient) -> GeminiImageClient:
        return GeminiImageClient(
            client,
            model=self.settings.GENERATIVE_IMAGE_MODEL,
            base_url=self.settings.GEMINI_API_BASE_URL,
            timeout_seconds=self.settings.GENERATIVE_TIMEOUT_SECONDS,
        )

    def upscaler(self, client: httpx.AsyncClient) -> Optional[ReplicateUpscaler]:
        if not self.settings.REPLICATE_API_TOKEN:
            return None
        return ReplicateUpscaler(
            client,
            api_token=self.settings.REPLICATE_API_TOKEN,
            model=self.settings.REPLICATE_UPSCALE_MODEL,
            model_version=self.settings.REPLICATE_UPSCALE_MODEL_VERSION,
            base_url=self.settings.REPLICATE_API_BASE_URL,
            timeout_seconds=self.settings.REPLICATE_TIMEOUT_SECONDS,
            poll_interval_seconds=self.settings.REPLICATE_POLL_INTERVAL_SECONDS,
        )


@dataclass
class RegenerationJob:
    user_id: str
    page_id: UUID
    request: RegenerationRequest
    section_ids: list[UUID]
    api_key: Optional[str]
    abandoned: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def mode(self) -> RegenerationModeEnum:
        return self.request.mode


@dataclass
class _ReferenceState:
    image: Optional[ImageInput] = None
    kind: Optional[ReferenceKind] = None


def _size(image) -> tuple[int, int]:
    return image.width, image.height


def _result(item_id: str, status: str, **fields: Any) -> dict[str, Any]:
    return {"itemId": item_id, "status": status, **fields}


class JobRunner:
    """Processes the sections of one job strictly in order and reports through a ProgressReporter."""

    def __init__(self, job: RegenerationJob, deps: PipelineDeps, sink: EventSink) -> None:
        self.job = job
        self.deps = deps
        self.reporter = ProgressReporter(sink)
        self.policy: ModePolicyBase = policy_for(job.mode, deps.settings)
        self.reference = _ReferenceState()
        self.results: list[dict[str, Any]] = []

    async def run(self) -> None:
        session = self.deps.session_factory()
        log_extra = {"pageId": str(self.job.page_id), "mode": self.job.mode.value, "userId": self.job.user_id}
        logger.info("regenerate.job_started", extra={**log_extra, "items": len(self.job.section_ids)})
        try:
            self.reporter.start(len(self.job.section_ids))
            async with self.deps.open_http_client() as client:
                fetcher = self.deps.fetcher(client)
                gemini = self.deps.gemini(client)
                upscaler = self.deps.upscaler(client)
                await self._load_user_reference(fetcher)
                for section_id in self.job.section_ids:
                    if self.job.abandoned.is_set():
                        logger.info("regenerate.job_abandoned", extra={**log_extra, "processed": len(self.results)})
                        return
                    await self._process(session, section_id, fetcher, gemini, upscaler)
            succeeded = sum(1 for result in self.results if result["status"] != "failed")
            self.reporter.complete(succeeded_count=succeeded, results=self.results)
            logger.info("regenerate.job_completed", extra={**log_extra, "succeeded": succeeded})
        except (SectionNotFoundError, MediaStorageError, VersionCommitError, SQLAlchemyError) as exc:
            logger.error("regenerate.job_failed", extra={**log_extra, "error": str(exc)})
            self._fail(str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("regenerate.job_crashed", extra=log_extra)
            self._fail(f"Regeneration failed: {exc}")
        finally:
            session.close()
            self.reporter.close()

    def _fail(self, message: str) -> None:
        if not self.reporter.terminated:
            self.reporter.error(message)

    async def _load_user_reference(self, fetcher: ImageFetcher) -> None:
        style = self.job.request.styleParams
        url = style.styleReferenceUrl if style else None
        if self.job.mode == RegenerationModeEnum.restore and self.job.request.restore:
            url = self.job.request.restore.referenceImageUrl
        if not url or self.job.mode == RegenerationModeEnum.upscale:
            return
        fetched = await fetcher.fetch_optional(url, role="style_reference")
        if fetched is not None:
            self.reference = _ReferenceState(ImageInput(fetched.data, fetched.mime_type), "user")

    def _item_context(self, session: Session, section: Section, source_uri: str) -> ItemContext:
        sections = SectionsRepository(session)
        ordered = sections.list_for_page(section.page_id)
        index = next((i for i, item in enumerate(ordered) if item.id == section.id), 0)
        above, below = sections.neighbors(section)
        field_ = self.job.request.imageField
        above_image = (above.image_for(field_) or above.image) if above else None
        below_image = (below.image_for(field_) or below.image) if below else None
        return ItemContext(
            section_id=section.id,
            source_uri=source_uri,
            index=index,
            count=len(ordered),
            request=self.job.request,
            above_uri=above_image.uri if above_image else None,
            below_uri=below_image.uri if below_image else None,
            has_previous=above is not None,
            has_next=below is not None,
            stored_offsets=(section.boundary_offset_top, section.boundary_offset_bottom),
            reference=self.reference.image,
            reference_kind=self.reference.kind,
        )

    async def _process(self, session: Session, section_id: UUID, fetcher, gemini, upscaler) -> None:
        item_id = str(section_id)
        current = self.reporter.current + 1
        self.reporter.progress(f"Processing section {current}/{self.reporter.total}", item_id=item_id)

        loaded = await asyncio.to_thread(self._load_item, session, section_id)
        if loaded is None:
            self._item_failed(item_id, "Section has no image to process")
            return
        ctx, source_asset_id = loaded
        try:
            plan = await self.policy.prepare(ctx, fetcher)
        except (ImageFetchError, ImageDecodeError) as exc:
            logger.warning("regenerate.source_unavailable", extra={"sectionId": item_id, "error": str(exc)})
            self._item_failed(item_id, f"Could not load section image: {exc}")
            return

        attempts = self.policy.attempts(gemini, api_key=self.job.api_key, upscaler=upscaler)
        outcome = await resolve_item(plan, self.policy, attempts)
        await asyncio.to_thread(self._record_usage, section_id, outcome)
        if not outcome.succeeded:
            logger.warning("regenerate.item_failed", extra={"sectionId": item_id, "error": outcome.message})
            self._item_failed(item_id, outcome.message or "Regeneration failed")
            return

        data, stored, entry = await asyncio.to_thread(
            self._store_version, session, section_id, source_asset_id, outcome, plan.prompt
        )
        before, after = plan.source_size, _size(outcome.image)
        self.reporter.item_complete(
            item_id=item_id,
            before_size=before,
            after_size=after,
            new_image_uri=stored.uri,
            new_image_id=str(entry.new_image_id),
            outcome=outcome.kind.value,
            model=outcome.model,
        )
        self.results.append(
            _result(
                item_id,
                outcome.kind.value,
                newImageId=str(entry.new_image_id),
                newImageUri=stored.uri,
                beforeSize={"width": before[0], "height": before[1]},
                afterSize={"width": after[0], "height": after[1]},
                model=outcome.model,
            )
        )
        self._remember_style_reference(data)

    def _load_item(self, session: Session, section_id: UUID) -> Optional[tuple[ItemContext, UUID]]:
        section = SectionsRepository(session).get(section_id)
        if section is None:
            raise SectionNotFoundError(f"Section {section_id} no longer exists")
        source_asset = section.image_for(self.job.request.imageField)
        if source_asset is None:
            return None
        ctx = self._item_context(session, section, source_asset.uri)
        # Ends the read transaction so the version commit takes a fresh row lock.
        session.commit()
        return ctx, source_asset.id

    def _store_version(
        self, session: Session, section_id: UUID, source_asset_id: UUID, outcome: ItemOutcome, prompt: str
    ) -> tuple[bytes, StoredObject, RegenerationHistoryEntry]:
        data = encode_png(outcome.image)
        stored = self.deps.storage.put_image(data, content_type="image/png", ext="png")
        entry = HistoryTracker(session).commit(
            section_id,
            self.job.request.imageField,
            NewImage(
                uri=stored.uri,
                storage_key=stored.key,
                mime_type="image/png",
                width=outcome.image.width,
                height=outcome.image.height,
                source_kind=self.policy.source_kind(outcome.via_fallback),
                source_asset_id=source_asset_id,
                owner_user_id=self.job.user_id,
            ),
            HistoryActionEnum(self.job.mode.value),
            prompt_text=prompt,
            user_id=self.job.user_id,
        )
        return data, stored, entry

    def _remember_style_reference(self, data: bytes) -> None:
        if self.job.mode != RegenerationModeEnum.restyle or self.reference.image is not None:
            return
        style = self.job.request.styleParams
        if style is not None and style.style == "sampling":
            return
        self.reference = _ReferenceState(ImageInput(data, "image/png"), "auto")

    def _item_failed(self, item_id: str, message: str) -> None:
        self.reporter.item_error(item_id=item_id, message=message)
        self.results.append(_result(item_id, "failed", message=message))

    def _record_usage(self, section_id: UUID, outcome: ItemOutcome) -> None:
        if not outcome.attempts:
            return
        if outcome.kind == ItemOutcomeKind.succeeded:
            status = GenerationRunStatusEnum.succeeded
        elif outcome.via_fallback:
            status = GenerationRunStatusEnum.fallback
        else:
            status = GenerationRunStatusEnum.failed
        settings = self.deps.settings
        cost = sum(settings.image_price(model) for model in outcome.billable_models())
        failures = [record.message for record in outcome.attempts if record.message]
        self.deps.usage.record_generation(
            user_id=self.job.user_id,
            kind=self.job.mode.value,
            model=outcome.attempts[0].model,
            cost=cost,
            status=status,
            duration_ms=sum(record.duration_ms for record in outcome.attempts),
            section_id=section_id,
            error_message="; ".join(failures) if failures else None,
        )


async def run_job(job: RegenerationJob, deps: PipelineDeps, sink: EventSink) -> None:
    await JobRunner(job, deps, sink).run()


async def stream_job(
    job: RegenerationJob,
    deps: PipelineDeps,
    runner: Callable[[RegenerationJob, PipelineDeps, EventSink], Awaitable[None]] = run_job,
):
    """Run ``job`` in its own task and yield its events as SSE frames."""
    sink = QueueEventSink()
    task = asyncio.create_task(runner(job, deps, sink))
    _background_jobs.add(task)
    task.add_done_callback(_background_jobs.discard)
    try:
        async for event in sink.drain():
            yield encode_sse(event)
    finally:
        if not task.done():
            # Consumer went away; the in-flight item finishes, the rest are skipped.
            job.abandoned.set()
