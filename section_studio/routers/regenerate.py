import logging
from functools import lru_cache
from typing import Callable, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from section_studio.auth.dependencies import AuthContext, get_current_user
from section_studio.config import settings, settings_snapshot
from section_studio.db.deps import get_session, get_session_factory
from section_studio.db.enums import RegenerationModeEnum
from section_studio.db.models import Page, Section
from section_studio.db.repositories import SectionsRepository
from section_studio.routers.sections import load_owned_page, load_owned_section
from section_studio.schemas.regeneration import RegenerationRequest
from section_studio.services.jobs import PipelineDeps, RegenerationJob, stream_job
from section_studio.services.media_storage import MediaStorage
from section_studio.services.usage import DatabaseUsageRecorder, MonthlyQuotaChecker, SettingsCredentialResolver

router = APIRouter(prefix="/regenerate", tags=["regenerate"])
logger = logging.getLogger(__name__)

_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


@lru_cache(maxsize=1)
def get_media_storage() -> MediaStorage:
    return MediaStorage(settings)


def get_pipeline_deps(
    session_factory: Callable[[], Session] = Depends(get_session_factory),
) -> PipelineDeps:
    return PipelineDeps(
        settings=settings,
        session_factory=session_factory,
        storage=get_media_storage(),
        quota=MonthlyQuotaChecker(session_factory, settings.MONTHLY_GENERATION_LIMIT),
        credentials=SettingsCredentialResolver(settings),
        usage=DatabaseUsageRecorder(session_factory),
    )


def _validate_mode_params(payload: RegenerationRequest, deps: PipelineDeps) -> None:
    cfg = deps.settings
    if payload.mode == RegenerationModeEnum.upscale and payload.resolution:
        if payload.resolution > cfg.MAX_TARGET_WIDTH:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"resolution must be at most {cfg.MAX_TARGET_WIDTH}px",
            )
    if payload.mode == RegenerationModeEnum.restore:
        if payload.restore is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="restore parameters are required")
        top, bottom = payload.restore.extension()
        if top + bottom < cfg.RESTORE_MIN_EXTENSION_PX:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Extension must total at least {cfg.RESTORE_MIN_EXTENSION_PX}px",
            )


def _select_sections(
    candidates: list[Section], payload: RegenerationRequest, *, target_ids: Optional[list[UUID]]
) -> list[Section]:
    if target_ids:
        by_id = {section.id: section for section in candidates}
        missing = [str(section_id) for section_id in target_ids if section_id not in by_id]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Sections not found on this page: {', '.join(missing)}",
            )
        wanted = set(target_ids)
        candidates = [section for section in candidates if section.id in wanted]
    with_images = [section for section in candidates if section.image_ref(payload.imageField) is not None]
    if not with_images:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No section images to process")
    return with_images


def _start_stream(
    page: Page,
    sections: list[Section],
    payload: RegenerationRequest,
    auth: AuthContext,
    deps: PipelineDeps,
) -> StreamingResponse:
    decision = deps.quota.check_allowed(auth.user_id, payload.mode.value, len(sections))
    if not decision.allowed:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=decision.reason or "Generation quota exceeded",
        )
    api_key = deps.credentials.get_model_api_key(auth.user_id)
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Generative model API key is not configured",
        )

    job = RegenerationJob(
        user_id=auth.user_id,
        page_id=page.id,
        request=payload,
        section_ids=[section.id for section in sections],
        api_key=api_key,
    )
    logger.info(
        "regenerate.accepted",
        extra={
            "pageId": str(page.id),
            "mode": payload.mode.value,
            "items": len(sections),
            "userId": auth.user_id,
            "settings": settings_snapshot(),
        },
    )
    return StreamingResponse(stream_job(job, deps), media_type="text/event-stream", headers=_SSE_HEADERS)


@router.post("/page/{page_id}")
def regenerate_page(
    page_id: UUID,
    payload: RegenerationRequest,
    auth: AuthContext = Depends(get_current_user),
    session: Session = Depends(get_session),
    deps: PipelineDeps = Depends(get_pipeline_deps),
) -> StreamingResponse:
    page = load_owned_page(session, page_id, auth)
    _validate_mode_params(payload, deps)
    candidates = SectionsRepository(session).list_for_page(page.id)
    sections = _select_sections(candidates, payload, target_ids=payload.targetSectionIds)
    return _start_stream(page, sections, payload, auth, deps)


@router.post("/section/{section_id}")
def regenerate_section(
    section_id: UUID,
    payload: RegenerationRequest,
    auth: AuthContext = Depends(get_current_user),
    session: Session = Depends(get_session),
    deps: PipelineDeps = Depends(get_pipeline_deps),
) -> StreamingResponse:
    section = load_owned_section(session, section_id, auth)
    _validate_mode_params(payload, deps)
    sections = _select_sections([section], payload, target_ids=None)
    return _start_stream(section.page, sections, payload, auth, deps)
