from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from section_studio.auth.dependencies import AuthContext, get_current_user
from section_studio.db.deps import get_session
from section_studio.db.enums import ImageFieldEnum
from section_studio.db.models import Page, RegenerationHistoryEntry, Section
from section_studio.db.repositories import ImageAssetsRepository, PagesRepository, SectionsRepository
from section_studio.schemas.sections import (
    BoundaryOffsetsUpdate,
    HistoryEntryResponse,
    HistoryListResponse,
    RevertRequest,
    SectionResponse,
)
from section_studio.services.history import HistoryTracker, RevertTargetError, SectionNotFoundError, VersionCommitError

router = APIRouter(prefix="/sections", tags=["sections"])


def load_owned_page(session: Session, page_id: UUID, auth: AuthContext) -> Page:
    page = PagesRepository(session).get(page_id)
    if not page:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Page not found")
    if page.owner_user_id != auth.user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You do not have access to this page")
    return page


def load_owned_section(session: Session, section_id: UUID, auth: AuthContext) -> Section:
    section = SectionsRepository(session).get(section_id)
    if not section:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Section not found")
    load_owned_page(session, section.page_id, auth)
    return section


def _entry_response(session: Session, entry: RegenerationHistoryEntry) -> HistoryEntryResponse:
    image = ImageAssetsRepository(session).get(entry.new_image_id)
    return HistoryEntryResponse(
        id=entry.id,
        sectionId=entry.section_id,
        targetField=entry.target_field,
        previousImageId=entry.previous_image_id,
        newImageId=entry.new_image_id,
        newImageUri=image.uri if image else None,
        actionKind=entry.action_kind,
        promptText=entry.prompt_text,
        createdAt=entry.created_at,
    )


def _section_response(section: Section) -> SectionResponse:
    return SectionResponse(
        id=section.id,
        pageId=section.page_id,
        order=section.order,
        imageId=section.image_id,
        mobileImageId=section.mobile_image_id,
        boundaryOffsetTop=section.boundary_offset_top,
        boundaryOffsetBottom=section.boundary_offset_bottom,
    )


@router.get("/{section_id}/history", response_model=HistoryListResponse)
def get_section_history(
    section_id: UUID,
    limit: int = 10,
    imageField: Optional[ImageFieldEnum] = None,
    auth: AuthContext = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    section = load_owned_section(session, section_id, auth)
    entries = HistoryTracker(session).list_history(
        section_id, limit=max(1, min(limit, 50)), target_field=imageField
    )
    return HistoryListResponse(
        sectionId=section.id,
        currentImageId=section.image_ref(imageField or ImageFieldEnum.primary),
        entries=[_entry_response(session, entry) for entry in entries],
    )


@router.post("/{section_id}/revert", response_model=HistoryEntryResponse)
def revert_section_image(
    section_id: UUID,
    payload: RevertRequest,
    auth: AuthContext = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    load_owned_section(session, section_id, auth)
    try:
        entry = HistoryTracker(session).revert(
            section_id, payload.imageId, target_field=payload.imageField, user_id=auth.user_id
        )
    except SectionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RevertTargetError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except VersionCommitError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return _entry_response(session, entry)


@router.patch("/{section_id}/boundary-offsets", response_model=SectionResponse)
def update_boundary_offsets(
    section_id: UUID,
    payload: BoundaryOffsetsUpdate,
    auth: AuthContext = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    load_owned_section(session, section_id, auth)
    section = SectionsRepository(session).update_boundary_offsets(
        section_id, top=payload.top, bottom=payload.bottom
    )
    if not section:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Section not found")
    return _section_response(section)
