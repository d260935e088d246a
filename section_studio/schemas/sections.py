from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from section_studio.db.enums import HistoryActionEnum, ImageFieldEnum


class HistoryEntryResponse(BaseModel):
    id: UUID
    sectionId: UUID
    targetField: ImageFieldEnum
    previousImageId: Optional[UUID] = None
    newImageId: UUID
    newImageUri: Optional[str] = None
    actionKind: HistoryActionEnum
    promptText: Optional[str] = None
    createdAt: datetime


class HistoryListResponse(BaseModel):
    sectionId: UUID
    currentImageId: Optional[UUID] = None
    entries: list[HistoryEntryResponse]


class RevertRequest(BaseModel):
    imageId: UUID
    imageField: ImageFieldEnum = ImageFieldEnum.primary


class BoundaryOffsetsUpdate(BaseModel):
    top: int = Field(..., ge=0, le=2000)
    bottom: int = Field(..., ge=0, le=2000)


class SectionResponse(BaseModel):
    id: UUID
    pageId: UUID
    order: int
    imageId: Optional[UUID] = None
    mobileImageId: Optional[UUID] = None
    boundaryOffsetTop: int
    boundaryOffsetBottom: int
