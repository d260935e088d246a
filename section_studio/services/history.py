from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from section_studio.db.enums import HistoryActionEnum, ImageFieldEnum, ImageSourceKindEnum
from section_studio.db.models import RegenerationHistoryEntry
from section_studio.db.repositories import (
    ImageAssetsRepository,
    RegenerationHistoryRepository,
    SectionsRepository,
)

logger = logging.getLogger(__name__)


class SectionNotFoundError(RuntimeError):
    pass


class VersionCommitError(RuntimeError):
    pass


class RevertTargetError(RuntimeError):
    pass


@dataclass(frozen=True)
class NewImage:
    uri: str
    width: int
    height: int
    source_kind: ImageSourceKindEnum
    mime_type: str = "image/png"
    storage_key: Optional[str] = None
    source_asset_id: Optional[UUID] = None
    owner_user_id: Optional[str] = None


class HistoryTracker:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.sections = SectionsRepository(session)
        self.images = ImageAssetsRepository(session)
        self.history = RegenerationHistoryRepository(session)

    def _repoint(
        self,
        section_id: UUID,
        target_field: ImageFieldEnum,
        *,
        action_kind: HistoryActionEnum,
        new_image: Optional[NewImage] = None,
        existing_image_id: Optional[UUID] = None,
        prompt_text: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> RegenerationHistoryEntry:
        try:
            section = self.sections.get_for_update(section_id)
            if section is None:
                self.session.rollback()
                raise SectionNotFoundError(f"Section not found: {section_id}")
            previous_image_id = section.image_ref(target_field)
            if new_image is not None:
                asset = self.images.add_pending(
                    uri=new_image.uri,
                    storage_key=new_image.storage_key,
                    mime_type=new_image.mime_type,
                    width=new_image.width,
                    height=new_image.height,
                    source_kind=new_image.source_kind,
                    source_asset_id=new_image.source_asset_id,
                    owner_user_id=new_image.owner_user_id,
                )
                new_image_id = asset.id
            else:
                new_image_id = existing_image_id
            entry = self.history.append(
                section_id=section_id,
                target_field=target_field,
                previous_image_id=previous_image_id,
                new_image_id=new_image_id,
                action_kind=action_kind,
                prompt_text=prompt_text,
                user_id=user_id,
                sequence=self.history.next_sequence(section_id),
            )
            section.set_image_ref(target_field, new_image_id)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error(
                "history.commit_failed",
                extra={"sectionId": str(section_id), "actionKind": action_kind.value, "error": str(exc)},
            )
            raise VersionCommitError(f"Failed to record new image for section {section_id}") from exc
        self.session.refresh(entry)
        logger.info(
            "history.committed",
            extra={
                "sectionId": str(section_id),
                "targetField": target_field.value,
                "actionKind": action_kind.value,
                "previousImageId": str(previous_image_id) if previous_image_id else None,
                "newImageId": str(new_image_id),
            },
        )
        return entry

    def commit(
        self,
        section_id: UUID,
        target_field: ImageFieldEnum,
        new_image: NewImage,
        action_kind: HistoryActionEnum,
        prompt_text: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> RegenerationHistoryEntry:
        """Store ``new_image`` as an asset, re-point the section to it and append a history entry, atomically."""
        return self._repoint(
            section_id,
            target_field,
            action_kind=action_kind,
            new_image=new_image,
            prompt_text=prompt_text,
            user_id=user_id,
        )

    def list_history(
        self, section_id: UUID, limit: int = 10, target_field: Optional[ImageFieldEnum] = None
    ) -> list[RegenerationHistoryEntry]:
        return self.history.list_for_section(section_id, limit=limit, target_field=target_field)

    def _known_image_ids(self, section_id: UUID, target_field: ImageFieldEnum) -> set[UUID]:
        stmt = select(RegenerationHistoryEntry.previous_image_id, RegenerationHistoryEntry.new_image_id).where(
            RegenerationHistoryEntry.section_id == section_id,
            RegenerationHistoryEntry.target_field == target_field,
        )
        ids: set[UUID] = set()
        for previous_id, new_id in self.session.execute(stmt):
            ids.update(i for i in (previous_id, new_id) if i is not None)
        return ids

    def revert(
        self,
        section_id: UUID,
        image_id: UUID,
        target_field: ImageFieldEnum = ImageFieldEnum.primary,
        user_id: Optional[str] = None,
    ) -> RegenerationHistoryEntry:
        """Point the section back at an image from its own history and record the change."""
        if self.sections.get(section_id) is None:
            raise SectionNotFoundError(f"Section not found: {section_id}")
        if self.images.get(image_id) is None or image_id not in self._known_image_ids(section_id, target_field):
            raise RevertTargetError(
                f"Image {image_id} is not part of the {target_field.value} history of section {section_id}"
            )
        return self._repoint(
            section_id,
            target_field,
            action_kind=HistoryActionEnum.revert,
            existing_image_id=image_id,
            user_id=user_id,
        )
