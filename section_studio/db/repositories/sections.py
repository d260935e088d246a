from typing import Optional
from uuid import UUID

from sqlalchemy import select

from section_studio.db.models import Section
from section_studio.db.repositories.base import Repository


class SectionsRepository(Repository):
    def get(self, section_id: UUID) -> Optional[Section]:
        return self.session.get(Section, section_id)

    def get_for_update(self, section_id: UUID) -> Optional[Section]:
        # SQLite ignores FOR UPDATE; Postgres takes a row lock until commit/rollback.
        stmt = select(Section).where(Section.id == section_id).with_for_update()
        return self.session.scalars(stmt).first()

    def list_for_page(self, page_id: UUID) -> list[Section]:
        stmt = select(Section).where(Section.page_id == page_id).order_by(Section.order.asc(), Section.id.asc())
        return list(self.session.scalars(stmt).all())

    def neighbors(self, section: Section) -> tuple[Optional[Section], Optional[Section]]:
        """Return the sections directly above and below ``section`` on its page."""
        ordered = self.list_for_page(section.page_id)
        ids = [item.id for item in ordered]
        try:
            index = ids.index(section.id)
        except ValueError:
            return None, None
        above = ordered[index - 1] if index > 0 else None
        below = ordered[index + 1] if index + 1 < len(ordered) else None
        return above, below

    def update_boundary_offsets(self, section_id: UUID, *, top: int, bottom: int) -> Optional[Section]:
        section = self.get(section_id)
        if not section:
            return None
        section.boundary_offset_top = top
        section.boundary_offset_bottom = bottom
        self.session.commit()
        self.session.refresh(section)
        return section
