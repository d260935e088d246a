from typing import Optional
from uuid import UUID

from sqlalchemy import func, select

from section_studio.db.enums import ImageFieldEnum
from section_studio.db.models import RegenerationHistoryEntry
from section_studio.db.repositories.base import Repository


class RegenerationHistoryRepository(Repository):
    def list_for_section(
        self, section_id: UUID, limit: int = 10, target_field: Optional[ImageFieldEnum] = None
    ) -> list[RegenerationHistoryEntry]:
        stmt = select(RegenerationHistoryEntry).where(RegenerationHistoryEntry.section_id == section_id)
        if target_field is not None:
            stmt = stmt.where(RegenerationHistoryEntry.target_field == target_field)
        stmt = stmt.order_by(RegenerationHistoryEntry.sequence.desc()).limit(limit)
        return list(self.session.scalars(stmt).all())

    def next_sequence(self, section_id: UUID) -> int:
        stmt = select(func.max(RegenerationHistoryEntry.sequence)).where(
            RegenerationHistoryEntry.section_id == section_id
        )
        current = self.session.scalar(stmt)
        return (current or 0) + 1

    def append(self, **fields) -> RegenerationHistoryEntry:
        """Stage an entry inside the caller's transaction without committing."""
        entry = RegenerationHistoryEntry(**fields)
        self.session.add(entry)
        self.session.flush()
        return entry
