from typing import Optional
from uuid import UUID

from section_studio.db.models import Page
from section_studio.db.repositories.base import Repository


class PagesRepository(Repository):
    def get(self, page_id: UUID) -> Optional[Page]:
        return self.session.get(Page, page_id)
