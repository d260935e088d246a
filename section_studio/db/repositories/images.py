from typing import Optional
from uuid import UUID

from section_studio.db.models import ImageAsset
from section_studio.db.repositories.base import Repository


class ImageAssetsRepository(Repository):
    def get(self, image_id: UUID) -> Optional[ImageAsset]:
        return self.session.get(ImageAsset, image_id)

    def add_pending(self, **fields) -> ImageAsset:
        """Stage an asset inside the caller's transaction without committing."""
        asset = ImageAsset(**fields)
        self.session.add(asset)
        self.session.flush()
        return asset
