from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy import DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from section_studio.db.base import Base
from section_studio.db.enums import (
    GenerationRunStatusEnum,
    HistoryActionEnum,
    ImageFieldEnum,
    ImageSourceKindEnum,
)


class ImageAsset(Base):
    """Immutable record of one stored raster image. Rows are inserted, never updated."""

    __tablename__ = "image_assets"

    id: Mapped[UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    owner_user_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    uri: Mapped[str] = mapped_column(Text, nullable=False)
    storage_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    mime_type: Mapped[str] = mapped_column(String(64), nullable=False, default="image/png")
    width: Mapped[int] = mapped_column(Integer, nullable=False)
    height: Mapped[int] = mapped_column(Integer, nullable=False)
    source_kind: Mapped[ImageSourceKindEnum] = mapped_column(
        Enum(ImageSourceKindEnum, name="image_source_kind"), nullable=False
    )
    source_asset_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("image_assets.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class Page(Base):
    __tablename__ = "pages"

    id: Mapped[UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    owner_user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    sections: Mapped[list["Section"]] = relationship(
        back_populates="page", order_by="Section.order", cascade="all, delete-orphan"
    )


class Section(Base):
    __tablename__ = "sections"
    __table_args__ = (sa.Index("idx_sections_page_order", "page_id", "sort_order"),)

    id: Mapped[UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    page_id: Mapped[UUID] = mapped_column(ForeignKey("pages.id", ondelete="CASCADE"), nullable=False)
    order: Mapped[int] = mapped_column("sort_order", Integer, nullable=False, default=0)
    image_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("image_assets.id", ondelete="SET NULL"), nullable=True
    )
    mobile_image_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("image_assets.id", ondelete="SET NULL"), nullable=True
    )
    boundary_offset_top: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    boundary_offset_bottom: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    page: Mapped[Page] = relationship(back_populates="sections")
    image: Mapped[Optional[ImageAsset]] = relationship(foreign_keys=[image_id])
    mobile_image: Mapped[Optional[ImageAsset]] = relationship(foreign_keys=[mobile_image_id])

    def image_ref(self, field: ImageFieldEnum) -> Optional[UUID]:
        return self.mobile_image_id if field == ImageFieldEnum.mobile else self.image_id

    def image_for(self, field: ImageFieldEnum) -> Optional[ImageAsset]:
        return self.mobile_image if field == ImageFieldEnum.mobile else self.image

    def set_image_ref(self, field: ImageFieldEnum, image_id: Optional[UUID]) -> None:
        if field == ImageFieldEnum.mobile:
            self.mobile_image_id = image_id
        else:
            self.image_id = image_id


class RegenerationHistoryEntry(Base):
    __tablename__ = "regeneration_history"
    __table_args__ = (sa.Index("idx_regeneration_history_section", "section_id", "created_at"),)

    id: Mapped[UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    section_id: Mapped[UUID] = mapped_column(ForeignKey("sections.id", ondelete="CASCADE"), nullable=False)
    target_field: Mapped[ImageFieldEnum] = mapped_column(
        Enum(ImageFieldEnum, name="image_field"), nullable=False, default=ImageFieldEnum.primary
    )
    previous_image_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("image_assets.id", ondelete="SET NULL"), nullable=True
    )
    new_image_id: Mapped[UUID] = mapped_column(ForeignKey("image_assets.id"), nullable=False)
    action_kind: Mapped[HistoryActionEnum] = mapped_column(
        Enum(HistoryActionEnum, name="history_action"), nullable=False
    )
    prompt_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    # Monotonic within a section; timestamps alone can tie inside one second on SQLite.
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class GenerationRun(Base):
    __tablename__ = "generation_runs"
    __table_args__ = (sa.Index("idx_generation_runs_user_created", "user_id", "created_at"),)

    id: Mapped[UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    operation_kind: Mapped[str] = mapped_column(String(64), nullable=False)
    model: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[GenerationRunStatusEnum] = mapped_column(
        Enum(GenerationRunStatusEnum, name="generation_run_status"), nullable=False
    )
    estimated_cost: Mapped[float] = mapped_column(Numeric(12, 6), nullable=False, default=0)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    section_id: Mapped[Optional[UUID]] = mapped_column(sa.Uuid, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
