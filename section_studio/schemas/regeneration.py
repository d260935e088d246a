from __future__ import annotations

from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from section_studio.db.enums import ImageFieldEnum, RegenerationModeEnum

StylePresetLiteral = Literal[
    "sampling",
    "professional",
    "pops",
    "luxury",
    "minimal",
    "emotional",
    "design-definition",
]
ColorSchemeLiteral = Literal["original", "blue", "green", "purple", "orange", "monochrome"]
CreativityLiteral = Literal["low", "medium", "high"]


class PeopleEdit(BaseModel):
    enabled: bool = False
    mode: Literal["similar", "different"] = "similar"


class TextEdit(BaseModel):
    enabled: bool = False
    mode: Literal["nuance", "copywriting", "rewrite"] = "nuance"


class ToggleEdit(BaseModel):
    enabled: bool = False


class ColorEdit(BaseModel):
    enabled: bool = False
    scheme: ColorSchemeLiteral = "original"


class EditOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    people: PeopleEdit = Field(default_factory=PeopleEdit)
    text: TextEdit = Field(default_factory=TextEdit)
    pattern: ToggleEdit = Field(default_factory=ToggleEdit)
    objects: ToggleEdit = Field(default_factory=ToggleEdit)
    color: ColorEdit = Field(default_factory=ColorEdit)
    layout: ToggleEdit = Field(default_factory=ToggleEdit)

    def any_enabled(self) -> bool:
        return any(
            option.enabled
            for option in (self.people, self.text, self.pattern, self.objects, self.color, self.layout)
        )


class ColorPalette(BaseModel):
    primary: Optional[str] = None
    secondary: Optional[str] = None
    accent: Optional[str] = None
    background: Optional[str] = None


class DesignDefinition(BaseModel):
    """Page-wide design system description; unknown keys are kept but ignored."""

    model_config = ConfigDict(extra="allow")

    vibe: Optional[str] = None
    description: Optional[str] = None
    colorPalette: Optional[ColorPalette] = None
    typography: Optional[dict[str, Any]] = None
    layout: Optional[dict[str, Any]] = None


class StyleParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    style: StylePresetLiteral = "professional"
    colorScheme: ColorSchemeLiteral = "original"
    customPrompt: Optional[str] = Field(default=None, max_length=500)
    editMode: Literal["light", "heavy"] = "light"
    contextStyle: Optional[str] = Field(default=None, max_length=500)
    editOptions: Optional[EditOptions] = None
    designDefinition: Optional[DesignDefinition] = None
    styleReferenceUrl: Optional[str] = None
    useBoundaryContext: bool = False

    @model_validator(mode="after")
    def _design_definition_required(self) -> "StyleParams":
        if self.style == "design-definition" and self.designDefinition is None:
            raise ValueError("designDefinition is required when style is 'design-definition'")
        return self


class BoundaryOffsets(BaseModel):
    top: int = Field(default=0, ge=0, le=2000)
    bottom: int = Field(default=0, ge=0, le=2000)


class RestoreParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    direction: Literal["top", "bottom", "both"] = "both"
    topAmount: int = Field(default=0, ge=0, le=500)
    bottomAmount: int = Field(default=0, ge=0, le=500)
    prompt: str = Field(..., min_length=1, max_length=1000)
    creativity: CreativityLiteral = "medium"
    referenceImageUrl: Optional[str] = None

    def extension(self) -> tuple[int, int]:
        top = self.topAmount if self.direction in ("top", "both") else 0
        bottom = self.bottomAmount if self.direction in ("bottom", "both") else 0
        return top, bottom


class RegenerationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mode: RegenerationModeEnum
    resolution: Optional[int] = Field(default=None, ge=64)
    imageField: ImageFieldEnum = ImageFieldEnum.primary
    styleParams: Optional[StyleParams] = None
    targetSectionIds: Optional[list[UUID]] = None
    boundaryOffsets: Optional[BoundaryOffsets] = None
    restore: Optional[RestoreParams] = None
