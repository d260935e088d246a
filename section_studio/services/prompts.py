"""
Prompt construction for the generative image calls.

Each clause is a pure function of ``PromptContext`` that returns a block of
text or an empty string. A mode's prompt is its clauses joined in a fixed
order, so individual clauses can be tested without matching whole prompts.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Literal, Optional

from section_studio.db.enums import RegenerationModeEnum
from section_studio.schemas.regeneration import DesignDefinition, EditOptions, RestoreParams, StyleParams
from section_studio.services.compositor import ExpansionMeta

STYLE_DESCRIPTIONS: dict[str, str] = {
    "sampling": "Keep the original design: colors, fonts, button shapes and decorations stay exactly as they are.",
    "professional": "Corporate and trustworthy: navy blue (#1E3A5F) and white, clean sans-serif type.",
    "pops": "Pop and energetic: bright pink-to-orange gradients, rounded shapes, bold type.",
    "luxury": "Luxury and elegant: black and gold (#D4AF37), serif type, thin refined lines.",
    "minimal": "Minimal and simple: monochrome with a single accent color and generous whitespace.",
    "emotional": "Passionate and energetic: warm crimson (#C41E3A) and orange with strong contrast.",
}

COLOR_SCHEMES: dict[str, dict[str, str]] = {
    "blue": {"primary": "#3B82F6", "secondary": "#1E40AF", "accent": "#60A5FA", "background": "#F0F9FF"},
    "green": {"primary": "#22C55E", "secondary": "#15803D", "accent": "#86EFAC", "background": "#F0FDF4"},
    "purple": {"primary": "#A855F7", "secondary": "#7C3AED", "accent": "#C4B5FD", "background": "#FAF5FF"},
    "orange": {"primary": "#F97316", "secondary": "#EA580C", "accent": "#FDBA74", "background": "#FFF7ED"},
    "monochrome": {"primary": "#000000", "secondary": "#374151", "accent": "#6B7280", "background": "#FFFFFF"},
}

CREATIVITY_TEMPERATURE = {"low": 0.3, "medium": 0.5, "high": 0.8}

ReferenceKind = Literal["user", "auto"]


@dataclass(frozen=True)
class PromptContext:
    mode: RegenerationModeEnum
    source_size: tuple[int, int]
    output_size: tuple[int, int]
    item_index: int = 0
    item_count: int = 1
    has_previous: bool = False
    has_next: bool = False
    reference: Optional[ReferenceKind] = None
    style: Optional[StyleParams] = None
    expansion: Optional[ExpansionMeta] = None
    restore: Optional[RestoreParams] = None
    enhance_only: bool = False

    @property
    def heavy(self) -> bool:
        if self.style is None:
            return False
        if self.style.editMode == "heavy":
            return True
        return bool(self.style.editOptions and self.style.editOptions.layout.enabled)


Clause = Callable[[PromptContext], str]


def role_clause(ctx: PromptContext) -> str:
    if ctx.mode == RegenerationModeEnum.upscale:
        return "You are an expert image restoration engineer. Enhance this landing page section image to high resolution."
    if ctx.mode == RegenerationModeEnum.boundary_repair:
        return (
            "You are a professional web designer. The image stacks the edge of the section above, "
            "the section being repaired, and the edge of the section below. Make the seams between them seamless."
        )
    if ctx.mode == RegenerationModeEnum.restore:
        return (
            "You are a professional web designer. The image is a landing page section placed on a white canvas. "
            "Fill the white areas so the section continues naturally."
        )
    if ctx.heavy:
        return "You are a creative web designer. Create a new design for this segment of a web page."
    return "You are a professional web designer. Convert this segment of a web page to a new style."


def reference_clause(ctx: PromptContext) -> str:
    if ctx.reference == "user":
        return (
            "MOST IMPORTANT: the first attached image is a style reference the user chose. Apply its design style "
            "to the second image: background colors and gradients, button color and shape, heading and body type, "
            "icon and decoration style, overall color tone and spacing."
        )
    if ctx.reference == "auto":
        return (
            "MOST IMPORTANT: the first attached image is the first section of this page, already regenerated. "
            "Match its backgrounds, buttons, fonts, icons, shadows and decorations exactly."
        )
    return ""


def segment_position(ctx: PromptContext) -> tuple[str, str]:
    if ctx.item_count <= 1 and not (ctx.has_previous or ctx.has_next):
        return "standalone section", "the whole visual block"
    if ctx.item_index == 0 and not ctx.has_previous:
        return "header / hero section", "navigation, logo and main visual"
    if ctx.item_index == ctx.item_count - 1 and not ctx.has_next:
        return "footer section", "call to action, contact and copyright"
    return f"content section ({ctx.item_index + 1}/{ctx.item_count})", "body content"


def segment_clause(ctx: PromptContext) -> str:
    position, role = segment_position(ctx)
    return f"Segment: {position} of {ctx.item_count}. Role: {role}."


def preservation_clause(ctx: PromptContext) -> str:
    width, height = ctx.source_size
    if ctx.mode == RegenerationModeEnum.upscale:
        rules = [
            "Do not add, remove or move any element; keep the composition identical.",
            "Sharpen text edges and fine details, remove compression artifacts and blur.",
            "Keep every color exactly as it is.",
        ]
        if ctx.enhance_only:
            rules.append("The image is already large enough; improve quality without changing its dimensions.")
        return "Rules:\n" + "\n".join(f"- {rule}" for rule in rules)
    if ctx.mode == RegenerationModeEnum.restore:
        return "Rules:\n- Do not change the existing image area in any way.\n- Only fill the white areas."
    if ctx.mode == RegenerationModeEnum.boundary_repair:
        return (
            "Rules:\n- Keep the text and main elements of the middle section unchanged.\n"
            "- Blend backgrounds, gradients and patterns across the seams so no hard cut is visible."
        )
    rules = [f"Keep the exact aspect ratio and resolution of the input ({width}x{height}px)."]
    if ctx.heavy:
        rules.append("Element positions may be rearranged freely but the section keeps its role.")
    else:
        rules.append("Layout is fixed: element positions, sizes and spacing must not move.")
    rules.append("Top and bottom edges join other segments; backgrounds must not break off.")
    if ctx.has_previous:
        rules.append("Keep visual continuity with the previous section.")
    if ctx.has_next:
        rules.append("Keep visual continuity with the next section.")
    return "Rules:\n" + "\n".join(f"{i}. {rule}" for i, rule in enumerate(rules, start=1))


def boundary_context_clause(ctx: PromptContext) -> str:
    meta = ctx.expansion
    if meta is None or meta.is_identity or ctx.mode == RegenerationModeEnum.restore:
        return ""
    lines = []
    if meta.top_offset:
        lines.append(f"The top {meta.top_offset}px come from the section above; use them only as context.")
    if meta.bottom_offset:
        lines.append(f"The bottom {meta.bottom_offset}px come from the section below; use them only as context.")
    return "\n".join(lines)


def restore_clause(ctx: PromptContext) -> str:
    if ctx.restore is None or ctx.expansion is None:
        return ""
    meta = ctx.expansion
    lines = []
    if meta.top_offset:
        lines.append(f"Extend the design upward into the {meta.top_offset}px white area at the top.")
    if meta.bottom_offset:
        lines.append(f"Extend the design downward into the {meta.bottom_offset}px white area at the bottom.")
    lines.append(f"What should appear: {ctx.restore.prompt.strip()}")
    return "\n".join(lines)


def style_clause(ctx: PromptContext) -> str:
    style = ctx.style
    if style is None or style.style == "design-definition":
        return ""
    lines = [f"Style: {STYLE_DESCRIPTIONS.get(style.style, STYLE_DESCRIPTIONS['professional'])}"]
    scheme = COLOR_SCHEMES.get(style.colorScheme)
    if scheme:
        lines.append(_palette_text(scheme))
    if not ctx.heavy:
        lines.append("Rewrite text so the meaning is kept but the wording changes.")
    return "\n".join(lines)


def _palette_text(scheme: dict[str, str]) -> str:
    return (
        "Replace the palette completely: "
        f"main {scheme['primary']}, secondary {scheme['secondary']}, "
        f"accent {scheme['accent']}, background {scheme['background']}. "
        "Buttons, backgrounds, icons and decorations all follow the new palette."
    )


def edit_options_text(options: EditOptions) -> str:
    instructions: list[str] = []
    if options.people.enabled:
        if options.people.mode == "similar":
            instructions.append("People: replace any person with a different person of the same age range, mood and situation.")
        else:
            instructions.append("People: replace any person with someone giving a completely different impression.")
    if options.text.enabled:
        instructions.append(
            {
                "nuance": "Text: change the nuance slightly; same meaning, same font style.",
                "copywriting": "Text: improve the copy to be more persuasive with a clear call to action; keep the font style.",
                "rewrite": "Text: rewrite completely with the same purpose; keep the font style.",
            }[options.text.mode]
        )
    if options.pattern.enabled:
        instructions.append("Background: change gradients, textures and patterns without hurting readability.")
    if options.objects.enabled:
        instructions.append("Objects: replace icons and decorative elements with a new, consistent style.")
    if options.color.enabled:
        scheme = COLOR_SCHEMES.get(options.color.scheme)
        if scheme:
            instructions.append(_palette_text(scheme))
    if options.layout.enabled:
        instructions.append("Layout: rearrange elements and rebalance whitespace; the section keeps its role.")
    return "\n".join(instructions)


def edit_options_clause(ctx: PromptContext) -> str:
    if ctx.style is None or ctx.style.editOptions is None:
        return ""
    return edit_options_text(ctx.style.editOptions)


def design_definition_text(definition: DesignDefinition) -> str:
    parts: list[str] = []
    if definition.vibe:
        parts.append(f"Mood: {definition.vibe}")
    if definition.description:
        parts.append(f"Design traits: {definition.description}")
    palette = definition.colorPalette
    if palette:
        colors = [
            f"{label}: {value}"
            for label, value in (
                ("main", palette.primary),
                ("secondary", palette.secondary),
                ("accent", palette.accent),
                ("background", palette.background),
            )
            if value
        ]
        if colors:
            parts.append("Color palette: " + ", ".join(colors))
    for label, section in (("Typography", definition.typography), ("Layout", definition.layout)):
        if section:
            values = [f"{key}: {value}" for key, value in section.items() if value]
            if values:
                parts.append(f"{label}: " + ", ".join(values))
    return "\n".join(parts)


def design_definition_clause(ctx: PromptContext) -> str:
    if ctx.style is None or ctx.style.designDefinition is None:
        return ""
    text = design_definition_text(ctx.style.designDefinition)
    if not text:
        return ""
    if ctx.style.style == "design-definition":
        return "Follow this page-wide design definition strictly so every section matches:\n" + text
    return "Keep these traits of the original design:\n" + text


def custom_clause(ctx: PromptContext) -> str:
    if ctx.style is None:
        return ""
    lines = []
    if ctx.style.customPrompt:
        lines.append(f"User instruction: {ctx.style.customPrompt.strip()}")
    if ctx.style.contextStyle:
        lines.append(f"Context style: {ctx.style.contextStyle.strip()}")
    return "\n".join(lines)


def output_clause(ctx: PromptContext) -> str:
    width, height = ctx.output_size
    return f"Output: one high quality image of {width}x{height}px."


CLAUSE_ORDER: dict[RegenerationModeEnum, tuple[Clause, ...]] = {
    RegenerationModeEnum.upscale: (role_clause, preservation_clause, output_clause),
    RegenerationModeEnum.restyle: (
        role_clause,
        reference_clause,
        segment_clause,
        preservation_clause,
        boundary_context_clause,
        style_clause,
        edit_options_clause,
        design_definition_clause,
        custom_clause,
        output_clause,
    ),
    RegenerationModeEnum.boundary_repair: (
        role_clause,
        reference_clause,
        preservation_clause,
        boundary_context_clause,
        custom_clause,
        output_clause,
    ),
    RegenerationModeEnum.restore: (
        role_clause,
        reference_clause,
        preservation_clause,
        restore_clause,
        output_clause,
    ),
}


def build_prompt(ctx: PromptContext) -> str:
    blocks = (clause(ctx).strip() for clause in CLAUSE_ORDER[ctx.mode])
    return "\n\n".join(block for block in blocks if block)


def generation_temperature(ctx: PromptContext) -> float:
    if ctx.mode == RegenerationModeEnum.upscale:
        return 0.1
    if ctx.mode == RegenerationModeEnum.boundary_repair:
        return 0.2
    if ctx.mode == RegenerationModeEnum.restore:
        creativity = ctx.restore.creativity if ctx.restore else "medium"
        return CREATIVITY_TEMPERATURE[creativity]
    if ctx.reference is not None:
        return 0.1
    return 0.35 if ctx.heavy else 0.15
