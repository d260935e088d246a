import pytest
from pydantic import ValidationError

from section_studio.db.enums import RegenerationModeEnum
from section_studio.schemas.regeneration import (
    DesignDefinition,
    EditOptions,
    RestoreParams,
    StyleParams,
)
from section_studio.services.compositor import ExpansionMeta
from section_studio.services.prompts import (
    PromptContext,
    build_prompt,
    edit_options_text,
    generation_temperature,
    preservation_clause,
    reference_clause,
    segment_position,
)


def _ctx(mode=RegenerationModeEnum.restyle, **kwargs) -> PromptContext:
    kwargs.setdefault("source_size", (750, 400))
    kwargs.setdefault("output_size", (750, 400))
    return PromptContext(mode=mode, **kwargs)


def test_upscale_prompt_keeps_composition_and_names_output_size():
    prompt = build_prompt(_ctx(RegenerationModeEnum.upscale, output_size=(1500, 800)))

    assert "Do not add, remove or move any element" in prompt
    assert "1500x800px" in prompt
    assert "Style:" not in prompt


def test_enhance_only_upscale_mentions_unchanged_dimensions():
    text = preservation_clause(_ctx(RegenerationModeEnum.upscale, enhance_only=True))

    assert "without changing its dimensions" in text


@pytest.mark.parametrize(
    "index,count,has_previous,has_next,expected",
    [
        (0, 1, False, False, "standalone section"),
        (0, 3, False, True, "header / hero section"),
        (2, 3, True, False, "footer section"),
        (1, 3, True, True, "content section (2/3)"),
    ],
)
def test_segment_position(index, count, has_previous, has_next, expected):
    position, _ = segment_position(
        _ctx(item_index=index, item_count=count, has_previous=has_previous, has_next=has_next)
    )
    assert position == expected


def test_restyle_prompt_orders_reference_before_style():
    ctx = _ctx(
        style=StyleParams(style="luxury", colorScheme="green", customPrompt="more whitespace"),
        reference="user",
        item_count=2,
        has_next=True,
    )
    prompt = build_prompt(ctx)

    assert prompt.index("style reference the user chose") < prompt.index("Style: Luxury")
    assert "#22C55E" in prompt
    assert "User instruction: more whitespace" in prompt
    assert "Keep visual continuity with the next section." in prompt
    assert "Layout is fixed" in prompt


def test_auto_reference_names_the_first_section():
    assert "first section of this page" in reference_clause(_ctx(reference="auto"))
    assert reference_clause(_ctx()) == ""


def test_layout_edit_option_makes_the_edit_heavy():
    options = EditOptions.model_validate({"layout": {"enabled": True}, "text": {"enabled": True, "mode": "rewrite"}})
    ctx = _ctx(style=StyleParams(editOptions=options))

    assert ctx.heavy
    assert "may be rearranged freely" in build_prompt(ctx)
    assert "rewrite completely" in edit_options_text(options)


def test_design_definition_style_uses_definition_instead_of_preset():
    definition = DesignDefinition(vibe="calm", colorPalette={"primary": "#111111", "background": "#FAFAFA"})
    prompt = build_prompt(_ctx(style=StyleParams(style="design-definition", designDefinition=definition)))

    assert "Follow this page-wide design definition strictly" in prompt
    assert "main: #111111" in prompt
    assert "Style:" not in prompt


def test_design_definition_style_requires_definition():
    with pytest.raises(ValidationError):
        StyleParams(style="design-definition")


def test_boundary_prompt_describes_context_strips():
    meta = ExpansionMeta(top_offset=60, bottom_offset=0, target_width=750, target_height=400)
    prompt = build_prompt(_ctx(RegenerationModeEnum.boundary_repair, expansion=meta))

    assert "top 60px come from the section above" in prompt
    assert "come from the section below" not in prompt


def test_restore_prompt_includes_extension_and_user_text():
    restore = RestoreParams(direction="top", topAmount=120, bottomAmount=80, prompt="sky with clouds")
    meta = ExpansionMeta(top_offset=120, bottom_offset=0, target_width=750, target_height=400)
    prompt = build_prompt(_ctx(RegenerationModeEnum.restore, restore=restore, expansion=meta))

    assert "120px white area at the top" in prompt
    assert "downward" not in prompt
    assert "What should appear: sky with clouds" in prompt


def test_generation_temperature_per_mode():
    assert generation_temperature(_ctx(RegenerationModeEnum.upscale)) == 0.1
    assert generation_temperature(_ctx(RegenerationModeEnum.boundary_repair)) == 0.2
    assert generation_temperature(_ctx(style=StyleParams())) == 0.15
    assert generation_temperature(_ctx(style=StyleParams(editMode="heavy"))) == 0.35
    assert generation_temperature(_ctx(style=StyleParams(editMode="heavy"), reference="auto")) == 0.1
    restore = RestoreParams(prompt="x", creativity="high", topAmount=20)
    assert generation_temperature(_ctx(RegenerationModeEnum.restore, restore=restore)) == 0.8
