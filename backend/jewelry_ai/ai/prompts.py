from __future__ import annotations

import json
import re
from typing import Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from ..logger import logger
from .semantic import SemanticConfig, SemanticStone

ENGRAVING_MAX_LENGTH = 50

FORBIDDEN_ELEMENTS = [
    "text_inside_band",
    "misspelled_or_mirrored_text",
    "non_white_background",
    "background_shadows",
    "background_reflections",
    "props",
    "logos",
    "watermarks",
]

NATURAL_PREAMBLE = "Ultra high-quality studio render of "
NATURAL_SUFFIX = (
    ", minimalistic luxury jewelry, soft shadows, white background, "
    "professional jewelry product photography, 8k, extremely detailed"
)

_DOUBLE_QUOTES = re.compile(r"[\"“”„‟]")
_WHITESPACE = re.compile(r"\s+")


def join_prompt_parts(parts: Iterable[Optional[str]]) -> str:
    cleaned: List[str] = []
    for part in parts:
        if not part:
            continue
        value = part.strip().strip(",")
        if not value:
            continue
        cleaned.append(value)
    return ", ".join(cleaned)


def sanitize_engraving(text: Optional[str]) -> str:
    """
    Make engraving text safe to embed in a prompt.

    Double quotes become single quotes, backslashes are dropped, any
    whitespace run (newlines and tabs included) becomes one space, and the
    result is cut to ENGRAVING_MAX_LENGTH characters.
    """
    if not text:
        return ""
    value = _DOUBLE_QUOTES.sub("'", text)
    value = value.replace("\\", "")
    value = _WHITESPACE.sub(" ", value).strip()
    if len(value) > ENGRAVING_MAX_LENGTH:
        value = value[:ENGRAVING_MAX_LENGTH].rstrip()
    return value


# ===== Structured prompt =====

class NameDescription(BaseModel):
    name: str
    description: str


class PromptSubject(BaseModel):
    category: NameDescription
    base_model: NameDescription
    material: NameDescription
    center_stone: Optional[NameDescription] = None


class Engraving(BaseModel):
    text: str
    placement: str = "outside_band"
    priority: str = "high"
    must_be_readable: bool = True


class Personalization(BaseModel):
    engraving: Engraving


class Rendering(BaseModel):
    style: str = "photorealistic_studio"
    detail: str = "high"


class Background(BaseModel):
    color: str = "#FFFFFF"
    pure_white_only: bool = True
    no_shadows: bool = True
    no_reflections: bool = True


class Constraints(BaseModel):
    forbid: List[str] = Field(default_factory=lambda: list(FORBIDDEN_ELEMENTS))


class OutputSpec(BaseModel):
    aspect_ratio: str = "1:1"
    resolution: int = 600


class StructuredPrompt(BaseModel):
    task: str = "text_to_image"
    subject: PromptSubject
    personalization: Optional[Personalization] = None
    rendering: Rendering = Field(default_factory=Rendering)
    background: Background = Field(default_factory=Background)
    constraints: Constraints = Field(default_factory=Constraints)
    output: OutputSpec = Field(default_factory=OutputSpec)

    def to_json_text(self) -> str:
        return json.dumps(self.model_dump(exclude_none=True), indent=2, ensure_ascii=False)


def _first_text(*values: Optional[str]) -> str:
    for value in values:
        if value and value.strip():
            return value.strip()
    return ""


def _center_stone(stones: List[SemanticStone]) -> Optional[NameDescription]:
    if not stones:
        return None
    stone = min(stones, key=lambda s: s.position_index)
    parts = [stone.color_description, stone.stone_type_name.lower()]
    description = " ".join(p for p in parts if p)
    if stone.carat_weight:
        description += f", approximately {stone.carat_weight:.2f} carats"
    if stone.size_mm:
        description += f", {stone.size_mm:g} mm"
    return NameDescription(name=stone.stone_type_name, description=description)


def build_structured_prompt(config: SemanticConfig) -> StructuredPrompt:
    if config is None:
        raise ValueError("config is required")

    material_description = _first_text(
        config.material_description,
        config.material_color_description,
        config.material_name,
    )
    if config.material_color_description and config.material_description:
        material_description = f"{material_description} Color: {config.material_color_description}."

    base_model_description = _first_text(config.base_model_ai_description, config.base_model_description, config.base_model_name)
    metadata = config.base_model_metadata
    if metadata is not None:
        extras = join_prompt_parts([metadata.style, metadata.finish] + list(metadata.tags))
        if extras:
            base_model_description = f"{base_model_description} ({extras})"

    subject = PromptSubject(
        category=NameDescription(
            name=config.category_name,
            description=_first_text(config.category_ai_description, config.category_description, config.category_name),
        ),
        base_model=NameDescription(name=config.base_model_name, description=base_model_description),
        material=NameDescription(name=config.material_name, description=material_description),
        center_stone=_center_stone(config.stones),
    )

    personalization = None
    engraving = sanitize_engraving(config.engraving_text)
    if engraving:
        personalization = Personalization(engraving=Engraving(text=engraving))

    return StructuredPrompt(subject=subject, personalization=personalization)


# ===== Natural-language prompt =====

def _group_stones(stones: List[SemanticStone]) -> List[Tuple[str, Optional[str], int]]:
    """(name, colour, total count) per type+colour, in placement order."""
    totals = {}
    order: List[Tuple[str, Optional[str]]] = []
    for stone in sorted(stones, key=lambda s: s.position_index):
        key = (stone.stone_type_name, stone.color)
        if key not in totals:
            totals[key] = 0
            order.append(key)
        totals[key] += stone.count
    return [(name, color, totals[(name, color)]) for name, color in order]


def _stone_phrase(name: str, color: Optional[str], count: int) -> str:
    noun = "gemstones" if count > 1 else "gemstone"
    words = [str(count)] if count > 1 else []
    if color and color.strip():
        words.append(color.strip().lower())
    words.append(name)
    words.append(noun)
    return " ".join(words)


def join_with_and(phrases: List[str]) -> str:
    if not phrases:
        return ""
    if len(phrases) == 1:
        return phrases[0]
    if len(phrases) == 2:
        return f"{phrases[0]} and {phrases[1]}"
    return ", ".join(phrases[:-1]) + f", and {phrases[-1]}"


def build_natural_prompt(config: SemanticConfig) -> str:
    if config is None:
        raise ValueError("config is required")

    prompt = NATURAL_PREAMBLE
    if config.material_name:
        prompt += f"{config.material_name} "
    prompt += config.category_name.lower() if config.category_name else "jewelry piece"
    if config.base_model_name:
        prompt += f" ({config.base_model_name})"

    phrases = [_stone_phrase(name, color, count) for name, color, count in _group_stones(config.stones)]
    if phrases:
        prompt += f" with {join_with_and(phrases)}"

    return prompt + NATURAL_SUFFIX


def build_preview_prompt(config: SemanticConfig, prompt_format: str = "structured") -> str:
    """Prompt text handed to the image provider and stored on the job."""
    if prompt_format == "natural":
        prompt = build_natural_prompt(config)
    else:
        prompt = build_structured_prompt(config).to_json_text()
    logger.info(
        f"Built {prompt_format} preview prompt for configuration {config.configuration_id}",
        extra={"configuration_id": config.configuration_id, "prompt_length": len(prompt)},
    )
    return prompt


# ===== Upgrade preview prompt =====

_SUBJECTS = {
    "ring": "an elegant ring",
    "earrings": "a pair of elegant earrings",
    "pendant": "an elegant pendant",
    "necklace": "an elegant necklace",
    "bracelet": "an elegant bracelet",
    "brooch": "an elegant brooch",
}

_METALS = {
    "yellow_gold": "warm yellow gold",
    "white_gold": "bright white gold",
    "rose_gold": "romantic rose gold",
    "platinum": "lustrous platinum",
    "silver": "polished silver",
}

_STYLES = {
    "classic": "classic and timeless design",
    "modern": "modern contemporary design",
    "vintage": "vintage-inspired design",
    "minimalist": "minimalist clean design",
    "art_deco": "art deco geometric design",
    "bold": "bold statement design",
}


def build_upgrade_preview_prompt(
    jewelry_type: Optional[str],
    metal_type: Optional[str],
    style: Optional[str],
    stones: Optional[List[dict]],
    applied_suggestions: List[dict],
    kept_original: bool,
) -> str:
    """
    Plain-text prompt for re-rendering an uploaded piece.

    ``applied_suggestions`` are stored suggestion dicts (title, description,
    benefit); they are ignored when the original design is kept.
    """
    lines = ["Professional product photography of a jewelry piece on a pure white background."]
    lines.append(f"Subject: {_SUBJECTS.get(jewelry_type or '', 'an elegant jewelry piece')}.")
    lines.append(f"Metal: {_METALS.get(metal_type or '', 'precious metal')}.")

    if stones:
        stone_names = []
        for stone in stones:
            name = str(stone.get("stoneType") or "gemstone").replace("_", " ")
            if name not in stone_names:
                stone_names.append(name)
        lines.append(f"Stones: {join_with_and(stone_names)}.")

    lines.append(f"Style: {_STYLES.get(style or '', 'refined jewelry design')}.")

    if not kept_original and applied_suggestions:
        lines.append("Enhancements applied:")
        for suggestion in applied_suggestions:
            detail = suggestion.get("description") or suggestion.get("benefit") or ""
            lines.append(f"- {suggestion.get('title', '')}: {detail}".rstrip(": "))

    lines.append("Clean, centered composition. Professional studio lighting. Sharp focus. No shadows on background.")
    return "\n".join(lines)
