from __future__ import annotations

import json
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..exceptions import AccessDeniedError, NotFoundError
from ..logger import logger
from ..models import ConfigurationStone, JewelryBaseModel, JewelryConfiguration
from .colors import material_color_description, stone_color_description


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BaseModelMetadata(_CamelModel):
    """
    Optional AI metadata attached to a catalog base model.

    Known keys are typed; anything else is kept as-is in the model extras.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    style: Optional[str] = None
    finish: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class SemanticStone(_CamelModel):
    stone_type_code: str
    stone_type_name: str
    color: Optional[str] = None
    color_description: Optional[str] = None
    carat_weight: Optional[float] = None
    size_mm: Optional[float] = None
    count: int = 1
    position_index: int = 0


class SemanticConfig(_CamelModel):
    configuration_id: str
    configuration_name: Optional[str] = None

    category_code: str
    category_name: str
    category_description: Optional[str] = None
    category_ai_description: Optional[str] = None

    base_model_id: str
    base_model_code: str
    base_model_name: str
    base_model_description: Optional[str] = None
    base_model_ai_description: Optional[str] = None
    base_model_metadata: Optional[BaseModelMetadata] = None

    material_code: str
    material_name: str
    metal_type: str
    karat: Optional[int] = None
    material_color_hex: Optional[str] = None
    material_color_description: Optional[str] = None
    material_description: Optional[str] = None

    engraving_text: Optional[str] = None

    stones: List[SemanticStone] = Field(default_factory=list)
    stones_description: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "SemanticConfig":
        return cls.model_validate(data)


def parse_base_model_metadata(raw: Optional[str], base_model_id: str = "") -> Optional[BaseModelMetadata]:
    """Parse the free-form metadata blob; anything unusable is treated as absent."""
    if not raw or not raw.strip():
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(
            f"Failed to parse metadata for base model {base_model_id}: {e}",
            extra={"base_model_id": base_model_id},
        )
        return None
    if not isinstance(data, dict):
        logger.warning(
            f"Base model {base_model_id} metadata is not a JSON object, ignoring",
            extra={"base_model_id": base_model_id},
        )
        return None
    try:
        return BaseModelMetadata.model_validate(data)
    except ValueError as e:
        logger.warning(f"Base model {base_model_id} metadata has unexpected shape: {e}")
        return None


def describe_material(material_name: Optional[str], metal_type: Optional[str], karat: Optional[int]) -> Optional[str]:
    if not material_name or not material_name.strip():
        return None

    text = f"Made from {material_name}"
    metal = (metal_type or "").strip().lower()
    if metal == "gold" and karat is not None:
        text += f", a precious metal with {karat}-karat purity"
    elif metal == "gold":
        text += ", a precious yellow metal"
    elif metal == "platinum":
        text += ", a rare and durable precious metal with a silvery-white appearance"
    elif metal == "silver":
        text += ", a lustrous white precious metal"
    elif metal == "titanium":
        text += ", a strong and lightweight metal with a dark gray finish"
    return text + "."


def describe_stones(stones: List[SemanticStone]) -> Optional[str]:
    """
    "Set with ..." sentence, one phrase per (code, name, colour) group,
    heaviest group first.
    """
    if not stones:
        return None

    groups: "OrderedDict[tuple, Dict[str, Any]]" = OrderedDict()
    for stone in stones:
        key = (stone.stone_type_code, stone.stone_type_name, stone.color)
        group = groups.setdefault(key, {"name": stone.stone_type_name, "color": stone.color, "count": 0, "carats": 0.0})
        group["count"] += stone.count
        group["carats"] += stone.carat_weight or 0.0

    ordered = sorted(groups.values(), key=lambda g: g["carats"], reverse=True)

    phrases: List[str] = []
    for group in ordered:
        phrase = f"{group['count']} " if group["count"] > 1 else "a "
        if group["color"] and group["color"].strip():
            phrase += f"{group['color'].lower()} "
        name = group["name"].lower()
        phrase += f"{name}s" if group["count"] > 1 else name
        if group["carats"] > 0:
            phrase += f" ({group['carats']:.2f} carats total)"
        phrases.append(phrase)

    if len(phrases) == 1:
        joined = phrases[0]
    elif len(phrases) == 2:
        joined = f"{phrases[0]} and {phrases[1]}"
    else:
        joined = ", ".join(phrases[:-1]) + f", and {phrases[-1]}"

    return f"Set with {joined}."


def _semantic_stone(stone: ConfigurationStone) -> SemanticStone:
    stone_type = stone.stone_type
    return SemanticStone(
        stone_type_code=stone_type.code,
        stone_type_name=stone_type.name,
        color=stone_type.color,
        color_description=stone_color_description(stone_type.color, stone_type.name),
        carat_weight=stone.carat_weight,
        size_mm=stone.size_mm,
        count=stone.count,
        position_index=stone.position_index,
    )


async def load_configuration(db: AsyncSession, configuration_id: str) -> Optional[JewelryConfiguration]:
    result = await db.execute(
        select(JewelryConfiguration)
        .where(JewelryConfiguration.id == configuration_id)
        .options(
            selectinload(JewelryConfiguration.base_model).selectinload(JewelryBaseModel.category),
            selectinload(JewelryConfiguration.material),
            selectinload(JewelryConfiguration.stones).selectinload(ConfigurationStone.stone_type),
        )
    )
    return result.scalar_one_or_none()


def ensure_configuration_access(configuration: JewelryConfiguration, user_id: Optional[str]) -> None:
    """Registered-user configurations are private; ownerless ones are open to any holder of the id."""
    if configuration.user_id is not None and configuration.user_id != user_id:
        logger.warning(
            f"Access denied to configuration {configuration.id}",
            extra={"configuration_id": configuration.id, "requester_user_id": user_id},
        )
        raise AccessDeniedError(f"Configuration {configuration.id} belongs to another user")


async def build_semantic_config(db: AsyncSession, configuration_id: str, user_id: Optional[str]) -> SemanticConfig:
    configuration = await load_configuration(db, configuration_id)
    if configuration is None:
        raise NotFoundError("Configuration", configuration_id)

    ensure_configuration_access(configuration, user_id)

    base_model = configuration.base_model
    material = configuration.material
    if base_model is None or base_model.category is None or material is None:
        raise NotFoundError("Configuration catalog data", configuration_id)

    category = base_model.category
    stones = sorted(
        (s for s in configuration.stones if s.stone_type is not None),
        key=lambda s: s.position_index,
    )
    semantic_stones = [_semantic_stone(s) for s in stones]

    config = SemanticConfig(
        configuration_id=configuration.id,
        configuration_name=configuration.name,
        category_code=category.code,
        category_name=category.name,
        category_description=category.description,
        category_ai_description=category.ai_category_description,
        base_model_id=base_model.id,
        base_model_code=base_model.code,
        base_model_name=base_model.name,
        base_model_description=base_model.description,
        base_model_ai_description=base_model.ai_description,
        base_model_metadata=parse_base_model_metadata(base_model.metadata_json, base_model.id),
        material_code=material.code,
        material_name=material.name,
        metal_type=material.metal_type,
        karat=material.karat,
        material_color_hex=material.color_hex,
        material_color_description=material_color_description(material.color_hex, material.metal_type),
        material_description=describe_material(material.name, material.metal_type, material.karat),
        engraving_text=configuration.engraving_text,
        stones=semantic_stones,
        stones_description=describe_stones(semantic_stones),
    )

    logger.info(
        f"Built semantic config for configuration {configuration_id}",
        extra={
            "configuration_id": configuration_id,
            "category": category.code,
            "material": material.code,
            "stones": len(semantic_stones),
            "has_metadata": config.base_model_metadata is not None,
        },
    )
    return config
