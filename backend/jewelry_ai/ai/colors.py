"""
Hex colours and stone colour names to the phrases used in prompts.
"""
from __future__ import annotations

from typing import Dict, Optional


KNOWN_MATERIAL_COLORS: Dict[str, str] = {
    # gold
    "#FFD700": "bright yellow gold",
    "#D4AF37": "classic yellow gold",
    "#B8860B": "rich yellow gold",
    "#F5C563": "soft yellow gold",
    # rose gold
    "#B76E79": "warm rose pink",
    "#E8B4B8": "soft rose gold",
    "#D4A5A5": "blush rose gold",
    "#C9A0A0": "dusty rose gold",
    # white gold / platinum
    "#E5E4E2": "silvery white",
    "#C0C0C0": "bright silver",
    "#D3D3D3": "light silver",
    "#A9A9A9": "cool gray silver",
    "#E8E8E8": "bright platinum",
    # sterling silver
    "#C4CACE": "polished silver",
    "#AAA9AD": "sterling silver",
    # titanium
    "#878681": "dark titanium gray",
    "#54534D": "deep titanium",
}

KNOWN_STONE_COLORS: Dict[str, str] = {
    "clear": "brilliant clear",
    "white": "crystal clear",
    "colorless": "perfectly clear",
    "red": "vivid red",
    "deep red": "rich deep red",
    "dark red": "intense dark red",
    "blue": "bright blue",
    "deep blue": "rich sapphire blue",
    "light blue": "soft sky blue",
    "royal blue": "deep royal blue",
    "green": "vibrant green",
    "deep green": "lush deep green",
    "light green": "fresh light green",
    "purple": "deep purple",
    "violet": "rich violet",
    "lavender": "soft lavender",
    "pink": "delicate pink",
    "light pink": "soft blush pink",
    "hot pink": "vibrant pink",
    "yellow": "sunny yellow",
    "golden": "warm golden",
    "orange": "warm orange",
    "peach": "soft peach",
    "black": "deep black",
    "gray": "smoky gray",
    "grey": "smoky grey",
}

DEFAULT_METAL_COLORS: Dict[str, str] = {
    "gold": "classic gold",
    "platinum": "bright silvery white",
    "silver": "polished silver",
    "titanium": "dark gray",
}

DEFAULT_STONE_COLORS: Dict[str, str] = {
    "diamond": "brilliant clear",
    "ruby": "deep red",
    "sapphire": "rich blue",
    "emerald": "vibrant green",
    "amethyst": "deep purple",
    "topaz": "golden amber",
    "aquamarine": "soft sea blue",
    "pearl": "lustrous white",
    "opal": "iridescent multicolor",
    "garnet": "deep burgundy red",
}

_KNOWN_MATERIAL_COLORS_UPPER = {k.upper(): v for k, v in KNOWN_MATERIAL_COLORS.items()}


def default_metal_color(metal_type: Optional[str]) -> str:
    return DEFAULT_METAL_COLORS.get((metal_type or "").lower(), "metallic")


def default_stone_color(stone_type: Optional[str]) -> str:
    return DEFAULT_STONE_COLORS.get((stone_type or "").lower(), "gemstone")


def material_color_description(hex_color: Optional[str], metal_type: Optional[str]) -> str:
    """Describe a material colour, falling back to hex analysis for unknown codes."""
    if not hex_color or not hex_color.strip():
        return default_metal_color(metal_type)

    known = _KNOWN_MATERIAL_COLORS_UPPER.get(hex_color.strip().upper())
    if known:
        return known

    return _analyze_hex_color(hex_color.strip(), metal_type)


def stone_color_description(color: Optional[str], stone_type: Optional[str]) -> str:
    if not color or not color.strip():
        return default_stone_color(stone_type)

    known = KNOWN_STONE_COLORS.get(color.strip().lower())
    if known:
        return known

    return color.strip().lower()


def _analyze_hex_color(hex_color: str, metal_type: Optional[str]) -> str:
    value = hex_color.lstrip("#")
    if len(value) != 6:
        return default_metal_color(metal_type)
    try:
        r = int(value[0:2], 16)
        g = int(value[2:4], 16)
        b = int(value[4:6], 16)
    except ValueError:
        return default_metal_color(metal_type)

    avg = (r + g + b) // 3
    is_light = avg > 180
    is_medium = 100 < avg <= 180

    if r > g and r > b and abs(r - b) < 80:
        return "soft rose gold" if is_light else "warm rose pink"

    if r > 180 and g > 150 and b < 150:
        return "bright yellow gold" if is_light else "rich yellow gold"

    if abs(r - g) < 30 and abs(g - b) < 30 and abs(r - b) < 30:
        if is_light:
            return "bright silvery white"
        if is_medium:
            return "cool silver gray"
        return "dark metallic"

    return default_metal_color(metal_type)
