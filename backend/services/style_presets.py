"""
Virtual staging style presets and prompt construction.
"""
from __future__ import annotations

from typing import Any, Optional

STYLE_PRESETS: dict[str, dict[str, str]] = {
    "minimal": {
        "name": "Minimal",
        "description": "Clean, uncluttered spaces with neutral colors and simple furniture",
        "prompt": (
            "Stage this room with minimal, clean furniture and decor. Use neutral colors like "
            "white, beige, and light gray. Keep furniture simple and uncluttered. Focus on "
            "functionality and open space. Add only essential pieces that enhance the room's "
            "natural light and spaciousness."
        ),
    },
    "scandinavian": {
        "name": "Scandinavian",
        "description": "Light woods, cozy textures, and functional design",
        "prompt": (
            "Stage this room in Scandinavian style with light wood furniture, cozy textiles, and "
            "functional design. Use a palette of whites, light grays, and natural wood tones. Add "
            "hygge elements like soft throws, simple lighting, and plants. Keep the design clean "
            "but warm and inviting."
        ),
    },
    "bohemian": {
        "name": "Bohemian",
        "description": "Eclectic mix of patterns, textures, and warm colors",
        "prompt": (
            "Stage this room in bohemian style with an eclectic mix of patterns, textures, and "
            "warm colors. Include vintage or antique-looking furniture, colorful textiles, plants, "
            "and artistic elements. Use rich colors like deep blues, warm oranges, and earthy "
            "tones. Create a cozy, lived-in feeling."
        ),
    },
    "modern": {
        "name": "Modern",
        "description": "Contemporary furniture with clean lines and bold accents",
        "prompt": (
            "Stage this room with modern, contemporary furniture featuring clean lines and "
            "geometric shapes. Use a sophisticated color palette with bold accent pieces. Include "
            "sleek furniture, modern art, and statement lighting. Balance neutral tones with pops "
            "of color through accessories."
        ),
    },
    "traditional": {
        "name": "Traditional",
        "description": "Classic furniture with timeless appeal and rich materials",
        "prompt": (
            "Stage this room with traditional, classic furniture and timeless design elements. "
            "Use rich materials like wood and leather, elegant fabrics, and classic patterns. "
            "Include traditional furniture pieces, warm lighting, and sophisticated accessories. "
            "Create a refined, established atmosphere."
        ),
    },
}

VALID_STYLE_PRESETS: frozenset[str] = frozenset(STYLE_PRESETS)


def is_valid_style_preset(style_preset: str) -> bool:
    return style_preset in VALID_STYLE_PRESETS


def get_style_presets() -> list[dict[str, Any]]:
    """Public listing of presets (no prompts)."""
    return [
        {"id": key, "name": config["name"], "description": config["description"]}
        for key, config in STYLE_PRESETS.items()
    ]


def build_staging_prompt(style_preset: str, room_type: str, custom_prompt: Optional[str] = None) -> str:
    """Build the generation prompt for one room."""
    style = STYLE_PRESETS[style_preset]
    style_name = style["name"].lower()
    room_label = room_type.replace("_", " ")
    additional = f"ADDITIONAL REQUIREMENTS: {custom_prompt}\n\n" if custom_prompt else ""
    return (
        f"Transform this empty {room_label} into a beautifully staged space using {style_name} style.\n\n"
        "STAGING REQUIREMENTS:\n"
        "- Preserve all architectural elements (walls, windows, doors, floors, ceilings)\n"
        f"- Add appropriate furniture and decor for a {room_label}\n"
        f"- Use {style_name} design principles\n"
        "- Maintain the exact room layout and camera perspective\n"
        "- Ensure realistic lighting and shadows\n"
        "- Create a professional real estate staging look\n\n"
        "STYLE DETAILS:\n"
        f"{style['prompt']}\n\n"
        f"{additional}"
        "Generate a high-quality, professionally staged version of this room that would appeal "
        "to potential buyers or renters."
    )
