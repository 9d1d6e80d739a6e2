"""Regeneration style presets and prompt variation."""
import random
from typing import Optional

from pydantic import BaseModel

from toonstudio.models.generation import ProviderMode


class StyleOption(BaseModel):
    """A regeneration preset offered to artists."""

    id: str
    name: str
    prompt: str
    default_count: int = 1
    allow_multiple: bool = False
    provider: ProviderMode = ProviderMode.auto


STYLE_OPTIONS: list[StyleOption] = [
    StyleOption(
        id="berserk",
        name="Monster detail",
        prompt="Redraw this image in Berserk manga style with dense lines",
        default_count=2,
        allow_multiple=True,
    ),
    StyleOption(
        id="grayscale",
        name="Remove color",
        prompt="Remove the color from this image and convert it to grayscale",
        provider=ProviderMode.seedream,
    ),
    StyleOption(
        id="remove-background",
        name="Remove background",
        prompt="Remove the background from this image and make it transparent",
        provider=ProviderMode.seedream,
    ),
    StyleOption(
        id="shading",
        name="Dramatic shading",
        prompt=(
            "Preserve the original line art completely, keep all original lines intact, "
            "add dramatic shading and chiaroscuro lighting only, high contrast shadows and "
            "highlights, heavy black ink shading, deep shadows, monochromatic screentones, "
            "maintain original linework structure, professional seinen manga style, "
            "dark fantasy aesthetic, inspired by Kentaro Miura"
        ),
        default_count=2,
        allow_multiple=True,
    ),
    StyleOption(
        id="manga-shading",
        name="Manga shading",
        prompt=(
            "Add high-quality Japanese manga-style shading and black-and-white coloring to "
            "this sketch. Include detailed shadows cast by hair onto the face, such as "
            "shadows from bangs on the forehead, shadows from hair strands on the cheeks "
            "and temples, and shadows from hair falling onto the shoulders and neck."
        ),
        default_count=2,
        allow_multiple=True,
    ),
    StyleOption(
        id="line-art-only",
        name="Line art only",
        prompt=(
            "Remove all colors, shading, shadows, highlights, and tones from this image. "
            "Extract only the clean line art. Keep only the pure black lines on white "
            "background."
        ),
        provider=ProviderMode.seedream,
    ),
]

BERSERK_VARIATIONS: dict[str, list[str]] = {
    "lighting": [
        "extreme chiaroscuro",
        "dramatic lighting",
        "high contrast",
        "deep shadows",
        "intense highlights",
    ],
    "detail": [
        "highly detailed",
        "intricate details",
        "fine linework",
        "meticulous rendering",
        "precise linework",
    ],
    "hatching": [
        "cross-hatching",
        "dense cross-hatching",
        "fine hatching",
        "hatching techniques",
        "intricate hatching",
    ],
    "linework": [
        "tight linework",
        "precise lines",
        "intricate linework",
        "fine lines",
    ],
    "tone": [
        "dark tones",
        "moody atmosphere",
        "gritty texture",
        "atmospheric depth",
    ],
}

SHADING_VARIATIONS: dict[str, list[str]] = {
    "shading": [
        "extreme chiaroscuro",
        "dramatic chiaroscuro",
        "intense chiaroscuro",
        "heavy chiaroscuro",
        "strong chiaroscuro",
    ],
    "shadows": [
        "deep shadows",
        "intense shadows",
        "dramatic shadows",
        "heavy shadows",
        "profound shadows",
    ],
    "highlights": [
        "intense highlights",
        "dramatic highlights",
        "sharp highlights",
        "bright highlights",
        "stark highlights",
    ],
    "contrast": [
        "extreme contrast",
        "high contrast",
        "maximum contrast",
        "stark contrast",
        "dramatic contrast",
    ],
    "screentones": [
        "monochromatic screentones",
        "dense screentones",
        "intricate screentones",
        "fine screentones",
        "detailed screentones",
    ],
    "ink": [
        "heavy black ink",
        "dense black ink",
        "thick black ink",
        "rich black ink",
        "intense black ink",
    ],
}

VARIATIONS_BY_STYLE: dict[str, dict[str, list[str]]] = {
    "berserk": BERSERK_VARIATIONS,
    "shading": SHADING_VARIATIONS,
}


def find_style(style_id: Optional[str]) -> Optional[StyleOption]:
    """Return the preset with the given id, or None."""
    if not style_id:
        return None
    return next((opt for opt in STYLE_OPTIONS if opt.id == style_id), None)


def style_id_for_prompt(prompt: str) -> Optional[str]:
    """Look up the preset whose prompt is exactly `prompt`."""
    return next((opt.id for opt in STYLE_OPTIONS if opt.prompt == prompt), None)


def generate_varied_prompt(
    base_prompt: str,
    style_id: Optional[str],
    rng: Optional[random.Random] = None,
) -> str:
    """Append 2-3 style keywords, at most one per category, to `base_prompt`.

    Styles without a variation table return the prompt unchanged, so several
    units of the same request still differ when the style supports it.

    Args:
        base_prompt: Prompt entered by the user or taken from a preset.
        style_id: Preset id selecting the keyword table.
        rng: Random source (tests pass a seeded instance).

    Returns:
        The varied prompt.
    """
    table = VARIATIONS_BY_STYLE.get(style_id or "")
    if not table:
        return base_prompt

    rng = rng or random.Random()
    wanted = rng.randint(2, 3)
    categories = list(table)
    rng.shuffle(categories)

    selected: list[str] = []
    for category in categories:
        if len(selected) >= wanted:
            break
        keyword = rng.choice(table[category])
        if keyword not in selected:
            selected.append(keyword)

    if not selected:
        return base_prompt
    return f"{base_prompt}, {', '.join(selected)}"
