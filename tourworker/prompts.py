"""
Preset Library — Camera direction per room type for walkthrough clips.
The classifier tags each room; we inject the matching camera guidance.
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)

MAX_PROMPT_CHARS = 2500
MAX_INPUT_IMAGES = 4

LAYOUT_FIDELITY = (
    "Pay special attention to the dimensions and layout of the space and stick "
    "exactly to which features are in the input images."
)

ROOM_PRESETS = {
    "exterior-front": {
        "label": "Front exterior",
        "prompt": "Slow push-in toward the front entrance, keeping the full facade and roofline in frame.",
    },
    "exterior-backyard": {
        "label": "Backyard",
        "prompt": "Gentle lateral glide across the yard at eye level, revealing the outdoor living areas.",
    },
    "living-room": {
        "label": "Living room",
        "prompt": "Wide establishing glide across the seating area toward the windows, natural daylight.",
    },
    "kitchen": {
        "label": "Kitchen",
        "prompt": "Steady dolly along the counters and island, highlighting cabinetry and appliances.",
    },
    "dining-room": {
        "label": "Dining room",
        "prompt": "Slow orbit around the dining table, keeping the light fixture centered.",
    },
    "bedroom": {
        "label": "Bedroom",
        "prompt": "Calm push-in from the doorway toward the bed, soft and inviting light.",
    },
    "bathroom": {
        "label": "Bathroom",
        "prompt": "Tight, slow pan across the vanity and fixtures without distorting the room size.",
    },
    "garage": {
        "label": "Garage",
        "prompt": "Straight pull-back from the rear wall to show the full depth of the garage.",
    },
    "office": {
        "label": "Office",
        "prompt": "Slow pan from the desk toward the window, quiet and focused mood.",
    },
    "laundry-room": {
        "label": "Laundry room",
        "prompt": "Short steady pan across the appliances and storage.",
    },
    "basement": {
        "label": "Basement",
        "prompt": "Wide slow glide through the open space, even exposure in darker corners.",
    },
    "other": {
        "label": "Room",
        "prompt": "",
    },
}

ROOM_TYPES = list(ROOM_PRESETS.keys())


def get_preset(room_type: Optional[str]) -> dict:
    """Preset for a room type; unknown types fall back to 'other'."""
    return ROOM_PRESETS.get((room_type or "").lower(), ROOM_PRESETS["other"])


def select_best_images(image_urls: list[str], max_count: int = MAX_INPUT_IMAGES) -> list[str]:
    """
    Pick the images sent to the provider. Input order is the user's
    preference order, so keep the first `max_count` distinct URLs.
    """
    selected: list[str] = []
    for url in image_urls:
        if url and url not in selected:
            selected.append(url)
        if len(selected) == max_count:
            break
    return selected


def build_room_prompt(
    room_name: str,
    room_type: Optional[str] = None,
    directions: str = "",
    scene_descriptions: Optional[list[str]] = None,
) -> str:
    """
    Camera instruction for one room clip:
    base pan → room preset → scene descriptions (or layout fidelity) → user directions.
    """
    preset = get_preset(room_type)
    subject = (room_name or preset["label"]).strip().lower()

    parts = [f"Smooth camera pan through {subject}. Camera should move very slowly through the space."]
    if preset["prompt"]:
        parts.append(preset["prompt"])
    scenes = [d.strip() for d in scene_descriptions or [] if d and d.strip()]
    if scenes:
        parts.append(" ".join(scenes))
    else:
        parts.append(LAYOUT_FIDELITY)
    if directions and directions.strip():
        parts.append(directions.strip())

    prompt = " ".join(parts)
    if len(prompt) > MAX_PROMPT_CHARS:
        logger.warning(f"Prompt exceeded {MAX_PROMPT_CHARS} chars ({len(prompt)}), truncating")
        prompt = prompt[: MAX_PROMPT_CHARS - 3] + "..."
    return prompt
