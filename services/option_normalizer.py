"""
Coerces raw model choices into exactly three labeled options (or none at game over)
"""

import re
from typing import Any, List, Optional

from models.turn_models import StoryOption

LABELS = ("A", "B", "C")
DIGIT_LABELS = {"1": "A", "2": "B", "3": "C"}

FALLBACK_OPTIONS = (
    "先观察周围，寻找线索。",
    "与附近的人交谈，试探信息。",
    "沿着直觉前进，看看会遇到什么。",
)

_LETTER = re.compile(r"[ABC]")
_DIGIT = re.compile(r"[123]")


def normalize_option_label(label: str, index: int) -> str:
    normalized = label.strip().upper()
    letter = _LETTER.search(normalized)
    if letter:
        return letter.group(0)
    digit = _DIGIT.search(normalized)
    if digit:
        return DIGIT_LABELS[digit.group(0)]
    return LABELS[index] if index < len(LABELS) else "A"


def fallback_options() -> List[StoryOption]:
    return [StoryOption(label=label, text=text) for label, text in zip(LABELS, FALLBACK_OPTIONS)]


def _extract(item: Any, index: int) -> Optional[StoryOption]:
    if isinstance(item, str):
        text = item.strip()
        label = LABELS[index] if index < len(LABELS) else "A"
    elif isinstance(item, dict):
        raw_text = item.get("text", item.get("content"))
        if not isinstance(raw_text, str):
            return None
        text = raw_text.strip()
        raw_label = item.get("label")
        label = normalize_option_label(raw_label if isinstance(raw_label, str) else "", index)
    else:
        return None

    if not text:
        return None
    return StoryOption(label=label, text=text)


def normalize_options(raw: Any, is_game_over: bool) -> List[StoryOption]:
    if is_game_over:
        return []

    items = raw if isinstance(raw, list) else []
    survivors = []
    for index, item in enumerate(items):
        option = _extract(item, index)
        if option is not None:
            survivors.append(option)
        if len(survivors) == len(LABELS):
            break

    if len(survivors) < len(LABELS):
        return fallback_options()

    # positional relabel keeps labels unique and ordered
    return [StoryOption(label=label, text=option.text) for label, option in zip(LABELS, survivors)]
