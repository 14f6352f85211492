"""
Inbound turn request normalization
"""

import math
from typing import Any, List, Optional

from models.turn_models import HistoryEntry, TurnRequest
from utils.errors import ValidationError


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _coerce_round(value: Any) -> int:
    number = _as_number(value)
    if number is None:
        return 0
    return max(0, int(number))


def sanitize_history(raw: Any) -> List[HistoryEntry]:
    """Drop malformed entries silently; default label/text when they are not strings"""
    if not isinstance(raw, list):
        return []

    history = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        round_value = _as_number(entry.get("round"))
        if round_value is None:
            continue
        label = entry.get("label")
        text = entry.get("text")
        history.append(HistoryEntry(
            round=int(round_value),
            label=label if isinstance(label, str) else "?",
            text=text if isinstance(text, str) else "",
        ))
    return history


def validate_payload(body: Any) -> TurnRequest:
    if not isinstance(body, dict):
        raise ValidationError("请求体格式不正确。")

    book_title = body.get("bookTitle")
    if not isinstance(book_title, str) or not book_title.strip():
        raise ValidationError("bookTitle 字段不能为空。")

    choice = body.get("choice")
    protagonist = body.get("protagonistName")
    if isinstance(protagonist, str):
        protagonist = protagonist.strip() or None
    else:
        protagonist = None

    return TurnRequest(
        book_title=book_title.strip(),
        round=_coerce_round(body.get("round")),
        choice=choice if isinstance(choice, str) else None,
        history=sanitize_history(body.get("history")),
        protagonist_name=protagonist,
    )
