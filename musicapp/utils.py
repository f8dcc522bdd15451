"""Utility helpers for the data layer."""
from __future__ import annotations

import math
from collections import Counter
from typing import Any, Hashable, Iterable, Optional, Sequence

from . import config


def normalize_name(name: Optional[str]) -> str:
    return (name or "").strip().casefold()


def normalize_tags(tags: Optional[Iterable[Any]]) -> list:
    return [normalize_name(str(tag)) for tag in tags or [] if str(tag).strip()]


def round_minutes(minutes: float, precision: int = config.MINUTES_PRECISION) -> float:
    """Round half up, so 0.125 becomes 0.13 rather than banker's 0.12."""

    factor = 10 ** precision
    return math.floor(minutes * factor + 0.5) / factor


def song_image_url(img_id: Any) -> str:
    return config.SONG_IMAGE_TEMPLATE.format(img_id=img_id)


def dominant(values: Sequence[Hashable]) -> Optional[Hashable]:
    """Most frequent value; ties go to the value seen first."""

    if not values:
        return None
    counts = Counter(values)
    best = max(counts.values())
    for value in values:
        if counts[value] == best:
            return value
    return None


def safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
