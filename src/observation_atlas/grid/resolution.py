"""Zoom level -> grid resolution.

Nine resolutions, coarsest to finest. The selector is a step function of
zoom: a larger zoom never yields a coarser grid.
"""

from __future__ import annotations

import math
import re
from enum import Enum
from typing import Any


class Resolution(Enum):
    """Grid cell edge length in degrees."""

    EXTREMELY_LARGE = 0.5
    VERY_LARGE = 0.3
    LARGE = 0.2
    MEDIUM_LARGE = 0.1
    MEDIUM = 0.05
    MEDIUM_SMALL = 0.035
    SMALL = 0.02
    VERY_SMALL = 0.01
    TINY = 0.005

    @property
    def degrees(self) -> float:
        return float(self.value)


MIN_ZOOM = 0.0
MAX_ZOOM = 20.0

# (minimum zoom, resolution), checked top to bottom
ZOOM_THRESHOLDS: tuple[tuple[float, Resolution], ...] = (
    (14, Resolution.TINY),
    (12, Resolution.VERY_SMALL),
    (10, Resolution.SMALL),
    (9, Resolution.MEDIUM_SMALL),
    (8, Resolution.MEDIUM),
    (7, Resolution.MEDIUM_LARGE),
    (6, Resolution.LARGE),
    (5, Resolution.VERY_LARGE),
)


def clamp_zoom(zoom: Any) -> float:
    """Coerce ``zoom`` to a float in ``[0, 20]``; anything unparseable is 0."""
    try:
        value = float(zoom)
    except (TypeError, ValueError):
        return MIN_ZOOM
    if math.isnan(value):
        return MIN_ZOOM
    return max(MIN_ZOOM, min(MAX_ZOOM, value))


def resolution_for(zoom: Any) -> Resolution:
    """Return the grid resolution to use at ``zoom``.

    Total: non-numeric input (None, NaN, garbage strings) is treated as zoom 0.

    >>> resolution_for(14)
    <Resolution.TINY: 0.005>
    >>> resolution_for("nope")
    <Resolution.EXTREMELY_LARGE: 0.5>
    """
    z = clamp_zoom(zoom)
    for threshold, resolution in ZOOM_THRESHOLDS:
        if z >= threshold:
            return resolution
    return Resolution.EXTREMELY_LARGE


def resolution_from_name(name: str | None) -> Resolution:
    """Look up a resolution by name; unknown names fall back to ``LARGE``.

    Accepts ``very_small``, ``VERY_SMALL`` and ``verySmall``.
    """
    if not name:
        return Resolution.LARGE
    key = re.sub(r"(?<=[a-z])(?=[A-Z])", "_", name.strip()).upper()
    try:
        return Resolution[key]
    except KeyError:
        return Resolution.LARGE
