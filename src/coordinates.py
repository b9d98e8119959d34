"""
Bounding box coordinate normalization and validation.

Boxes are expected in a resolution-independent 0-1000 space (origin top-left).
When a model ignores that and answers in raw pixels, the box is rescaled
per axis by the largest coordinate seen on that axis within the box itself.
That fallback has no access to the real image size, so it can produce
boxes that are inconsistent with their neighbours; such output is kept but
should be treated with suspicion by whoever reads it.
"""

import logging
import math
from typing import List

from aggregator import normalize_category
from models import ParsedBox, NormalizedBox

logger = logging.getLogger(__name__)

COORDINATE_MAX = 1000.0
MIN_BOX_EXTENT = 10.0


def _in_range(value: float) -> bool:
    return 0 <= value <= COORDINATE_MAX


def is_normalized(x_min: float, y_min: float, x_max: float, y_max: float) -> bool:
    """True when all four coordinates already lie in [0, 1000]."""
    return all(_in_range(value) for value in (x_min, y_min, x_max, y_max))


def is_valid_box(x_min: float, y_min: float, x_max: float, y_max: float) -> bool:
    """
    Geometric sanity of a normalized box.

    Valid iff 0 <= x_min < x_max <= 1000, 0 <= y_min < y_max <= 1000 and
    both extents are larger than 10 units.
    """
    if not is_normalized(x_min, y_min, x_max, y_max):
        return False
    if not (x_min < x_max and y_min < y_max):
        return False
    return (x_max - x_min) > MIN_BOX_EXTENT and (y_max - y_min) > MIN_BOX_EXTENT


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _rescale_axis(low: float, high: float) -> tuple:
    axis_max = max(low, high)
    if axis_max <= 0:
        # Nothing sensible to divide by; leave as-is and let validation reject it
        return low, high
    return (_round_half_up(low * COORDINATE_MAX / axis_max),
            _round_half_up(high * COORDINATE_MAX / axis_max))


def normalize_box(box: ParsedBox) -> NormalizedBox:
    """Bring a parsed box into 0-1000 space and decide whether it is valid."""
    x_min, y_min, x_max, y_max = box.x_min, box.y_min, box.x_max, box.y_max
    rescaled = False

    if not is_normalized(x_min, y_min, x_max, y_max):
        logger.warning(f"Coordinates [{x_min}, {y_min}, {x_max}, {y_max}] outside 0-1000, "
                       f"assuming raw pixel coordinates")
        x_min, x_max = _rescale_axis(x_min, x_max)
        y_min, y_max = _rescale_axis(y_min, y_max)
        rescaled = True
        logger.debug(f"Rescaled coordinates: [{x_min}, {y_min}, {x_max}, {y_max}]")

    return NormalizedBox(
        vehicle_type=box.vehicle_type,
        category=normalize_category(box.vehicle_type),
        x_min=x_min,
        y_min=y_min,
        x_max=x_max,
        y_max=y_max,
        confidence=box.confidence,
        is_valid=is_valid_box(x_min, y_min, x_max, y_max),
        rescaled=rescaled,
    )


def normalize_boxes(boxes: List[ParsedBox]) -> List[NormalizedBox]:
    normalized = [normalize_box(box) for box in boxes]
    invalid = sum(1 for box in normalized if not box.is_valid)
    if invalid:
        logger.info(f"{invalid} of {len(normalized)} boxes failed validation (kept, marked invalid)")
    return normalized
