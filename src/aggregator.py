"""
Detection aggregation: fold free-text vehicle types into a fixed taxonomy
and derive per-image counts and a confidence score from bounding boxes.
"""

import logging
from typing import List, Sequence

from models import AggregationResult, NormalizedBox, empty_category_counts

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "other_vehicles"

# Checked in order, first match wins (case-insensitive substring match)
CATEGORY_KEYWORDS = (
    ("cars", ("car", "sedan", "suv", "hatchback", "coupe", "minivan")),
    ("trucks", ("truck", "pickup", "lorry", "semi", "tractor")),
    ("other_vehicles", ("motorcycle", "bike", "scooter")),
    ("buses", ("bus", "coach")),
    ("other_vehicles", ("rv", "recreational", "camper", "motorhome")),
    ("emergency_vehicles", ("emergency", "police", "ambulance", "fire engine")),
    ("construction_vehicles", ("construction", "excavator", "bulldozer", "crane", "loader")),
)


def normalize_category(vehicle_type: str) -> str:
    """Map a model-reported vehicle type onto the fixed taxonomy."""
    normalized = (vehicle_type or "").strip().lower()
    if not normalized:
        return DEFAULT_CATEGORY
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in normalized for keyword in keywords):
            return category
    return DEFAULT_CATEGORY


def _is_usable_confidence(value) -> bool:
    return (isinstance(value, (int, float)) and not isinstance(value, bool)
            and 0.0 <= value <= 1.0)


def average_confidence(boxes: Sequence[NormalizedBox]) -> float:
    """Mean confidence over valid boxes with a numeric confidence in [0, 1]; 0.0 if none."""
    confidences = [box.confidence for box in boxes
                   if box.is_valid and _is_usable_confidence(box.confidence)]
    if not confidences:
        return 0.0
    return sum(confidences) / len(confidences)


def aggregate(boxes: List[NormalizedBox]) -> AggregationResult:
    """
    Summarize one image's boxes.

    total_boxes counts every shape the model reported, valid or not.
    Category counts and the confidence score only use valid boxes, so a
    geometrically broken box never inflates a vehicle count.
    """
    counts = empty_category_counts()
    valid_boxes = 0
    for box in boxes:
        if not box.is_valid:
            continue
        valid_boxes += 1
        counts[box.category] += 1

    result = AggregationResult(
        total_boxes=len(boxes),
        valid_boxes=valid_boxes,
        counts_by_category=counts,
        confidence_score=average_confidence(boxes),
    )
    logger.debug(f"Aggregated {result.total_boxes} boxes ({valid_boxes} valid): "
                 f"{counts}, confidence {result.confidence_score:.3f}")
    return result
