"""
Parse raw inference output into schema-validated bounding boxes.

The service is asked for a single JSON object:

    {"bounding_boxes": [{"vehicle_type": str, "x_min": num, "y_min": num,
                         "x_max": num, "y_max": num, "confidence_score": num}]}

Anything that does not match is rejected as a whole; nothing is coerced.
"""

import json
import logging
import math
import re
from typing import Any, List, Optional

from exceptions import MalformedResponse
from models import ParsedBox, ParseResult

logger = logging.getLogger(__name__)

CODE_FENCE = re.compile(r"```(?:json|JSON)?\s*|\s*```")

COORDINATE_FIELDS = ("x_min", "y_min", "x_max", "y_max")
# Accepted spellings, preferred first
TYPE_FIELDS = ("vehicle_type", "category")
CONFIDENCE_FIELDS = ("confidence_score", "confidence")

MAX_LOGGED_RESPONSE = 500


def strip_wrapping(raw_text: str) -> str:
    """Remove markdown code-fence markers and surrounding whitespace."""
    return CODE_FENCE.sub("", raw_text).strip()


def _is_number(value: Any) -> bool:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        # Integers too large for a float
        return False


def _first_present(entry: dict, names) -> Optional[str]:
    for name in names:
        if name in entry:
            return name
    return None


def _parse_entry(index: int, entry: Any) -> ParsedBox:
    if not isinstance(entry, dict):
        raise MalformedResponse(f"bounding_boxes[{index}] is not an object")

    type_field = _first_present(entry, TYPE_FIELDS)
    if type_field is None:
        raise MalformedResponse(f"bounding_boxes[{index}] is missing vehicle_type")
    vehicle_type = entry[type_field]
    if not isinstance(vehicle_type, str) or not vehicle_type.strip():
        raise MalformedResponse(f"bounding_boxes[{index}].{type_field} must be a non-empty string")

    coordinates = []
    for name in COORDINATE_FIELDS:
        if name not in entry:
            raise MalformedResponse(f"bounding_boxes[{index}] is missing {name}")
        if not _is_number(entry[name]):
            raise MalformedResponse(f"bounding_boxes[{index}].{name} must be a finite number")
        coordinates.append(entry[name])

    confidence_field = _first_present(entry, CONFIDENCE_FIELDS)
    if confidence_field is None:
        raise MalformedResponse(f"bounding_boxes[{index}] is missing confidence_score")
    confidence = entry[confidence_field]
    if not _is_number(confidence):
        raise MalformedResponse(
            f"bounding_boxes[{index}].{confidence_field} must be a finite number")

    x_min, y_min, x_max, y_max = coordinates
    return ParsedBox(
        vehicle_type=vehicle_type.strip(),
        x_min=x_min,
        y_min=y_min,
        x_max=x_max,
        y_max=y_max,
        confidence=confidence,
    )


def parse_boxes(raw_text: Optional[str]) -> List[ParsedBox]:
    """
    Parse raw inference output, raising MalformedResponse on any schema violation.
    """
    if raw_text is None or not raw_text.strip():
        raise MalformedResponse("Empty response")

    cleaned = strip_wrapping(raw_text)
    try:
        payload = json.loads(cleaned)
    except (ValueError, RecursionError) as e:
        # JSONDecodeError is a ValueError, as is exceeding the integer digit limit
        raise MalformedResponse(f"Response is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise MalformedResponse("Response is not a JSON object")
    boxes = payload.get("bounding_boxes")
    if not isinstance(boxes, list):
        raise MalformedResponse("Response missing or invalid bounding_boxes array")

    return [_parse_entry(index, entry) for index, entry in enumerate(boxes)]


def parse_response(raw_text: Optional[str]) -> ParseResult:
    """Parse raw inference output into a ParseResult; never raises."""
    try:
        boxes = parse_boxes(raw_text)
    except MalformedResponse as e:
        preview = (raw_text or "")[:MAX_LOGGED_RESPONSE]
        logger.error(f"Failed to parse inference response: {e}")
        logger.debug(f"Raw response: {preview}")
        return ParseResult(error_message=str(e))

    logger.info(f"Parsed inference response with {len(boxes)} bounding boxes")
    return ParseResult(boxes=boxes)
