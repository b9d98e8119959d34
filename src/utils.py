"""
Utility classes for the traffic analysis pipeline.

This module contains:
- PerformanceTimer: Timing utility for performance measurement
- chunked: Split a sequence into fixed-size chunks
- DetectionVisualizer: Draw stored bounding boxes onto a snapshot for diagnosis
"""

import logging
import time
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, TypeVar

import cv2
import numpy as np

from coordinates import COORDINATE_MAX

logger = logging.getLogger(__name__)

T = TypeVar('T')

VALID_COLOR = (0, 255, 0)
INVALID_COLOR = (0, 0, 255)


class PerformanceTimer:
    """Performance timing utility."""

    def __init__(self, operation_name="Operation"):
        self.operation_name = operation_name
        self.start_time = None
        self.end_time = None

    def start(self):
        """Start timing."""
        self.start_time = time.time()
        return self

    def stop(self):
        """Stop timing and return duration."""
        if self.start_time is None:
            return 0.0

        self.end_time = time.time()
        duration = self.end_time - self.start_time
        return duration

    @property
    def duration(self) -> float:
        if self.start_time is None or self.end_time is None:
            return 0.0
        return self.end_time - self.start_time

    def __enter__(self):
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        duration = self.stop()
        if duration > 1.0:  # Log slow operations
            logger.info(f"{self.operation_name} took {duration:.2f}s")


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive chunks of at most `size` items."""
    if size < 1:
        raise ValueError(f"Chunk size must be at least 1, got {size}")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


class DetectionVisualizer:
    """Draw bounding boxes onto snapshots so rejected model output can be inspected."""

    @staticmethod
    def to_pixels(box, img_width: int, img_height: int) -> tuple:
        """Convert a box from 0-1000 space to clipped pixel corners."""
        xs = np.clip(np.array([box.x_min, box.x_max], dtype=float) / COORDINATE_MAX * img_width,
                     0, img_width - 1)
        ys = np.clip(np.array([box.y_min, box.y_max], dtype=float) / COORDINATE_MAX * img_height,
                     0, img_height - 1)
        return (int(xs[0]), int(ys[0])), (int(xs[1]), int(ys[1]))

    @staticmethod
    def create_annotated_image(image_path: Path, boxes, output_path: Optional[Path] = None) -> Optional[Path]:
        """
        Create annotated version of a snapshot showing detected vehicles.

        Args:
            image_path: Path to the snapshot image
            boxes: BoundingBox or NormalizedBox objects in 0-1000 space
            output_path: Where to write the result (defaults to <stem>_annotated<suffix>)

        Returns:
            Path to the annotated image file
        """
        image_path = Path(image_path)
        try:
            img = cv2.imread(str(image_path))
            if img is None:
                logger.error(f"Could not load image: {image_path}")
                return None

            img_height, img_width = img.shape[:2]
            font = cv2.FONT_HERSHEY_SIMPLEX
            valid_count = 0

            for box in boxes:
                color = VALID_COLOR if box.is_valid else INVALID_COLOR
                valid_count += 1 if box.is_valid else 0
                top_left, bottom_right = DetectionVisualizer.to_pixels(box, img_width, img_height)
                cv2.rectangle(img, top_left, bottom_right, color, 2)

                label = f"{box.vehicle_type} {box.confidence:.2f}"
                label_y = top_left[1] - 5 if top_left[1] > 20 else bottom_right[1] + 15
                cv2.putText(img, label, (top_left[0], label_y), font, 0.5, color, 1)

            # Summary with background for readability
            summary = f"Boxes: {len(boxes)} ({valid_count} valid)"
            text_size = cv2.getTextSize(summary, font, 0.7, 2)[0]
            cv2.rectangle(img, (5, 5), (text_size[0] + 15, 40), (0, 0, 0), -1)
            cv2.putText(img, summary, (10, 30), font, 0.7, (255, 255, 255), 2)

            # Add legend
            legend_y = img_height - 45
            cv2.rectangle(img, (5, legend_y - 20), (200, img_height - 5), (0, 0, 0), -1)
            cv2.putText(img, "Green: valid box", (10, legend_y), font, 0.5, VALID_COLOR, 1)
            cv2.putText(img, "Red: invalid box", (10, legend_y + 25), font, 0.5, INVALID_COLOR, 1)

            annotated_path = (Path(output_path) if output_path
                              else image_path.parent / f"{image_path.stem}_annotated{image_path.suffix}")
            cv2.imwrite(str(annotated_path), img)

            logger.info(f"Created annotated image: {annotated_path}")
            return annotated_path

        except Exception as e:
            logger.error(f"Error creating annotated image: {e}", exc_info=True)
            return None
