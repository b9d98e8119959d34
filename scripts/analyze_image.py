#!/usr/bin/env python3
"""
Run a single image through the vehicle analysis steps without touching the
queue: inference, response parsing, coordinate validation and aggregation.

Usage:
    python scripts/analyze_image.py <image_path>
    python scripts/analyze_image.py path/to/snapshot.jpg --annotate
    python scripts/analyze_image.py path/to/snapshot.jpg --response saved_response.json
"""

import argparse
import sys
from pathlib import Path
from datetime import datetime

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from config import Config
from aggregator import aggregate
from coordinates import normalize_boxes
from response_parser import parse_response
from vehicle_detector import VehicleDetector, MockVehicleDetector
from utils import DetectionVisualizer, PerformanceTimer


def analyze(image_path: Path, annotate: bool, response_file: Path = None) -> int:
    """Analyze one image and print every intermediate result."""

    if not image_path.exists():
        print(f"Error: Image file not found: {image_path}")
        return 1

    print(f"\n{'='*60}")
    print(f"Vehicle Analysis Test")
    print(f"{'='*60}")
    print(f"Image: {image_path}")
    print(f"Time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"{'='*60}\n")

    if response_file:
        # Replay a saved response instead of calling the service
        config = Config(require_api_key=False)
        detector = MockVehicleDetector(config, responses=[response_file.read_text()])
        print(f"✓ Replaying response from {response_file}")
    else:
        config = Config()
        detector = VehicleDetector(config)
        print(f"✓ Configuration loaded")
        print(f"  - Model: {config.inference.model_name}")
        print(f"  - Timeout: {config.inference.request_timeout}s")

    print(f"\n{'─'*60}")
    print(f"Running inference...")
    print(f"{'─'*60}")
    with PerformanceTimer("Inference") as timer:
        result = detector.infer(image_path.read_bytes())
    print(f"Inference time: {timer.duration:.2f}s")

    if not result.success:
        print(f"✗ Inference failed ({result.error_kind.value}): {result.error_message}")
        print(f"  Retryable: {result.error_kind.is_retryable}")
        return 1

    print(f"Raw response:\n{result.raw_text}")

    parsed = parse_response(result.raw_text)
    if not parsed.success:
        print(f"\n✗ Malformed response: {parsed.error_message}")
        return 1

    boxes = normalize_boxes(parsed.boxes)
    aggregation = aggregate(boxes)

    print(f"\n{'─'*60}")
    print(f"Bounding boxes")
    print(f"{'─'*60}")
    for i, box in enumerate(boxes, 1):
        status = "valid" if box.is_valid else "INVALID"
        rescaled = " (rescaled)" if box.rescaled else ""
        print(f"{i}. {box.vehicle_type} -> {box.category}: "
              f"[{box.x_min}, {box.y_min}, {box.x_max}, {box.y_max}] "
              f"conf {box.confidence:.2f} {status}{rescaled}")

    print(f"\n{'='*60}")
    print(f"Summary:")
    print(f"  - Total boxes: {aggregation.total_boxes} ({aggregation.valid_boxes} valid)")
    for category, count in aggregation.counts_by_category.items():
        if count:
            print(f"  - {category}: {count}")
    print(f"  - Confidence: {aggregation.confidence_score:.2%}")
    print(f"{'='*60}\n")

    if annotate:
        annotated_path = DetectionVisualizer.create_annotated_image(image_path, boxes)
        if annotated_path:
            print(f"✓ Annotated image saved to {annotated_path}")
        else:
            print(f"✗ Could not create annotated image")

    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Run one image through vehicle detection",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/analyze_image.py data/images/cam1/snapshot_20250104_120000.jpg
  python scripts/analyze_image.py snapshot.jpg --annotate
        """
    )
    parser.add_argument("image_path", type=Path, help="Path to the image file to analyze")
    parser.add_argument("--annotate", action="store_true",
                        help="Write an annotated copy with the detected boxes")
    parser.add_argument("--response", type=Path, default=None,
                        help="Use a saved raw model response instead of calling the API")

    args = parser.parse_args()
    sys.exit(analyze(args.image_path, args.annotate, args.response))


if __name__ == "__main__":
    main()
