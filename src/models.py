"""
Consolidated data models for the vehicle analysis pipeline.

This module contains all dataclasses and enums used across the system for:
- Snapshots and detection records persisted in the database
- Bounding boxes as parsed, normalized and stored
- Inference, parsing, aggregation and scheduling results
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any


# =============================================================================
# Enums
# =============================================================================

class DetectionStatus(str, Enum):
    """Lifecycle of a detection record."""
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ErrorKind(str, Enum):
    """Classification of a per-image failure."""
    TRANSPORT = "transport"
    RATE_LIMITED = "rate_limited"
    MALFORMED_RESPONSE = "malformed_response"
    FILE_NOT_FOUND = "file_not_found"
    SERVICE_ERROR = "service_error"

    @property
    def is_retryable(self) -> bool:
        return self in (ErrorKind.TRANSPORT, ErrorKind.RATE_LIMITED)


# Fixed vehicle taxonomy, in the column order used by the detections table
VEHICLE_CATEGORIES = (
    "cars",
    "trucks",
    "buses",
    "emergency_vehicles",
    "construction_vehicles",
    "other_vehicles",
)


def empty_category_counts() -> Dict[str, int]:
    return {category: 0 for category in VEHICLE_CATEGORIES}


# =============================================================================
# Snapshot Models
# =============================================================================

@dataclass
class Snapshot:
    """One captured image from a source at a point in time."""
    id: Optional[int]
    source_id: str
    file_path: str
    content_hash: str
    previous_hash: Optional[str] = None
    changed: bool = True
    captured_at: Optional[datetime] = None


# =============================================================================
# Bounding Box Models
# =============================================================================

@dataclass
class ParsedBox:
    """A bounding box exactly as reported by the inference service."""
    vehicle_type: str
    x_min: float
    y_min: float
    x_max: float
    y_max: float
    confidence: float


@dataclass
class NormalizedBox:
    """A bounding box in 0-1000 space with its validity verdict."""
    vehicle_type: str
    category: str
    x_min: float
    y_min: float
    x_max: float
    y_max: float
    confidence: float
    is_valid: bool
    rescaled: bool = False

    @property
    def coordinates(self) -> List[float]:
        return [self.x_min, self.y_min, self.x_max, self.y_max]


@dataclass
class BoundingBox:
    """A bounding box row stored for a detection record."""
    id: Optional[int]
    detection_id: int
    snapshot_id: int
    category: str
    vehicle_type: str
    x_min: float
    y_min: float
    x_max: float
    y_max: float
    confidence: float
    is_valid: bool
    created_at: Optional[datetime] = None


# =============================================================================
# Detection Record Models
# =============================================================================

@dataclass
class DetectionRecord:
    """The per-snapshot analysis job and its outcome."""
    id: Optional[int]
    snapshot_id: int
    source_id: str
    status: DetectionStatus = DetectionStatus.PENDING
    total_boxes: int = 0
    counts_by_category: Dict[str, int] = field(default_factory=empty_category_counts)
    confidence_score: float = 0.0
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    error_kind: Optional[ErrorKind] = None
    last_error: Optional[str] = None
    claimed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class AnalysisJob:
    """A detection record claimed by the scheduler for one processing run."""
    detection_id: int
    snapshot_id: int
    source_id: str
    file_path: str
    claim_token: str
    retry_count: int = 0
    created_at: Optional[datetime] = None


# =============================================================================
# Pipeline Results
# =============================================================================

@dataclass
class InferenceResult:
    """Raw output of one inference call, or why there is none."""
    success: bool
    raw_text: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    processing_time: float = 0.0


@dataclass
class ParseResult:
    """Schema-validated boxes parsed from raw inference output, or the reason parsing failed."""
    boxes: List[ParsedBox] = field(default_factory=list)
    error_message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error_message is None

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return None if self.success else ErrorKind.MALFORMED_RESPONSE


@dataclass
class AggregationResult:
    """Per-category counts and confidence derived from one image's boxes."""
    total_boxes: int
    valid_boxes: int
    counts_by_category: Dict[str, int]
    confidence_score: float


@dataclass
class AnalysisOutcome:
    """Final outcome of processing one claimed job."""
    detection_id: int
    snapshot_id: int
    success: bool
    attempts: int = 1
    total_boxes: int = 0
    valid_boxes: int = 0
    confidence_score: float = 0.0
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    processing_time: float = 0.0
    stale: bool = False


@dataclass
class PassSummary:
    """What one scheduler pass did."""
    claimed: int = 0
    completed: int = 0
    failed: int = 0
    retries: int = 0
    batches: int = 0
    reclaimed: int = 0
    stale: int = 0
    skipped: bool = False
    reason: Optional[str] = None
    outcomes: List[AnalysisOutcome] = field(default_factory=list)


@dataclass
class QueueStatus:
    """Number of detection records in each state."""
    pending: int = 0
    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            'pending_images': self.pending,
            'queued_images': self.queued,
            'processing_images': self.processing,
            'completed_images': self.completed,
            'failed_images': self.failed,
        }


@dataclass
class DetectionStats:
    """Aggregate figures for dashboards."""
    total: int = 0
    completed: int = 0
    failed: int = 0
    queued: int = 0
    processing: int = 0
    avg_confidence: float = 0.0
    total_detected: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'completed': self.completed,
            'failed': self.failed,
            'queued': self.queued,
            'processing': self.processing,
            'avg_confidence': self.avg_confidence,
            'total_detected': self.total_detected,
        }
