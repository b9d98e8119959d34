"""
Consolidated exception hierarchy for the vehicle analysis pipeline.

This module provides a unified exception hierarchy that allows for:
- Hierarchical exception catching (e.g., catch all DatabaseError)
- A clear split between queue infrastructure failures, which abort a
  scheduler pass, and per-image inference failures, which never do
- An ErrorKind attached to every inference failure so retry decisions
  are made on data rather than on exception types
"""

from models import ErrorKind


# =============================================================================
# Base Exception
# =============================================================================

class VehicleSystemError(Exception):
    """Base exception for all vehicle analysis errors."""
    pass


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(VehicleSystemError):
    """Raised when the configuration is missing or inconsistent."""
    pass


# =============================================================================
# Storage Errors
# =============================================================================

class DatabaseError(VehicleSystemError):
    """Base exception for database errors."""
    pass


class DatabaseConnectionError(DatabaseError):
    """Raised when database connection or initialization fails."""
    pass


class DatabaseOperationError(DatabaseError):
    """Raised when database operations fail."""
    pass


# =============================================================================
# Queue Errors
# =============================================================================

class QueueError(VehicleSystemError):
    """Base exception for job queue requests that cannot be honoured."""
    pass


class DetectionNotFoundError(QueueError):
    """Raised when a detection record does not exist."""
    pass


class InvalidStateTransition(QueueError):
    """Raised when a detection record is not in a state that allows the request."""
    pass


# =============================================================================
# Processing Errors
# =============================================================================

class ProcessingError(VehicleSystemError):
    """Base exception for processing-related errors."""
    pass


class InferenceError(ProcessingError):
    """Base exception for per-image analysis failures."""
    kind = ErrorKind.SERVICE_ERROR


class TransportError(InferenceError):
    """Network failure or timeout talking to the inference service."""
    kind = ErrorKind.TRANSPORT


class RateLimited(InferenceError):
    """The inference service asked us to slow down (rate limit or quota)."""
    kind = ErrorKind.RATE_LIMITED


class MalformedResponse(InferenceError):
    """The inference service answered, but not with the expected schema."""
    kind = ErrorKind.MALFORMED_RESPONSE


class ImageFileNotFound(InferenceError):
    """The snapshot image is missing on disk."""
    kind = ErrorKind.FILE_NOT_FOUND
