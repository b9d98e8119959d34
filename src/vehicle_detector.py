"""
Vehicle detection using Google Gemini.

The detector sends one image plus a fixed prompt and returns the raw text of
the answer. It never raises for expected failures: every outcome comes back
as an InferenceResult whose ErrorKind tells the scheduler whether a retry
makes sense.
"""

import threading
import time
import logging
from collections import Counter
from typing import Dict, Optional, Sequence, Union

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from google.generativeai.types import HarmBlockThreshold, HarmCategory

from config import Config
from exceptions import (
    InferenceError, ImageFileNotFound, MalformedResponse, RateLimited, TransportError
)
from models import ErrorKind, InferenceResult

logger = logging.getLogger(__name__)

VEHICLE_DETECTION_PROMPT = """Analyze this highway traffic camera image and detect ALL vehicles with their bounding boxes.

CRITICAL: You MUST return ONLY a JSON response in this EXACT format - no other text, no explanations, no additional fields:

{
  "bounding_boxes": [
    {
      "vehicle_type": "<type>",
      "x_min": <0-1000>,
      "y_min": <0-1000>,
      "x_max": <0-1000>,
      "y_max": <0-1000>,
      "confidence_score": <0.0-1.0>
    }
  ]
}

Focus on motor vehicles on the road only. Do not count pedestrians, bicycles, or stationary objects. Be accurate and conservative in your counts.

IMPORTANT: The bounding box coordinates MUST be normalized to the 0-1000 range where:
- x_min, y_min, x_max, y_max are all values between 0 and 1000
- (0,0) is the top-left corner of the image
- (1000,1000) is the bottom-right corner of the image

If there are no vehicles, return {"bounding_boxes": []}.
Do NOT return raw pixel coordinates or coordinates outside the 0-1000 range."""

SAFETY_CATEGORIES = (
    HarmCategory.HARM_CATEGORY_HARASSMENT,
    HarmCategory.HARM_CATEGORY_HATE_SPEECH,
    HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
    HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
)

RATE_LIMIT_EXCEPTIONS = (
    google_exceptions.TooManyRequests,
    google_exceptions.ResourceExhausted,
)
TRANSPORT_EXCEPTIONS = (
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.InternalServerError,
    google_exceptions.GatewayTimeout,
    TimeoutError,
    ConnectionError,
)

RATE_LIMIT_MARKERS = ("rate limit", "quota exceeded", "resource exhausted", "too many requests")
TRANSPORT_MARKERS = ("timeout", "timed out", "network", "temporary", "connection reset",
                     "unavailable")

ERROR_KIND_EXCEPTIONS = {
    ErrorKind.TRANSPORT: TransportError,
    ErrorKind.RATE_LIMITED: RateLimited,
    ErrorKind.MALFORMED_RESPONSE: MalformedResponse,
    ErrorKind.FILE_NOT_FOUND: ImageFileNotFound,
    ErrorKind.SERVICE_ERROR: InferenceError,
}


def classify_exception(exc: BaseException) -> ErrorKind:
    """Map an exception raised while calling the service to an ErrorKind."""
    if isinstance(exc, InferenceError):
        return exc.kind
    if isinstance(exc, RATE_LIMIT_EXCEPTIONS) or getattr(exc, 'code', None) == 429:
        return ErrorKind.RATE_LIMITED
    if isinstance(exc, TRANSPORT_EXCEPTIONS):
        return ErrorKind.TRANSPORT

    message = str(exc).lower()
    if '429' in message or any(marker in message for marker in RATE_LIMIT_MARKERS):
        return ErrorKind.RATE_LIMITED
    if any(marker in message for marker in TRANSPORT_MARKERS):
        return ErrorKind.TRANSPORT
    return ErrorKind.SERVICE_ERROR


def guess_mime_type(image_bytes: bytes) -> str:
    if image_bytes.startswith(b'\x89PNG'):
        return 'image/png'
    if image_bytes[:4] == b'RIFF' and image_bytes[8:12] == b'WEBP':
        return 'image/webp'
    return 'image/jpeg'


class VehicleDetector:
    """
    Inference client for the Gemini vision API.
    The model is configured on first use so construction never touches the network.
    """

    def __init__(self, config: Config):
        self.config = config
        self._model = None  # Lazy-loaded
        self._model_loaded = False
        self._stats_lock = threading.Lock()
        self.request_count = 0
        self.success_count = 0
        self.errors_by_kind: Counter = Counter()
        self.last_error: Optional[str] = None
        logger.info(f"VehicleDetector initialized for {config.inference.model_name} "
                    f"(model will load on first use)")

    def _safety_settings(self) -> Dict:
        threshold = HarmBlockThreshold[self.config.inference.safety_threshold]
        return {category: threshold for category in SAFETY_CATEGORIES}

    def _ensure_model_loaded(self):
        """Configure the client and build the model on first use."""
        if self._model_loaded:
            return

        try:
            genai.configure(api_key=self.config.inference.api_key)
            self._model = genai.GenerativeModel(
                model_name=self.config.inference.model_name,
                safety_settings=self._safety_settings(),
            )
            self._model_loaded = True
            logger.info(f"Gemini model ready: {self.config.inference.model_name} "
                        f"(safety threshold {self.config.inference.safety_threshold})")
        except Exception as e:
            logger.error(f"Failed to initialize Gemini model: {e}")
            raise InferenceError(f"Model initialization failed: {e}") from e

    def _generate(self, image_bytes: bytes) -> str:
        """Call the model and return its text. Raises on any failure."""
        self._ensure_model_loaded()
        image_part = {'mime_type': guess_mime_type(image_bytes), 'data': image_bytes}
        response = self._model.generate_content(
            [VEHICLE_DETECTION_PROMPT, image_part],
            request_options={'timeout': self.config.inference.request_timeout},
        )
        try:
            text = response.text
        except ValueError as e:
            # Raised by the SDK when the candidate was blocked or is empty
            feedback = getattr(response, 'prompt_feedback', None)
            raise MalformedResponse(f"Response has no text (feedback: {feedback}): {e}") from e
        if not text or not text.strip():
            raise MalformedResponse("Response text is empty")
        return text

    def infer(self, image_bytes: Optional[bytes]) -> InferenceResult:
        """
        Run vehicle detection on one image.

        Args:
            image_bytes: Encoded image (JPEG, PNG or WebP)

        Returns:
            InferenceResult with the raw response text, or the error kind and message
        """
        start_time = time.time()
        with self._stats_lock:
            self.request_count += 1

        if not image_bytes:
            return self._create_error_response(
                start_time, ErrorKind.FILE_NOT_FOUND, "Image payload is empty"
            )

        try:
            raw_text = self._generate(image_bytes)
        except Exception as e:
            kind = classify_exception(e)
            return self._create_error_response(start_time, kind, str(e) or type(e).__name__)

        processing_time = time.time() - start_time
        with self._stats_lock:
            self.success_count += 1
        logger.info(f"Inference succeeded in {processing_time:.2f}s "
                    f"({len(raw_text)} characters)")
        return InferenceResult(
            success=True,
            raw_text=raw_text,
            processing_time=processing_time,
        )

    def _create_error_response(self, start_time, kind: ErrorKind, message: str) -> InferenceResult:
        """Create standardized error response."""
        with self._stats_lock:
            self.errors_by_kind[kind.value] += 1
            self.last_error = message
        log = logger.warning if kind.is_retryable else logger.error
        log(f"Inference failed ({kind.value}): {message}")
        return InferenceResult(
            success=False,
            error_kind=kind,
            error_message=message,
            processing_time=time.time() - start_time,
        )

    def health_check(self):
        """Check if the Gemini client can be configured."""
        try:
            self._ensure_model_loaded()
            return {
                'available': True,
                'service': 'Gemini',
                'model': self.config.inference.model_name,
                'supported_formats': ['jpg', 'jpeg', 'png', 'webp'],
            }
        except Exception as e:
            return {
                'available': False,
                'error': str(e)
            }

    def get_statistics(self):
        """Get statistics for the inference client."""
        with self._stats_lock:
            failures = sum(self.errors_by_kind.values())
            return {
                'model_loaded': self._model_loaded,
                'model': self.config.inference.model_name,
                'requests': self.request_count,
                'successes': self.success_count,
                'failures': failures,
                'errors_by_kind': dict(self.errors_by_kind),
                'last_error': self.last_error,
            }


ScriptedResponse = Union[str, ErrorKind, Exception]


class MockVehicleDetector(VehicleDetector):
    """
    Scripted detector for tests and offline runs.

    `responses` is either a sequence replayed in call order, or a dict that
    maps an image payload to its own sequence. Each item is raw response
    text, an ErrorKind to fail with, or an exception to raise from the
    model call. When a sequence runs out, `default_response` is returned.
    """

    EMPTY_RESPONSE = '{"bounding_boxes": []}'

    def __init__(self, config: Config,
                 responses: Union[Sequence[ScriptedResponse], Dict[bytes, Sequence[ScriptedResponse]], None] = None,
                 default_response: ScriptedResponse = EMPTY_RESPONSE):
        super().__init__(config)
        if isinstance(responses, dict):
            self._scripts = {key: list(value) for key, value in responses.items()}
            self._shared_script = None
        else:
            self._scripts = {}
            self._shared_script = list(responses or [])
        self.default_response = default_response
        self.call_count = 0
        self.payloads = []
        logger.info("MockVehicleDetector initialized (for testing)")

    def _ensure_model_loaded(self):
        """Mock model loading - does nothing."""
        if not self._model_loaded:
            logger.info("Mock model 'loaded'")
            self._model_loaded = True

    def _next_response(self, image_bytes: bytes) -> ScriptedResponse:
        with self._stats_lock:
            self.call_count += 1
            self.payloads.append(image_bytes)
            script = self._scripts.get(image_bytes, self._shared_script)
            if script:
                return script.pop(0)
            return self.default_response

    def _generate(self, image_bytes: bytes) -> str:
        self._ensure_model_loaded()
        response = self._next_response(image_bytes)
        if isinstance(response, ErrorKind):
            raise ERROR_KIND_EXCEPTIONS[response](f"Mock {response.value} failure")
        if isinstance(response, Exception):
            raise response
        return response
