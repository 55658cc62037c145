"""Error taxonomy for the merge pipeline."""

from enum import Enum
from typing import Optional


class ErrorCategory(Enum):
    """Categories of merge failures."""
    INPUT_ERROR = "input_error"
    PROBE_ERROR = "probe_error"
    TRANSCODE_ERROR = "transcode_error"
    DELIVERY_ERROR = "delivery_error"
    INTERNAL_ERROR = "internal_error"


class MergeError(Exception):
    """Base exception for merge failures"""
    category = ErrorCategory.INTERNAL_ERROR
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class InputError(MergeError):
    """One or both required uploads are absent or unusable."""
    category = ErrorCategory.INPUT_ERROR
    status_code = 400


class ProbeError(MergeError):
    """A supplied file is unreadable or not a recognized media container."""
    category = ErrorCategory.PROBE_ERROR


class TranscodeError(MergeError):
    """The external transcoder reported failure."""
    category = ErrorCategory.TRANSCODE_ERROR


class DeliveryError(MergeError):
    """Streaming the finished file to the caller failed."""
    category = ErrorCategory.DELIVERY_ERROR


class PlanValidationError(ValueError):
    """A filter graph plan breaks pad-label discipline."""
    pass
