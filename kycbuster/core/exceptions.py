"""
KYC workflow exceptions

Every error raised by the verification core carries a human readable
message, a stable error code and an optional details dictionary so the
HTTP layer and clients can react without string matching.
"""

from typing import Dict, Any


class KYCError(Exception):
    """Base exception for verification workflow errors"""

    retryable: bool = True

    def __init__(self, message: str, error_code: str = None,
                 details: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "KYC_ERROR"
        self.details = details or {}


# Validation ----------------------------------------------------------------

class ValidationError(KYCError):
    """Required session data is missing or invalid"""

    def __init__(self, message: str, error_code: str = None, **kwargs):
        super().__init__(message, error_code=error_code or "VALIDATION_ERROR", **kwargs)


class WorkflowStateError(ValidationError):
    """Raised when an action is not allowed in the current stage"""

    def __init__(self, action: str, stage: str, reason: str = None, **kwargs):
        message = f"Action '{action}' is not allowed in stage '{stage}'"
        if reason:
            message += f": {reason}"
        super().__init__(message, error_code="INVALID_STAGE_TRANSITION", **kwargs)
        self.action = action
        self.stage = stage


class AnalysisInProgressError(ValidationError):
    """Raised when a stage already has an outstanding analysis call"""

    def __init__(self, stage: str, **kwargs):
        super().__init__(
            f"An analysis for stage '{stage}' is already in progress",
            error_code="ANALYSIS_IN_PROGRESS", **kwargs
        )
        self.stage = stage


class VideoTooLargeError(ValidationError):
    """Raised when an uploaded video exceeds the size limit"""

    def __init__(self, size: int, limit: int, **kwargs):
        limit_mb = limit // (1024 * 1024)
        super().__init__(
            f"Video file is too large. Please upload a video under {limit_mb}MB.",
            error_code="VIDEO_TOO_LARGE", **kwargs
        )
        self.size = size
        self.limit = limit


# Analysis gateway ----------------------------------------------------------

class GatewayError(KYCError):
    """Base exception for analysis capability failures"""

    def __init__(self, message: str, error_code: str = None, **kwargs):
        super().__init__(message, error_code=error_code or "GATEWAY_ERROR", **kwargs)


class GatewayUnconfiguredError(GatewayError):
    """No usable credential for the analysis capability"""

    retryable = False

    def __init__(self, message: str = "Analysis service API key is not configured", **kwargs):
        super().__init__(message, error_code="GATEWAY_UNCONFIGURED", **kwargs)


class RateLimitedError(GatewayError):
    """The analysis capability rejected the call because of quota"""

    def __init__(self, message: str = "API rate limit exceeded. Please wait a moment and try again.",
                 **kwargs):
        super().__init__(message, error_code="GATEWAY_RATE_LIMITED", **kwargs)


class InvalidResponseError(GatewayError):
    """The analysis response could not be parsed into the expected verdict"""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="GATEWAY_INVALID_RESPONSE", **kwargs)


class TransportError(GatewayError):
    """Network level failure talking to the analysis capability"""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="GATEWAY_TRANSPORT_ERROR", **kwargs)


# Persistence ---------------------------------------------------------------

class PersistenceError(KYCError):
    """Record store read or write failure"""

    def __init__(self, message: str, error_code: str = None, **kwargs):
        super().__init__(message, error_code=error_code or "PERSISTENCE_ERROR", **kwargs)


class RecordNotSavedError(PersistenceError):
    """A final decision exists but the verification record could not be written"""

    def __init__(self, message: str = "The verification result could not be saved", **kwargs):
        super().__init__(message, error_code="RECORD_NOT_SAVED", **kwargs)


class ImmutableRecordError(PersistenceError):
    """Raised on any attempt to modify or delete a persisted record"""

    retryable = False

    def __init__(self, table: str, **kwargs):
        super().__init__(
            f"Records in '{table}' are append-only",
            error_code="IMMUTABLE_RECORD", **kwargs
        )
        self.table = table


# Devices -------------------------------------------------------------------

class ResourceError(KYCError):
    """Camera or microphone unavailable or revoked"""

    def __init__(self, message: str, error_code: str = None, **kwargs):
        super().__init__(message, error_code=error_code or "RESOURCE_ERROR", **kwargs)


class CaptureCancelledError(ResourceError):
    """A capture sequence or recording was aborted before completion"""

    def __init__(self, message: str = "Capture was cancelled", **kwargs):
        super().__init__(message, error_code="CAPTURE_CANCELLED", **kwargs)
