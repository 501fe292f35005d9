"""Custom exception hierarchy for the device gateway.

Every error carries a machine-readable ``code`` so callers can branch on it
instead of parsing message text.
"""
from typing import Any, Optional


class GatewayError(Exception):
    """Base error."""
    def __init__(self, message: str, code: str = "GATEWAY_ERROR", details: Optional[Any] = None):
        self.message = message
        self.code = code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class SessionLimitError(GatewayError):
    """Credential already holds the maximum number of sessions."""
    def __init__(self, limit: int):
        super().__init__(
            f"Maximum {limit} sessions allowed per API key",
            code="MAX_SESSIONS_EXCEEDED",
            details={"limit": limit},
        )


class ValidationError(GatewayError):
    """Malformed send-operation input."""
    def __init__(self, message: str = "Invalid data object"):
        super().__init__(message, code="VALIDATION_ERROR")


class NoActiveDeviceError(GatewayError):
    """No eligible session for the credential."""
    def __init__(self, message: str = "No active WhatsApp device connected for this API key", details: Optional[Any] = None):
        super().__init__(message, code="NO_ACTIVE_DEVICE", details=details)


class RequestTimeoutError(GatewayError):
    """Device never acknowledged the command in time."""
    def __init__(self, request_id: str, timeout_s: float):
        self.request_id = request_id
        super().__init__(
            f"Request timed out after {timeout_s:g} seconds",
            code="REQUEST_TIMEOUT",
            details={"request_id": request_id},
        )


class ConnectionLostError(GatewayError):
    """Transport closed before the command could complete."""
    def __init__(self, message: str = "WebSocket connection lost"):
        super().__init__(message, code="CONNECTION_LOST")


class GatewayShutdownError(GatewayError):
    """Gateway stopped while the command was outstanding."""
    def __init__(self, message: str = "Gateway is shutting down"):
        super().__init__(message, code="GATEWAY_SHUTDOWN")


class MediaFetchError(GatewayError):
    """Remote media could not be fetched."""
    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message, code="FETCH_ERROR", details=details)


class MediaTooLargeError(GatewayError):
    """Remote media exceeds the configured size cap."""
    def __init__(self, max_bytes: int, details: Optional[Any] = None):
        super().__init__(
            f"File exceeds maximum size of {max_bytes / 1024 / 1024:g}MB",
            code="FILE_TOO_LARGE",
            details=details,
        )
