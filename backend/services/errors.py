"""
Accruals Hub - Error Taxonomy

Every failure that crosses a service boundary is raised as a HubError carrying
one of the codes below. The code decides whether the retry controller tries
again and how the HTTP layer reports it.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(str, Enum):
    """Error codes shared by all services."""
    INVALID_INPUT = "INVALID_INPUT"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    PROCESSING_FAILED = "PROCESSING_FAILED"
    API_LIMIT_EXCEEDED = "API_LIMIT_EXCEEDED"
    SYSTEM_ERROR = "SYSTEM_ERROR"
    DUPLICATE_TENANT = "DUPLICATE_TENANT"
    PERMISSION_DENIED = "PERMISSION_DENIED"


# Codes that will fail the same way on every attempt
NON_RETRYABLE_CODES = {
    ErrorCode.INVALID_INPUT,
    ErrorCode.FILE_NOT_FOUND,
    ErrorCode.DUPLICATE_TENANT,
    ErrorCode.PERMISSION_DENIED,
}

# HTTP status used by the routers for each code
HTTP_STATUS_BY_CODE = {
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.PERMISSION_DENIED: 403,
    ErrorCode.FILE_NOT_FOUND: 404,
    ErrorCode.DUPLICATE_TENANT: 409,
    ErrorCode.API_LIMIT_EXCEEDED: 429,
    ErrorCode.PROCESSING_FAILED: 500,
    ErrorCode.SYSTEM_ERROR: 503,
}


class HubError(Exception):
    """Error with a taxonomy code, message and optional details."""

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = ErrorCode(code)
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()

    @property
    def retryable(self) -> bool:
        return self.code not in NON_RETRYABLE_CODES

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_CODE.get(self.code, 500)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp,
        }

    def __repr__(self) -> str:
        return f"HubError({self.code.value}, {self.message!r})"


def as_hub_error(error: Exception, code: ErrorCode = ErrorCode.SYSTEM_ERROR) -> HubError:
    """Wrap an arbitrary exception, leaving HubErrors untouched."""
    if isinstance(error, HubError):
        return error
    return HubError(code, str(error) or error.__class__.__name__, {"type": error.__class__.__name__})
