"""
Standardized API Response Module

Provides consistent response formatting across all appointment endpoints.

RESPONSE FORMAT:
    Success:
        {
            "data": <response data>,
            "status": "success"
        }

    Error:
        {
            "error": {
                "code": "ERROR_CODE",
                "message": "Human-readable message",
                "details": {...}  # Optional extra context
            },
            "status": "error"
        }
"""

from typing import Any, Optional


# ============================================================================
# COMMON ERROR CODES
# ============================================================================

class ErrorCodes:
    """Machine-readable error kinds surfaced to callers."""

    # 401 / 403
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    POLICY_VIOLATION = "POLICY_VIOLATION"

    # 404
    NOT_FOUND = "NOT_FOUND"

    # 422
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # 409
    CONFLICT = "CONFLICT"
    STATE_CONFLICT = "STATE_CONFLICT"

    # 5xx
    TIMEOUT = "TIMEOUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def success_response(data: Any) -> dict:
    """Create a standardized success response dict."""
    return {"data": data, "status": "success"}


def error_response(
    code: str,
    message: str,
    details: Optional[Any] = None,
) -> dict:
    """Create a standardized error response dict."""
    response = {
        "error": {
            "code": code,
            "message": message,
        },
        "status": "error",
    }
    if details:
        response["error"]["details"] = details
    return response
