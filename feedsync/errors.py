"""
Error taxonomy for the feed engine
"""

from typing import Any, Dict, Optional


class FeedError(Exception):
    """Base exception for feed engine errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class AuthRequired(FeedError):
    """Raised when a mutation is attempted without an acting user"""

    def __init__(self, operation: str = "perform this action"):
        super().__init__(
            message=f"Sign in required to {operation}",
            details={"operation": operation},
        )


class RemoteUnavailable(FeedError):
    """Raised when a fetch, write or subscribe against the backend fails"""

    def __init__(self, operation: str, reason: Optional[str] = None):
        message = f"Remote backend unavailable during {operation}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message=message, details={"operation": operation})


class ValidationFailed(FeedError):
    """Raised when input is rejected before any network call"""

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message=message, details=details)


class NotFound(FeedError):
    """Raised when a video or comment id is unknown to the cache"""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(
            message=f"{entity.title()} with ID {entity_id} not found",
            details={"entity": entity, "id": entity_id},
        )


def error_payload(error: FeedError) -> dict:
    """
    Build the JSON body returned for a FeedError

    Args:
        error: FeedError instance

    Returns:
        Dictionary with message, error type and details
    """
    response = {
        "message": error.message,
        "error_type": error.__class__.__name__,
    }
    if error.details:
        response["details"] = error.details
    return response
