"""
Shared error handling for the Facility Access Layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AccessLayerException(Exception):
    """Base exception for Access Layer services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(AccessLayerException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class NotFoundError(AccessLayerException):
    """Requested entity does not exist within the caller's tenant."""

    status_code = 404

    def __init__(self, entity: str, entity_id: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", f"{entity} not found", {"id": entity_id, **(details or {})})


class DoorUnavailableError(AccessLayerException):
    """Door exists but is in maintenance or error state."""

    status_code = 409

    def __init__(self, message: str = "Door is not available", details: Optional[Dict[str, Any]] = None):
        super().__init__("DOOR_UNAVAILABLE", message, details)


class CollaboratorError(AccessLayerException):
    """A data store or other external collaborator failed or timed out."""

    status_code = 503

    def __init__(self, collaborator: str, message: str = "Collaborator failure", details: Optional[Dict[str, Any]] = None):
        super().__init__("COLLABORATOR_FAILURE", f"{collaborator}: {message}", details)
