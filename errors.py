"""
Exceptions raised by the portal core.

The API layer turns these into JSON error responses; nothing in the core
catches them itself.
"""

from typing import Any, Dict, Optional


class PortalError(Exception):
    """Base exception for all portal errors"""

    status_code = 400

    def __init__(
        self,
        message: str,
        code: str = "PORTAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class AuthenticationError(PortalError):
    """Wrong credentials or unmatched student identity"""

    status_code = 401

    def __init__(self, message: str = "Invalid credentials"):
        super().__init__(message, code="AUTH_FAILED")


class AuthorizationError(PortalError):
    status_code = 403

    def __init__(self, message: str = "Forbidden for role"):
        super().__init__(message, code="FORBIDDEN")


class IncompleteInputError(PortalError):
    """Operation rejected because required input is missing"""

    status_code = 422

    def __init__(self, message: str, missing: int = 0):
        super().__init__(message, code="INCOMPLETE_INPUT", details={"missing": missing})
        self.missing = missing


class ConfirmationRequiredError(PortalError):
    """Notifying action needs explicit operator confirmation"""

    status_code = 409

    def __init__(self, absent_count: int):
        message = (
            f"You are about to mark {absent_count} students as ABSENT. "
            "This will automatically send SMS alerts to their parents. Proceed?"
        )
        super().__init__(message, code="CONFIRMATION_REQUIRED", details={"absent": absent_count})
        self.absent_count = absent_count


class MissingConfigurationError(PortalError):
    status_code = 404

    def __init__(self, message: str):
        super().__init__(message, code="MISSING_CONFIGURATION")


class NotFoundError(PortalError):
    status_code = 404

    def __init__(self, resource: str, resource_id: str = ""):
        message = f"{resource} not found" if not resource_id else f"{resource} '{resource_id}' not found"
        super().__init__(message, code="NOT_FOUND", details={"resource": resource, "id": resource_id})


class ValidationError(PortalError):
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, code="VALIDATION_ERROR", details={"field": field} if field else {})
