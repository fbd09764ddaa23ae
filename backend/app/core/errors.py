"""Application error taxonomy

Each error carries the HTTP status and machine-readable code it is rendered
with by the exception handler registered in ``app.main``.
"""
from typing import Any, Optional


class AppError(Exception):
    """Base class for errors that map onto a stable JSON response"""
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"


class AuthenticationError(AppError):
    status_code = 401
    code = "AUTHENTICATION_ERROR"

    def __init__(self, message: str = "Unauthorized", code: Optional[str] = None, details: Any = None):
        super().__init__(message, code, details)


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, message: str = "Resource not found", code: Optional[str] = None, details: Any = None):
        super().__init__(message, code, details)


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"


class AmountMismatchError(AppError):
    """Gateway amount differs from the configured plan price"""
    status_code = 422
    code = "AMOUNT_MISMATCH"


class ConfigurationError(AppError):
    """Server-side misconfiguration (pricing, gateway credentials, keys)"""
    status_code = 500
    code = "CONFIGURATION_ERROR"
