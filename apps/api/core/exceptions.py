"""
Custom exception classes and error handling.

Provides consistent error responses across the API.
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class ConfigurationError(RuntimeError):
    """A required secret or connection setting is missing."""


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class BadRequestError(APIException):
    """Malformed or incomplete request."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            error_code="BAD_REQUEST"
        )


class NotFoundError(APIException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND"
        )


class UnauthorizedError(APIException):
    """Authentication required."""

    def __init__(self, detail: str = "Authentication required"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            error_code="UNAUTHORIZED",
            headers={"WWW-Authenticate": "Bearer"}
        )


class ForbiddenError(APIException):
    """Access denied."""

    def __init__(self, detail: str = "Access denied"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail,
            error_code="FORBIDDEN"
        )


class PaymentRequiredError(APIException):
    """The link exists but nobody has paid for it."""

    def __init__(self, detail: str = "Payment required"):
        super().__init__(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=detail,
            error_code="PAYMENT_REQUIRED"
        )


class GoneError(APIException):
    """The link expired or was deleted. Terminal."""

    def __init__(self, detail: str = "Link expired"):
        super().__init__(
            status_code=status.HTTP_410_GONE,
            detail=detail,
            error_code="GONE"
        )


class ServiceUnavailableError(APIException):
    """A dependency is not configured or not reachable."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            error_code="SERVICE_UNAVAILABLE"
        )
