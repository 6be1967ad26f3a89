# backend/consultcore/core/exceptions.py
"""
Domain-specific exceptions for the booking lifecycle engine.

These exceptions carry business-focused messages and a stable ``code`` so the
API layer can convert them into problem+json responses.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when input is malformed (e.g. an OTP that is not six digits)."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class AccessDeniedException(DomainException):
    """Raised when the actor is not a party allowed to perform the action."""

    status_code = status.HTTP_403_FORBIDDEN


class UnauthorizedException(DomainException):
    """Raised when no actor identity accompanies the request."""

    status_code = status.HTTP_401_UNAUTHORIZED


class ConflictException(DomainException):
    """Raised when there's a conflict with concurrent work."""

    status_code = status.HTTP_409_CONFLICT


class StateConflictException(ConflictException):
    """Raised when a lifecycle guard rejects the booking's current status."""

    def __init__(
        self,
        message: str,
        *,
        current_status: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        merged = dict(details or {})
        if current_status is not None:
            merged["current_status"] = current_status
        super().__init__(message=message, code="STATE_CONFLICT", details=merged)
        self.current_status = current_status


class BookingBusyException(ConflictException):
    """Raised when another operation holds the per-booking lock."""

    def __init__(self, booking_id: str) -> None:
        super().__init__(
            message="Booking is being updated by another request, please retry",
            code="BOOKING_BUSY",
            details={"booking_id": booking_id},
        )


class TooManyAttemptsException(DomainException):
    """Raised when the rate limiter rejects an attempt."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, message: str, *, retry_after_seconds: int) -> None:
        super().__init__(
            message=message,
            code="TOO_MANY_ATTEMPTS",
            details={"retry_after_seconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds

    def to_http_exception(self) -> HTTPException:
        exc = super().to_http_exception()
        exc.headers = {"Retry-After": str(self.retry_after_seconds)}
        return exc


class GatewayException(DomainException):
    """Raised when a payment gateway call fails or returns unknown vocabulary."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        *,
        gateway: str,
        attempted_status: Optional[str] = None,
        transient: bool = False,
        upstream_status: Optional[int] = None,
    ) -> None:
        details: Dict[str, Any] = {"gateway": gateway}
        if attempted_status is not None:
            details["attempted_status"] = attempted_status
        if upstream_status is not None:
            details["upstream_status"] = upstream_status
        super().__init__(message=message, code="GATEWAY_ERROR", details=details)
        self.gateway = gateway
        self.attempted_status = attempted_status
        self.transient = transient
        self.upstream_status = upstream_status


class WebhookSignatureException(DomainException):
    """Raised when a gateway callback fails signature verification."""

    status_code = status.HTTP_400_BAD_REQUEST


class AlreadyProcessedException(DomainException):
    """Signals that an event was already applied; callers report success."""

    status_code = status.HTTP_200_OK


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    Used when data access operations fail, such as connection issues,
    query failures, or constraint violations.
    """
