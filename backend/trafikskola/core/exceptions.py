# backend/trafikskola/core/exceptions.py
"""
Domain-specific exceptions for the booking backend.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.
Booking rejections additionally carry a machine-checkable reason code
and the remediation flags clients use (conflict, userExists, ...).
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

from .enums import RejectionReason


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

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.to_payload())


class ValidationException(DomainException):
    """Raised when business validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class UnauthorizedException(DomainException):
    """Raised when user is not authenticated."""

    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenException(DomainException):
    """Raised when user lacks permission for an action."""

    status_code = status.HTTP_403_FORBIDDEN


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_payload(self) -> Dict[str, Any]:
        return {
            "error": self.message or "An error occurred processing your request",
            "code": self.code,
        }


# Booking rejections


class BookingRejection(ValidationException):
    """
    A booking request refused for a business reason.

    The reason code is stable and meant for programmatic handling; ``flags``
    are merged into the top level of the error payload.
    """

    reason: RejectionReason = RejectionReason.MISSING_FIELDS

    def __init__(
        self,
        message: str,
        *,
        reason: Optional[RejectionReason] = None,
        flags: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        if reason is not None:
            self.reason = reason
        self.flags = flags or {}
        super().__init__(message=message, code=self.reason.value, details=details)

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload.update(self.flags)
        return payload


class MissingFieldsError(BookingRejection):
    reason = RejectionReason.MISSING_FIELDS

    def __init__(self, missing: list[str], message: Optional[str] = None) -> None:
        super().__init__(
            message or "Missing required fields",
            details={"missing": missing},
        )


class SlotConflictError(BookingRejection):
    """Raised when a booking overlaps an active booking for the same slot."""

    reason = RejectionReason.CONFLICT

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(
            message or "This time slot is no longer available. Please choose another time.",
            flags={"conflict": True},
        )


class DateBlockedError(BookingRejection):
    reason = RejectionReason.DATE_BLOCKED


class CapacityExceededError(BookingRejection):
    reason = RejectionReason.CAPACITY_EXCEEDED

    def __init__(self, message: str = "This session is fully booked") -> None:
        super().__init__(message)


class SessionSelectionRequiredError(BookingRejection):
    reason = RejectionReason.SESSION_SELECTION_REQUIRED

    def __init__(self) -> None:
        super().__init__(
            "Please select a specific session date",
            flags={"requireSessionSelection": True},
        )


class GuestEmailExistsError(BookingRejection):
    """The guest email belongs to an existing account; the client may offer login."""

    reason = RejectionReason.EMAIL_EXISTS

    def __init__(self, email: str) -> None:
        super().__init__(
            "An account with this email already exists. Please log in or use another email.",
            flags={"userExists": True, "existingEmail": email},
        )


class InsufficientCreditsError(BookingRejection):
    reason = RejectionReason.INSUFFICIENT_CREDITS

    def __init__(self, message: str = "You have no credits left for this lesson type") -> None:
        super().__init__(message)


class LoginRequiredError(BookingRejection):
    reason = RejectionReason.UNAUTHORIZED
    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str = "Please log in to continue") -> None:
        super().__init__(message)


class BookingNotAvailableError(BookingRejection):
    reason = RejectionReason.NOT_AVAILABLE

    def __init__(self, message: str = "Booking is no longer available") -> None:
        super().__init__(message)


class BookingNotFoundError(NotFoundException):
    def __init__(self, booking_id: str) -> None:
        super().__init__(
            message="Booking not found",
            code=RejectionReason.NOT_FOUND.value,
            details={"booking_id": booking_id},
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    Used when data access operations fail, such as database connection
    issues, query failures, or constraint violations.
    """
