# backend/portal/core/exceptions.py
"""
Domain-specific exceptions for the nutrition portal.

Each class carries its HTTP status; ``portal.errors`` renders them as
``{"error", "code", "details"}``.
"""

from typing import Any, Dict, Optional

from fastapi import status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


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


class ValidationException(DomainException):
    """Raised when business validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class ServiceException(DomainException):
    """Raised when a service operation fails."""


# Specific business exceptions


class SlotConflictException(ConflictException):
    """Raised when a booking collides with an active appointment in the same slot."""

    def __init__(self, date: str, timeslot: str, existing_id: Optional[str] = None):
        details: Dict[str, Any] = {"date": date, "timeslot": timeslot}
        if existing_id:
            details["existing_appointment_id"] = existing_id
        super().__init__(
            message=f"The slot {date} {timeslot} is already booked",
            code="SLOT_CONFLICT",
            details=details,
        )


class ModificationWindowClosedException(BusinessRuleException):
    """Raised when an appointment can no longer be changed."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            code="MODIFICATION_WINDOW_CLOSED",
            details=details or {},
        )


class IllegalTransitionException(BusinessRuleException):
    """Raised when a status change is not part of the appointment lifecycle."""

    def __init__(self, current: str, requested: str, actor: str):
        super().__init__(
            message=f"Cannot move appointment from '{current}' to '{requested}' as {actor}",
            code="ILLEGAL_TRANSITION",
            details={"current": current, "requested": requested, "actor": actor},
        )


class DuplicateInvoiceException(ConflictException):
    """Raised by the invoice repository when a uniqueness guard trips."""

    def __init__(self, existing_invoice_id: Optional[str], *, details: Optional[Dict[str, Any]] = None):
        self.existing_invoice_id = existing_invoice_id
        super().__init__(
            message="An active invoice already exists for this billing key",
            code="DUPLICATE_INVOICE",
            details={"existing_invoice_id": existing_invoice_id, **(details or {})},
        )


class UpstreamCollaboratorException(ServiceException):
    """Raised when an external collaborator (payments, meetings, email) fails."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        collaborator: str,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.collaborator = collaborator
        super().__init__(
            message=message,
            code="UPSTREAM_FAILURE",
            details={"collaborator": collaborator, **(details or {})},
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations.
    """
