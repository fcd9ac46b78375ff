from __future__ import annotations

from typing import Any


class BookingDomainError(Exception):
    """Base class for business and validation failures surfaced to callers."""

    code = "booking_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_detail(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.context}


class InvalidInputError(BookingDomainError):
    code = "invalid_input"


class DuplicateSlotError(InvalidInputError):
    code = "duplicate_slot"


class SlotInPastError(InvalidInputError):
    code = "slot_in_past"


class SlotConflictError(BookingDomainError):
    """A slot with the same service, employee, date and start already exists."""

    code = "slot_conflict"


class SlotNotFoundError(BookingDomainError):
    code = "slot_not_found"


class SlotUnavailableError(BookingDomainError):
    code = "slot_unavailable"


class InsufficientCapacityError(BookingDomainError):
    code = "insufficient_capacity"


class EmployeeUnavailableError(BookingDomainError):
    code = "employee_unavailable"


class InvalidStateTransitionError(BookingDomainError):
    code = "invalid_state_transition"


class VersionConflictError(BookingDomainError):
    code = "version_conflict"


class BookingNotFoundError(BookingDomainError):
    code = "booking_not_found"


class TenantAccessError(BookingDomainError):
    code = "forbidden_tenant"


class MalformedTicketError(BookingDomainError):
    code = "malformed_ticket"


class TicketSupersededError(BookingDomainError):
    code = "ticket_superseded"


class PersistenceError(BookingDomainError):
    """Storage failed after capacity was held; the hold is released before raising."""

    code = "persistence_failure"
