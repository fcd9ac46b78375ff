from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal

from ..domain.errors import (
    BookingNotFoundError,
    InvalidStateTransitionError,
    MalformedTicketError,
    TenantAccessError,
    TicketSupersededError,
)
from ..domain.repositories import BookingDetails, BookingRepository
from ..models import Booking, BookingStatus
from ..utils.tickets import TicketReference, parse_ticket_reference
from ..utils.time import utc_now_naive

VALIDATED = "validated"
ALREADY_SCANNED = "already_scanned"


@dataclass(frozen=True)
class TicketView:
    booking_id: uuid.UUID
    booking_group_id: uuid.UUID | None
    customer_name: str
    service_name: str
    tenant_name: str
    slot_date: date
    start_time: time
    end_time: time
    visitor_count: int
    adult_count: int
    child_count: int
    total_price: Decimal


@dataclass(frozen=True)
class ScanOutcome:
    result: str
    scanned_at: datetime
    scanned_by_user_id: int | None
    ticket: TicketView
    status: BookingStatus


def _view(details: BookingDetails) -> TicketView:
    booking, slot = details.booking, details.slot
    return TicketView(
        booking_id=booking.id,
        booking_group_id=booking.booking_group_id,
        customer_name=booking.customer_name,
        service_name=details.service_name,
        tenant_name=details.tenant_name,
        slot_date=slot.slot_date,
        start_time=slot.start_time,
        end_time=slot.end_time,
        visitor_count=booking.visitor_count,
        adult_count=booking.adult_count,
        child_count=booking.child_count,
        total_price=booking.total_price,
    )


def _parse(raw: str | None) -> TicketReference:
    reference = parse_ticket_reference(raw)
    if reference is None:
        raise MalformedTicketError("ticket reference is not a booking id, ticket payload or ticket URL")
    return reference


def _ensure_current(reference: TicketReference, booking: Booking) -> None:
    if reference.token is not None and reference.token != booking.qr_token:
        raise TicketSupersededError(
            "ticket was replaced by a newer one",
            booking_id=str(booking.id),
        )


async def get_public_ticket(booking_repo: BookingRepository, *, raw: str | None) -> TicketView:
    """Read-only ticket view for unauthenticated callers. Never mutates scan state."""
    reference = _parse(raw)
    details = await booking_repo.get_details(reference.booking_id)
    if details is None:
        raise BookingNotFoundError("booking not found", booking_id=str(reference.booking_id))
    _ensure_current(reference, details.booking)
    return _view(details)


async def scan_ticket(
    booking_repo: BookingRepository,
    *,
    raw: str | None,
    user_id: int,
    tenant_id: int | None,
) -> ScanOutcome:
    """Check a ticket in for staff of the booking's tenant; users without a tenant are refused."""
    reference = _parse(raw)
    booking = await booking_repo.get_for_update(reference.booking_id)
    if booking is None:
        raise BookingNotFoundError("booking not found", booking_id=str(reference.booking_id))
    if tenant_id is None or booking.tenant_id != tenant_id:
        raise TenantAccessError("booking belongs to another tenant", booking_id=str(booking.id))
    _ensure_current(reference, booking)
    if booking.status == BookingStatus.CANCELLED:
        raise InvalidStateTransitionError(
            "cancelled booking cannot be checked in",
            booking_id=str(booking.id),
        )

    if booking.qr_scanned and booking.qr_scanned_at is not None:
        result = ALREADY_SCANNED
    else:
        now = utc_now_naive()
        booking.qr_scanned = True
        booking.qr_scanned_at = now
        booking.qr_scanned_by_user_id = user_id
        booking.updated_at = now
        booking = await booking_repo.save(booking)
        result = VALIDATED

    details = await booking_repo.get_details(booking.id)
    if details is None:
        raise BookingNotFoundError("booking not found", booking_id=str(booking.id))
    return ScanOutcome(
        result=result,
        scanned_at=booking.qr_scanned_at,
        scanned_by_user_id=booking.qr_scanned_by_user_id,
        ticket=_view(details),
        status=booking.status,
    )
