import uuid
from dataclasses import asdict
from typing import Any, Optional, Protocol

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Path, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_current_user_id, get_session
from ..infrastructure.repositories import build_repositories
from ..models import BookingStatus
from ..schemas import (
    AllocationRead,
    BookingCancel,
    BookingCreate,
    BookingRead,
    BookingRequest,
    BookingReschedule,
    BookingUpdate,
    BulkBookingCreate,
    BulkBookingRequest,
    CancelBookingRequest,
    RescheduleBookingRequest,
    RescheduleRead,
    SingleBookingRequest,
    SlotCounterRead,
)
from ..usecases import bookings as booking_usecase
from ..usecases.capacity import counters_of
from ..utils.audit_log import emit_audit_log
from .errors import run_mutation

router = APIRouter(prefix="/tenants", tags=["bookings"])


class _Versioned(Protocol):
    version: Optional[int]


class BookingRequestResult(BaseModel):
    kind: str
    allocation: Optional[AllocationRead] = None
    booking: Optional[BookingRead] = None
    slot_id_from: Optional[int] = None


def _extract_version(if_match: str | None, payload: _Versioned | None) -> int | None:
    """If-Match wins over the body; neither present means no optimistic check."""
    if if_match:
        raw = if_match.strip()
        if raw.startswith("W/"):
            raw = raw[2:]
        raw = raw.strip('"')
        try:
            version = int(raw)
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid If-Match header")
        if version < 1:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="If-Match version must be >= 1")
        return version
    if payload is None or payload.version is None:
        return None
    if payload.version < 1:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="version must be >= 1")
    return payload.version


def _emit(**fields: Any) -> None:
    try:
        emit_audit_log(**fields)
    except RuntimeError:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failed")


def _draft(
    tenant_id: int,
    payload: BookingCreate | BulkBookingCreate,
    slot_ids: tuple[int, ...],
    user_id: int,
) -> booking_usecase.BookingDraft:
    return booking_usecase.BookingDraft(
        tenant_id=tenant_id,
        service_id=payload.service_id,
        slot_ids=slot_ids,
        customer_name=payload.customer_name,
        visitor_count=payload.visitor_count,
        adult_count=payload.adult_count,
        child_count=payload.child_count,
        total_price=payload.total_price,
        customer_phone=payload.customer_phone,
        customer_email=payload.customer_email,
        employee_id=payload.employee_id,
        notes=payload.notes,
        language=payload.language,
        created_by_user_id=user_id,
    )


def _allocation_read(result: booking_usecase.AllocationResult) -> AllocationRead:
    return AllocationRead(
        booking_group_id=result.booking_group_id,
        booking_count=result.booking_count,
        total_visitors=result.total_visitors,
        total_price=result.total_price,
        bookings=[BookingRead.from_db(booking=b) for b in result.bookings],
        slots=[SlotCounterRead(**asdict(c)) for c in counters_of(result.slots)],
    )


def _audit_created(result: booking_usecase.AllocationResult, user_id: int) -> None:
    for booking in result.bookings:
        _emit(
            action="booking.created",
            initiator="user",
            booking_id=booking.id,
            booking_group_id=result.booking_group_id,
            tenant_id=booking.tenant_id,
            slot_id=booking.slot_id,
            user_id=user_id,
            visitor_count=booking.visitor_count,
            status_from=None,
            status_to=booking.status,
            version=booking.version,
            extra={"employee_id": booking.employee_id} if booking.employee_id is not None else None,
        )


def _audit_lifecycle(result: booking_usecase.LifecycleResult, user_id: int) -> None:
    if not result.changed:
        return
    booking = result.booking
    if result.previous_slot_id is not None:
        action = "booking.rescheduled"
        extra: dict[str, Any] = {"slot_id_from": result.previous_slot_id, "slot_id_to": booking.slot_id}
    elif booking.status == BookingStatus.CANCELLED:
        action = "booking.cancelled"
        extra = {"released_units": result.released_units}
    else:
        action = "booking.updated"
        extra = {"fields": list(result.changed_fields)} if result.changed_fields else {}
    _emit(
        action=action,
        initiator="user",
        booking_id=booking.id,
        booking_group_id=booking.booking_group_id,
        tenant_id=booking.tenant_id,
        slot_id=booking.slot_id,
        user_id=user_id,
        visitor_count=booking.visitor_count,
        status_from=result.status_from,
        status_to=booking.status,
        version=booking.version,
        extra=extra,
    )


async def _create(
    session: AsyncSession,
    tenant_id: int,
    payload: BookingCreate,
    user_id: int,
) -> AllocationRead:
    repos = build_repositories(session)
    draft = _draft(tenant_id, payload, (payload.slot_id,), user_id)
    result = await run_mutation(session, lambda: booking_usecase.create_booking(repos, draft))
    _audit_created(result, user_id)
    return _allocation_read(result)


async def _create_bulk(
    session: AsyncSession,
    tenant_id: int,
    payload: BulkBookingCreate,
    user_id: int,
) -> AllocationRead:
    repos = build_repositories(session)
    draft = _draft(tenant_id, payload, tuple(payload.slot_ids), user_id)
    result = await run_mutation(session, lambda: booking_usecase.create_bulk_booking(repos, draft))
    _audit_created(result, user_id)
    return _allocation_read(result)


async def _cancel(
    session: AsyncSession,
    tenant_id: int,
    booking_id: uuid.UUID,
    version: int | None,
    user_id: int,
) -> BookingRead:
    repos = build_repositories(session)
    result = await run_mutation(
        session,
        lambda: booking_usecase.cancel_booking(
            repos,
            tenant_id=tenant_id,
            booking_id=booking_id,
            expected_version=version,
        ),
    )
    _audit_lifecycle(result, user_id)
    return BookingRead.from_db(booking=result.booking)


async def _reschedule(
    session: AsyncSession,
    tenant_id: int,
    booking_id: uuid.UUID,
    new_slot_id: int,
    version: int | None,
    user_id: int,
) -> RescheduleRead:
    repos = build_repositories(session)
    result = await run_mutation(
        session,
        lambda: booking_usecase.reschedule_booking(
            repos,
            tenant_id=tenant_id,
            booking_id=booking_id,
            new_slot_id=new_slot_id,
            expected_version=version,
        ),
    )
    _audit_lifecycle(result, user_id)
    return RescheduleRead(
        booking=BookingRead.from_db(booking=result.booking),
        slot_id_from=result.previous_slot_id,
        slot_id_to=result.booking.slot_id,
    )


@router.post("/{tenant_id}/bookings", response_model=AllocationRead, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: BookingCreate,
    tenant_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> AllocationRead:
    return await _create(session, tenant_id, payload, user_id)


@router.post("/{tenant_id}/bookings/bulk", response_model=AllocationRead, status_code=status.HTTP_201_CREATED)
async def create_bulk_booking(
    payload: BulkBookingCreate,
    tenant_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> AllocationRead:
    return await _create_bulk(session, tenant_id, payload, user_id)


@router.post("/{tenant_id}/booking-requests", response_model=BookingRequestResult)
async def submit_booking_request(
    payload: BookingRequest = Body(...),
    tenant_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> BookingRequestResult:
    if isinstance(payload, SingleBookingRequest):
        allocation = await _create(session, tenant_id, payload, user_id)
        return BookingRequestResult(kind=payload.kind, allocation=allocation)
    if isinstance(payload, BulkBookingRequest):
        allocation = await _create_bulk(session, tenant_id, payload, user_id)
        return BookingRequestResult(kind=payload.kind, allocation=allocation)
    if isinstance(payload, RescheduleBookingRequest):
        moved = await _reschedule(
            session, tenant_id, payload.booking_id, payload.slot_id, _extract_version(None, payload), user_id
        )
        return BookingRequestResult(kind=payload.kind, booking=moved.booking, slot_id_from=moved.slot_id_from)
    if isinstance(payload, CancelBookingRequest):
        cancelled = await _cancel(session, tenant_id, payload.booking_id, _extract_version(None, payload), user_id)
        return BookingRequestResult(kind=payload.kind, booking=cancelled)
    raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="unknown request kind")


@router.patch("/{tenant_id}/bookings/{booking_id}", response_model=BookingRead)
async def update_booking(
    payload: BookingUpdate,
    tenant_id: int = Path(..., ge=1),
    booking_id: uuid.UUID = Path(...),
    if_match: str | None = Header(default=None, alias="If-Match"),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> BookingRead:
    version = _extract_version(if_match, payload)
    repos = build_repositories(session)
    changes = booking_usecase.BookingChanges(
        status=payload.status,
        customer_name=payload.customer_name,
        customer_phone=payload.customer_phone,
        customer_email=payload.customer_email,
        notes=payload.notes,
        total_price=payload.total_price,
        language=payload.language,
    )
    result = await run_mutation(
        session,
        lambda: booking_usecase.update_booking(
            repos,
            tenant_id=tenant_id,
            booking_id=booking_id,
            changes=changes,
            expected_version=version,
        ),
    )
    _audit_lifecycle(result, user_id)
    return BookingRead.from_db(booking=result.booking)


@router.post("/{tenant_id}/bookings/{booking_id}/cancel", response_model=BookingRead)
async def cancel_booking(
    tenant_id: int = Path(..., ge=1),
    booking_id: uuid.UUID = Path(...),
    payload: BookingCancel | None = Body(default=None),
    if_match: str | None = Header(default=None, alias="If-Match"),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> BookingRead:
    return await _cancel(session, tenant_id, booking_id, _extract_version(if_match, payload), user_id)


@router.post("/{tenant_id}/bookings/{booking_id}/reschedule", response_model=RescheduleRead)
async def reschedule_booking(
    payload: BookingReschedule,
    tenant_id: int = Path(..., ge=1),
    booking_id: uuid.UUID = Path(...),
    if_match: str | None = Header(default=None, alias="If-Match"),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> RescheduleRead:
    version = _extract_version(if_match, payload)
    return await _reschedule(session, tenant_id, booking_id, payload.slot_id, version, user_id)
