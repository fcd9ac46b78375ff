from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from ..domain.errors import (
    BookingDomainError,
    BookingNotFoundError,
    EmployeeUnavailableError,
    InvalidInputError,
    PersistenceError,
    SlotInPastError,
    VersionConflictError,
)
from ..domain.repositories import Repositories
from ..domain.services import (
    distribute_visitors,
    ensure_editable,
    ensure_transition,
    ensure_unique_slots,
    split_price,
)
from ..models import AssignmentPolicy, Booking, BookingStatus, SchedulingMode, Service, Slot, Tenant
from ..utils.tickets import new_qr_token
from ..utils.time import utc_now_naive
from .assignment import Assignment, lock_eligible, resolve_employee
from .capacity import release_capacity, reserve_capacity, revert_transfer, transfer_capacity

logger = logging.getLogger(__name__)

BOOKING_CREATED = "booking.created"
BOOKING_RESCHEDULED = "booking.rescheduled"


@dataclass(frozen=True)
class BookingDraft:
    tenant_id: int
    service_id: int
    slot_ids: tuple[int, ...]
    customer_name: str
    visitor_count: int
    adult_count: int
    child_count: int = 0
    total_price: Decimal = Decimal("0")
    customer_phone: str | None = None
    customer_email: str | None = None
    employee_id: int | None = None
    notes: str | None = None
    language: str = "en"
    created_by_user_id: int | None = None


@dataclass(frozen=True)
class AllocationResult:
    booking_group_id: uuid.UUID | None
    bookings: list[Booking]
    slots: dict[int, Slot]
    total_visitors: int
    total_price: Decimal

    @property
    def booking_count(self) -> int:
        return len(self.bookings)


@dataclass(frozen=True)
class BookingChanges:
    status: BookingStatus | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    customer_email: str | None = None
    notes: str | None = None
    total_price: Decimal | None = None
    language: str | None = None

    def field_updates(self) -> dict[str, Any]:
        values = {
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "customer_email": self.customer_email,
            "notes": self.notes,
            "total_price": self.total_price,
            "language": self.language,
        }
        return {k: v for k, v in values.items() if v is not None}


@dataclass(frozen=True)
class LifecycleResult:
    booking: Booking
    status_from: BookingStatus
    changed: bool
    previous_slot_id: int | None = None
    released_units: int = 0
    changed_fields: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class _RowPlan:
    slot_id: int
    visitor_count: int
    adult_count: int
    child_count: int
    price: Decimal


def _validate_draft(draft: BookingDraft, *, bulk: bool) -> None:
    ensure_unique_slots(draft.slot_ids)
    if not draft.customer_name.strip():
        raise InvalidInputError("customer_name is required")
    if draft.visitor_count < 1:
        raise InvalidInputError("visitor_count must be at least 1")
    if draft.adult_count < 0 or draft.child_count < 0:
        raise InvalidInputError("adult_count and child_count must be non-negative")
    if draft.adult_count + draft.child_count != draft.visitor_count:
        raise InvalidInputError(
            f"visitor_count ({draft.visitor_count}) does not match adult_count ({draft.adult_count})"
            f" + child_count ({draft.child_count})"
        )
    if draft.total_price < 0:
        raise InvalidInputError("total_price must be non-negative")
    if bulk:
        if len(draft.slot_ids) != draft.visitor_count:
            raise InvalidInputError(
                f"number of slots ({len(draft.slot_ids)}) does not match visitor_count ({draft.visitor_count});"
                " each slot holds one visitor"
            )
    elif len(draft.slot_ids) != 1:
        raise InvalidInputError("single-slot booking takes exactly one slot")


async def _load_scope(repos: Repositories, tenant_id: int, service_id: int) -> tuple[Tenant, Service]:
    tenant = await repos.tenants.get(tenant_id)
    if tenant is None:
        raise InvalidInputError(f"tenant {tenant_id} not found")
    service = await repos.tenants.get_service(tenant_id, service_id)
    if service is None:
        raise InvalidInputError(f"service {service_id} not found for tenant {tenant_id}")
    if not service.is_active:
        raise InvalidInputError(f"service {service_id} is not active")
    return tenant, service


def _check_version(booking: Booking, expected_version: int | None) -> None:
    if expected_version is not None and booking.version != expected_version:
        raise VersionConflictError(
            "booking was modified by someone else",
            expected=expected_version,
            actual=booking.version,
        )


async def create_booking(repos: Repositories, draft: BookingDraft) -> AllocationResult:
    """Single-slot path: one booking row holding `visitor_count` units of one slot."""
    _validate_draft(draft, bulk=False)
    plan = [
        _RowPlan(
            slot_id=draft.slot_ids[0],
            visitor_count=draft.visitor_count,
            adult_count=draft.adult_count,
            child_count=draft.child_count,
            price=draft.total_price,
        )
    ]
    return await _allocate(repos, draft, plan, booking_group_id=None)


async def create_bulk_booking(repos: Repositories, draft: BookingDraft) -> AllocationResult:
    """Bulk path: one visitor per slot, rows linked by a shared group id."""
    _validate_draft(draft, bulk=True)
    prices = split_price(draft.total_price, len(draft.slot_ids))
    visitors = distribute_visitors(draft.adult_count, draft.child_count)
    plan = [
        _RowPlan(slot_id=slot_id, visitor_count=1, adult_count=adults, child_count=children, price=price)
        for slot_id, (adults, children), price in zip(draft.slot_ids, visitors, prices)
    ]
    group_id = uuid.uuid4() if len(plan) > 1 else None
    return await _allocate(repos, draft, plan, booking_group_id=group_id)


async def _allocate(
    repos: Repositories,
    draft: BookingDraft,
    plan: list[_RowPlan],
    *,
    booking_group_id: uuid.UUID | None,
) -> AllocationResult:
    tenant, service = await _load_scope(repos, draft.tenant_id, draft.service_id)
    requested = {row.slot_id: row.visitor_count for row in plan}

    held = await reserve_capacity(
        repos.slots, requested, tenant_id=tenant.id, service_id=service.id
    )

    try:
        employees = await _assign_employees(repos, tenant, service, draft, [held[row.slot_id] for row in plan])
    except BookingDomainError:
        await release_capacity(repos.slots, requested)
        raise

    now = utc_now_naive()
    bookings = [
        Booking(
            id=uuid.uuid4(),
            tenant_id=tenant.id,
            service_id=service.id,
            slot_id=row.slot_id,
            employee_id=employee_id,
            booking_group_id=booking_group_id,
            customer_name=draft.customer_name.strip(),
            customer_phone=draft.customer_phone,
            customer_email=draft.customer_email,
            visitor_count=row.visitor_count,
            adult_count=row.adult_count,
            child_count=row.child_count,
            total_price=row.price,
            status=BookingStatus.PENDING,
            notes=draft.notes,
            language=draft.language,
            created_by_user_id=draft.created_by_user_id,
            qr_token=new_qr_token(),
            qr_scanned=False,
            version=1,
            created_at=now,
            updated_at=now,
        )
        for row, employee_id in zip(plan, employees)
    ]

    try:
        async with repos.bookings.savepoint():
            created = await repos.bookings.add_many(bookings)
            await repos.outbox.enqueue(
                topic=BOOKING_CREATED,
                payload=_created_payload(created, booking_group_id, draft),
                tenant_id=tenant.id,
                key=str(booking_group_id or created[0].id),
            )
    except SQLAlchemyError as exc:
        logger.exception(
            "booking persistence failed tenant_id=%s slots=%s; releasing held capacity",
            tenant.id,
            sorted(requested),
        )
        await release_capacity(repos.slots, requested)
        raise PersistenceError("bookings could not be stored; no capacity was kept") from exc

    return AllocationResult(
        booking_group_id=booking_group_id,
        bookings=created,
        slots=held,
        total_visitors=sum(b.visitor_count for b in created),
        total_price=sum((b.total_price for b in created), Decimal("0")),
    )


async def _assign_employees(
    repos: Repositories,
    tenant: Tenant,
    service: Service,
    draft: BookingDraft,
    slots: list[Slot],
) -> list[int | None]:
    if tenant.scheduling_mode == SchedulingMode.SERVICE_BASED:
        return [None] * len(slots)
    candidates = await lock_eligible(repos.employees, tenant_id=tenant.id, service_id=service.id, slots=slots)
    assigned: list[int | None] = []
    pending: list[Assignment] = []
    for slot in slots:
        employee_id = await resolve_employee(
            repos.employees,
            repos.bookings,
            tenant=tenant,
            service_id=service.id,
            slot=slot,
            requested_employee_id=draft.employee_id,
            pending=pending,
            candidates=candidates,
        )
        assigned.append(employee_id)
        if employee_id is not None:
            pending.append(Assignment(employee_id, slot.slot_date, slot.start_time, slot.end_time))
    return assigned


def _created_payload(
    bookings: list[Booking],
    booking_group_id: uuid.UUID | None,
    draft: BookingDraft,
) -> dict[str, Any]:
    first = bookings[0]
    return {
        "invoice_key": str(booking_group_id or first.id),
        "booking_group_id": str(booking_group_id) if booking_group_id else None,
        "booking_ids": [str(b.id) for b in bookings],
        "tenant_id": first.tenant_id,
        "service_id": first.service_id,
        "customer_name": first.customer_name,
        "customer_email": first.customer_email,
        "customer_phone": first.customer_phone,
        "visitor_count": sum(b.visitor_count for b in bookings),
        "total_price": str(sum((b.total_price for b in bookings), Decimal("0"))),
        "language": draft.language,
        "tickets": [{"booking_id": str(b.id), "qr_token": b.qr_token} for b in bookings],
    }


async def update_booking(
    repos: Repositories,
    *,
    tenant_id: int,
    booking_id: uuid.UUID,
    changes: BookingChanges,
    expected_version: int | None = None,
) -> LifecycleResult:
    booking = await repos.bookings.get_for_update(booking_id, tenant_id)
    if booking is None:
        raise BookingNotFoundError("booking not found", booking_id=str(booking_id))
    status_from = booking.status
    target = changes.status or booking.status
    updates = changes.field_updates()

    # Idempotent: a repeated cancel must not restore capacity twice.
    if status_from == BookingStatus.CANCELLED and target == BookingStatus.CANCELLED and not updates:
        return LifecycleResult(booking=booking, status_from=status_from, changed=False)
    _check_version(booking, expected_version)
    ensure_editable(status_from)
    ensure_transition(status_from, target)

    changed_fields = tuple(k for k, v in updates.items() if getattr(booking, k) != v)
    if target == status_from and not changed_fields:
        return LifecycleResult(booking=booking, status_from=status_from, changed=False)

    for name in changed_fields:
        setattr(booking, name, updates[name])

    released = 0
    if target == BookingStatus.CANCELLED:
        await release_capacity(repos.slots, {booking.slot_id: booking.visitor_count})
        released = booking.visitor_count

    booking.status = target
    booking.version += 1
    booking.updated_at = utc_now_naive()
    saved = await repos.bookings.save(booking)
    return LifecycleResult(
        booking=saved,
        status_from=status_from,
        changed=True,
        released_units=released,
        changed_fields=changed_fields,
    )


async def cancel_booking(
    repos: Repositories,
    *,
    tenant_id: int,
    booking_id: uuid.UUID,
    expected_version: int | None = None,
) -> LifecycleResult:
    return await update_booking(
        repos,
        tenant_id=tenant_id,
        booking_id=booking_id,
        changes=BookingChanges(status=BookingStatus.CANCELLED),
        expected_version=expected_version,
    )


async def reschedule_booking(
    repos: Repositories,
    *,
    tenant_id: int,
    booking_id: uuid.UUID,
    new_slot_id: int,
    expected_version: int | None = None,
) -> LifecycleResult:
    """
    Move a booking to another slot of the same service in one step.

    The new slot is charged and the old one credited under the same locks;
    if anything fails (capacity, employee) neither slot nor booking changes.
    Slots that already started are refused. The QR token rotates and the scan
    state resets, so previously issued tickets stop validating and the new one
    can be scanned once; a reschedule event asks for a new ticket without
    requesting a new invoice.
    """
    booking = await repos.bookings.get_for_update(booking_id, tenant_id)
    if booking is None:
        raise BookingNotFoundError("booking not found", booking_id=str(booking_id))
    status_from = booking.status
    ensure_editable(status_from)
    if booking.slot_id == new_slot_id:
        return LifecycleResult(booking=booking, status_from=status_from, changed=False)
    _check_version(booking, expected_version)

    tenant = await repos.tenants.get(tenant_id)
    if tenant is None:
        raise InvalidInputError(f"tenant {tenant_id} not found")

    previous_slot_id = booking.slot_id
    source, target = await transfer_capacity(
        repos.slots,
        from_slot_id=previous_slot_id,
        to_slot_id=new_slot_id,
        units=booking.visitor_count,
        tenant_id=tenant_id,
        service_id=booking.service_id,
    )
    try:
        if datetime.combine(target.slot_date, target.start_time) < utc_now_naive():
            raise SlotInPastError("cannot reschedule to a slot in the past", slot_id=target.id)
        employee_id = await _reassign_employee(repos, tenant, booking, target)
    except BookingDomainError:
        await revert_transfer(repos.slots, source=source, target=target, units=booking.visitor_count)
        raise

    booking.slot_id = target.id
    booking.employee_id = employee_id
    booking.qr_token = new_qr_token()
    booking.qr_scanned = False
    booking.qr_scanned_at = None
    booking.qr_scanned_by_user_id = None
    booking.version += 1
    booking.updated_at = utc_now_naive()
    saved = await repos.bookings.save(booking)
    await repos.outbox.enqueue(
        topic=BOOKING_RESCHEDULED,
        payload={
            "booking_id": str(saved.id),
            "booking_group_id": str(saved.booking_group_id) if saved.booking_group_id else None,
            "tenant_id": saved.tenant_id,
            "old_slot_id": previous_slot_id,
            "new_slot_id": target.id,
            "slot_date": target.slot_date.isoformat(),
            "start_time": target.start_time.isoformat(),
            "end_time": target.end_time.isoformat(),
            "qr_token": saved.qr_token,
            "customer_name": saved.customer_name,
            "customer_email": saved.customer_email,
            "customer_phone": saved.customer_phone,
            "language": saved.language,
        },
        tenant_id=saved.tenant_id,
        key=str(saved.id),
    )
    return LifecycleResult(
        booking=saved,
        status_from=status_from,
        changed=True,
        previous_slot_id=previous_slot_id,
    )


async def _reassign_employee(
    repos: Repositories,
    tenant: Tenant,
    booking: Booking,
    slot: Slot,
) -> int | None:
    if tenant.scheduling_mode == SchedulingMode.SERVICE_BASED:
        return booking.employee_id
    candidates = await lock_eligible(
        repos.employees, tenant_id=tenant.id, service_id=booking.service_id, slots=[slot]
    )
    if booking.employee_id is not None:
        try:
            return await resolve_employee(
                repos.employees,
                repos.bookings,
                tenant=tenant,
                service_id=booking.service_id,
                slot=slot,
                requested_employee_id=booking.employee_id,
                exclude_booking_id=booking.id,
                policy=AssignmentPolicy.MANUAL,
                candidates=candidates,
            )
        except EmployeeUnavailableError:
            if tenant.assignment_policy == AssignmentPolicy.MANUAL:
                raise
    return await resolve_employee(
        repos.employees,
        repos.bookings,
        tenant=tenant,
        service_id=booking.service_id,
        slot=slot,
        exclude_booking_id=booking.id,
        policy=AssignmentPolicy.AUTO_ROTATE,
        candidates=candidates,
    )
