from __future__ import annotations

import json
import uuid
from datetime import date, datetime, time
from typing import Any, AsyncContextManager, Sequence

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.attributes import set_committed_value

from ..domain.repositories import (
    BookingDetails,
    BookingRepository,
    EmployeeCandidate,
    EmployeeRepository,
    EmployeeWindow,
    OutboxRepository,
    Repositories,
    SlotRepository,
    TenantRepository,
)
from ..domain.services import ShiftWindow
from ..models import (
    Booking,
    BookingStatus,
    Employee,
    EmployeeService,
    OutboxEvent,
    OutboxStatus,
    Service,
    Shift,
    Slot,
    Tenant,
)
from ..utils.time import utc_now_naive


class SqlAlchemySlotRepository(SlotRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def lock_many(self, slot_ids: Sequence[int]) -> dict[int, Slot]:
        ids = sorted(set(slot_ids))
        if not ids:
            return {}
        stmt = (
            select(Slot)
            .where(Slot.id.in_(ids))
            .order_by(Slot.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        rows = await self.session.scalars(stmt)
        return {slot.id: slot for slot in rows}

    async def apply_delta(self, slot: Slot, units: int) -> bool:
        """
        Move `units` from available to booked (negative to give them back).

        The WHERE clause re-checks the counters so an unlocked or stale caller
        cannot drive either counter below zero; False means nothing changed.
        """
        stmt = update(Slot).where(Slot.id == slot.id)
        if units >= 0:
            stmt = stmt.where(Slot.available_capacity >= units)
        else:
            stmt = stmt.where(Slot.booked_count >= -units)
        now = utc_now_naive()
        stmt = stmt.values(
            available_capacity=Slot.available_capacity - units,
            booked_count=Slot.booked_count + units,
            updated_at=now,
        ).execution_options(synchronize_session=False)
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            return False
        set_committed_value(slot, "available_capacity", slot.available_capacity - units)
        set_committed_value(slot, "booked_count", slot.booked_count + units)
        set_committed_value(slot, "updated_at", now)
        return True

    async def create(
        self,
        *,
        tenant_id: int,
        service_id: int,
        shift_id: int | None,
        employee_id: int | None,
        slot_date: date,
        start_time: time,
        end_time: time,
        capacity: int,
    ) -> Slot:
        now = utc_now_naive()
        slot = Slot(
            tenant_id=tenant_id,
            service_id=service_id,
            shift_id=shift_id,
            employee_id=employee_id,
            slot_date=slot_date,
            start_time=start_time,
            end_time=end_time,
            original_capacity=capacity,
            available_capacity=capacity,
            booked_count=0,
            is_available=True,
            created_at=now,
            updated_at=now,
        )
        self.session.add(slot)
        await self.session.flush()
        return slot

    async def exists(
        self,
        *,
        shift_id: int,
        employee_id: int | None,
        slot_date: date,
        start_time: time,
    ) -> bool:
        stmt = select(Slot.id).where(
            Slot.shift_id == shift_id,
            Slot.slot_date == slot_date,
            Slot.start_time == start_time,
        )
        if employee_id is None:
            stmt = stmt.where(Slot.employee_id.is_(None))
        else:
            stmt = stmt.where(Slot.employee_id == employee_id)
        return await self.session.scalar(stmt.limit(1)) is not None

    async def window_taken(
        self,
        *,
        tenant_id: int,
        service_id: int,
        employee_id: int | None,
        slot_date: date,
        start_time: time,
    ) -> bool:
        stmt = select(Slot.id).where(
            Slot.tenant_id == tenant_id,
            Slot.service_id == service_id,
            Slot.slot_date == slot_date,
            Slot.start_time == start_time,
        )
        if employee_id is None:
            stmt = stmt.where(Slot.employee_id.is_(None))
        else:
            stmt = stmt.where(Slot.employee_id == employee_id)
        return await self.session.scalar(stmt.limit(1)) is not None

    async def list_available(
        self,
        *,
        tenant_id: int,
        service_id: int,
        start_date: date,
        end_date: date,
    ) -> list[Slot]:
        stmt = (
            select(Slot)
            .where(
                Slot.tenant_id == tenant_id,
                Slot.service_id == service_id,
                Slot.slot_date >= start_date,
                Slot.slot_date <= end_date,
                Slot.is_available.is_(True),
                Slot.available_capacity > 0,
            )
            .order_by(Slot.slot_date, Slot.start_time, Slot.id)
        )
        return list(await self.session.scalars(stmt))


class SqlAlchemyBookingRepository(BookingRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def savepoint(self) -> AsyncContextManager[Any]:
        return self.session.begin_nested()

    async def add_many(self, bookings: Sequence[Booking]) -> list[Booking]:
        self.session.add_all(bookings)
        await self.session.flush()
        return list(bookings)

    async def get_for_update(self, booking_id: uuid.UUID, tenant_id: int | None = None) -> Booking | None:
        stmt = select(Booking).where(Booking.id == booking_id)
        if tenant_id is not None:
            stmt = stmt.where(Booking.tenant_id == tenant_id)
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.scalar(stmt)
        return result if isinstance(result, Booking) else None

    async def get_details(self, booking_id: uuid.UUID) -> BookingDetails | None:
        stmt = (
            select(Booking, Slot, Service.name, Tenant.name)
            .join(Slot, Booking.slot_id == Slot.id)
            .join(Service, Booking.service_id == Service.id)
            .join(Tenant, Booking.tenant_id == Tenant.id)
            .where(Booking.id == booking_id)
        )
        row = (await self.session.execute(stmt)).first()
        if row is None:
            return None
        booking, slot, service_name, tenant_name = row
        return BookingDetails(booking=booking, slot=slot, service_name=service_name, tenant_name=tenant_name)

    async def save(self, booking: Booking) -> Booking:
        self.session.add(booking)
        await self.session.flush()
        return booking

    async def list_employee_windows(
        self,
        employee_ids: Sequence[int],
        slot_date: date,
        *,
        exclude_booking_id: uuid.UUID | None = None,
    ) -> list[EmployeeWindow]:
        if not employee_ids:
            return []
        stmt = (
            select(Booking.employee_id, Booking.id, Slot.start_time, Slot.end_time)
            .join(Slot, Booking.slot_id == Slot.id)
            .where(
                Booking.employee_id.in_(list(employee_ids)),
                Slot.slot_date == slot_date,
                Booking.status != BookingStatus.CANCELLED,
            )
        )
        if exclude_booking_id is not None:
            stmt = stmt.where(Booking.id != exclude_booking_id)
        rows = await self.session.execute(stmt)
        return [
            EmployeeWindow(employee_id=employee_id, booking_id=booking_id, start_time=start, end_time=end)
            for employee_id, booking_id, start, end in rows.all()
        ]

    async def find_invoice_reference(self, invoice_key: uuid.UUID) -> str | None:
        stmt = (
            select(Booking.invoice_reference)
            .where(
                or_(Booking.booking_group_id == invoice_key, Booking.id == invoice_key),
                Booking.invoice_reference.is_not(None),
            )
            .limit(1)
        )
        return await self.session.scalar(stmt)

    async def set_invoice_reference(self, invoice_key: uuid.UUID, reference: str) -> int:
        stmt = (
            update(Booking)
            .where(or_(Booking.booking_group_id == invoice_key, Booking.id == invoice_key))
            .values(invoice_reference=reference, updated_at=utc_now_naive())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return int(result.rowcount or 0)


class SqlAlchemyEmployeeRepository(EmployeeRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_candidates(self, *, tenant_id: int, service_id: int) -> list[EmployeeCandidate]:
        stmt = (
            select(Employee)
            .join(EmployeeService, EmployeeService.employee_id == Employee.id)
            .where(Employee.tenant_id == tenant_id, EmployeeService.service_id == service_id)
            .options(selectinload(Employee.shifts))
            .order_by(Employee.id)
        )
        employees = await self.session.scalars(stmt)
        return [
            EmployeeCandidate(
                employee_id=employee.id,
                is_active=employee.is_active,
                paused_until=employee.paused_until,
                shifts=tuple(
                    ShiftWindow(
                        days_of_week=frozenset(shift.days_of_week or []),
                        start_time=shift.start_time,
                        end_time=shift.end_time,
                    )
                    for shift in employee.shifts
                    if shift.is_active
                ),
            )
            for employee in employees
        ]

    async def lock_many(self, employee_ids: Sequence[int]) -> None:
        ids = sorted(set(employee_ids))
        if not ids:
            return
        stmt = select(Employee.id).where(Employee.id.in_(ids)).order_by(Employee.id).with_for_update()
        await self.session.execute(stmt)


class SqlAlchemyTenantRepository(TenantRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, tenant_id: int) -> Tenant | None:
        result = await self.session.scalar(select(Tenant).where(Tenant.id == tenant_id))
        return result if isinstance(result, Tenant) else None

    async def get_service(self, tenant_id: int, service_id: int) -> Service | None:
        stmt = select(Service).where(Service.id == service_id, Service.tenant_id == tenant_id)
        result = await self.session.scalar(stmt)
        return result if isinstance(result, Service) else None

    async def get_shift(self, tenant_id: int, shift_id: int) -> Shift | None:
        stmt = select(Shift).where(Shift.id == shift_id, Shift.tenant_id == tenant_id)
        result = await self.session.scalar(stmt)
        return result if isinstance(result, Shift) else None


class SqlAlchemyOutboxRepository(OutboxRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def enqueue(
        self,
        *,
        topic: str,
        payload: dict[str, Any],
        tenant_id: int | None = None,
        key: str | None = None,
    ) -> OutboxEvent:
        now = utc_now_naive()
        row = OutboxEvent(
            tenant_id=tenant_id,
            topic=topic.strip(),
            key=(key or "").strip() or None,
            payload_json=json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str),
            status=OutboxStatus.PENDING,
            retries=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def claim(self, limit: int, now: datetime) -> list[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(
                OutboxEvent.status.in_([OutboxStatus.PENDING, OutboxStatus.FAILED]),
                or_(OutboxEvent.next_attempt_at.is_(None), OutboxEvent.next_attempt_at <= now),
            )
            .order_by(OutboxEvent.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(await self.session.scalars(stmt))

    async def save(self, event: OutboxEvent) -> OutboxEvent:
        self.session.add(event)
        await self.session.flush()
        return event


def build_repositories(session: AsyncSession) -> Repositories:
    return Repositories(
        slots=SqlAlchemySlotRepository(session),
        bookings=SqlAlchemyBookingRepository(session),
        employees=SqlAlchemyEmployeeRepository(session),
        tenants=SqlAlchemyTenantRepository(session),
        outbox=SqlAlchemyOutboxRepository(session),
    )
