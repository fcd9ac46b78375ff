"""In-memory repositories shared by use-case tests.

Row locks are emulated with one asyncio.Lock per row, held until the
surrounding `FakeStore.transaction()` block exits, so concurrent use-case
calls serialize the same way they would on real `SELECT ... FOR UPDATE`.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, AsyncIterator, Hashable, Sequence

from bookati.domain.repositories import BookingDetails, EmployeeCandidate, EmployeeWindow, Repositories
from bookati.domain.services import ShiftWindow
from bookati.models import (
    AssignmentPolicy,
    Booking,
    BookingStatus,
    OutboxEvent,
    OutboxStatus,
    SchedulingMode,
    Service,
    Shift,
    Slot,
    Tenant,
)
from sqlalchemy.exc import SQLAlchemyError

NOW = datetime(2030, 1, 1, 9, 0, 0)
MONDAY = date(2030, 1, 7)
ALL_DAYS = frozenset(range(7))


class FakeStore:
    def __init__(self) -> None:
        self.tenants: dict[int, Tenant] = {}
        self.services: dict[int, Service] = {}
        self.shifts: dict[int, Shift] = {}
        self.slots: dict[int, Slot] = {}
        self.bookings: dict[uuid.UUID, Booking] = {}
        self.employees: dict[int, EmployeeCandidate] = {}
        self.employee_services: set[tuple[int, int]] = set()
        self.outbox: list[OutboxEvent] = []
        self.locks: defaultdict[Hashable, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.fail_persist = False

    def repositories(self) -> Repositories:
        return _Transaction(self, locking=False).repos

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Repositories]:
        tx = _Transaction(self)
        try:
            yield tx.repos
        finally:
            tx.release()

    def add_tenant(
        self,
        tenant_id: int = 1,
        *,
        mode: SchedulingMode = SchedulingMode.SERVICE_BASED,
        policy: AssignmentPolicy = AssignmentPolicy.AUTO_ROTATE,
    ) -> Tenant:
        tenant = Tenant(
            id=tenant_id,
            name=f"Tenant {tenant_id}",
            scheduling_mode=mode,
            assignment_policy=policy,
            created_at=NOW,
            updated_at=NOW,
        )
        self.tenants[tenant_id] = tenant
        return tenant

    def add_service(
        self,
        service_id: int = 1,
        *,
        tenant_id: int = 1,
        duration_minutes: int = 60,
        capacity_per_slot: int = 1,
        is_active: bool = True,
    ) -> Service:
        service = Service(
            id=service_id,
            tenant_id=tenant_id,
            name=f"Service {service_id}",
            duration_minutes=duration_minutes,
            capacity_per_slot=capacity_per_slot,
            is_active=is_active,
            created_at=NOW,
            updated_at=NOW,
        )
        self.services[service_id] = service
        return service

    def add_slot(
        self,
        slot_id: int,
        *,
        capacity: int = 1,
        booked: int = 0,
        tenant_id: int = 1,
        service_id: int = 1,
        slot_date: date = MONDAY,
        start: time = time(10, 0),
        end: time = time(11, 0),
        employee_id: int | None = None,
        is_available: bool = True,
    ) -> Slot:
        slot = Slot(
            id=slot_id,
            tenant_id=tenant_id,
            service_id=service_id,
            shift_id=None,
            employee_id=employee_id,
            slot_date=slot_date,
            start_time=start,
            end_time=end,
            original_capacity=capacity,
            available_capacity=capacity - booked,
            booked_count=booked,
            is_available=is_available,
            created_at=NOW,
            updated_at=NOW,
        )
        self.slots[slot_id] = slot
        return slot

    def add_shift(
        self,
        shift_id: int,
        *,
        tenant_id: int = 1,
        service_id: int | None = 1,
        employee_id: int | None = None,
        days: Sequence[int] = (1, 2, 3, 4, 5),
        start: time = time(9, 0),
        end: time = time(12, 0),
        is_active: bool = True,
    ) -> Shift:
        shift = Shift(
            id=shift_id,
            tenant_id=tenant_id,
            service_id=service_id,
            employee_id=employee_id,
            days_of_week=list(days),
            start_time=start,
            end_time=end,
            is_active=is_active,
            created_at=NOW,
            updated_at=NOW,
        )
        self.shifts[shift_id] = shift
        return shift

    def add_employee(
        self,
        employee_id: int,
        *,
        service_id: int = 1,
        is_active: bool = True,
        paused_until: date | None = None,
        days: frozenset[int] = ALL_DAYS,
        start: time = time(8, 0),
        end: time = time(18, 0),
    ) -> EmployeeCandidate:
        candidate = EmployeeCandidate(
            employee_id=employee_id,
            is_active=is_active,
            paused_until=paused_until,
            shifts=(ShiftWindow(days_of_week=days, start_time=start, end_time=end),),
        )
        self.employees[employee_id] = candidate
        self.employee_services.add((employee_id, service_id))
        return candidate

    def add_booking(
        self,
        *,
        slot_id: int,
        visitor_count: int = 1,
        status: BookingStatus = BookingStatus.CONFIRMED,
        employee_id: int | None = None,
        booking_group_id: uuid.UUID | None = None,
        qr_token: str = "token-1",
        version: int = 1,
    ) -> Booking:
        slot = self.slots[slot_id]
        booking = Booking(
            id=uuid.uuid4(),
            tenant_id=slot.tenant_id,
            service_id=slot.service_id,
            slot_id=slot_id,
            employee_id=employee_id,
            booking_group_id=booking_group_id,
            customer_name="Ada",
            customer_phone=None,
            customer_email="ada@example.com",
            visitor_count=visitor_count,
            adult_count=visitor_count,
            child_count=0,
            total_price=Decimal("10.00"),
            status=status,
            notes=None,
            language="en",
            created_by_user_id=1,
            qr_token=qr_token,
            qr_scanned=False,
            qr_scanned_at=None,
            qr_scanned_by_user_id=None,
            invoice_reference=None,
            version=version,
            created_at=NOW,
            updated_at=NOW,
        )
        self.bookings[booking.id] = booking
        return booking

    def counters(self, slot_id: int) -> tuple[int, int, int]:
        slot = self.slots[slot_id]
        return slot.original_capacity, slot.available_capacity, slot.booked_count

    def counters_balanced(self) -> bool:
        return all(
            s.available_capacity >= 0
            and s.booked_count >= 0
            and s.available_capacity + s.booked_count == s.original_capacity
            for s in self.slots.values()
        )


class _Transaction:
    def __init__(self, store: FakeStore, *, locking: bool = True) -> None:
        self.store = store
        self.locking = locking
        self.held: list[asyncio.Lock] = []
        self.held_keys: set[Hashable] = set()
        self.repos = Repositories(
            slots=FakeSlotRepository(self),
            bookings=FakeBookingRepository(self),
            employees=FakeEmployeeRepository(self),
            tenants=FakeTenantRepository(store),
            outbox=FakeOutboxRepository(store),
        )

    async def lock(self, keys: Sequence[Hashable]) -> None:
        if not self.locking:
            return
        for key in keys:
            if key in self.held_keys:
                continue
            lock = self.store.locks[key]
            await lock.acquire()
            self.held.append(lock)
            self.held_keys.add(key)
            # give competing transactions a chance to interleave
            await asyncio.sleep(0)

    def release(self) -> None:
        for lock in reversed(self.held):
            lock.release()
        self.held.clear()
        self.held_keys.clear()


class FakeSlotRepository:
    def __init__(self, tx: _Transaction) -> None:
        self.tx = tx
        self.store = tx.store
        self.lock_calls: list[list[int]] = []

    async def lock_many(self, slot_ids: Sequence[int]) -> dict[int, Slot]:
        ids = sorted(set(slot_ids))
        self.lock_calls.append(ids)
        await self.tx.lock([("slot", i) for i in ids])
        return {i: self.store.slots[i] for i in ids if i in self.store.slots}

    async def apply_delta(self, slot: Slot, units: int) -> bool:
        await asyncio.sleep(0)
        if units >= 0 and slot.available_capacity < units:
            return False
        if units < 0 and slot.booked_count < -units:
            return False
        slot.available_capacity -= units
        slot.booked_count += units
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
        slot_id = max(self.store.slots, default=0) + 1
        slot = self.store.add_slot(
            slot_id,
            capacity=capacity,
            tenant_id=tenant_id,
            service_id=service_id,
            slot_date=slot_date,
            start=start_time,
            end=end_time,
            employee_id=employee_id,
        )
        slot.shift_id = shift_id
        return slot

    async def exists(
        self,
        *,
        shift_id: int,
        employee_id: int | None,
        slot_date: date,
        start_time: time,
    ) -> bool:
        return any(
            s.shift_id == shift_id
            and s.employee_id == employee_id
            and s.slot_date == slot_date
            and s.start_time == start_time
            for s in self.store.slots.values()
        )

    async def window_taken(
        self,
        *,
        tenant_id: int,
        service_id: int,
        employee_id: int | None,
        slot_date: date,
        start_time: time,
    ) -> bool:
        return any(
            (s.tenant_id, s.service_id, s.employee_id, s.slot_date, s.start_time)
            == (tenant_id, service_id, employee_id, slot_date, start_time)
            for s in self.store.slots.values()
        )

    async def list_available(
        self,
        *,
        tenant_id: int,
        service_id: int,
        start_date: date,
        end_date: date,
    ) -> list[Slot]:
        rows = [
            s
            for s in self.store.slots.values()
            if s.tenant_id == tenant_id
            and s.service_id == service_id
            and start_date <= s.slot_date <= end_date
        ]
        return sorted(rows, key=lambda s: (s.slot_date, s.start_time, s.id))


class FakeBookingRepository:
    def __init__(self, tx: _Transaction) -> None:
        self.tx = tx
        self.store = tx.store

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        bookings_before = set(self.store.bookings)
        outbox_before = len(self.store.outbox)
        try:
            yield
        except SQLAlchemyError:
            for booking_id in set(self.store.bookings) - bookings_before:
                del self.store.bookings[booking_id]
            del self.store.outbox[outbox_before:]
            raise

    async def add_many(self, bookings: Sequence[Booking]) -> list[Booking]:
        for booking in bookings:
            self.store.bookings[booking.id] = booking
        if self.store.fail_persist:
            raise SQLAlchemyError("simulated write failure")
        return list(bookings)

    async def get_for_update(self, booking_id: uuid.UUID, tenant_id: int | None = None) -> Booking | None:
        await self.tx.lock([("booking", booking_id)])
        booking = self.store.bookings.get(booking_id)
        if booking is None or (tenant_id is not None and booking.tenant_id != tenant_id):
            return None
        return booking

    async def get_details(self, booking_id: uuid.UUID) -> BookingDetails | None:
        booking = self.store.bookings.get(booking_id)
        if booking is None:
            return None
        return BookingDetails(
            booking=booking,
            slot=self.store.slots[booking.slot_id],
            service_name=self.store.services[booking.service_id].name,
            tenant_name=self.store.tenants[booking.tenant_id].name,
        )

    async def save(self, booking: Booking) -> Booking:
        self.store.bookings[booking.id] = booking
        return booking

    async def list_employee_windows(
        self,
        employee_ids: Sequence[int],
        slot_date: date,
        *,
        exclude_booking_id: uuid.UUID | None = None,
    ) -> list[EmployeeWindow]:
        windows = []
        for booking in self.store.bookings.values():
            slot = self.store.slots[booking.slot_id]
            if (
                booking.employee_id in employee_ids
                and slot.slot_date == slot_date
                and booking.status != BookingStatus.CANCELLED
                and booking.id != exclude_booking_id
            ):
                windows.append(EmployeeWindow(booking.employee_id, booking.id, slot.start_time, slot.end_time))
        return windows

    def _keyed(self, invoice_key: uuid.UUID) -> list[Booking]:
        return [b for b in self.store.bookings.values() if invoice_key in (b.id, b.booking_group_id)]

    async def find_invoice_reference(self, invoice_key: uuid.UUID) -> str | None:
        return next((b.invoice_reference for b in self._keyed(invoice_key) if b.invoice_reference), None)

    async def set_invoice_reference(self, invoice_key: uuid.UUID, reference: str) -> int:
        rows = self._keyed(invoice_key)
        for booking in rows:
            booking.invoice_reference = reference
        return len(rows)


class FakeEmployeeRepository:
    def __init__(self, tx: _Transaction) -> None:
        self.tx = tx
        self.store = tx.store
        self.locked: list[list[int]] = []

    async def list_candidates(self, *, tenant_id: int, service_id: int) -> list[EmployeeCandidate]:
        return [
            c
            for employee_id, c in sorted(self.store.employees.items())
            if (employee_id, service_id) in self.store.employee_services
        ]

    async def lock_many(self, employee_ids: Sequence[int]) -> None:
        ids = sorted(set(employee_ids))
        self.locked.append(ids)
        await self.tx.lock([("employee", i) for i in ids])


class FakeTenantRepository:
    def __init__(self, store: FakeStore) -> None:
        self.store = store

    async def get(self, tenant_id: int) -> Tenant | None:
        return self.store.tenants.get(tenant_id)

    async def get_service(self, tenant_id: int, service_id: int) -> Service | None:
        service = self.store.services.get(service_id)
        return service if service is not None and service.tenant_id == tenant_id else None

    async def get_shift(self, tenant_id: int, shift_id: int) -> Shift | None:
        shift = self.store.shifts.get(shift_id)
        return shift if shift is not None and shift.tenant_id == tenant_id else None


class FakeOutboxRepository:
    def __init__(self, store: FakeStore) -> None:
        self.store = store

    async def enqueue(
        self,
        *,
        topic: str,
        payload: dict[str, Any],
        tenant_id: int | None = None,
        key: str | None = None,
    ) -> OutboxEvent:
        event = OutboxEvent(
            id=len(self.store.outbox) + 1,
            tenant_id=tenant_id,
            topic=topic,
            key=key,
            payload_json=json.dumps(payload, default=str),
            status=OutboxStatus.PENDING,
            retries=0,
            last_error=None,
            next_attempt_at=None,
            published_at=None,
            created_at=NOW,
            updated_at=NOW,
        )
        self.store.outbox.append(event)
        return event

    async def claim(self, limit: int, now: datetime) -> list[OutboxEvent]:
        pending = [
            e
            for e in self.store.outbox
            if e.status in (OutboxStatus.PENDING, OutboxStatus.FAILED)
            and (e.next_attempt_at is None or e.next_attempt_at <= now)
        ]
        return sorted(pending, key=lambda e: e.id)[:limit]

    async def save(self, event: OutboxEvent) -> OutboxEvent:
        return event

    def payload(self, index: int) -> dict[str, Any]:
        return json.loads(self.store.outbox[index].payload_json)
