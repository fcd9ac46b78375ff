from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, AsyncContextManager, Protocol, Sequence

from ..models import Booking, OutboxEvent, Service, Shift, Slot, Tenant
from .services import ShiftWindow


@dataclass(frozen=True)
class EmployeeCandidate:
    employee_id: int
    is_active: bool
    paused_until: date | None
    shifts: tuple[ShiftWindow, ...]


@dataclass(frozen=True)
class EmployeeWindow:
    """A non-cancelled booking occupying an employee on some date."""

    employee_id: int
    booking_id: uuid.UUID | None
    start_time: time
    end_time: time


@dataclass(frozen=True)
class BookingDetails:
    booking: Booking
    slot: Slot
    service_name: str
    tenant_name: str


class SlotRepository(Protocol):
    async def lock_many(self, slot_ids: Sequence[int]) -> dict[int, Slot]: ...

    async def apply_delta(self, slot: Slot, units: int) -> bool: ...

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
    ) -> Slot: ...

    async def exists(
        self,
        *,
        shift_id: int,
        employee_id: int | None,
        slot_date: date,
        start_time: time,
    ) -> bool: ...

    async def window_taken(
        self,
        *,
        tenant_id: int,
        service_id: int,
        employee_id: int | None,
        slot_date: date,
        start_time: time,
    ) -> bool: ...

    async def list_available(
        self,
        *,
        tenant_id: int,
        service_id: int,
        start_date: date,
        end_date: date,
    ) -> list[Slot]: ...


class BookingRepository(Protocol):
    def savepoint(self) -> AsyncContextManager[Any]: ...

    async def add_many(self, bookings: Sequence[Booking]) -> list[Booking]: ...

    async def get_for_update(self, booking_id: uuid.UUID, tenant_id: int | None = None) -> Booking | None: ...

    async def get_details(self, booking_id: uuid.UUID) -> BookingDetails | None: ...

    async def save(self, booking: Booking) -> Booking: ...

    async def list_employee_windows(
        self,
        employee_ids: Sequence[int],
        slot_date: date,
        *,
        exclude_booking_id: uuid.UUID | None = None,
    ) -> list[EmployeeWindow]: ...

    async def find_invoice_reference(self, invoice_key: uuid.UUID) -> str | None: ...

    async def set_invoice_reference(self, invoice_key: uuid.UUID, reference: str) -> int: ...


class EmployeeRepository(Protocol):
    async def list_candidates(self, *, tenant_id: int, service_id: int) -> list[EmployeeCandidate]: ...

    async def lock_many(self, employee_ids: Sequence[int]) -> None: ...


class TenantRepository(Protocol):
    async def get(self, tenant_id: int) -> Tenant | None: ...

    async def get_service(self, tenant_id: int, service_id: int) -> Service | None: ...

    async def get_shift(self, tenant_id: int, shift_id: int) -> Shift | None: ...


class OutboxRepository(Protocol):
    async def enqueue(
        self,
        *,
        topic: str,
        payload: dict[str, Any],
        tenant_id: int | None = None,
        key: str | None = None,
    ) -> OutboxEvent: ...

    async def claim(self, limit: int, now: datetime) -> list[OutboxEvent]: ...

    async def save(self, event: OutboxEvent) -> OutboxEvent: ...


@dataclass(frozen=True)
class Repositories:
    slots: SlotRepository
    bookings: BookingRepository
    employees: EmployeeRepository
    tenants: TenantRepository
    outbox: OutboxRepository

