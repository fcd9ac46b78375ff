from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, time

from ..domain.errors import InvalidInputError, SlotConflictError
from ..domain.repositories import EmployeeRepository, SlotRepository, TenantRepository
from ..domain.services import day_of_week
from ..models import Slot
from ..utils.time import add_minutes, date_range

MAX_GENERATION_DAYS = 366


@dataclass
class GenerationResult:
    created: list[Slot] = field(default_factory=list)
    skipped: int = 0


async def list_availability(
    slot_repo: SlotRepository,
    *,
    tenant_id: int,
    service_id: int,
    start_date: date,
    end_date: date,
) -> list[Slot]:
    if end_date < start_date:
        raise InvalidInputError("end_date must not be earlier than start_date")
    slots = await slot_repo.list_available(
        tenant_id=tenant_id,
        service_id=service_id,
        start_date=start_date,
        end_date=end_date,
    )
    return [s for s in slots if s.is_available and s.available_capacity > 0]


async def create_slot(
    slot_repo: SlotRepository,
    tenant_repo: TenantRepository,
    *,
    tenant_id: int,
    service_id: int,
    slot_date: date,
    start_time: time,
    end_time: time,
    capacity: int,
    shift_id: int | None = None,
    employee_id: int | None = None,
) -> Slot:
    if start_time >= end_time:
        raise InvalidInputError("start_time must be earlier than end_time")
    if capacity < 1:
        raise InvalidInputError("capacity must be >= 1")
    if await tenant_repo.get_service(tenant_id, service_id) is None:
        raise InvalidInputError(f"service {service_id} not found for tenant {tenant_id}")
    if await slot_repo.window_taken(
        tenant_id=tenant_id,
        service_id=service_id,
        employee_id=employee_id,
        slot_date=slot_date,
        start_time=start_time,
    ):
        raise SlotConflictError(
            "a slot already starts at this time",
            slot_date=slot_date.isoformat(),
            start_time=start_time.isoformat(),
        )
    return await slot_repo.create(
        tenant_id=tenant_id,
        service_id=service_id,
        shift_id=shift_id,
        employee_id=employee_id,
        slot_date=slot_date,
        start_time=start_time,
        end_time=end_time,
        capacity=capacity,
    )


async def generate_slots_for_shift(
    slot_repo: SlotRepository,
    tenant_repo: TenantRepository,
    employee_repo: EmployeeRepository,
    *,
    tenant_id: int,
    shift_id: int,
    service_id: int,
    start_date: date,
    end_date: date,
) -> GenerationResult:
    """
    Expand a shift into bookable slots between two dates (inclusive).

    Slots step through the shift window in the service's duration and must
    end inside the shift. Slots already present for the same shift, date and
    start time are left untouched, so re-running is safe even once bookings
    exist.
    """
    if end_date < start_date:
        raise InvalidInputError("end_date must not be earlier than start_date")
    if (end_date - start_date).days >= MAX_GENERATION_DAYS:
        raise InvalidInputError(f"cannot generate more than {MAX_GENERATION_DAYS} days at once")

    shift = await tenant_repo.get_shift(tenant_id, shift_id)
    if shift is None:
        raise InvalidInputError(f"shift {shift_id} not found for tenant {tenant_id}")
    if not shift.is_active:
        raise InvalidInputError(f"shift {shift_id} is not active")
    if shift.service_id is not None and shift.service_id != service_id:
        raise InvalidInputError(f"shift {shift_id} belongs to service {shift.service_id}")

    service = await tenant_repo.get_service(tenant_id, service_id)
    if service is None or not service.is_active:
        raise InvalidInputError(f"service {service_id} is not available for tenant {tenant_id}")

    if shift.employee_id is not None:
        candidates = await employee_repo.list_candidates(tenant_id=tenant_id, service_id=service_id)
        if shift.employee_id not in {c.employee_id for c in candidates}:
            raise InvalidInputError(
                f"employee {shift.employee_id} does not offer service {service_id}",
                employee_id=shift.employee_id,
            )

    days = set(shift.days_of_week or [])
    result = GenerationResult()
    for current in date_range(start_date, end_date):
        if day_of_week(current) not in days:
            continue
        start = shift.start_time
        while True:
            end = add_minutes(start, service.duration_minutes)
            if end is None or end > shift.end_time:
                break
            if await slot_repo.exists(
                shift_id=shift.id,
                employee_id=shift.employee_id,
                slot_date=current,
                start_time=start,
            ):
                result.skipped += 1
            else:
                slot = await slot_repo.create(
                    tenant_id=tenant_id,
                    service_id=service.id,
                    shift_id=shift.id,
                    employee_id=shift.employee_id,
                    slot_date=current,
                    start_time=start,
                    end_time=end,
                    capacity=service.capacity_per_slot,
                )
                result.created.append(slot)
            start = end
    return result
