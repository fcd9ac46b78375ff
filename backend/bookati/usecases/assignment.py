from __future__ import annotations

import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import date, time
from typing import Sequence

from ..domain.errors import EmployeeUnavailableError, InvalidInputError
from ..domain.repositories import BookingRepository, EmployeeCandidate, EmployeeRepository
from ..domain.services import shift_covers, time_ranges_overlap
from ..models import AssignmentPolicy, SchedulingMode, Slot, Tenant


@dataclass(frozen=True)
class Assignment:
    """An employee held earlier in the same request, not yet persisted."""

    employee_id: int
    slot_date: date
    start_time: time
    end_time: time


def _is_eligible(candidate: EmployeeCandidate, slot: Slot) -> bool:
    if not candidate.is_active:
        return False
    if candidate.paused_until is not None and slot.slot_date <= candidate.paused_until:
        return False
    return shift_covers(candidate.shifts, slot.slot_date, slot.start_time, slot.end_time)


def _slot_eligible(candidates: Sequence[EmployeeCandidate], slot: Slot) -> list[int]:
    if slot.employee_id is not None:
        candidates = [c for c in candidates if c.employee_id == slot.employee_id]
    return sorted(c.employee_id for c in candidates if _is_eligible(c, slot))


async def lock_eligible(
    employee_repo: EmployeeRepository,
    *,
    tenant_id: int,
    service_id: int,
    slots: Sequence[Slot],
) -> list[EmployeeCandidate]:
    """Lock everyone who could serve any of `slots` in a single ascending-id pass."""
    candidates = await employee_repo.list_candidates(tenant_id=tenant_id, service_id=service_id)
    ids = {employee_id for slot in slots for employee_id in _slot_eligible(candidates, slot)}
    if ids:
        await employee_repo.lock_many(sorted(ids))
    return candidates


async def resolve_employee(
    employee_repo: EmployeeRepository,
    booking_repo: BookingRepository,
    *,
    tenant: Tenant,
    service_id: int,
    slot: Slot,
    requested_employee_id: int | None = None,
    pending: Sequence[Assignment] = (),
    exclude_booking_id: uuid.UUID | None = None,
    policy: AssignmentPolicy | None = None,
    candidates: Sequence[EmployeeCandidate] | None = None,
) -> int | None:
    """
    Pick the employee who will serve `slot`, or None in service-based mode.

    auto_rotate orders eligible staff by how many active bookings they already
    hold that day (ties broken by id) and takes the first one whose window is
    free. manual validates the caller's choice against the same rules.

    Pass `candidates` from `lock_eligible` when several slots are resolved in
    one transaction; otherwise the candidates are listed and locked here.
    """
    if tenant.scheduling_mode == SchedulingMode.SERVICE_BASED:
        return None
    policy = policy or tenant.assignment_policy

    if candidates is None:
        candidates = await lock_eligible(
            employee_repo, tenant_id=tenant.id, service_id=service_id, slots=[slot]
        )
    eligible = _slot_eligible(candidates, slot)

    if policy == AssignmentPolicy.MANUAL:
        if requested_employee_id is None:
            raise InvalidInputError("employee_id is required for manual assignment", slot_id=slot.id)
        if requested_employee_id not in eligible:
            raise EmployeeUnavailableError(
                f"employee {requested_employee_id} cannot serve slot {slot.id}",
                employee_id=requested_employee_id,
                slot_id=slot.id,
            )
        eligible = [requested_employee_id]

    if not eligible:
        raise EmployeeUnavailableError(f"no employee can serve slot {slot.id}", slot_id=slot.id)

    windows = await booking_repo.list_employee_windows(
        eligible, slot.slot_date, exclude_booking_id=exclude_booking_id
    )
    same_day = [a for a in pending if a.slot_date == slot.slot_date]

    load: Counter[int] = Counter(w.employee_id for w in windows)
    load.update(a.employee_id for a in same_day)
    busy = {
        w.employee_id
        for w in windows
        if time_ranges_overlap(w.start_time, w.end_time, slot.start_time, slot.end_time)
    }
    busy.update(
        a.employee_id
        for a in same_day
        if time_ranges_overlap(a.start_time, a.end_time, slot.start_time, slot.end_time)
    )

    for employee_id in sorted(eligible, key=lambda e: (load[e], e)):
        if employee_id not in busy:
            return employee_id
    if policy == AssignmentPolicy.MANUAL:
        raise EmployeeUnavailableError(
            f"employee {requested_employee_id} already has a booking overlapping slot {slot.id}",
            employee_id=requested_employee_id,
            slot_id=slot.id,
        )
    raise EmployeeUnavailableError(f"every eligible employee is busy for slot {slot.id}", slot_id=slot.id)
