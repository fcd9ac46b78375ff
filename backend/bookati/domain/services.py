from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import date, time
from decimal import ROUND_DOWN, Decimal
from typing import Iterable, Mapping, Sequence

from ..models import BookingStatus
from .errors import (
    DuplicateSlotError,
    InsufficientCapacityError,
    InvalidInputError,
    InvalidStateTransitionError,
    SlotNotFoundError,
    SlotUnavailableError,
)

ALLOWED_STATUS_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}
TERMINAL_STATUSES = frozenset({BookingStatus.CANCELLED, BookingStatus.COMPLETED})

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class SlotSnapshot:
    slot_id: int
    tenant_id: int
    service_id: int
    is_available: bool
    original_capacity: int
    available_capacity: int
    booked_count: int


@dataclass(frozen=True)
class ShiftWindow:
    days_of_week: frozenset[int]
    start_time: time
    end_time: time


def find_duplicates(slot_ids: Iterable[int]) -> list[int]:
    counts = Counter(slot_ids)
    return sorted(slot_id for slot_id, n in counts.items() if n > 1)


def ensure_unique_slots(slot_ids: Sequence[int]) -> None:
    if not slot_ids:
        raise InvalidInputError("at least one slot is required")
    duplicates = find_duplicates(slot_ids)
    if duplicates:
        raise DuplicateSlotError("slot requested more than once", slot_ids=duplicates)


def validate_allocation(
    requested: Mapping[int, int],
    snapshots: Mapping[int, SlotSnapshot],
    *,
    tenant_id: int,
    service_id: int | None = None,
) -> None:
    """
    Pure validation of a whole allocation against locked slot snapshots.
    Every slot is checked before the caller writes anything, so a failure on
    any one slot leaves all of them untouched.
    """
    for slot_id in sorted(requested):
        units = requested[slot_id]
        if units <= 0:
            raise InvalidInputError("units must be positive", slot_id=slot_id)
        snapshot = snapshots.get(slot_id)
        if snapshot is None or snapshot.tenant_id != tenant_id:
            raise SlotNotFoundError(f"slot {slot_id} not found", slot_id=slot_id)
        if service_id is not None and snapshot.service_id != service_id:
            raise InvalidInputError(f"slot {slot_id} does not belong to service {service_id}", slot_id=slot_id)
        if not snapshot.is_available:
            raise SlotUnavailableError(f"slot {slot_id} is not available", slot_id=slot_id)
        if snapshot.available_capacity < units:
            raise InsufficientCapacityError(
                f"slot {slot_id} has {snapshot.available_capacity} available, {units} requested",
                slot_id=slot_id,
                available=snapshot.available_capacity,
                requested=units,
            )


def ensure_transition(current: BookingStatus, target: BookingStatus) -> None:
    if current == target and current not in TERMINAL_STATUSES:
        return
    if target not in ALLOWED_STATUS_TRANSITIONS[current]:
        raise InvalidStateTransitionError(
            f"cannot move booking from {current.value} to {target.value}",
            status_from=current.value,
            status_to=target.value,
        )


def ensure_editable(current: BookingStatus) -> None:
    if current in TERMINAL_STATUSES:
        raise InvalidStateTransitionError(
            f"booking is {current.value} and can no longer be edited",
            status_from=current.value,
        )


def day_of_week(value: date) -> int:
    """0=Sunday .. 6=Saturday, matching stored shift days."""
    return (value.weekday() + 1) % 7


def time_ranges_overlap(a_start: time, a_end: time, b_start: time, b_end: time) -> bool:
    return a_start < b_end and a_end > b_start


def shift_covers(shifts: Iterable[ShiftWindow], slot_date: date, start: time, end: time) -> bool:
    dow = day_of_week(slot_date)
    return any(
        dow in shift.days_of_week and shift.start_time <= start and end <= shift.end_time
        for shift in shifts
    )


def split_price(total: Decimal, parts: int) -> list[Decimal]:
    """Split evenly to the cent; the last part absorbs the rounding remainder."""
    if parts < 1:
        raise InvalidInputError("cannot split price into zero parts")
    share = (total / parts).quantize(_CENT, rounding=ROUND_DOWN)
    shares = [share] * (parts - 1)
    shares.append(total - share * (parts - 1))
    return shares


def distribute_visitors(adult_count: int, child_count: int) -> list[tuple[int, int]]:
    """One visitor per row: adults first, then children."""
    return [(1, 0)] * adult_count + [(0, 1)] * child_count
