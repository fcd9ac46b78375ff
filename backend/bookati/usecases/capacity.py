from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

from ..domain.errors import InvalidInputError, PersistenceError
from ..domain.repositories import SlotRepository
from ..domain.services import SlotSnapshot, validate_allocation
from ..models import Slot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlotCounters:
    slot_id: int
    original_capacity: int
    available_capacity: int
    booked_count: int


def _snapshot(slot: Slot) -> SlotSnapshot:
    return SlotSnapshot(
        slot_id=slot.id,
        tenant_id=slot.tenant_id,
        service_id=slot.service_id,
        is_available=slot.is_available,
        original_capacity=slot.original_capacity,
        available_capacity=slot.available_capacity,
        booked_count=slot.booked_count,
    )


def _counters(slot: Slot) -> SlotCounters:
    return SlotCounters(
        slot_id=slot.id,
        original_capacity=slot.original_capacity,
        available_capacity=slot.available_capacity,
        booked_count=slot.booked_count,
    )


async def reserve_capacity(
    slot_repo: SlotRepository,
    requested: Mapping[int, int],
    *,
    tenant_id: int,
    service_id: int | None = None,
) -> dict[int, Slot]:
    """
    Take `units` on every requested slot, or none of them.

    Rows are locked in ascending id order and every snapshot is validated
    before the first write. Each write is additionally guarded in SQL so the
    counters can never go negative even if a lock was not honoured.
    """
    if not requested:
        raise InvalidInputError("at least one slot is required")
    locked = await slot_repo.lock_many(sorted(requested))
    validate_allocation(
        requested,
        {slot_id: _snapshot(slot) for slot_id, slot in locked.items()},
        tenant_id=tenant_id,
        service_id=service_id,
    )

    applied: list[tuple[Slot, int]] = []
    for slot_id in sorted(requested):
        slot = locked[slot_id]
        units = requested[slot_id]
        if not await slot_repo.apply_delta(slot, units):
            await _undo(slot_repo, applied)
            raise PersistenceError("slot counters changed under lock", slot_id=slot_id)
        applied.append((slot, units))
    return locked


async def release_capacity(
    slot_repo: SlotRepository,
    released: Mapping[int, int],
) -> dict[int, Slot]:
    """Give units back. A slot that cannot absorb the release means its counters are corrupt."""
    locked = await slot_repo.lock_many(sorted(released))
    for slot_id in sorted(released):
        slot = locked.get(slot_id)
        if slot is None:
            raise PersistenceError(f"slot {slot_id} vanished while holding bookings", slot_id=slot_id)
        if not await slot_repo.apply_delta(slot, -released[slot_id]):
            logger.error(
                "release rejected slot_id=%s units=%s booked_count=%s",
                slot_id,
                released[slot_id],
                slot.booked_count,
            )
            raise PersistenceError("slot booked_count lower than released units", slot_id=slot_id)
    return locked


async def transfer_capacity(
    slot_repo: SlotRepository,
    *,
    from_slot_id: int,
    to_slot_id: int,
    units: int,
    tenant_id: int,
    service_id: int,
) -> tuple[Slot, Slot]:
    """Move units between two slots with both rows locked in canonical order."""
    if from_slot_id == to_slot_id:
        raise InvalidInputError("source and target slot are the same", slot_id=to_slot_id)
    locked = await slot_repo.lock_many(sorted((from_slot_id, to_slot_id)))
    source = locked.get(from_slot_id)
    if source is None:
        raise PersistenceError(f"slot {from_slot_id} vanished while holding bookings", slot_id=from_slot_id)
    validate_allocation(
        {to_slot_id: units},
        {slot_id: _snapshot(slot) for slot_id, slot in locked.items()},
        tenant_id=tenant_id,
        service_id=service_id,
    )
    target = locked[to_slot_id]
    if not await slot_repo.apply_delta(target, units):
        raise PersistenceError("slot counters changed under lock", slot_id=to_slot_id)
    if not await slot_repo.apply_delta(source, -units):
        await slot_repo.apply_delta(target, -units)
        raise PersistenceError("slot booked_count lower than released units", slot_id=from_slot_id)
    return source, target


async def revert_transfer(slot_repo: SlotRepository, *, source: Slot, target: Slot, units: int) -> None:
    """Undo a transfer_capacity whose follow-up step failed. Both rows are still locked."""
    if not await slot_repo.apply_delta(target, -units):
        raise PersistenceError("could not return units to the target slot", slot_id=target.id)
    if not await slot_repo.apply_delta(source, units):
        raise PersistenceError("could not restore units on the source slot", slot_id=source.id)


def counters_of(slots: Mapping[int, Slot]) -> list[SlotCounters]:
    return [_counters(slots[slot_id]) for slot_id in sorted(slots)]


async def _undo(slot_repo: SlotRepository, applied: list[tuple[Slot, int]]) -> None:
    for slot, units in reversed(applied):
        await slot_repo.apply_delta(slot, -units)
