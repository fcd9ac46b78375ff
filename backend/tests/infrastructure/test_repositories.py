import uuid
from datetime import time, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncIterator

import pytest
import pytest_asyncio
from bookati.infrastructure.repositories import (
    SqlAlchemyOutboxRepository,
    SqlAlchemySlotRepository,
    build_repositories,
)
from bookati.models import Booking, BookingStatus, OutboxEvent, OutboxStatus, SchedulingMode, Slot, Tenant
from bookati.usecases import bookings as booking_uc
from sqlalchemy import event, func, select, update
from sqlalchemy.dialects import mysql
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlite_db import MONDAY, NOW, employee, open_database, service, slot, tenant

Sessions = async_sessionmaker[AsyncSession]


@pytest_asyncio.fixture
async def sessions(tmp_path: Path) -> AsyncIterator[Sessions]:
    engine, factory = await open_database(tmp_path / "repositories.db")
    async with factory() as session:
        async with session.begin():
            session.add_all([tenant(1), service(1), slot(1, capacity=3), slot(2, start=time(11), end=time(12))])
    yield factory
    await engine.dispose()


async def _counters(sessions: Sessions, slot_id: int) -> tuple[int, int, int]:
    async with sessions() as session:
        row = (
            await session.execute(
                select(Slot.original_capacity, Slot.available_capacity, Slot.booked_count).where(Slot.id == slot_id)
            )
        ).one()
    return tuple(row)  # type: ignore[return-value]


def _mysql_sql(session: AsyncSession) -> list[str]:
    """Record each ORM statement as MySQL would receive it."""
    seen: list[str] = []

    def _record(state: Any) -> None:
        seen.append(str(state.statement.compile(dialect=mysql.dialect())))

    event.listen(session.sync_session, "do_orm_execute", _record)
    return seen


def _booking(slot_id: int, visitor_count: int) -> Booking:
    return Booking(
        id=uuid.uuid4(),
        tenant_id=1,
        service_id=1,
        slot_id=slot_id,
        customer_name="Ada",
        visitor_count=visitor_count,
        adult_count=visitor_count,
        child_count=0,
        total_price=Decimal("10.00"),
        status=BookingStatus.PENDING,
        language="en",
        qr_token="tok",
        qr_scanned=False,
        version=1,
        created_at=NOW,
        updated_at=NOW,
    )


@pytest.mark.asyncio
async def test_apply_delta_is_guarded_and_keeps_loaded_slot_clean(sessions: Sessions) -> None:
    async with sessions() as session:
        async with session.begin():
            repo = SqlAlchemySlotRepository(session)
            loaded = (await repo.lock_many([1]))[1]

            assert await repo.apply_delta(loaded, 2) is True
            assert (loaded.available_capacity, loaded.booked_count) == (1, 2)
            assert loaded not in session.dirty

            assert await repo.apply_delta(loaded, 2) is False
            assert await repo.apply_delta(loaded, -3) is False
            assert (loaded.available_capacity, loaded.booked_count) == (1, 2)

    assert await _counters(sessions, 1) == (3, 1, 2)


@pytest.mark.asyncio
async def test_lock_many_locks_in_id_order_and_refreshes_identity_map(sessions: Sessions) -> None:
    async with sessions() as session:
        seen = _mysql_sql(session)
        async with session.begin():
            repo = SqlAlchemySlotRepository(session)
            first = (await repo.lock_many([2, 1]))[1]
            await session.execute(
                update(Slot)
                .where(Slot.id == 1)
                .values(available_capacity=0, booked_count=3)
                .execution_options(synchronize_session=False)
            )
            assert first.available_capacity == 3

            again = await repo.lock_many([1, 1])

    assert again[1] is first
    assert (first.available_capacity, first.booked_count) == (0, 3)
    assert "ORDER BY slots.id" in seen[0]
    assert seen[0].rstrip().endswith("FOR UPDATE")


@pytest.mark.asyncio
async def test_failed_savepoint_leaves_outer_transaction_usable(sessions: Sessions) -> None:
    async with sessions() as session:
        async with session.begin():
            repos = build_repositories(session)
            held = (await repos.slots.lock_many([1]))[1]
            await repos.slots.apply_delta(held, 1)

            with pytest.raises(IntegrityError):
                async with repos.bookings.savepoint():
                    await repos.bookings.add_many([_booking(1, visitor_count=0)])

            await repos.slots.apply_delta(held, -1)
            await repos.outbox.enqueue(topic="booking.failed", payload={"slot_id": 1})

    async with sessions() as session:
        assert await session.scalar(select(func.count()).select_from(Booking)) == 0
        assert await session.scalar(select(func.count()).select_from(OutboxEvent)) == 1
    assert await _counters(sessions, 1) == (3, 3, 0)


@pytest.mark.asyncio
async def test_outbox_claim_skips_locked_rows_and_waits_for_backoff(sessions: Sessions) -> None:
    async with sessions() as session:
        seen = _mysql_sql(session)
        async with session.begin():
            outbox = SqlAlchemyOutboxRepository(session)
            first = await outbox.enqueue(topic="booking.created", payload={"n": 1}, key=" k1 ")
            waiting = await outbox.enqueue(topic="booking.rescheduled", payload={})
            done = await outbox.enqueue(topic="booking.created", payload={})
            waiting.status = OutboxStatus.FAILED
            waiting.next_attempt_at = NOW + timedelta(minutes=5)
            done.status = OutboxStatus.PUBLISHED
            await outbox.save(waiting)
            await outbox.save(done)
            seen.clear()

            now_rows = await outbox.claim(10, NOW)
            later_rows = await outbox.claim(1, NOW + timedelta(minutes=5))
            all_due = await outbox.claim(10, NOW + timedelta(minutes=5))

    assert first.key == "k1"
    assert first.payload_json == '{"n":1}'
    assert [row.id for row in now_rows] == [first.id]
    assert [row.id for row in later_rows] == [first.id]
    assert [row.id for row in all_due] == [first.id, waiting.id]
    assert "FOR UPDATE SKIP LOCKED" in seen[0]


@pytest.mark.asyncio
async def test_window_taken_matches_manual_slots(sessions: Sessions) -> None:
    async with sessions() as session:
        async with session.begin():
            repo = SqlAlchemySlotRepository(session)
            window = dict(tenant_id=1, service_id=1, slot_date=MONDAY, start_time=time(10))
            taken = await repo.window_taken(employee_id=None, **window)  # type: ignore[arg-type]
            free_for_staff = await repo.window_taken(employee_id=10, **window)  # type: ignore[arg-type]

    assert taken is True
    assert free_for_staff is False


@pytest.mark.asyncio
async def test_bulk_booking_and_reschedule_against_database(sessions: Sessions) -> None:
    async with sessions() as session:
        async with session.begin():
            stored = await session.get(Tenant, 1)
            assert stored is not None
            stored.scheduling_mode = SchedulingMode.EMPLOYEE_BASED
            session.add_all([*employee(10), *employee(11), slot(3, capacity=1, start=time(10), end=time(11))])

    draft = booking_uc.BookingDraft(
        tenant_id=1,
        service_id=1,
        slot_ids=(1, 3),
        customer_name="Ada",
        visitor_count=2,
        adult_count=2,
        total_price=Decimal("25.01"),
    )
    async with sessions() as session:
        async with session.begin():
            created = await booking_uc.create_bulk_booking(build_repositories(session), draft)

    assert sorted(b.employee_id for b in created.bookings) == [10, 11]  # type: ignore[type-var]
    assert [b.total_price for b in created.bookings] == [Decimal("12.50"), Decimal("12.51")]
    assert await _counters(sessions, 1) == (3, 2, 1)
    assert await _counters(sessions, 3) == (1, 0, 1)

    moved = created.bookings[0]
    async with sessions() as session:
        async with session.begin():
            repos = build_repositories(session)
            assert await repos.bookings.get_for_update(moved.id, 2) is None
            result = await booking_uc.reschedule_booking(repos, tenant_id=1, booking_id=moved.id, new_slot_id=2)
            details = await repos.bookings.get_details(moved.id)

    assert result.booking.slot_id == 2
    assert details is not None
    assert (details.service_name, details.tenant_name) == ("Service 1", "Tenant 1")
    assert await _counters(sessions, 1) == (3, 3, 0)
    assert await _counters(sessions, 2) == (1, 0, 1)

    async with sessions() as session:
        async with session.begin():
            repos = build_repositories(session)
            group_id = created.booking_group_id
            assert group_id is not None
            assert await repos.bookings.find_invoice_reference(group_id) is None
            assert await repos.bookings.set_invoice_reference(group_id, "INV-9") == 2
            assert await repos.bookings.find_invoice_reference(group_id) == "INV-9"
