import uuid
from typing import Any, List, cast

import pytest
from bookati.models import BookingStatus
from bookati.routers import bookings as router
from bookati.schemas import BookingCreate, BookingReschedule, BookingRequest, BookingUpdate, BulkBookingCreate
from bookati.usecases.bookings import LifecycleResult
from fakes import FakeStore
from fastapi import HTTPException
from pydantic import TypeAdapter
from sqlalchemy.ext.asyncio import AsyncSession


class DummySession:
    """Minimal async session stub that supports `async with session.begin()`."""

    async def __aenter__(self) -> "DummySession":
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> bool:
        return False

    def begin(self) -> "DummySession":
        return self


def _store() -> FakeStore:
    store = FakeStore()
    store.add_tenant(1)
    store.add_service(1)
    store.add_slot(1, capacity=2)
    store.add_slot(2, capacity=1)
    return store


def _wire(monkeypatch: pytest.MonkeyPatch, store: FakeStore) -> List[dict[str, Any]]:
    logs: List[dict[str, Any]] = []

    def fake_emit(**kwargs: Any) -> None:
        logs.append(kwargs)

    monkeypatch.setattr(router, "build_repositories", lambda session: store.repositories())
    monkeypatch.setattr(router, "emit_audit_log", fake_emit)
    return logs


def _create_payload(**overrides: Any) -> BookingCreate:
    fields: dict[str, Any] = dict(
        service_id=1,
        slot_id=1,
        customer_name="Ada",
        visitor_count=2,
        adult_count=1,
        child_count=1,
    )
    fields.update(overrides)
    return BookingCreate(**fields)


@pytest.mark.asyncio
async def test_create_booking_returns_counters_and_emits_audit(monkeypatch: pytest.MonkeyPatch) -> None:
    store = _store()
    logs = _wire(monkeypatch, store)

    result = await router.create_booking(
        payload=_create_payload(),
        tenant_id=1,
        session=cast(AsyncSession, DummySession()),
        user_id=42,
    )

    assert result.booking_count == 1
    assert result.booking_group_id is None
    assert result.bookings[0].status == BookingStatus.PENDING
    assert result.slots[0].model_dump() == {
        "slot_id": 1,
        "original_capacity": 2,
        "available_capacity": 0,
        "booked_count": 2,
    }
    assert len(logs) == 1
    assert logs[0]["action"] == "booking.created"
    assert logs[0]["user_id"] == 42
    assert logs[0]["visitor_count"] == 2


@pytest.mark.asyncio
async def test_create_bulk_booking_emits_one_audit_per_booking(monkeypatch: pytest.MonkeyPatch) -> None:
    store = _store()
    logs = _wire(monkeypatch, store)
    payload = BulkBookingCreate(
        service_id=1,
        slot_ids=[1, 2],
        customer_name="Ada",
        visitor_count=2,
        adult_count=2,
    )

    result = await router.create_bulk_booking(
        payload=payload,
        tenant_id=1,
        session=cast(AsyncSession, DummySession()),
        user_id=42,
    )

    assert result.booking_count == 2
    assert result.booking_group_id is not None
    assert {log["booking_group_id"] for log in logs} == {result.booking_group_id}
    assert store.counters_balanced()


@pytest.mark.asyncio
async def test_full_slot_maps_to_409(monkeypatch: pytest.MonkeyPatch) -> None:
    store = _store()
    logs = _wire(monkeypatch, store)

    with pytest.raises(HTTPException) as excinfo:
        await router.create_booking(
            payload=_create_payload(slot_id=2),
            tenant_id=1,
            session=cast(AsyncSession, DummySession()),
            user_id=42,
        )

    assert excinfo.value.status_code == 409
    assert excinfo.value.detail["code"] == "insufficient_capacity"  # type: ignore[index]
    assert logs == []
    assert store.counters(2) == (1, 1, 0)


@pytest.mark.asyncio
async def test_audit_failure_returns_500(monkeypatch: pytest.MonkeyPatch) -> None:
    store = _store()
    _wire(monkeypatch, store)

    def failing_emit(**_: Any) -> None:
        raise RuntimeError("fail")

    monkeypatch.setattr(router, "emit_audit_log", failing_emit)

    with pytest.raises(HTTPException) as excinfo:
        await router.create_booking(
            payload=_create_payload(),
            tenant_id=1,
            session=cast(AsyncSession, DummySession()),
            user_id=42,
        )
    assert excinfo.value.status_code == 500


@pytest.mark.asyncio
async def test_cancel_twice_releases_once_and_audits_once(monkeypatch: pytest.MonkeyPatch) -> None:
    store = _store()
    store.add_slot(3, capacity=3, booked=2)
    booking = store.add_booking(slot_id=3, visitor_count=2)
    logs = _wire(monkeypatch, store)

    for _ in range(2):
        await router.cancel_booking(
            tenant_id=1,
            booking_id=booking.id,
            payload=None,
            if_match=None,
            session=cast(AsyncSession, DummySession()),
            user_id=7,
        )

    assert store.counters(3) == (3, 3, 0)
    assert [log["action"] for log in logs] == ["booking.cancelled"]
    assert logs[0]["extra"] == {"released_units": 2}


@pytest.mark.asyncio
async def test_stale_version_maps_to_409(monkeypatch: pytest.MonkeyPatch) -> None:
    store = _store()
    booking = store.add_booking(slot_id=1, version=3)
    _wire(monkeypatch, store)

    with pytest.raises(HTTPException) as excinfo:
        await router.update_booking(
            payload=BookingUpdate(notes="late"),
            tenant_id=1,
            booking_id=booking.id,
            if_match='"2"',
            session=cast(AsyncSession, DummySession()),
            user_id=7,
        )
    assert excinfo.value.status_code == 409
    assert excinfo.value.detail["code"] == "version_conflict"  # type: ignore[index]


@pytest.mark.asyncio
async def test_reschedule_router_uses_if_match(monkeypatch: pytest.MonkeyPatch) -> None:
    store = _store()
    booking = store.add_booking(slot_id=1)
    logs = _wire(monkeypatch, store)
    seen: dict[str, Any] = {}

    async def fake_reschedule(repos: object, **kwargs: Any) -> LifecycleResult:
        seen.update(kwargs)
        booking.slot_id = kwargs["new_slot_id"]
        booking.version += 1
        return LifecycleResult(
            booking=booking,
            status_from=booking.status,
            changed=True,
            previous_slot_id=1,
        )

    monkeypatch.setattr(cast(Any, router.booking_usecase), "reschedule_booking", fake_reschedule)

    result = await router.reschedule_booking(
        payload=BookingReschedule(slot_id=2, version=5),
        tenant_id=1,
        booking_id=booking.id,
        if_match='W/"1"',
        session=cast(AsyncSession, DummySession()),
        user_id=7,
    )

    assert seen["expected_version"] == 1
    assert (result.slot_id_from, result.slot_id_to) == (1, 2)
    assert result.booking.version == 2
    assert logs[0]["action"] == "booking.rescheduled"
    assert logs[0]["extra"] == {"slot_id_from": 1, "slot_id_to": 2}


@pytest.mark.asyncio
async def test_booking_request_dispatches_on_kind(monkeypatch: pytest.MonkeyPatch) -> None:
    store = _store()
    store.add_slot(3, capacity=1, booked=1)
    booking = store.add_booking(slot_id=3)
    _wire(monkeypatch, store)
    adapter: TypeAdapter[Any] = TypeAdapter(BookingRequest)

    created = await router.submit_booking_request(
        payload=adapter.validate_python(
            {"kind": "single", "service_id": 1, "slot_id": 2, "customer_name": "Bo", "visitor_count": 1, "adult_count": 1}
        ),
        tenant_id=1,
        session=cast(AsyncSession, DummySession()),
        user_id=7,
    )
    moved = await router.submit_booking_request(
        payload=adapter.validate_python({"kind": "reschedule", "booking_id": str(booking.id), "slot_id": 1}),
        tenant_id=1,
        session=cast(AsyncSession, DummySession()),
        user_id=7,
    )

    assert created.kind == "single"
    assert created.allocation is not None and created.allocation.bookings[0].slot_id == 2
    assert moved.kind == "reschedule"
    assert moved.booking is not None and moved.booking.slot_id == 1
    assert moved.slot_id_from == 3
    assert store.counters(3) == (1, 1, 0)


def test_booking_request_rejects_unknown_kind() -> None:
    with pytest.raises(ValueError):
        TypeAdapter(BookingRequest).validate_python({"kind": "merge", "booking_id": str(uuid.uuid4())})
