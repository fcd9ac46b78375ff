from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from ..domain.collaborators import (
    CollaboratorError,
    InvoicingCollaborator,
    NotificationCollaborator,
    TicketingCollaborator,
)
from ..domain.repositories import BookingRepository, OutboxRepository
from ..models import OutboxStatus
from ..utils.tickets import build_ticket_reference
from ..utils.time import utc_now_naive
from .bookings import BOOKING_CREATED, BOOKING_RESCHEDULED

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Collaborators:
    ticketing: TicketingCollaborator
    invoicing: InvoicingCollaborator | None = None
    notification: NotificationCollaborator | None = None


@dataclass
class DispatchSummary:
    processed: int = 0
    published: int = 0
    failed: int = 0
    dead_lettered: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


Handler = Callable[[dict[str, Any], BookingRepository, Collaborators], Awaitable[None]]


async def _render_tickets(tickets: list[dict[str, Any]], collaborators: Collaborators) -> list[str]:
    rendered = []
    for ticket in tickets:
        booking_id = ticket["booking_id"]
        rendered.append(
            await collaborators.ticketing.render_ticket(
                {
                    "booking_id": booking_id,
                    "reference": build_ticket_reference(uuid.UUID(booking_id), ticket["qr_token"]),
                }
            )
        )
    return rendered


async def _notify(payload: dict[str, Any], topic: str, tickets: list[str], collaborators: Collaborators, **extra: Any) -> None:
    if collaborators.notification is None:
        logger.info("notification collaborator not configured; skipping topic=%s", topic)
        return
    await collaborators.notification.send_ticket(
        {
            "event": topic,
            "customer_name": payload.get("customer_name"),
            "customer_email": payload.get("customer_email"),
            "customer_phone": payload.get("customer_phone"),
            "language": payload.get("language"),
            "tickets": tickets,
            **extra,
        }
    )


async def _handle_created(payload: dict[str, Any], booking_repo: BookingRepository, collaborators: Collaborators) -> None:
    invoice_key = uuid.UUID(payload["invoice_key"])
    reference = await booking_repo.find_invoice_reference(invoice_key)
    if reference is None and collaborators.invoicing is not None:
        reference = await collaborators.invoicing.request_invoice(payload)
        updated = await booking_repo.set_invoice_reference(invoice_key, reference)
        logger.info("invoice stored key=%s reference=%s bookings=%s", invoice_key, reference, updated)
    elif reference is not None:
        logger.info("invoice already requested key=%s reference=%s", invoice_key, reference)

    tickets = await _render_tickets(payload.get("tickets", []), collaborators)
    await _notify(payload, BOOKING_CREATED, tickets, collaborators, invoice_reference=reference)


async def _handle_rescheduled(payload: dict[str, Any], booking_repo: BookingRepository, collaborators: Collaborators) -> None:
    tickets = await _render_tickets(
        [{"booking_id": payload["booking_id"], "qr_token": payload["qr_token"]}],
        collaborators,
    )
    await _notify(
        payload,
        BOOKING_RESCHEDULED,
        tickets,
        collaborators,
        slot_date=payload.get("slot_date"),
        start_time=payload.get("start_time"),
    )


_HANDLERS: dict[str, Handler] = {
    BOOKING_CREATED: _handle_created,
    BOOKING_RESCHEDULED: _handle_rescheduled,
}


def _backoff(retries: int, base_seconds: float, max_seconds: float) -> timedelta:
    return timedelta(seconds=min(base_seconds * 2 ** max(0, retries - 1), max_seconds))


async def dispatch_outbox_events(
    outbox_repo: OutboxRepository,
    booking_repo: BookingRepository,
    collaborators: Collaborators,
    *,
    batch_size: int = 50,
    max_retries: int = 5,
    backoff_seconds: float = 30.0,
    max_backoff_seconds: float = 3600.0,
    now: datetime | None = None,
) -> DispatchSummary:
    """
    Deliver pending and failed outbox events to the collaborators.

    A failing event is marked `failed` with its error and is not claimed again
    until `next_attempt_at`, which doubles from `backoff_seconds` per retry up
    to `max_backoff_seconds`; after `max_retries` attempts it becomes
    `dead_letter`. Bookings are
    never touched beyond storing the invoice reference.
    """
    now = now or utc_now_naive()
    rows = await outbox_repo.claim(max(1, batch_size), now)
    summary = DispatchSummary()
    max_retries = max(1, max_retries)
    for row in rows:
        summary.processed += 1
        try:
            handler = _HANDLERS.get(row.topic)
            if handler is None:
                raise CollaboratorError(f"no handler for topic {row.topic}")
            await handler(json.loads(row.payload_json or "{}"), booking_repo, collaborators)
        except (CollaboratorError, ValueError, KeyError) as exc:
            row.retries = int(row.retries or 0) + 1
            row.last_error = str(exc)[:500]
            if row.retries >= max_retries:
                row.status = OutboxStatus.DEAD_LETTER
                row.next_attempt_at = None
                summary.dead_lettered += 1
                logger.error("outbox event dead-lettered id=%s topic=%s error=%s", row.id, row.topic, exc)
            else:
                row.status = OutboxStatus.FAILED
                row.next_attempt_at = now + _backoff(row.retries, backoff_seconds, max_backoff_seconds)
                summary.failed += 1
                logger.warning(
                    "outbox event failed id=%s topic=%s retries=%s next_attempt_at=%s error=%s",
                    row.id,
                    row.topic,
                    row.retries,
                    row.next_attempt_at,
                    exc,
                )
        else:
            row.status = OutboxStatus.PUBLISHED
            row.published_at = utc_now_naive()
            row.last_error = None
            row.next_attempt_at = None
            summary.published += 1
        row.updated_at = utc_now_naive()
        await outbox_repo.save(row)
    return summary
