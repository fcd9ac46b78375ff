from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_current_tenant_id, get_current_user_id, get_session
from ..domain.errors import BookingDomainError
from ..infrastructure.repositories import SqlAlchemyBookingRepository
from ..schemas import TicketDetailsRead, TicketScan, TicketScanRead
from ..usecases import tickets as ticket_usecase
from ..utils.audit_log import emit_audit_log
from .errors import http_error, run_mutation

router = APIRouter(prefix="", tags=["tickets"])


async def _public_view(session: AsyncSession, raw: str) -> TicketDetailsRead:
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        view = await ticket_usecase.get_public_ticket(booking_repo, raw=raw)
    except BookingDomainError as exc:
        raise http_error(exc) from exc
    return TicketDetailsRead(**asdict(view))


@router.get("/tickets/details", response_model=TicketDetailsRead)
async def get_ticket_details(
    ref: str = Query(..., min_length=1),
    session: AsyncSession = Depends(get_session),
) -> TicketDetailsRead:
    return await _public_view(session, ref)


@router.get("/bookings/{booking_id}/details", response_model=TicketDetailsRead)
async def get_booking_details(
    booking_id: str,
    session: AsyncSession = Depends(get_session),
) -> TicketDetailsRead:
    return await _public_view(session, booking_id)


@router.post("/tickets/scan", response_model=TicketScanRead)
async def scan_ticket(
    payload: TicketScan,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
    tenant_id: int | None = Depends(get_current_tenant_id),
) -> TicketScanRead:
    booking_repo = SqlAlchemyBookingRepository(session)
    outcome = await run_mutation(
        session,
        lambda: ticket_usecase.scan_ticket(
            booking_repo, raw=payload.reference, user_id=user_id, tenant_id=tenant_id
        ),
    )
    try:
        emit_audit_log(
            action="ticket.scanned",
            initiator="user",
            booking_id=outcome.ticket.booking_id,
            booking_group_id=outcome.ticket.booking_group_id,
            tenant_id=tenant_id,
            slot_id=None,
            user_id=user_id,
            visitor_count=outcome.ticket.visitor_count,
            status_from=None,
            status_to=outcome.status,
            version=None,
            extra={"result": outcome.result},
        )
    except RuntimeError:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failed")
    return TicketScanRead(
        result=outcome.result,
        scanned_at=outcome.scanned_at,
        scanned_by_user_id=outcome.scanned_by_user_id,
        status=outcome.status,
        ticket=TicketDetailsRead(**asdict(outcome.ticket)),
    )
