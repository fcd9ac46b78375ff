from typing import Awaitable, Callable, TypeVar

from fastapi import HTTPException, status
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..domain.errors import BookingDomainError
from ..utils.transactions import run_in_transaction

T = TypeVar("T")

STATUS_BY_CODE: dict[str, int] = {
    "invalid_input": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "duplicate_slot": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "slot_in_past": status.HTTP_400_BAD_REQUEST,
    "slot_conflict": status.HTTP_409_CONFLICT,
    "slot_not_found": status.HTTP_404_NOT_FOUND,
    "slot_unavailable": status.HTTP_409_CONFLICT,
    "insufficient_capacity": status.HTTP_409_CONFLICT,
    "employee_unavailable": status.HTTP_409_CONFLICT,
    "invalid_state_transition": status.HTTP_409_CONFLICT,
    "version_conflict": status.HTTP_409_CONFLICT,
    "booking_not_found": status.HTTP_404_NOT_FOUND,
    "forbidden_tenant": status.HTTP_403_FORBIDDEN,
    "malformed_ticket": status.HTTP_400_BAD_REQUEST,
    "ticket_superseded": status.HTTP_409_CONFLICT,
    "persistence_failure": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def http_error(exc: BookingDomainError) -> HTTPException:
    return HTTPException(
        status_code=STATUS_BY_CODE.get(exc.code, status.HTTP_400_BAD_REQUEST),
        detail=exc.to_detail(),
    )


async def run_mutation(session: AsyncSession, work: Callable[[], Awaitable[T]]) -> T:
    """Run a write use case in a retried transaction and translate its failures to HTTP."""
    try:
        return await run_in_transaction(
            session,
            work,
            attempts=get_settings().transaction_retry_attempts,
        )
    except BookingDomainError as exc:
        raise http_error(exc) from exc
    except OperationalError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "persistence_failure", "message": "database temporarily unavailable"},
        ) from exc

