from datetime import date
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_current_user_id, get_session
from ..domain.errors import BookingDomainError
from ..infrastructure.repositories import (
    SqlAlchemyEmployeeRepository,
    SqlAlchemySlotRepository,
    SqlAlchemyTenantRepository,
)
from ..schemas import SlotCreate, SlotGenerate, SlotGenerateRead, SlotRead
from ..usecases import slots as slot_usecase
from .errors import http_error, run_mutation

router = APIRouter(prefix="/tenants", tags=["slots"], dependencies=[Depends(get_current_user_id)])


@router.get("/{tenant_id}/services/{service_id}/slots/availability", response_model=List[SlotRead])
async def list_availability(
    tenant_id: int = Path(..., ge=1),
    service_id: int = Path(..., ge=1),
    start_date: date = Query(...),
    end_date: date = Query(...),
    session: AsyncSession = Depends(get_session),
) -> list[SlotRead]:
    slot_repo = SqlAlchemySlotRepository(session)
    try:
        slots = await slot_usecase.list_availability(
            slot_repo,
            tenant_id=tenant_id,
            service_id=service_id,
            start_date=start_date,
            end_date=end_date,
        )
    except BookingDomainError as exc:
        raise http_error(exc) from exc
    return [SlotRead.from_db(slot=slot) for slot in slots]


@router.post("/{tenant_id}/slots", response_model=SlotRead, status_code=status.HTTP_201_CREATED)
async def create_slot(
    payload: SlotCreate,
    tenant_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
) -> SlotRead:
    slot_repo = SqlAlchemySlotRepository(session)
    tenant_repo = SqlAlchemyTenantRepository(session)
    try:
        slot = await run_mutation(
            session,
            lambda: slot_usecase.create_slot(
                slot_repo,
                tenant_repo,
                tenant_id=tenant_id,
                service_id=payload.service_id,
                slot_date=payload.slot_date,
                start_time=payload.start_time,
                end_time=payload.end_time,
                capacity=payload.capacity,
                employee_id=payload.employee_id,
            ),
        )
    except IntegrityError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="slot conflicts with an existing slot")
    return SlotRead.from_db(slot=slot)


@router.post(
    "/{tenant_id}/shifts/{shift_id}/slots/generate",
    response_model=SlotGenerateRead,
    status_code=status.HTTP_201_CREATED,
)
async def generate_slots(
    payload: SlotGenerate,
    tenant_id: int = Path(..., ge=1),
    shift_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
) -> SlotGenerateRead:
    slot_repo = SqlAlchemySlotRepository(session)
    tenant_repo = SqlAlchemyTenantRepository(session)
    employee_repo = SqlAlchemyEmployeeRepository(session)
    try:
        result = await run_mutation(
            session,
            lambda: slot_usecase.generate_slots_for_shift(
                slot_repo,
                tenant_repo,
                employee_repo,
                tenant_id=tenant_id,
                shift_id=shift_id,
                service_id=payload.service_id,
                start_date=payload.start_date,
                end_date=payload.end_date,
            ),
        )
    except IntegrityError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="slots were generated concurrently; retry")
    return SlotGenerateRead(
        created_count=len(result.created),
        skipped=result.skipped,
        slots=[SlotRead.from_db(slot=slot) for slot in result.created],
    )
