import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from .models import Booking, BookingStatus, Slot
from .utils.tickets import build_ticket_reference


class _CustomerFields(BaseModel):
    customer_name: str = Field(min_length=1, max_length=255)
    customer_phone: Optional[str] = Field(default=None, max_length=50)
    customer_email: Optional[str] = Field(default=None, max_length=255)
    visitor_count: int = Field(ge=1)
    adult_count: int = Field(ge=0)
    child_count: int = Field(default=0, ge=0)
    total_price: Decimal = Field(default=Decimal("0"), ge=0, max_digits=10, decimal_places=2)
    employee_id: Optional[int] = None
    notes: Optional[str] = None
    language: str = Field(default="en", max_length=8)

    @model_validator(mode="after")
    def _check_counts(self) -> "_CustomerFields":
        if self.adult_count + self.child_count != self.visitor_count:
            raise ValueError("visitor_count must equal adult_count + child_count")
        return self


class BookingCreate(_CustomerFields):
    service_id: int
    slot_id: int


class BulkBookingCreate(_CustomerFields):
    service_id: int
    slot_ids: List[int] = Field(min_length=1)

    @model_validator(mode="after")
    def _check_slots(self) -> "BulkBookingCreate":
        if len(self.slot_ids) != self.visitor_count:
            raise ValueError("bulk booking needs exactly one slot per visitor")
        return self


class BookingUpdate(BaseModel):
    status: Optional[BookingStatus] = None
    customer_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    customer_phone: Optional[str] = Field(default=None, max_length=50)
    customer_email: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = None
    total_price: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    language: Optional[str] = Field(default=None, max_length=8)
    version: Optional[int] = Field(default=None, ge=1)


class BookingCancel(BaseModel):
    version: Optional[int] = Field(default=None, ge=1)


class BookingReschedule(BaseModel):
    slot_id: int
    version: Optional[int] = Field(default=None, ge=1)


class SingleBookingRequest(BookingCreate):
    kind: Literal["single"]


class BulkBookingRequest(BulkBookingCreate):
    kind: Literal["bulk"]


class RescheduleBookingRequest(BookingReschedule):
    kind: Literal["reschedule"]
    booking_id: uuid.UUID


class CancelBookingRequest(BookingCancel):
    kind: Literal["cancel"]
    booking_id: uuid.UUID


BookingRequest = Annotated[
    Union[SingleBookingRequest, BulkBookingRequest, RescheduleBookingRequest, CancelBookingRequest],
    Field(discriminator="kind"),
]


class BookingRead(BaseModel):
    booking_id: uuid.UUID
    booking_group_id: Optional[uuid.UUID]
    tenant_id: int
    service_id: int
    slot_id: int
    employee_id: Optional[int]
    customer_name: str
    customer_phone: Optional[str]
    customer_email: Optional[str]
    visitor_count: int
    adult_count: int
    child_count: int
    total_price: Decimal
    status: BookingStatus
    notes: Optional[str]
    language: str
    qr_scanned: bool
    qr_scanned_at: Optional[datetime]
    invoice_reference: Optional[str]
    ticket_reference: str
    version: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_db(cls, *, booking: Booking) -> "BookingRead":
        return cls(
            booking_id=booking.id,
            booking_group_id=booking.booking_group_id,
            tenant_id=booking.tenant_id,
            service_id=booking.service_id,
            slot_id=booking.slot_id,
            employee_id=booking.employee_id,
            customer_name=booking.customer_name,
            customer_phone=booking.customer_phone,
            customer_email=booking.customer_email,
            visitor_count=booking.visitor_count,
            adult_count=booking.adult_count,
            child_count=booking.child_count,
            total_price=booking.total_price,
            status=booking.status,
            notes=booking.notes,
            language=booking.language,
            qr_scanned=bool(booking.qr_scanned),
            qr_scanned_at=booking.qr_scanned_at,
            invoice_reference=booking.invoice_reference,
            ticket_reference=build_ticket_reference(booking.id, booking.qr_token),
            version=booking.version,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )


class SlotCounterRead(BaseModel):
    slot_id: int
    original_capacity: int
    available_capacity: int
    booked_count: int


class AllocationRead(BaseModel):
    booking_group_id: Optional[uuid.UUID]
    booking_count: int
    total_visitors: int
    total_price: Decimal
    bookings: List[BookingRead]
    slots: List[SlotCounterRead]


class RescheduleRead(BaseModel):
    booking: BookingRead
    slot_id_from: Optional[int]
    slot_id_to: int


class SlotRead(BaseModel):
    slot_id: int
    tenant_id: int
    service_id: int
    shift_id: Optional[int]
    employee_id: Optional[int]
    slot_date: date
    start_time: time
    end_time: time
    original_capacity: int
    available_capacity: int
    booked_count: int
    is_available: bool

    @classmethod
    def from_db(cls, *, slot: Slot) -> "SlotRead":
        return cls(
            slot_id=slot.id,
            tenant_id=slot.tenant_id,
            service_id=slot.service_id,
            shift_id=slot.shift_id,
            employee_id=slot.employee_id,
            slot_date=slot.slot_date,
            start_time=slot.start_time,
            end_time=slot.end_time,
            original_capacity=slot.original_capacity,
            available_capacity=slot.available_capacity,
            booked_count=slot.booked_count,
            is_available=slot.is_available,
        )


class SlotCreate(BaseModel):
    service_id: int
    slot_date: date
    start_time: time
    end_time: time
    capacity: int = Field(ge=1)
    employee_id: Optional[int] = None


class SlotGenerate(BaseModel):
    service_id: int
    start_date: date
    end_date: date


class SlotGenerateRead(BaseModel):
    created_count: int
    skipped: int
    slots: List[SlotRead]


class TicketDetailsRead(BaseModel):
    booking_id: uuid.UUID
    booking_group_id: Optional[uuid.UUID]
    customer_name: str
    service_name: str
    tenant_name: str
    slot_date: date
    start_time: time
    end_time: time
    visitor_count: int
    adult_count: int
    child_count: int
    total_price: Decimal


class TicketScan(BaseModel):
    reference: str = Field(min_length=1)


class TicketScanRead(BaseModel):
    result: Literal["validated", "already_scanned"]
    scanned_at: datetime
    scanned_by_user_id: Optional[int]
    status: BookingStatus
    ticket: TicketDetailsRead
