from datetime import datetime
from decimal import Decimal
from typing import Literal
from pydantic import BaseModel, Field


class TripCreate(BaseModel):
    origin: str = Field(min_length=1)
    destination: str = Field(min_length=1)
    departure_date: datetime
    price: Decimal = Field(ge=0)
    total_seats: int = Field(gt=0)


class TripStatusUpdate(BaseModel):
    status: Literal["pending", "approved", "denied", "cancelled", "completed"]


class TripResponse(BaseModel):
    id: str
    origin: str
    destination: str
    departure_date: str
    price: str
    total_seats: int
    available_seats: int
    status: str


class SeatSnapshotResponse(BaseModel):
    trip_id: str
    total_seats: int
    available_seats: int
    occupied_seats: list[int]


class LedgerAuditResponse(BaseModel):
    trip_id: str
    total_seats: int
    available_seats: int
    confirmed_bookings: int
    expected_available: int
    consistent: bool


class BookingRequest(BaseModel):
    seat_number: int
    full_name: str = Field(min_length=1)
    student_id: str = Field(min_length=1)
    student_class: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    emergency_contact: str = Field(min_length=1)
    has_luggage: bool = False
    luggage_count: int = Field(default=0, ge=0)


class BookingResponse(BaseModel):
    booking_id: str
    trip_id: str
    seat_number: int
    status: str
    ticket_price: str
    travel_safe_fee: str
    luggage_tagging_fee: str
    total_amount: str
    payment_reference: str | None = None


class PaymentInitializeRequest(BaseModel):
    booking_id: str
    payment_method: Literal["card", "momo"] = "card"
    momo_provider: Literal["mtn", "vod", "tgo"] | None = None
    momo_phone: str | None = None
    email: str | None = None


class PaymentInitializeResponse(BaseModel):
    booking_id: str
    reference: str | None = None
    checkout_url: str | None = None
    access_code: str | None = None
    status: str | None = None
    display_text: str | None = None
    already_confirmed: bool = False


class PaymentVerifyRequest(BaseModel):
    reference: str = Field(min_length=1)
    booking_id: str | None = None


class PaymentVerifyResponse(BaseModel):
    success: bool
    status: str
    booking_id: str | None = None


class OtpSubmitRequest(BaseModel):
    reference: str = Field(min_length=1)
    otp: str = Field(min_length=1)


class OtpSubmitResponse(BaseModel):
    reference: str
    status: str | None = None
    display_text: str | None = None


class WebhookAckResponse(BaseModel):
    received: bool
    status: str
    duplicate: bool = False


class ExpireStaleRequest(BaseModel):
    older_than_minutes: int | None = Field(default=None, gt=0)


class ExpireStaleResponse(BaseModel):
    expired_booking_ids: list[str]


class OutboxEventResponse(BaseModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    payload: str
    status: str
    attempts: int
    created_at: str


class PaymentAttemptResponse(BaseModel):
    reference: str
    status: str
    channel: str
    amount: str
    currency: str
    error_code: str | None = None
    error_message: str | None = None
    created_at: str


class WebhookEventResponse(BaseModel):
    id: str
    provider: str
    reference: str
    event_type: str
    booking_id: str | None = None
    status: str
    created_at: str
