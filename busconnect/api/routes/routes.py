from datetime import datetime, timedelta, timezone
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from busconnect.api.dependencies import get_current_caller, get_db
from busconnect.api.schemas.schemas import (
    BookingRequest,
    BookingResponse,
    ExpireStaleRequest,
    ExpireStaleResponse,
    LedgerAuditResponse,
    OutboxEventResponse,
    PaymentAttemptResponse,
    SeatSnapshotResponse,
    TripCreate,
    TripResponse,
    TripStatusUpdate,
)
from busconnect.application.booking_service import BookingService, PassengerDetails
from busconnect.config import Settings, get_settings
from busconnect.domain.caller import Caller, UserRole
from busconnect.domain.exceptions import (
    BookingNotFound,
    BusConnectError,
    Forbidden,
    GatewayError,
    GatewayNotConfigured,
    InvalidPaymentRequest,
    InvalidSeatNumber,
    InvalidStateTransitionError,
    InvalidTripState,
    InvalidWebhookPayload,
    InvalidWebhookSignature,
    PaymentNotFound,
    SeatConflict,
    TripNotFound,
    Unauthorized,
)
from busconnect.domain.state_machine import TripStatus
from busconnect.infrastructure.db.models import Booking, OutboxEvent, Payment, Trip
from busconnect.infrastructure.repositories.outbox_repository import OutboxRepository
from busconnect.infrastructure.repositories.payment_repository import PaymentRepository
from busconnect.infrastructure.repositories.seat_ledger import SeatLedger
from busconnect.infrastructure.repositories.trip_repository import TripRepository


router = APIRouter()
logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (SeatConflict, status.HTTP_409_CONFLICT),
    (InvalidStateTransitionError, status.HTTP_409_CONFLICT),
    (InvalidTripState, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidSeatNumber, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidPaymentRequest, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (TripNotFound, status.HTTP_404_NOT_FOUND),
    (BookingNotFound, status.HTTP_404_NOT_FOUND),
    (PaymentNotFound, status.HTTP_404_NOT_FOUND),
    (Unauthorized, status.HTTP_401_UNAUTHORIZED),
    (InvalidWebhookSignature, status.HTTP_401_UNAUTHORIZED),
    (InvalidWebhookPayload, status.HTTP_400_BAD_REQUEST),
    (Forbidden, status.HTTP_403_FORBIDDEN),
    (GatewayNotConfigured, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (GatewayError, status.HTTP_502_BAD_GATEWAY),
)


def to_http(exc: BusConnectError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            break
    else:
        status_code = status.HTTP_400_BAD_REQUEST

    if isinstance(exc, Forbidden):
        detail = "Forbidden"
    elif isinstance(exc, GatewayError) and not isinstance(exc, GatewayNotConfigured):
        detail = {
            "error": str(exc),
            "reference": exc.reference,
            "code": exc.code,
            "next_step": exc.next_step,
        }
    else:
        detail = str(exc)

    return HTTPException(status_code=status_code, detail=detail)


def require_admin(caller: Caller) -> None:
    if not caller.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden",
        )


def _trip_response(trip: Trip) -> TripResponse:
    return TripResponse(
        id=trip.id,
        origin=trip.origin,
        destination=trip.destination,
        departure_date=trip.departure_date.isoformat(),
        price=str(trip.price),
        total_seats=trip.total_seats,
        available_seats=trip.available_seats,
        status=TripStatus(trip.status).value,
    )


def _booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        booking_id=booking.id,
        trip_id=booking.trip_id,
        seat_number=booking.seat_number,
        status=booking.status.value,
        ticket_price=str(booking.ticket_price),
        travel_safe_fee=str(booking.travel_safe_fee),
        luggage_tagging_fee=str(booking.luggage_tagging_fee),
        total_amount=str(booking.total_amount),
        payment_reference=booking.payment_reference,
    )


def _payment_response(payment: Payment) -> PaymentAttemptResponse:
    return PaymentAttemptResponse(
        reference=payment.gateway_reference,
        status=payment.status.value,
        channel=payment.channel,
        amount=str(payment.amount),
        currency=payment.currency,
        error_code=payment.error_code,
        error_message=payment.error_message,
        created_at=payment.created_at.isoformat(),
    )


def _outbox_response(item: OutboxEvent) -> OutboxEventResponse:
    return OutboxEventResponse(
        id=item.id,
        aggregate_type=item.aggregate_type,
        aggregate_id=item.aggregate_id,
        event_type=item.event_type,
        payload=item.payload,
        status=item.status,
        attempts=item.attempts,
        created_at=item.created_at.isoformat(),
    )


@router.get("/health")
def health():
    return {"message": "BusConnect booking engine is running"}


# -----------------------------
# Trips
# -----------------------------
@router.post("/trips", response_model=TripResponse, status_code=status.HTTP_201_CREATED)
def create_trip(
    request: TripCreate,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
):
    if caller.role not in (UserRole.ORGANIZER, UserRole.ADMIN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden",
        )

    trip = TripRepository(db).create(
        origin=request.origin,
        destination=request.destination,
        departure_date=request.departure_date,
        price=request.price,
        total_seats=request.total_seats,
        organizer_id=caller.user_id,
    )
    logger.info("Trip %s created by %s", trip.id, caller.user_id)
    return _trip_response(trip)


@router.get("/trips/{trip_id}", response_model=TripResponse)
def get_trip(trip_id: str, db: Session = Depends(get_db)):
    trip = TripRepository(db).get_by_id(trip_id)
    if not trip:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Trip not found",
        )
    return _trip_response(trip)


@router.post("/trips/{trip_id}/status", response_model=TripResponse)
def set_trip_status(
    trip_id: str,
    request: TripStatusUpdate,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
):
    require_admin(caller)

    repository = TripRepository(db)
    trip = repository.get_by_id(trip_id)
    if not trip:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Trip not found",
        )

    repository.set_status(trip, TripStatus(request.status))
    db.flush()
    return _trip_response(trip)


@router.get("/trips/{trip_id}/seats", response_model=SeatSnapshotResponse)
def get_trip_seats(trip_id: str, db: Session = Depends(get_db)):
    try:
        snapshot = SeatLedger(db).snapshot(trip_id)
    except TripNotFound as exc:
        raise to_http(exc) from exc

    return SeatSnapshotResponse(**snapshot.as_dict())


# -----------------------------
# Bookings
# -----------------------------
@router.post(
    "/trips/{trip_id}/bookings",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
)
def reserve_seat(
    trip_id: str,
    request: BookingRequest,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    service = BookingService(db, settings)
    passenger = PassengerDetails(
        full_name=request.full_name,
        student_id=request.student_id,
        student_class=request.student_class,
        phone=request.phone,
        emergency_contact=request.emergency_contact,
        has_luggage=request.has_luggage,
        luggage_count=request.luggage_count,
    )

    try:
        booking = service.reserve_seat(
            trip_id=trip_id,
            seat_number=request.seat_number,
            passenger=passenger,
            caller=caller,
        )
    except BusConnectError as exc:
        raise to_http(exc) from exc

    return _booking_response(booking)


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        booking = BookingService(db, settings).get_booking(booking_id, caller)
    except BusConnectError as exc:
        raise to_http(exc) from exc

    return _booking_response(booking)


@router.get("/bookings/{booking_id}/payments", response_model=list[PaymentAttemptResponse])
def list_booking_payments(
    booking_id: str,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        booking = BookingService(db, settings).get_booking(booking_id, caller)
    except BusConnectError as exc:
        raise to_http(exc) from exc

    payments = PaymentRepository(db).list_for_booking(booking.id)
    return [_payment_response(payment) for payment in payments]


# -----------------------------
# Admin
# -----------------------------
@router.post("/admin/bookings/expire-stale", response_model=ExpireStaleResponse)
def expire_stale_bookings(
    request: ExpireStaleRequest,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    minutes = request.older_than_minutes or settings.provisional_hold_minutes
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)

    try:
        expired = BookingService(db, settings).expire_stale_provisional(cutoff, caller)
    except BusConnectError as exc:
        raise to_http(exc) from exc

    return ExpireStaleResponse(expired_booking_ids=expired)


@router.get("/admin/trips/{trip_id}/audit", response_model=LedgerAuditResponse)
def audit_trip(
    trip_id: str,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
):
    require_admin(caller)

    try:
        audit = SeatLedger(db).audit_trip(trip_id)
    except TripNotFound as exc:
        raise to_http(exc) from exc

    return LedgerAuditResponse(
        trip_id=audit.trip_id,
        total_seats=audit.total_seats,
        available_seats=audit.available_seats,
        confirmed_bookings=audit.confirmed_bookings,
        expected_available=audit.expected_available,
        consistent=audit.consistent,
    )


# -----------------------------
# Outbox
# -----------------------------
@router.get("/outbox/events", response_model=list[OutboxEventResponse])
def list_outbox_events(
    status_filter: str = "PENDING",
    aggregate_id: str | None = None,
    limit: int = 50,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
):
    require_admin(caller)

    repository = OutboxRepository(db)
    if aggregate_id:
        events = repository.list_for_aggregate(aggregate_id)
    else:
        events = repository.list_by_status(status_filter, limit)
    return [_outbox_response(item) for item in events]


@router.post("/outbox/events/{event_id}/mark-published", response_model=OutboxEventResponse)
def mark_outbox_event_published(
    event_id: str,
    caller: Caller = Depends(get_current_caller),
    db: Session = Depends(get_db),
):
    require_admin(caller)

    repository = OutboxRepository(db)
    item = repository.get_by_id(event_id)
    if not item:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Outbox event not found",
        )

    repository.mark_published(item)
    return _outbox_response(item)
