from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from busconnect.config import Settings, get_settings
from busconnect.domain.caller import Caller
from busconnect.domain.exceptions import (
    BookingNotFound,
    Forbidden,
    InvalidSeatNumber,
    InvalidTripState,
    SeatConflict,
    TripNotFound,
)
from busconnect.domain.pricing import quote_fare
from busconnect.domain.state_machine import BookingStatus, TripStatus
from busconnect.infrastructure.db.models import Booking
from busconnect.infrastructure.realtime.change_feed import mark_trip_changed
from busconnect.infrastructure.repositories.booking_repository import BookingRepository
from busconnect.infrastructure.repositories.outbox_repository import OutboxRepository
from busconnect.infrastructure.repositories.seat_ledger import SeatLedger
from busconnect.infrastructure.repositories.trip_repository import TripRepository


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PassengerDetails:
    full_name: str
    student_id: str
    student_class: str
    phone: str
    emergency_contact: str
    has_luggage: bool = False
    luggage_count: int = 0


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class BookingService:
    """Application service coordinating seat reservation."""

    def __init__(self, db: Session, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()
        self.booking_repository = BookingRepository(db)
        self.trip_repository = TripRepository(db)
        self.seat_ledger = SeatLedger(db)
        self.outbox = OutboxRepository(db)

    def reserve_seat(
        self,
        trip_id: str,
        seat_number: int,
        passenger: PassengerDetails,
        caller: Caller,
    ) -> Booking:
        trip = self.trip_repository.get_by_id(trip_id)

        if not trip:
            raise TripNotFound(f"Trip {trip_id} not found")

        if trip.status != TripStatus.APPROVED:
            raise InvalidTripState("This trip is not open for booking.")

        if _as_utc(trip.departure_date) <= datetime.now(timezone.utc):
            raise InvalidTripState("This trip has already departed.")

        if seat_number < 1 or seat_number > trip.total_seats:
            raise InvalidSeatNumber(
                f"Seat number must be between 1 and {trip.total_seats}."
            )

        # Fast path only; the partial unique index decides.
        if seat_number in self.seat_ledger.list_occupied_seats(trip_id):
            raise SeatConflict(trip_id=trip_id, seat_number=seat_number)

        fare = quote_fare(
            trip.price,
            passenger.has_luggage,
            passenger.luggage_count,
            travel_safe_fee=self.settings.travel_safe_fee,
            luggage_tagging_fee=self.settings.luggage_tagging_fee,
            max_free_bags=self.settings.max_free_bags,
        )

        try:
            booking = self.booking_repository.create_provisional(
                trip_id=trip_id,
                user_id=caller.user_id,
                seat_number=seat_number,
                full_name=passenger.full_name,
                student_id=passenger.student_id,
                student_class=passenger.student_class,
                phone=passenger.phone,
                emergency_contact=passenger.emergency_contact,
                has_luggage=passenger.has_luggage,
                luggage_count=passenger.luggage_count,
                ticket_price=fare.ticket_price,
                travel_safe_fee=fare.travel_safe_fee,
                luggage_tagging_fee=fare.luggage_tagging_fee,
                total_amount=fare.total,
            )
        except IntegrityError as exc:
            self.db.rollback()
            logger.info(
                "Seat %s on trip %s lost to a concurrent reservation",
                seat_number,
                trip_id,
            )
            raise SeatConflict(trip_id=trip_id, seat_number=seat_number) from exc

        mark_trip_changed(self.db, trip_id)
        logger.info(
            "Provisional booking %s holds seat %s on trip %s",
            booking.id,
            seat_number,
            trip_id,
        )
        return booking

    def get_booking(self, booking_id: str, caller: Caller) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)

        if not booking:
            raise BookingNotFound("Booking not found")

        if not caller.can_access(booking.user_id):
            raise Forbidden()

        return booking

    def expire_stale_provisional(
        self,
        cutoff: datetime,
        caller: Caller,
    ) -> list[str]:
        """
        Cancels provisional holds older than cutoff that have no live
        payment, releasing their seats. available_seats is untouched
        because provisional bookings never decremented it.
        """

        if not caller.is_admin:
            raise Forbidden()

        expired: list[str] = []
        for booking in self.booking_repository.list_stale_provisional(cutoff):
            released = self.booking_repository.transition_status(
                booking.id,
                BookingStatus.PROVISIONAL,
                BookingStatus.CANCELLED,
            )
            if not released:
                continue

            self.outbox.add(
                aggregate_type="booking",
                aggregate_id=booking.id,
                event_type="BOOKING_EXPIRED",
                payload={
                    "booking_id": booking.id,
                    "trip_id": booking.trip_id,
                    "seat_number": booking.seat_number,
                    "user_id": booking.user_id,
                },
                dedupe_key=f"booking:{booking.id}:expired",
            )
            mark_trip_changed(self.db, booking.trip_id)
            expired.append(booking.id)

        self.db.commit()

        if expired:
            logger.info("Expired %s stale provisional bookings", len(expired))
        return expired
