# busconnect/infrastructure/repositories/seat_ledger.py

from dataclasses import dataclass, field
import logging

from sqlalchemy.orm import Session
from sqlalchemy import select, update, func

from busconnect.infrastructure.db.models import Booking, Trip
from busconnect.domain.exceptions import IntegrityAlarm, TripNotFound
from busconnect.domain.state_machine import BookingStatus, SEAT_HOLDING_STATUSES


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SeatSnapshot:
    trip_id: str
    total_seats: int
    available_seats: int
    occupied_seats: frozenset[int] = field(default_factory=frozenset)

    def as_dict(self) -> dict:
        return {
            "trip_id": self.trip_id,
            "total_seats": self.total_seats,
            "available_seats": self.available_seats,
            "occupied_seats": sorted(self.occupied_seats),
        }


@dataclass(frozen=True)
class LedgerAudit:
    trip_id: str
    total_seats: int
    available_seats: int
    confirmed_bookings: int

    @property
    def expected_available(self) -> int:
        return self.total_seats - self.confirmed_bookings

    @property
    def consistent(self) -> bool:
        return self.available_seats == self.expected_available


class SeatLedger:
    """
    Owns seat occupancy reads and is the only writer of
    trips.available_seats.
    """

    def __init__(self, db: Session):
        self.db = db

    def list_occupied_seats(self, trip_id: str) -> set[int]:
        stmt = (
            select(Booking.seat_number)
            .where(Booking.trip_id == trip_id)
            .where(Booking.status.in_(SEAT_HOLDING_STATUSES))
        )
        return set(self.db.execute(stmt).scalars().all())

    def decrement_available_seats(self, trip_id: str) -> None:
        """
        Single conditional UPDATE. Concurrent callers never read-modify-write,
        so the counter cannot go below zero or lose a decrement.
        """

        stmt = (
            update(Trip)
            .where(Trip.id == trip_id)
            .where(Trip.available_seats > 0)
            .values(available_seats=Trip.available_seats - 1)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)

        if result.rowcount != 1:
            raise IntegrityAlarm(
                trip_id=trip_id,
                reason="available_seats already at zero or trip missing",
            )

    def count_confirmed(self, trip_id: str) -> int:
        stmt = (
            select(func.count(Booking.id))
            .where(Booking.trip_id == trip_id)
            .where(Booking.status == BookingStatus.CONFIRMED)
        )
        return int(self.db.execute(stmt).scalar_one())

    def _get_trip(self, trip_id: str) -> Trip:
        trip = self.db.execute(
            select(Trip).where(Trip.id == trip_id)
        ).scalar_one_or_none()

        if not trip:
            raise TripNotFound(f"Trip {trip_id} not found")

        return trip

    def snapshot(self, trip_id: str) -> SeatSnapshot:
        trip = self._get_trip(trip_id)
        # The decrement bypasses the identity map; reload the counter.
        self.db.refresh(trip, attribute_names=["available_seats"])

        return SeatSnapshot(
            trip_id=trip.id,
            total_seats=trip.total_seats,
            available_seats=trip.available_seats,
            occupied_seats=frozenset(self.list_occupied_seats(trip_id)),
        )

    def audit_trip(self, trip_id: str) -> LedgerAudit:
        trip = self._get_trip(trip_id)
        self.db.refresh(trip, attribute_names=["available_seats"])

        audit = LedgerAudit(
            trip_id=trip.id,
            total_seats=trip.total_seats,
            available_seats=trip.available_seats,
            confirmed_bookings=self.count_confirmed(trip_id),
        )

        if not audit.consistent:
            logger.error(
                "Seat ledger drift on trip %s: available=%s expected=%s",
                trip_id,
                audit.available_seats,
                audit.expected_available,
            )

        return audit
