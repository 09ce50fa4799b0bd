# busconnect/infrastructure/repositories/trip_repository.py

from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session
from sqlalchemy import select

from busconnect.infrastructure.db.models import Trip
from busconnect.domain.state_machine import TripStatus


class TripRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, trip_id: str) -> Trip | None:
        return self.db.execute(
            select(Trip).where(Trip.id == trip_id)
        ).scalar_one_or_none()

    def create(
        self,
        origin: str,
        destination: str,
        departure_date: datetime,
        price: Decimal,
        total_seats: int,
        organizer_id: str | None = None,
        status: TripStatus = TripStatus.PENDING,
    ) -> Trip:
        # available_seats starts equal to total_seats and only ever moves
        # through the seat ledger afterwards.
        trip = Trip(
            organizer_id=organizer_id,
            origin=origin,
            destination=destination,
            departure_date=departure_date,
            price=price,
            total_seats=total_seats,
            available_seats=total_seats,
            status=status,
        )
        self.db.add(trip)
        self.db.flush()
        return trip

    def set_status(self, trip: Trip, new_status: TripStatus) -> Trip:
        trip.status = new_status
        return trip
