from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from busconnect.domain.state_machine import TripStatus
from busconnect.infrastructure.db.models import Base, Profile, Trip
from busconnect.infrastructure.db.session import engine, get_db_session


def _dt(days_from_now: int, hour: int, minute: int) -> datetime:
    # Ghana runs on GMT year round.
    now_utc = datetime.now(timezone.utc)
    target = now_utc + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0)


def seed_profiles(db) -> None:
    profiles = [
        {
            "user_id": "demo-student",
            "email": "student@busconnect.test",
            "full_name": "Demo Student",
            "role": "student",
            "access_token": "demo-student-token",
        },
        {
            "user_id": "demo-organizer",
            "email": "organizer@busconnect.test",
            "full_name": "Demo Organizer",
            "role": "organizer",
            "access_token": "demo-organizer-token",
        },
        {
            "user_id": "demo-admin",
            "email": "admin@busconnect.test",
            "full_name": "Demo Admin",
            "role": "admin",
            "access_token": "demo-admin-token",
        },
    ]

    for item in profiles:
        existing = db.execute(
            select(Profile).where(Profile.user_id == item["user_id"])
        ).scalar_one_or_none()
        if existing:
            existing.email = item["email"]
            existing.full_name = item["full_name"]
            existing.role = item["role"]
            existing.access_token = item["access_token"]
            continue

        db.add(Profile(**item))


def seed_trips(db) -> None:
    trip_defs = [
        {
            "origin": "Nyankpala Campus",
            "destination": "Tamale Central",
            "departure_date": _dt(days_from_now=3, hour=7, minute=30),
            "price": Decimal("45.00"),
            "total_seats": 50,
        },
        {
            "origin": "Tamale Central",
            "destination": "Nyankpala Campus",
            "departure_date": _dt(days_from_now=3, hour=17, minute=0),
            "price": Decimal("45.00"),
            "total_seats": 50,
        },
        {
            "origin": "Nyankpala Campus",
            "destination": "Accra (Circle)",
            "departure_date": _dt(days_from_now=10, hour=6, minute=0),
            "price": Decimal("250.00"),
            "total_seats": 60,
        },
    ]

    for item in trip_defs:
        existing = db.execute(
            select(Trip)
            .where(Trip.origin == item["origin"])
            .where(Trip.destination == item["destination"])
            .where(Trip.organizer_id == "demo-organizer")
        ).scalar_one_or_none()
        if existing:
            # Seat counts are left alone once bookings may exist.
            existing.departure_date = item["departure_date"]
            existing.price = item["price"]
            existing.status = TripStatus.APPROVED
            continue

        db.add(
            Trip(
                organizer_id="demo-organizer",
                origin=item["origin"],
                destination=item["destination"],
                departure_date=item["departure_date"],
                price=item["price"],
                total_seats=item["total_seats"],
                available_seats=item["total_seats"],
                status=TripStatus.APPROVED,
            )
        )


def main() -> None:
    Base.metadata.create_all(bind=engine)
    with get_db_session() as db:
        seed_profiles(db)
        seed_trips(db)
    print("Seed complete: demo profiles and approved Nyankpala/Tamale trips added.")


if __name__ == "__main__":
    main()
