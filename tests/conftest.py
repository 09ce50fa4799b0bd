import os

os.environ["DATABASE_URL"] = "sqlite://"

from datetime import datetime, timedelta, timezone
from decimal import Decimal
import threading

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from busconnect.api.dependencies import get_change_feed, get_db, get_paystack_client
from busconnect.application.booking_service import BookingService, PassengerDetails
from busconnect.application.confirmation_service import PaymentConfirmationService
from busconnect.application.payment_gateway import PaymentGatewayAdapter
from busconnect.config import Settings, get_settings
from busconnect.domain.caller import Caller, UserRole
from busconnect.domain.state_machine import TripStatus
from busconnect.infrastructure.db.models import Base, Profile, Trip
from busconnect.infrastructure.gateways.paystack_client import GatewayResponse, compute_signature
from busconnect.infrastructure.realtime.change_feed import SeatChangeFeed
from busconnect.main import app


SECRET_KEY = "sk_test_secret"

STUDENT = Caller(user_id="student-1", email="ama@uds.edu.gh", role=UserRole.STUDENT)
OTHER_STUDENT = Caller(user_id="student-2", email="kofi@uds.edu.gh", role=UserRole.STUDENT)
ORGANIZER = Caller(user_id="organizer-1", email="org@uds.edu.gh", role=UserRole.ORGANIZER)
ADMIN = Caller(user_id="admin-1", email="admin@busconnect.test", role=UserRole.ADMIN)

TOKENS = {
    STUDENT.user_id: "student-token",
    OTHER_STUDENT.user_id: "other-student-token",
    ORGANIZER.user_id: "organizer-token",
    ADMIN.user_id: "admin-token",
}


def _bearer(caller: Caller) -> dict:
    return {"Authorization": f"Bearer {TOKENS[caller.user_id]}"}


class FakePaystackClient:
    """In-memory stand-in for PaystackClient keyed by transaction reference."""

    def __init__(self, secret_key: str = SECRET_KEY):
        self.secret_key = secret_key
        self.charges: dict[str, dict] = {}
        self.initialized: list[dict] = []
        self.verify_calls: list[str] = []
        self.otp_calls: list[tuple[str, str]] = []
        self.initialize_response: GatewayResponse | None = None
        self.verify_error: Exception | None = None
        self.verify_hook = None
        self._lock = threading.Lock()

    def initialize_transaction(self, payload: dict) -> GatewayResponse:
        self.initialized.append(payload)
        if self.initialize_response is not None:
            return self.initialize_response

        reference = payload["reference"]
        self.charges[reference] = {
            "status": "abandoned",
            "amount": payload["amount"],
            "metadata": payload["metadata"],
        }
        return GatewayResponse(
            status_code=200,
            body={
                "status": True,
                "message": "Authorization URL created",
                "data": {
                    "authorization_url": f"https://checkout.paystack.com/{reference}",
                    "access_code": f"ac_{reference}",
                    "reference": reference,
                },
            },
        )

    def settle(
        self,
        reference: str,
        status: str = "success",
        amount: int | None = None,
        metadata: dict | None = None,
    ) -> None:
        charge = self.charges.setdefault(
            reference,
            {"status": "abandoned", "amount": 0, "metadata": {}},
        )
        charge["status"] = status
        if amount is not None:
            charge["amount"] = amount
        if metadata is not None:
            charge["metadata"] = metadata

    def verify_transaction(self, reference: str) -> GatewayResponse:
        with self._lock:
            self.verify_calls.append(reference)
        if self.verify_hook is not None:
            self.verify_hook(reference)
        if self.verify_error is not None:
            raise self.verify_error

        charge = self.charges.get(reference)
        if charge is None:
            return GatewayResponse(
                status_code=400,
                body={"status": False, "message": "Transaction reference not found"},
            )

        return GatewayResponse(
            status_code=200,
            body={
                "status": True,
                "message": "Verification successful",
                "data": {
                    "reference": reference,
                    "status": charge["status"],
                    "amount": charge["amount"],
                    "currency": "GHS",
                    "channel": "card",
                    "gateway_response": "Approved",
                    "metadata": charge["metadata"],
                },
            },
        )

    def submit_otp(self, reference: str, otp: str) -> GatewayResponse:
        self.otp_calls.append((reference, otp))
        return GatewayResponse(
            status_code=200,
            body={
                "status": True,
                "message": "Charge attempted",
                "data": {
                    "reference": reference,
                    "status": "pay_offline",
                    "display_text": "Please complete authorization on your mobile phone",
                },
            },
        )

    def compute_signature(self, raw_body: bytes) -> str:
        return compute_signature(self.secret_key, raw_body)

    def close(self) -> None:
        pass


# -----------------------------
# Storage
# -----------------------------
@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'busconnect.db'}",
        connect_args={"check_same_thread": False, "timeout": 15},
    )

    @event.listens_for(engine, "connect")
    def sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA busy_timeout=15000;")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def change_feed(session_factory):
    feed = SeatChangeFeed(session_factory).install()
    yield feed
    feed.uninstall()


@pytest.fixture
def db(session_factory, change_feed):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        paystack_secret_key=SECRET_KEY,
        app_url="https://busconnect.test",
    )


@pytest.fixture
def paystack():
    return FakePaystackClient()


# -----------------------------
# Domain data
# -----------------------------
@pytest.fixture
def profiles(session_factory):
    with session_factory() as session:
        for caller in (STUDENT, OTHER_STUDENT, ORGANIZER, ADMIN):
            session.add(
                Profile(
                    user_id=caller.user_id,
                    email=caller.email,
                    full_name=caller.user_id.replace("-", " ").title(),
                    role=caller.role.value,
                    access_token=TOKENS[caller.user_id],
                )
            )
        session.commit()
    return {"student": STUDENT, "other": OTHER_STUDENT, "organizer": ORGANIZER, "admin": ADMIN}


@pytest.fixture
def student(profiles):
    return profiles["student"]


@pytest.fixture
def other_student(profiles):
    return profiles["other"]


@pytest.fixture
def admin(profiles):
    return profiles["admin"]


@pytest.fixture
def make_trip(session_factory):
    def _make_trip(**overrides) -> str:
        values = {
            "origin": "Nyankpala Campus",
            "destination": "Tamale Central",
            "departure_date": datetime.now(timezone.utc) + timedelta(days=3),
            "price": Decimal("45.00"),
            "total_seats": 50,
            "status": TripStatus.APPROVED,
        }
        values.update(overrides)
        values.setdefault("available_seats", values["total_seats"])

        with session_factory() as session:
            trip = Trip(**values)
            session.add(trip)
            session.commit()
            return trip.id

    return _make_trip


@pytest.fixture
def trip(make_trip):
    return make_trip()


@pytest.fixture
def passenger():
    return PassengerDetails(
        full_name="Ama Mensah",
        student_id="UDS/0042/21",
        student_class="Level 300",
        phone="0241234567",
        emergency_contact="0209876543",
    )


@pytest.fixture
def reserve(session_factory, settings, passenger):
    """Reserves and commits a seat, returning the booking id."""

    def _reserve(trip_id: str, seat_number: int, caller: Caller = STUDENT) -> str:
        with session_factory() as session:
            booking = BookingService(session, settings).reserve_seat(
                trip_id=trip_id,
                seat_number=seat_number,
                passenger=passenger,
                caller=caller,
            )
            session.commit()
            return booking.id

    return _reserve


@pytest.fixture
def initialize(session_factory, settings, paystack):
    """Starts a card charge for a booking and returns its reference."""

    def _initialize(booking_id: str, caller: Caller = STUDENT) -> str:
        with session_factory() as session:
            charge = PaymentGatewayAdapter(session, paystack, settings).initialize_charge(
                booking_id=booking_id,
                caller=caller,
            )
            session.commit()
            return charge.reference

    return _initialize


@pytest.fixture
def confirmation_service(session_factory, settings, paystack):
    """Builds a confirmation service on a fresh session; callers close it."""

    def _build():
        session = session_factory()
        gateway = PaymentGatewayAdapter(session, paystack, settings)
        return session, PaymentConfirmationService(session, gateway, settings)

    return _build


# -----------------------------
# HTTP
# -----------------------------
@pytest.fixture
def client(session_factory, settings, paystack, change_feed, profiles):
    def override_get_db():
        db = session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_paystack_client] = lambda: paystack
    app.dependency_overrides[get_change_feed] = lambda: change_feed

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    return _bearer
