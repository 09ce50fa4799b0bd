from dataclasses import dataclass, field
from enum import Enum
import json
import logging
import time
from uuid import uuid4

import httpx
from sqlalchemy.orm import Session
from sqlalchemy import select

from busconnect.config import Settings, get_settings
from busconnect.domain.caller import Caller
from busconnect.domain.exceptions import (
    BookingNotFound,
    Forbidden,
    GatewayError,
    InvalidPaymentRequest,
    PaymentNotFound,
)
from busconnect.domain.pricing import to_minor_units
from busconnect.domain.state_machine import BookingStatus, PaymentStatus
from busconnect.infrastructure.db.models import Booking, Profile
from busconnect.infrastructure.gateways.paystack_client import PaystackClient
from busconnect.infrastructure.repositories.booking_repository import BookingRepository
from busconnect.infrastructure.repositories.payment_repository import PaymentRepository


logger = logging.getLogger(__name__)

CHANNEL_CARD = "card"
CHANNEL_MOBILE_MONEY = "mobile_money"
MOMO_PROVIDERS = ("mtn", "vod", "tgo")

INVALID_KEY_NEXT_STEP = (
    "Update PAYSTACK_SECRET_KEY in the service environment "
    "(use a valid sk_live_... key)."
)


class ChargeStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


_STATUS_MAP = {
    "success": ChargeStatus.SUCCESS,
    "failed": ChargeStatus.FAILED,
    "reversed": ChargeStatus.FAILED,
}


@dataclass(frozen=True)
class ChargeInitialization:
    booking_id: str
    reference: str | None = None
    checkout_url: str | None = None
    access_code: str | None = None
    amount_minor: int | None = None
    status: str | None = None
    display_text: str | None = None
    already_confirmed: bool = False


@dataclass(frozen=True)
class ChargeVerification:
    reference: str
    status: ChargeStatus
    amount_minor: int = 0
    booking_id_hint: str | None = None
    message: str | None = None
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class OtpSubmission:
    reference: str
    status: str | None
    display_text: str | None = None


def normalize_phone(value: str) -> str:
    """Mobile money numbers in the 233XXXXXXXXX form Paystack expects."""
    trimmed = "".join(value.split())
    if trimmed.startswith("+"):
        return trimmed[1:]
    if trimmed.startswith("233"):
        return trimmed
    if trimmed.startswith("0") and len(trimmed) == 10:
        return f"233{trimmed[1:]}"
    return trimmed


def _metadata(data: dict) -> dict:
    metadata = data.get("metadata")
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except ValueError:
            return {}
    return metadata if isinstance(metadata, dict) else {}


def booking_id_from_metadata(data: dict) -> str | None:
    booking_id = _metadata(data).get("booking_id")
    return str(booking_id) if booking_id else None


class PaymentGatewayAdapter:
    """
    Wraps the Paystack client with booking ownership checks and payment
    record keeping. Amounts always come from the stored booking.
    """

    def __init__(
        self,
        db: Session,
        client: PaystackClient,
        settings: Settings | None = None,
    ):
        self.db = db
        self.client = client
        self.settings = settings or get_settings()
        self.booking_repository = BookingRepository(db)
        self.payment_repository = PaymentRepository(db)

    def new_reference(self, booking_id: str) -> str:
        return f"BUS-{booking_id[:8]}-{int(time.time() * 1000)}-{uuid4().hex[:6]}"

    def callback_url(self, booking_id: str) -> str | None:
        if not self.settings.app_url:
            return None
        return f"{self.settings.app_url.rstrip('/')}/payment/{booking_id}"

    def initialize_charge(
        self,
        booking_id: str,
        caller: Caller,
        channel: str = CHANNEL_CARD,
        momo_provider: str | None = None,
        momo_phone: str | None = None,
        email: str | None = None,
    ) -> ChargeInitialization:
        booking = self.booking_repository.get_by_id(booking_id)

        if not booking:
            raise BookingNotFound("Booking not found")

        if not caller.can_access(booking.user_id):
            raise Forbidden()

        if booking.status == BookingStatus.CONFIRMED:
            return ChargeInitialization(
                booking_id=booking.id,
                reference=booking.payment_reference,
                status=ChargeStatus.SUCCESS.value,
                already_confirmed=True,
            )

        if booking.status == BookingStatus.CANCELLED:
            raise InvalidPaymentRequest("This booking has been cancelled.")

        if channel not in (CHANNEL_CARD, CHANNEL_MOBILE_MONEY):
            raise InvalidPaymentRequest(f"Unsupported payment channel: {channel}")

        phone = None
        if channel == CHANNEL_MOBILE_MONEY:
            if momo_provider not in MOMO_PROVIDERS or not momo_phone:
                raise InvalidPaymentRequest(
                    "Mobile money payments need a provider (mtn, vod, tgo) and a phone number."
                )
            phone = normalize_phone(momo_phone)

        payer_email = self._payer_email(booking, caller, email)
        reference = self.new_reference(booking.id)
        amount_minor = to_minor_units(booking.total_amount)

        payload = {
            "email": payer_email,
            "amount": amount_minor,
            "reference": reference,
            "currency": self.settings.currency,
            "channels": [channel],
            "metadata": {
                "booking_id": booking.id,
                "trip_id": booking.trip_id,
                "seat_number": booking.seat_number,
                "payment_method": "momo" if phone else "card",
                "momo_provider": momo_provider if phone else None,
                "momo_phone": phone,
                "custom_fields": [
                    {
                        "display_name": "Booking ID",
                        "variable_name": "booking_id",
                        "value": booking.id,
                    }
                ],
            },
        }
        callback = self.callback_url(booking.id)
        if callback:
            payload["callback_url"] = callback

        logger.info(
            "Initializing %s charge %s for booking %s (%s minor units)",
            channel,
            reference,
            booking.id,
            amount_minor,
        )

        try:
            response = self.client.initialize_transaction(payload)
        except httpx.TransportError as exc:
            logger.warning("Paystack initialize failed for %s: %s", reference, exc)
            raise GatewayError(
                "Payment provider is unavailable. Please try again.",
                reference=reference,
            ) from exc

        if not response.ok:
            next_step = None
            if response.status_code == 401 or "invalid key" in response.message.lower():
                next_step = INVALID_KEY_NEXT_STEP

            self.payment_repository.record(
                booking_id=booking.id,
                reference=response.data.get("reference") or reference,
                amount=booking.total_amount,
                currency=self.settings.currency,
                channel=channel,
                status=PaymentStatus.FAILED,
                gateway_response=response.body,
                error_code=str(response.body.get("code")) if response.body.get("code") else None,
                error_message=response.message,
            )
            self.db.commit()

            logger.warning(
                "Paystack rejected charge %s for booking %s: %s",
                reference,
                booking.id,
                response.message,
            )
            raise GatewayError(
                response.message,
                next_step=next_step,
                reference=reference,
                code=response.body.get("code"),
            )

        data = response.data
        gateway_reference = data.get("reference") or reference
        self.payment_repository.record(
            booking_id=booking.id,
            reference=gateway_reference,
            amount=booking.total_amount,
            currency=self.settings.currency,
            channel=channel,
            status=PaymentStatus.PENDING,
            gateway_response=response.body,
        )

        return ChargeInitialization(
            booking_id=booking.id,
            reference=gateway_reference,
            checkout_url=data.get("authorization_url") or data.get("url"),
            access_code=data.get("access_code"),
            amount_minor=amount_minor,
            status=data.get("status"),
            display_text=data.get("display_text"),
        )

    def verify_charge(self, reference: str) -> ChargeVerification:
        """
        Asks the gateway for the charge outcome. An unreachable, erroring or
        rate-limited gateway yields PENDING, never FAILED.
        """

        try:
            response = self.client.verify_transaction(reference)
        except httpx.TransportError as exc:
            logger.warning("Paystack verify for %s did not complete: %s", reference, exc)
            return ChargeVerification(
                reference=reference,
                status=ChargeStatus.PENDING,
                message="Payment provider did not respond in time.",
            )

        if response.status_code >= 500 or response.status_code == 429:
            logger.warning(
                "Paystack verify for %s returned HTTP %s",
                reference,
                response.status_code,
            )
            return ChargeVerification(
                reference=reference,
                status=ChargeStatus.PENDING,
                message=response.message,
                raw=response.body,
            )

        if not response.ok:
            raise GatewayError(response.message, reference=reference)

        data = response.data
        status = _STATUS_MAP.get(str(data.get("status") or "").lower(), ChargeStatus.PENDING)

        try:
            amount_minor = int(data.get("amount") or 0)
        except (TypeError, ValueError):
            amount_minor = 0

        return ChargeVerification(
            reference=data.get("reference") or reference,
            status=status,
            amount_minor=amount_minor,
            booking_id_hint=booking_id_from_metadata(data),
            message=data.get("gateway_response") or response.message,
            raw=response.body,
        )

    def submit_otp(self, reference: str, otp: str, caller: Caller) -> OtpSubmission:
        if not reference or not otp:
            raise InvalidPaymentRequest("reference and otp are required")

        payment = self.payment_repository.get_by_reference(reference)
        if not payment:
            raise PaymentNotFound("Payment not found")

        booking = self.booking_repository.get_by_id(payment.booking_id)
        if not booking or not caller.can_access(booking.user_id):
            raise Forbidden()

        try:
            response = self.client.submit_otp(reference, otp)
        except httpx.TransportError as exc:
            raise GatewayError(
                "Payment provider is unavailable. Please try again.",
                reference=reference,
            ) from exc

        if not response.ok:
            raise GatewayError(response.message or "OTP submission failed", reference=reference)

        data = response.data
        return OtpSubmission(
            reference=data.get("reference") or reference,
            status=data.get("status"),
            display_text=data.get("display_text"),
        )

    def _payer_email(self, booking: Booking, caller: Caller, email: str | None) -> str:
        if caller.user_id == booking.user_id and caller.email:
            return caller.email

        owner_email = self.db.execute(
            select(Profile.email).where(Profile.user_id == booking.user_id)
        ).scalar_one_or_none()
        payer_email = owner_email or email

        if not payer_email:
            raise InvalidPaymentRequest("An email address is required to start a payment.")
        return payer_email
