from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
import json
import logging

from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from busconnect.config import Settings, get_settings
from busconnect.domain.caller import Caller
from busconnect.domain.exceptions import (
    BookingNotFound,
    Forbidden,
    GatewayError,
    GatewayNotConfigured,
    IntegrityAlarm,
    InvalidWebhookPayload,
    InvalidWebhookSignature,
    Unauthorized,
)
from busconnect.domain.pricing import to_minor_units
from busconnect.domain.state_machine import BookingStatus, PaymentStatus
from busconnect.infrastructure.db.models import Booking, PaymentWebhookEvent
from busconnect.infrastructure.gateways.paystack_client import verify_webhook_signature
from busconnect.infrastructure.realtime.change_feed import mark_trip_changed
from busconnect.infrastructure.repositories.booking_repository import BookingRepository
from busconnect.infrastructure.repositories.outbox_repository import OutboxRepository
from busconnect.infrastructure.repositories.payment_repository import PaymentRepository
from busconnect.infrastructure.repositories.seat_ledger import SeatLedger
from busconnect.infrastructure.repositories.webhook_repository import WebhookEventRepository
from busconnect.application.payment_gateway import (
    ChargeStatus,
    ChargeVerification,
    PaymentGatewayAdapter,
    booking_id_from_metadata,
)


logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_PENDING = "pending"
STATUS_FAILED = "failed"
STATUS_AMOUNT_MISMATCH = "amount_mismatch"
STATUS_BOOKING_MISMATCH = "booking_mismatch"
STATUS_REQUIRES_REFUND = "requires_refund"

CHARGE_SUCCESS_EVENT = "charge.success"

WEBHOOK_RECEIVED = "RECEIVED"
WEBHOOK_PROCESSED = "PROCESSED"
WEBHOOK_PENDING = "PENDING"
WEBHOOK_IGNORED = "IGNORED"
WEBHOOK_FAILED = "FAILED"

# A RECEIVED row older than this belongs to a delivery that never finished.
WEBHOOK_RECEIVED_LEASE = timedelta(minutes=5)


class ConfirmationTrigger(str, Enum):
    CLIENT = "client"
    WEBHOOK = "webhook"
    ADMIN = "admin"


@dataclass(frozen=True)
class ConfirmationResult:
    success: bool
    status: str
    booking_id: str | None = None
    transitioned: bool = False
    amount_minor: int | None = None

    @property
    def pending(self) -> bool:
        return self.status == STATUS_PENDING


@dataclass(frozen=True)
class WebhookReceipt:
    event_type: str
    reference: str
    status: str
    duplicate: bool = False


class PaymentConfirmationService:
    """
    Drives provisional -> confirmed exactly once per booking, whichever of
    the webhook, the client redirect or an admin retry gets there first.

    The gateway is always re-asked for the outcome. Only the caller whose
    conditional booking update takes effect marks the payment successful,
    decrements the seat counter and enqueues the confirmation event, and
    it does so in the same transaction.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGatewayAdapter,
        settings: Settings | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.booking_repository = BookingRepository(db)
        self.payment_repository = PaymentRepository(db)
        self.webhook_repository = WebhookEventRepository(db)
        self.outbox = OutboxRepository(db)
        self.seat_ledger = SeatLedger(db)

    # -----------------------------
    # Confirmation
    # -----------------------------
    def confirm(
        self,
        reference: str,
        trigger: ConfirmationTrigger,
        caller: Caller | None = None,
        booking_id_hint: str | None = None,
    ) -> ConfirmationResult:
        if trigger == ConfirmationTrigger.CLIENT and caller is None:
            raise Unauthorized("Unauthorized")
        if trigger == ConfirmationTrigger.ADMIN and (caller is None or not caller.is_admin):
            raise Forbidden()

        booking = self._resolve_local_booking(reference, booking_id_hint)

        if trigger == ConfirmationTrigger.CLIENT:
            if booking is None:
                raise BookingNotFound("Booking not found")
            if not caller.can_access(booking.user_id):
                raise Forbidden()

        if booking is not None and booking.status == BookingStatus.CONFIRMED:
            return ConfirmationResult(
                success=True,
                status=STATUS_SUCCESS,
                booking_id=booking.id,
            )

        verification = self.gateway.verify_charge(reference)

        if booking is None and verification.booking_id_hint:
            booking = self.booking_repository.get_by_id(verification.booking_id_hint)
        if booking is None:
            raise BookingNotFound("No booking matches this payment reference")

        if verification.booking_id_hint and verification.booking_id_hint != booking.id:
            logger.warning(
                "Charge %s belongs to booking %s, not %s; refusing to confirm",
                reference,
                verification.booking_id_hint,
                booking.id,
            )
            return ConfirmationResult(
                success=False,
                status=STATUS_BOOKING_MISMATCH,
                booking_id=booking.id,
            )

        if verification.status == ChargeStatus.PENDING:
            logger.info("Charge %s for booking %s still pending", reference, booking.id)
            return ConfirmationResult(
                success=False,
                status=STATUS_PENDING,
                booking_id=booking.id,
            )

        if verification.status == ChargeStatus.FAILED:
            self._record_failure(booking, verification, reason=STATUS_FAILED)
            return ConfirmationResult(
                success=False,
                status=STATUS_FAILED,
                booking_id=booking.id,
                amount_minor=verification.amount_minor,
            )

        if booking.status == BookingStatus.CANCELLED:
            return self._requires_refund(booking, verification)

        required_minor = to_minor_units(booking.total_amount)
        if verification.amount_minor < required_minor:
            logger.warning(
                "Charge %s paid %s minor units, booking %s requires %s",
                reference,
                verification.amount_minor,
                booking.id,
                required_minor,
            )
            self._record_failure(booking, verification, reason=STATUS_AMOUNT_MISMATCH)
            return ConfirmationResult(
                success=False,
                status=STATUS_AMOUNT_MISMATCH,
                booking_id=booking.id,
                amount_minor=verification.amount_minor,
            )

        transitioned = self.booking_repository.transition_status(
            booking.id,
            BookingStatus.PROVISIONAL,
            BookingStatus.CONFIRMED,
            payment_reference=verification.reference,
        )

        if not transitioned:
            self.db.refresh(booking)
            if booking.status == BookingStatus.CONFIRMED:
                return ConfirmationResult(
                    success=True,
                    status=STATUS_SUCCESS,
                    booking_id=booking.id,
                    amount_minor=verification.amount_minor,
                )
            if booking.status == BookingStatus.CANCELLED:
                return self._requires_refund(booking, verification)
            return ConfirmationResult(
                success=False,
                status=STATUS_PENDING,
                booking_id=booking.id,
            )

        self._mark_payment_success(booking, verification)

        try:
            self.seat_ledger.decrement_available_seats(booking.trip_id)
        except IntegrityAlarm as exc:
            logger.error("%s (booking %s)", exc, booking.id)
            self.outbox.add(
                aggregate_type="trip",
                aggregate_id=booking.trip_id,
                event_type="SEAT_LEDGER_INTEGRITY_ALARM",
                payload={
                    "trip_id": booking.trip_id,
                    "booking_id": booking.id,
                    "reason": exc.reason,
                },
                dedupe_key=f"trip:{booking.trip_id}:integrity_alarm:{booking.id}",
            )

        self.outbox.add(
            aggregate_type="booking",
            aggregate_id=booking.id,
            event_type="BOOKING_CONFIRMED",
            payload={
                "booking_id": booking.id,
                "trip_id": booking.trip_id,
                "user_id": booking.user_id,
                "seat_number": booking.seat_number,
                "full_name": booking.full_name,
                "payment_reference": verification.reference,
                "amount": str(booking.total_amount),
                "currency": self.settings.currency,
                "trigger": trigger.value,
            },
            dedupe_key=f"booking:{booking.id}:confirmed",
        )
        mark_trip_changed(self.db, booking.trip_id)
        self.db.commit()

        logger.info(
            "Booking %s confirmed via %s (reference %s)",
            booking.id,
            trigger.value,
            verification.reference,
        )
        return ConfirmationResult(
            success=True,
            status=STATUS_SUCCESS,
            booking_id=booking.id,
            transitioned=True,
            amount_minor=verification.amount_minor,
        )

    def reconcile(self, reference: str, caller: Caller) -> ConfirmationResult:
        """Operator retry for a charge left pending or unconfirmed."""
        return self.confirm(reference, ConfirmationTrigger.ADMIN, caller=caller)

    # -----------------------------
    # Webhook
    # -----------------------------
    def handle_webhook(self, raw_body: bytes, signature: str | None) -> WebhookReceipt:
        secret = self.settings.paystack_secret_key
        if not secret:
            raise GatewayNotConfigured("Paystack secret key not configured")

        if not verify_webhook_signature(secret, raw_body, signature):
            logger.warning("Rejected Paystack webhook with an invalid signature")
            raise InvalidWebhookSignature("Invalid signature")

        try:
            event = json.loads(raw_body)
        except ValueError as exc:
            raise InvalidWebhookPayload("Webhook body is not valid JSON") from exc

        if not isinstance(event, dict):
            raise InvalidWebhookPayload("Webhook body must be a JSON object")

        event_type = str(event.get("event") or "")
        data = event.get("data") if isinstance(event.get("data"), dict) else {}
        reference = str(data.get("reference") or "")
        if not event_type or not reference:
            raise InvalidWebhookPayload("Webhook body has no event type or reference")

        booking_id_hint = booking_id_from_metadata(data)

        if event_type != CHARGE_SUCCESS_EVENT:
            recorded = self._record_webhook(
                reference, event_type, raw_body, WEBHOOK_IGNORED, booking_id_hint
            )
            return WebhookReceipt(
                event_type=event_type,
                reference=reference,
                status=WEBHOOK_IGNORED,
                duplicate=recorded is None,
            )

        existing = self.webhook_repository.get(reference, event_type)
        if existing and _already_handled(existing):
            logger.info("Duplicate Paystack webhook for %s", reference)
            return WebhookReceipt(
                event_type=event_type,
                reference=reference,
                status=existing.status,
                duplicate=True,
            )

        if existing:
            event_id = existing.id
        else:
            recorded = self._record_webhook(
                reference, event_type, raw_body, WEBHOOK_RECEIVED, booking_id_hint
            )
            if recorded is None:
                return WebhookReceipt(
                    event_type=event_type,
                    reference=reference,
                    status=WEBHOOK_RECEIVED,
                    duplicate=True,
                )
            event_id = recorded

        booking_id = booking_id_hint
        try:
            result = self.confirm(
                reference,
                ConfirmationTrigger.WEBHOOK,
                booking_id_hint=booking_id_hint,
            )
            booking_id = result.booking_id
            if result.success:
                outcome = WEBHOOK_PROCESSED
            elif result.pending:
                outcome = WEBHOOK_PENDING
            else:
                outcome = WEBHOOK_FAILED
        except BookingNotFound:
            logger.warning("Paystack webhook %s does not match any booking", reference)
            outcome = WEBHOOK_FAILED
        except GatewayError as exc:
            logger.warning("Paystack verify rejected webhook reference %s: %s", reference, exc)
            outcome = WEBHOOK_FAILED
        except Exception:
            # Paystack gets a 5xx and redelivers; the FAILED row lets that through.
            self.db.rollback()
            self._release_webhook(event_id, booking_id)
            raise

        self.webhook_repository.set_status(event_id, outcome, booking_id=booking_id)
        self.db.commit()

        return WebhookReceipt(
            event_type=event_type,
            reference=reference,
            status=outcome,
        )

    # -----------------------------
    # Helpers
    # -----------------------------
    def _resolve_local_booking(
        self,
        reference: str,
        booking_id_hint: str | None,
    ) -> Booking | None:
        payment = self.payment_repository.get_by_reference(reference)
        booking_id = payment.booking_id if payment else booking_id_hint
        if not booking_id:
            return None
        return self.booking_repository.get_by_id(booking_id)

    def _record_webhook(
        self,
        reference: str,
        event_type: str,
        raw_body: bytes,
        status: str,
        booking_id: str | None,
    ) -> str | None:
        """Returns the new event id, or None when this delivery was already recorded."""
        try:
            event = self.webhook_repository.add(
                reference=reference,
                event_type=event_type,
                raw_body=raw_body,
                status=status,
                booking_id=booking_id,
            )
            event_id = event.id
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return None
        return event_id

    def _release_webhook(self, event_id: str, booking_id: str | None) -> None:
        try:
            self.webhook_repository.set_status(event_id, WEBHOOK_FAILED, booking_id=booking_id)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Could not release webhook event %s for redelivery", event_id)

    def _mark_payment_success(self, booking: Booking, verification: ChargeVerification) -> None:
        updated = self.payment_repository.set_status(
            verification.reference,
            PaymentStatus.SUCCESS,
            gateway_response=verification.raw,
        )
        if updated:
            return

        if self.payment_repository.get_by_reference(verification.reference) is None:
            self.payment_repository.record(
                booking_id=booking.id,
                reference=verification.reference,
                amount=Decimal(verification.amount_minor) / 100,
                currency=self.settings.currency,
                channel=_channel_from(verification.raw),
                status=PaymentStatus.SUCCESS,
                gateway_response=verification.raw,
            )

    def _record_failure(
        self,
        booking: Booking,
        verification: ChargeVerification,
        reason: str,
    ) -> None:
        try:
            updated = self.payment_repository.set_status(
                verification.reference,
                PaymentStatus.FAILED,
                gateway_response=verification.raw,
                error_code=reason,
                error_message=verification.message,
            )
            if not updated and self.payment_repository.get_by_reference(verification.reference) is None:
                self.payment_repository.record(
                    booking_id=booking.id,
                    reference=verification.reference,
                    amount=Decimal(verification.amount_minor) / 100,
                    currency=self.settings.currency,
                    channel=_channel_from(verification.raw),
                    status=PaymentStatus.FAILED,
                    gateway_response=verification.raw,
                    error_code=reason,
                    error_message=verification.message,
                )
            self.outbox.add(
                aggregate_type="booking",
                aggregate_id=booking.id,
                event_type="BOOKING_PAYMENT_FAILED",
                payload={
                    "booking_id": booking.id,
                    "trip_id": booking.trip_id,
                    "user_id": booking.user_id,
                    "payment_reference": verification.reference,
                    "reason": reason,
                    "amount_minor": verification.amount_minor,
                },
                dedupe_key=f"booking:{booking.id}:payment_failed:{verification.reference}",
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(
                "Failure for charge %s was recorded concurrently",
                verification.reference,
            )

    def _requires_refund(
        self,
        booking: Booking,
        verification: ChargeVerification,
    ) -> ConfirmationResult:
        logger.error(
            "Charge %s succeeded for cancelled booking %s; refund required",
            verification.reference,
            booking.id,
        )
        self.outbox.add(
            aggregate_type="payment",
            aggregate_id=booking.id,
            event_type="PAYMENT_REQUIRES_REFUND",
            payload={
                "booking_id": booking.id,
                "trip_id": booking.trip_id,
                "user_id": booking.user_id,
                "payment_reference": verification.reference,
                "amount_minor": verification.amount_minor,
            },
            dedupe_key=f"payment:{verification.reference}:requires_refund",
        )
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()

        return ConfirmationResult(
            success=False,
            status=STATUS_REQUIRES_REFUND,
            booking_id=booking.id,
            amount_minor=verification.amount_minor,
        )


def _already_handled(event: PaymentWebhookEvent) -> bool:
    if event.status == WEBHOOK_PROCESSED:
        return True
    if event.status != WEBHOOK_RECEIVED:
        return False

    received_at = event.created_at
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc) - received_at < WEBHOOK_RECEIVED_LEASE


def _channel_from(raw: dict) -> str:
    data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
    return "mobile_money" if data.get("channel") == "mobile_money" else "card"
