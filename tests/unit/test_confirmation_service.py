from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
import json
import threading

import httpx
import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from busconnect.application.confirmation_service import (
    ConfirmationTrigger,
    STATUS_AMOUNT_MISMATCH,
    STATUS_BOOKING_MISMATCH,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_REQUIRES_REFUND,
    STATUS_SUCCESS,
    WEBHOOK_FAILED,
    WEBHOOK_IGNORED,
    WEBHOOK_PENDING,
    WEBHOOK_PROCESSED,
    WEBHOOK_RECEIVED,
    WEBHOOK_RECEIVED_LEASE,
)
from busconnect.domain.exceptions import (
    BookingNotFound,
    Forbidden,
    InvalidWebhookPayload,
    InvalidWebhookSignature,
)
from busconnect.domain.state_machine import BookingStatus, PaymentStatus
from busconnect.infrastructure.db.models import (
    Booking,
    OutboxEvent,
    Payment,
    PaymentWebhookEvent,
    Trip,
)
from busconnect.infrastructure.repositories.seat_ledger import SeatLedger


def _state(session_factory, booking_id):
    with session_factory() as session:
        booking = session.execute(select(Booking).where(Booking.id == booking_id)).scalar_one()
        available = session.execute(
            select(Trip.available_seats).where(Trip.id == booking.trip_id)
        ).scalar_one()
        events = [
            row
            for row in session.execute(
                select(OutboxEvent.event_type).where(OutboxEvent.aggregate_id == booking_id)
            ).scalars()
        ]
        payments = {
            p.gateway_reference: p.status
            for p in session.execute(
                select(Payment).where(Payment.booking_id == booking_id)
            ).scalars()
        }
        return booking.status, available, events, payments


def _confirm(confirmation_service, reference, trigger=ConfirmationTrigger.CLIENT, **kwargs):
    session, service = confirmation_service()
    try:
        return service.confirm(reference, trigger, **kwargs)
    finally:
        session.close()


def _webhook_body(reference, booking_id, event="charge.success"):
    return json.dumps(
        {
            "event": event,
            "data": {
                "reference": reference,
                "status": "success",
                "amount": 7500,
                "metadata": {"booking_id": booking_id},
            },
        }
    ).encode()


def _deliver(confirmation_service, paystack, body, signature=None):
    session, service = confirmation_service()
    try:
        return service.handle_webhook(body, signature or paystack.compute_signature(body))
    finally:
        session.close()


def _webhook_statuses(session_factory):
    with session_factory() as session:
        return list(session.execute(select(PaymentWebhookEvent.status)).scalars())


def _add_received_event(session_factory, reference, booking_id, received_at):
    with session_factory() as session:
        session.add(
            PaymentWebhookEvent(
                provider="PAYSTACK",
                reference=reference,
                event_type="charge.success",
                booking_id=booking_id,
                payload_hash="0" * 64,
                status=WEBHOOK_RECEIVED,
                created_at=received_at,
            )
        )
        session.commit()


@pytest.fixture
def paid_booking(trip, reserve, initialize, paystack):
    booking_id = reserve(trip, 10)
    reference = initialize(booking_id)
    return booking_id, reference


# ---------------------
# CLIENT TRIGGER
# ---------------------

def test_successful_verification_confirms_once(
    session_factory, confirmation_service, paystack, student, paid_booking
):
    booking_id, reference = paid_booking
    paystack.settle(reference, "success", amount=7500)

    result = _confirm(confirmation_service, reference, caller=student)

    assert result.success
    assert result.status == STATUS_SUCCESS
    assert result.transitioned

    status, available, events, payments = _state(session_factory, booking_id)
    assert status == BookingStatus.CONFIRMED
    assert available == 49
    assert events == ["BOOKING_CONFIRMED"]
    assert payments == {reference: PaymentStatus.SUCCESS}


def test_repeated_confirmation_has_no_further_effect(
    session_factory, confirmation_service, paystack, student, admin, paid_booking
):
    booking_id, reference = paid_booking
    paystack.settle(reference, "success", amount=7500)

    first = _confirm(confirmation_service, reference, caller=student)
    second = _confirm(confirmation_service, reference, caller=student)
    third = _confirm(confirmation_service, reference, ConfirmationTrigger.ADMIN, caller=admin)

    assert first.transitioned
    assert second.success and not second.transitioned
    assert third.success and not third.transitioned
    # Already-confirmed bookings are answered without asking the gateway again.
    assert paystack.verify_calls == [reference]

    _, available, events, _ = _state(session_factory, booking_id)
    assert available == 49
    assert events == ["BOOKING_CONFIRMED"]


def test_concurrent_triggers_decrement_exactly_once(
    session_factory, confirmation_service, paystack, student, paid_booking
):
    booking_id, reference = paid_booking
    paystack.settle(reference, "success", amount=7500)
    barrier = threading.Barrier(2)
    paystack.verify_hook = lambda ref: barrier.wait(timeout=10)

    def client_redirect():
        return _confirm(confirmation_service, reference, caller=student)

    def webhook():
        return _confirm(
            confirmation_service,
            reference,
            ConfirmationTrigger.WEBHOOK,
            booking_id_hint=booking_id,
        )

    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = [pool.submit(client_redirect), pool.submit(webhook)]
        results = [f.result() for f in futures]

    assert all(r.success for r in results)
    assert sorted(r.transitioned for r in results) == [False, True]

    status, available, events, payments = _state(session_factory, booking_id)
    assert status == BookingStatus.CONFIRMED
    assert available == 49
    assert events == ["BOOKING_CONFIRMED"]
    assert payments == {reference: PaymentStatus.SUCCESS}


def test_concurrent_confirmations_on_one_trip_both_decrement(
    session_factory, confirmation_service, paystack, student, trip, reserve, initialize
):
    references = []
    for seat_number in (21, 22):
        reference = initialize(reserve(trip, seat_number))
        paystack.settle(reference, "success", amount=7500)
        references.append(reference)

    barrier = threading.Barrier(2)
    paystack.verify_hook = lambda ref: barrier.wait(timeout=10)

    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = [
            pool.submit(_confirm, confirmation_service, reference, caller=student)
            for reference in references
        ]
        results = [f.result() for f in futures]

    assert all(r.transitioned for r in results)

    with session_factory() as session:
        audit = SeatLedger(session).audit_trip(trip)
    assert audit.available_seats == 48
    assert audit.confirmed_bookings == 2
    assert audit.consistent


def test_gateway_timeout_leaves_booking_provisional(
    session_factory, confirmation_service, paystack, student, paid_booking
):
    booking_id, reference = paid_booking
    paystack.verify_error = httpx.ReadTimeout("timed out")

    result = _confirm(confirmation_service, reference, caller=student)

    assert not result.success
    assert result.pending
    assert result.status == STATUS_PENDING

    status, available, events, payments = _state(session_factory, booking_id)
    assert status == BookingStatus.PROVISIONAL
    assert available == 50
    assert events == []
    assert payments == {reference: PaymentStatus.PENDING}


def test_failed_charge_records_failure_and_keeps_hold(
    session_factory, confirmation_service, paystack, student, paid_booking
):
    booking_id, reference = paid_booking
    paystack.settle(reference, "failed", amount=7500)

    result = _confirm(confirmation_service, reference, caller=student)

    assert not result.success
    assert result.status == STATUS_FAILED

    status, available, events, payments = _state(session_factory, booking_id)
    assert status == BookingStatus.PROVISIONAL
    assert available == 50
    assert events == ["BOOKING_PAYMENT_FAILED"]
    assert payments == {reference: PaymentStatus.FAILED}


def test_underpayment_is_treated_as_failure(
    session_factory, confirmation_service, paystack, student, paid_booking
):
    booking_id, reference = paid_booking
    paystack.settle(reference, "success", amount=100)

    result = _confirm(confirmation_service, reference, caller=student)

    assert not result.success
    assert result.status == STATUS_AMOUNT_MISMATCH
    assert result.amount_minor == 100

    status, available, _, payments = _state(session_factory, booking_id)
    assert status == BookingStatus.PROVISIONAL
    assert available == 50
    assert payments == {reference: PaymentStatus.FAILED}


def test_charge_for_another_booking_is_refused(
    session_factory, confirmation_service, paystack, student, paid_booking
):
    booking_id, reference = paid_booking
    paystack.settle(reference, "success", amount=7500, metadata={"booking_id": "someone-else"})

    result = _confirm(confirmation_service, reference, caller=student)

    assert result.status == STATUS_BOOKING_MISMATCH
    assert _state(session_factory, booking_id)[0] == BookingStatus.PROVISIONAL


def test_client_must_own_booking(confirmation_service, paystack, other_student, paid_booking):
    _, reference = paid_booking
    paystack.settle(reference, "success", amount=7500)

    with pytest.raises(Forbidden):
        _confirm(confirmation_service, reference, caller=other_student)

    assert paystack.verify_calls == []


def test_client_with_unknown_reference_and_no_hint(confirmation_service, student):
    with pytest.raises(BookingNotFound):
        _confirm(confirmation_service, "BUS-unknown-1", caller=student)


def test_success_for_cancelled_booking_raises_refund_alarm(
    session_factory, confirmation_service, paystack, student, paid_booking
):
    booking_id, reference = paid_booking
    with session_factory() as session:
        session.execute(
            update(Booking).where(Booking.id == booking_id).values(status=BookingStatus.CANCELLED)
        )
        session.commit()
    paystack.settle(reference, "success", amount=7500)

    result = _confirm(confirmation_service, reference, caller=student)

    assert not result.success
    assert result.status == STATUS_REQUIRES_REFUND

    status, available, events, _ = _state(session_factory, booking_id)
    assert status == BookingStatus.CANCELLED
    assert available == 50
    assert events == ["PAYMENT_REQUIRES_REFUND"]


def test_ledger_alarm_is_written_to_outbox(
    session_factory, confirmation_service, paystack, student, paid_booking
):
    booking_id, reference = paid_booking
    with session_factory() as session:
        trip_id = session.execute(select(Booking.trip_id).where(Booking.id == booking_id)).scalar_one()
        session.execute(update(Trip).where(Trip.id == trip_id).values(available_seats=0))
        session.commit()
    paystack.settle(reference, "success", amount=7500)

    result = _confirm(confirmation_service, reference, caller=student)

    assert result.success
    status, available, _, _ = _state(session_factory, booking_id)
    assert status == BookingStatus.CONFIRMED
    assert available == 0

    with session_factory() as session:
        alarms = session.execute(
            select(func.count(OutboxEvent.id))
            .where(OutboxEvent.event_type == "SEAT_LEDGER_INTEGRITY_ALARM")
            .where(OutboxEvent.aggregate_id == trip_id)
        ).scalar_one()
    assert alarms == 1


# ---------------------
# ADMIN TRIGGER
# ---------------------

def test_reconcile_requires_admin(confirmation_service, student, paid_booking):
    _, reference = paid_booking
    session, service = confirmation_service()
    try:
        with pytest.raises(Forbidden):
            service.reconcile(reference, student)
    finally:
        session.close()


def test_reconcile_confirms_pending_charge(
    session_factory, confirmation_service, paystack, admin, paid_booking
):
    booking_id, reference = paid_booking
    paystack.settle(reference, "success", amount=7500)

    session, service = confirmation_service()
    try:
        result = service.reconcile(reference, admin)
    finally:
        session.close()

    assert result.transitioned
    assert _state(session_factory, booking_id)[0] == BookingStatus.CONFIRMED


# ---------------------
# WEBHOOK TRIGGER
# ---------------------

def test_webhook_confirms_booking(session_factory, confirmation_service, paystack, paid_booking):
    booking_id, reference = paid_booking
    paystack.settle(reference, "success", amount=7500)

    receipt = _deliver(confirmation_service, paystack, _webhook_body(reference, booking_id))

    assert receipt.status == WEBHOOK_PROCESSED
    assert not receipt.duplicate
    assert _state(session_factory, booking_id)[:2] == (BookingStatus.CONFIRMED, 49)


def test_duplicate_webhook_is_recognised(session_factory, confirmation_service, paystack, paid_booking):
    booking_id, reference = paid_booking
    paystack.settle(reference, "success", amount=7500)
    body = _webhook_body(reference, booking_id)

    _deliver(confirmation_service, paystack, body)
    again = _deliver(confirmation_service, paystack, body)

    assert again.duplicate
    assert paystack.verify_calls == [reference]
    _, available, events, _ = _state(session_factory, booking_id)
    assert available == 49
    assert events == ["BOOKING_CONFIRMED"]

    with session_factory() as session:
        recorded = session.execute(select(func.count(PaymentWebhookEvent.id))).scalar_one()
    assert recorded == 1


def test_pending_webhook_is_retried_on_redelivery(
    session_factory, confirmation_service, paystack, paid_booking
):
    booking_id, reference = paid_booking
    body = _webhook_body(reference, booking_id)
    paystack.verify_error = httpx.ConnectTimeout("timed out")

    first = _deliver(confirmation_service, paystack, body)
    assert first.status == WEBHOOK_PENDING

    paystack.verify_error = None
    paystack.settle(reference, "success", amount=7500)
    second = _deliver(confirmation_service, paystack, body)

    assert second.status == WEBHOOK_PROCESSED
    assert _state(session_factory, booking_id)[0] == BookingStatus.CONFIRMED


def test_webhook_interrupted_by_storage_error_is_processed_on_redelivery(
    session_factory, confirmation_service, paystack, paid_booking
):
    booking_id, reference = paid_booking
    paystack.settle(reference, "success", amount=7500)
    body = _webhook_body(reference, booking_id)

    def deadlock(ref):
        raise OperationalError("UPDATE bookings", {}, Exception("deadlock detected"))

    paystack.verify_hook = deadlock
    with pytest.raises(OperationalError):
        _deliver(confirmation_service, paystack, body)

    assert _webhook_statuses(session_factory) == [WEBHOOK_FAILED]
    assert _state(session_factory, booking_id)[:2] == (BookingStatus.PROVISIONAL, 50)

    paystack.verify_hook = None
    again = _deliver(confirmation_service, paystack, body)

    assert not again.duplicate
    assert again.status == WEBHOOK_PROCESSED
    assert _state(session_factory, booking_id)[:2] == (BookingStatus.CONFIRMED, 49)
    assert _webhook_statuses(session_factory) == [WEBHOOK_PROCESSED]


def test_webhook_in_flight_is_treated_as_duplicate(
    session_factory, confirmation_service, paystack, paid_booking
):
    booking_id, reference = paid_booking
    paystack.settle(reference, "success", amount=7500)
    _add_received_event(session_factory, reference, booking_id, datetime.now(timezone.utc))

    receipt = _deliver(confirmation_service, paystack, _webhook_body(reference, booking_id))

    assert receipt.duplicate
    assert receipt.status == WEBHOOK_RECEIVED
    assert paystack.verify_calls == []


def test_abandoned_webhook_is_taken_over_after_lease(
    session_factory, confirmation_service, paystack, paid_booking
):
    booking_id, reference = paid_booking
    paystack.settle(reference, "success", amount=7500)
    received_at = datetime.now(timezone.utc) - WEBHOOK_RECEIVED_LEASE - timedelta(minutes=1)
    _add_received_event(session_factory, reference, booking_id, received_at)

    receipt = _deliver(confirmation_service, paystack, _webhook_body(reference, booking_id))

    assert not receipt.duplicate
    assert receipt.status == WEBHOOK_PROCESSED
    assert _state(session_factory, booking_id)[0] == BookingStatus.CONFIRMED


def test_webhook_for_unlocatable_booking_is_accepted_as_failed(confirmation_service, paystack):
    paystack.settle("BUS-orphan-1", "success", amount=7500, metadata={})

    receipt = _deliver(confirmation_service, paystack, _webhook_body("BUS-orphan-1", None))

    assert receipt.status == WEBHOOK_FAILED


def test_invalid_signature_changes_nothing(session_factory, confirmation_service, paystack, paid_booking):
    booking_id, reference = paid_booking
    paystack.settle(reference, "success", amount=7500)
    body = _webhook_body(reference, booking_id)

    with pytest.raises(InvalidWebhookSignature):
        _deliver(confirmation_service, paystack, body, signature="0" * 128)

    assert paystack.verify_calls == []
    assert _state(session_factory, booking_id)[:2] == (BookingStatus.PROVISIONAL, 50)
    with session_factory() as session:
        assert session.execute(select(func.count(PaymentWebhookEvent.id))).scalar_one() == 0


def test_other_events_are_recorded_as_ignored(confirmation_service, paystack, paid_booking):
    booking_id, reference = paid_booking

    receipt = _deliver(
        confirmation_service,
        paystack,
        _webhook_body(reference, booking_id, event="transfer.success"),
    )

    assert receipt.status == WEBHOOK_IGNORED
    assert paystack.verify_calls == []


def test_malformed_body_is_rejected(confirmation_service, paystack):
    with pytest.raises(InvalidWebhookPayload):
        _deliver(confirmation_service, paystack, b"not json")
