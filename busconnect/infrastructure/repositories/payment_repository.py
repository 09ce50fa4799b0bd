# busconnect/infrastructure/repositories/payment_repository.py

from decimal import Decimal
import json

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from busconnect.infrastructure.db.models import Payment
from busconnect.domain.state_machine import PaymentStatus


class PaymentRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_reference(self, reference: str) -> Payment | None:
        stmt = select(Payment).where(Payment.gateway_reference == reference)
        return self.db.execute(stmt).scalar_one_or_none()

    def list_for_booking(self, booking_id: str) -> list[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.booking_id == booking_id)
            .order_by(Payment.created_at)
        )
        return list(self.db.execute(stmt).scalars().all())

    def record(
        self,
        booking_id: str,
        reference: str,
        amount: Decimal,
        currency: str,
        channel: str,
        status: PaymentStatus,
        gateway_response: dict | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> Payment:
        payment = Payment(
            booking_id=booking_id,
            gateway_reference=reference,
            amount=amount,
            currency=currency,
            channel=channel,
            status=status,
            error_code=error_code,
            error_message=error_message,
            gateway_response=_dump(gateway_response),
        )
        self.db.add(payment)
        self.db.flush()
        return payment

    def set_status(
        self,
        reference: str,
        new_status: PaymentStatus,
        gateway_response: dict | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        """
        Moves a non-successful payment record to new_status.
        A record that already reached success is never rewritten.
        """

        values = {"status": new_status}
        if gateway_response is not None:
            values["gateway_response"] = _dump(gateway_response)
        if error_code is not None:
            values["error_code"] = error_code
        if error_message is not None:
            values["error_message"] = error_message

        stmt = (
            update(Payment)
            .where(Payment.gateway_reference == reference)
            .where(Payment.status != PaymentStatus.SUCCESS)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1


def _dump(payload: dict | None) -> str | None:
    if payload is None:
        return None
    return json.dumps(payload, sort_keys=True, default=str)
