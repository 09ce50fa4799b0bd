# busconnect/infrastructure/repositories/webhook_repository.py

import hashlib

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from busconnect.infrastructure.db.models import PaymentWebhookEvent


PROVIDER_PAYSTACK = "PAYSTACK"


def hash_payload(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


class WebhookEventRepository:

    def __init__(self, db: Session):
        self.db = db

    def get(
        self,
        reference: str,
        event_type: str,
        provider: str = PROVIDER_PAYSTACK,
    ) -> PaymentWebhookEvent | None:
        stmt = (
            select(PaymentWebhookEvent)
            .where(PaymentWebhookEvent.provider == provider)
            .where(PaymentWebhookEvent.reference == reference)
            .where(PaymentWebhookEvent.event_type == event_type)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def add(
        self,
        reference: str,
        event_type: str,
        raw_body: bytes,
        status: str,
        booking_id: str | None = None,
        provider: str = PROVIDER_PAYSTACK,
    ) -> PaymentWebhookEvent:
        """
        Flushes immediately so a redelivery racing this one hits the
        unique constraint here.
        """

        event = PaymentWebhookEvent(
            provider=provider,
            reference=reference,
            event_type=event_type,
            booking_id=booking_id,
            payload_hash=hash_payload(raw_body),
            status=status,
        )
        self.db.add(event)
        self.db.flush()
        return event

    def set_status(
        self,
        event_id: str,
        status: str,
        booking_id: str | None = None,
    ) -> None:
        values = {"status": status}
        if booking_id is not None:
            values["booking_id"] = booking_id

        self.db.execute(
            update(PaymentWebhookEvent)
            .where(PaymentWebhookEvent.id == event_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    def list_by_status(self, status: str, limit: int = 50) -> list[PaymentWebhookEvent]:
        safe_limit = max(1, min(limit, 200))
        stmt = (
            select(PaymentWebhookEvent)
            .where(PaymentWebhookEvent.status == status)
            .order_by(PaymentWebhookEvent.created_at)
            .limit(safe_limit)
        )
        return list(self.db.execute(stmt).scalars().all())
