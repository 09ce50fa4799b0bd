# busconnect/infrastructure/repositories/booking_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import select, update, exists, and_, or_

from busconnect.infrastructure.db.models import Booking, Payment
from busconnect.domain.state_machine import (
    BookingStateMachine,
    BookingStatus,
    PaymentStatus,
)


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def create_provisional(self, **fields) -> Booking:
        """
        Adds and flushes a provisional booking. The flush surfaces the
        seat uniqueness IntegrityError to the caller.
        """

        booking = Booking(status=BookingStatus.PROVISIONAL, **fields)

        self.db.add(booking)
        self.db.flush()
        return booking

    def transition_status(
        self,
        booking_id: str,
        from_status: BookingStatus,
        to_status: BookingStatus,
        **values,
    ) -> bool:
        """
        Conditional UPDATE ... WHERE status = from_status.
        Returns True only for the caller whose write took effect.
        """

        BookingStateMachine.validate_transition(from_status, to_status)

        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status == from_status)
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def list_stale_provisional(self, cutoff: datetime) -> list[Booking]:
        """
        Provisional bookings created before the cutoff with no successful
        payment and no pending payment started after the cutoff.
        """

        live_payment = exists().where(
            and_(
                Payment.booking_id == Booking.id,
                or_(
                    Payment.status == PaymentStatus.SUCCESS,
                    and_(
                        Payment.status == PaymentStatus.PENDING,
                        Payment.created_at >= cutoff,
                    ),
                ),
            )
        )

        stmt = (
            select(Booking)
            .where(Booking.status == BookingStatus.PROVISIONAL)
            .where(Booking.created_at < cutoff)
            .where(~live_payment)
            .order_by(Booking.created_at)
        )
        return list(self.db.execute(stmt).scalars().all())
