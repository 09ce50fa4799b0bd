

class BusConnectError(Exception):
    """
    Base exception for all domain-level errors
    inside the BusConnect booking engine.
    """


class InvalidStateTransitionError(BusConnectError):
    """
    Raised when an illegal booking state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class TripNotFound(BusConnectError):
    """Raised when a trip id does not resolve to a trip."""


class BookingNotFound(BusConnectError):
    """Raised when a booking cannot be located."""


class PaymentNotFound(BusConnectError):
    """Raised when a gateway reference has no local payment record."""


class SeatConflict(BusConnectError):
    """
    Raised when the seat is already held by another non-cancelled booking.
    The caller must re-prompt seat selection.
    """

    def __init__(self, trip_id: str, seat_number: int):
        self.trip_id = trip_id
        self.seat_number = seat_number
        super().__init__(
            f"Seat {seat_number} is already taken. Please pick another seat."
        )


class InvalidTripState(BusConnectError):
    """Raised when the trip is not currently bookable."""


class InvalidSeatNumber(BusConnectError):
    """Raised when the seat number is outside 1..total_seats."""


class InvalidPaymentRequest(BusConnectError):
    """Raised when a payment request is missing required data."""


class Unauthorized(BusConnectError):
    """Raised when the caller could not be identified."""


class Forbidden(BusConnectError):
    """
    Raised when the caller is not the owner of the resource.
    The message never carries details about the resource.
    """

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message)


class GatewayError(BusConnectError):
    """Raised when the payment provider rejects or cannot serve a request."""

    def __init__(
        self,
        message: str,
        next_step: str | None = None,
        reference: str | None = None,
        code: str | None = None,
    ):
        self.next_step = next_step
        self.reference = reference
        self.code = code
        super().__init__(message)


class GatewayNotConfigured(GatewayError):
    """Raised when the provider secret key is missing."""


class InvalidWebhookSignature(BusConnectError):
    """Raised when a webhook signature is missing or does not match."""


class InvalidWebhookPayload(BusConnectError):
    """Raised when a correctly signed webhook body cannot be parsed."""


class IntegrityAlarm(BusConnectError):
    """
    Raised when the seat ledger refuses a mutation that would break the
    available-seat invariant. Surfaced to operators, never to end users.
    """

    def __init__(self, trip_id: str, reason: str):
        self.trip_id = trip_id
        self.reason = reason
        super().__init__(f"Seat ledger integrity alarm for trip {trip_id}: {reason}")
