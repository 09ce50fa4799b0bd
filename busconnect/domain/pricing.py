# busconnect/domain/pricing.py

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

CENT = Decimal("0.01")


@dataclass(frozen=True)
class FareBreakdown:
    ticket_price: Decimal
    travel_safe_fee: Decimal
    luggage_tagging_fee: Decimal

    @property
    def total(self) -> Decimal:
        return (
            self.ticket_price + self.travel_safe_fee + self.luggage_tagging_fee
        ).quantize(CENT, rounding=ROUND_HALF_UP)


def quote_fare(
    ticket_price: Decimal,
    has_luggage: bool,
    luggage_count: int,
    *,
    travel_safe_fee: Decimal,
    luggage_tagging_fee: Decimal,
    max_free_bags: int,
) -> FareBreakdown:
    """
    Price a seat at booking time. The tagging fee only applies
    above the free bag allowance.
    """
    tagging = luggage_tagging_fee if has_luggage and luggage_count > max_free_bags else Decimal("0")
    return FareBreakdown(
        ticket_price=Decimal(ticket_price).quantize(CENT, rounding=ROUND_HALF_UP),
        travel_safe_fee=Decimal(travel_safe_fee).quantize(CENT, rounding=ROUND_HALF_UP),
        luggage_tagging_fee=Decimal(tagging).quantize(CENT, rounding=ROUND_HALF_UP),
    )


def to_minor_units(amount: Decimal) -> int:
    """Cedis to pesewas, as the gateway expects."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
