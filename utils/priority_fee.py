"""
Priority fee decay and mempool offer pricing

A taker's one-off priority fee holds at its full value for the first 15
seconds after it is attached, decays linearly to zero over the next 45, and
is zero from second 60 on.
"""

from decimal import Decimal
from typing import Optional, Union

from config import Config

Number = Union[int, float, Decimal]

FULL_FEE_SECONDS = 15.0
DECAY_END_SECONDS = 60.0
MAX_PRIORITY_FEE_PERCENT = 50.0


def decayed_fee(full_fee_percent: Number, elapsed_seconds: Number) -> float:
    """
    Priority fee after elapsed_seconds.

    Args:
        full_fee_percent: F, the undecayed fee in percent (0-50)
        elapsed_seconds: seconds since the fee was attached

    Raises:
        ValueError: F outside 0-50
    """
    fee = float(full_fee_percent)
    if fee < 0 or fee > MAX_PRIORITY_FEE_PERCENT:
        raise ValueError(f"Priority fee must be between 0 and {MAX_PRIORITY_FEE_PERCENT}%, got {fee}")

    t = float(elapsed_seconds)
    if t <= FULL_FEE_SECONDS:
        return fee
    if t >= DECAY_END_SECONDS:
        return 0.0
    return fee * (1 - (t - FULL_FEE_SECONDS) / (DECAY_END_SECONDS - FULL_FEE_SECONDS))


def calculate_offer_price(reference_price: Number, premium_bps: int) -> Decimal:
    """Offer price at premium_bps basis points above the reference price"""
    return Decimal(str(reference_price)) * (1 + Decimal(premium_bps) / Decimal(10000))


def offer_price_for_corridor(premium_bps: int, corridor: Optional[str] = None) -> Decimal:
    """Offer price against the configured reference rate of a corridor"""
    return calculate_offer_price(Config.reference_rate(corridor), premium_bps)
