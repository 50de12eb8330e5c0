"""
Pending pool display ordering and filtering for merchants.

Sorts are stable: orders that tie keep their incoming relative order.
"""

from datetime import datetime
from typing import Iterable, List, Optional

from config import Config
from utils.datetime_helpers import seconds_until
from utils.order_events import OrderSnapshot

SORT_TIME = "time"
SORT_PREMIUM = "premium"
SORT_AMOUNT = "amount"
SORT_RATING = "rating"
SORT_KEYS = (SORT_TIME, SORT_PREMIUM, SORT_AMOUNT, SORT_RATING)

FILTER_ALL = "all"
FILTER_MINEABLE = "mineable"
FILTER_PREMIUM = "premium"
FILTER_LARGE = "large"
FILTER_EXPIRING = "expiring"
FILTER_KEYS = (FILTER_ALL, FILTER_MINEABLE, FILTER_PREMIUM, FILTER_LARGE, FILTER_EXPIRING)

PREMIUM_THRESHOLD_PERCENT = 0.5
LARGE_ORDER_AMOUNT = 2000
EXPIRING_SECONDS = 300
SMALL_ORDER_AMOUNT = 500

_NEVER = float("inf")


def premium_percent(rate: Optional[float], reference_rate: Optional[float] = None) -> float:
    """How far the order's rate sits above the reference, in percent"""
    if rate is None:
        return 0.0
    reference = reference_rate if reference_rate is not None else Config.reference_rate(Config.DEFAULT_CORRIDOR)
    return (rate - reference) / reference * 100


def _seconds_left(order: OrderSnapshot, now: Optional[datetime]) -> float:
    remaining = seconds_until(order.expires_at, now)
    return _NEVER if remaining is None else remaining


def matches_filter(order: OrderSnapshot, pool_filter: str, now: Optional[datetime] = None,
                   reference_rate: Optional[float] = None) -> bool:
    if pool_filter == FILTER_ALL:
        return True
    if pool_filter == FILTER_MINEABLE:
        return bool(order.escrow_tx_hash)
    if pool_filter == FILTER_PREMIUM:
        return premium_percent(order.rate, reference_rate) > PREMIUM_THRESHOLD_PERCENT
    if pool_filter == FILTER_LARGE:
        return (order.crypto_amount or 0) >= LARGE_ORDER_AMOUNT
    if pool_filter == FILTER_EXPIRING:
        return _seconds_left(order, now) < EXPIRING_SECONDS
    raise ValueError(f"Unknown pool filter: {pool_filter}")


def filter_pool(orders: Iterable[OrderSnapshot], pool_filter: str = FILTER_ALL,
                now: Optional[datetime] = None, reference_rate: Optional[float] = None) -> List[OrderSnapshot]:
    return [o for o in orders if matches_filter(o, pool_filter, now, reference_rate)]


def sort_pool(orders: Iterable[OrderSnapshot], sort_by: str = SORT_TIME,
              now: Optional[datetime] = None) -> List[OrderSnapshot]:
    """
    time     soonest expiry first (default)
    premium  highest rate first
    amount   largest crypto amount first
    rating   best merchant rating first
    """
    orders = list(orders)
    if sort_by == SORT_TIME:
        return sorted(orders, key=lambda o: _seconds_left(o, now))
    if sort_by == SORT_PREMIUM:
        return sorted(orders, key=lambda o: o.rate or 0, reverse=True)
    if sort_by == SORT_AMOUNT:
        return sorted(orders, key=lambda o: o.crypto_amount or 0, reverse=True)
    if sort_by == SORT_RATING:
        return sorted(orders, key=lambda o: o.merchant_rating or 0, reverse=True)
    raise ValueError(f"Unknown pool sort: {sort_by}")


def search_pool(
    orders: Iterable[OrderSnapshot],
    query: str = "",
    order_type: Optional[str] = None,
    amount_bucket: Optional[str] = None,
    payment_method: Optional[str] = None,
    secured: Optional[bool] = None,
) -> List[OrderSnapshot]:
    """Free-text search plus the advanced filters (type, small/medium/large, method, escrow secured)"""
    q = query.strip().lower()
    results = []
    for order in orders:
        amount = order.crypto_amount or 0
        if q:
            haystacks = [order.id or "", order.order_number or "", str(amount), str(round(order.fiat_amount or 0))]
            if not any(q in h.lower() for h in haystacks):
                continue
        if order_type and order.type != order_type:
            continue
        if amount_bucket == "small" and amount >= SMALL_ORDER_AMOUNT:
            continue
        if amount_bucket == "medium" and not (SMALL_ORDER_AMOUNT <= amount <= LARGE_ORDER_AMOUNT):
            continue
        if amount_bucket == "large" and amount <= LARGE_ORDER_AMOUNT:
            continue
        if payment_method and order.payment_method != payment_method:
            continue
        if secured is not None and bool(order.escrow_tx_hash) != secured:
            continue
        results.append(order)
    return results


def order_pool(orders: Iterable[OrderSnapshot], pool_filter: str = FILTER_ALL, sort_by: str = SORT_TIME,
               now: Optional[datetime] = None, reference_rate: Optional[float] = None) -> List[OrderSnapshot]:
    """Filter, then sort, the way the merchant pending panel renders"""
    return sort_pool(filter_pool(orders, pool_filter, now, reference_rate), sort_by, now)
