"""Merchant pending pool ordering, filtering and search"""

from datetime import timedelta

import pytest

from utils.datetime_helpers import utc_now
from utils.pool_ordering import (
    FILTER_EXPIRING, FILTER_LARGE, FILTER_MINEABLE, FILTER_PREMIUM, SORT_AMOUNT, SORT_PREMIUM,
    SORT_RATING, SORT_TIME, filter_pool, order_pool, premium_percent, search_pool, sort_pool,
)

REFERENCE = 3.67


@pytest.fixture
def now():
    return utc_now()


class TestSortPool:

    def test_time_sort_soonest_first(self, make_snapshot, now):
        orders = [
            make_snapshot("later", expires_at=now + timedelta(minutes=10)),
            make_snapshot("no-deadline", expires_at=None),
            make_snapshot("soon", expires_at=now + timedelta(minutes=2)),
        ]
        assert [o.id for o in sort_pool(orders, SORT_TIME, now)] == ["soon", "later", "no-deadline"]

    def test_premium_sort_highest_rate_first(self, make_snapshot, now):
        orders = [
            make_snapshot("a", rate=3.70),
            make_snapshot("b", rate=3.80),
            make_snapshot("c", rate=3.67),
        ]
        assert [o.id for o in sort_pool(orders, SORT_PREMIUM, now)] == ["b", "a", "c"]

    def test_ties_keep_incoming_order(self, make_snapshot, now):
        orders = [
            make_snapshot("first", rate=3.70, crypto_amount=100),
            make_snapshot("second", rate=3.70, crypto_amount=100),
            make_snapshot("third", rate=3.75, crypto_amount=100),
        ]
        assert [o.id for o in sort_pool(orders, SORT_PREMIUM, now)] == ["third", "first", "second"]
        assert [o.id for o in sort_pool(orders, SORT_AMOUNT, now)] == ["first", "second", "third"]

    def test_amount_and_rating(self, make_snapshot, now):
        orders = [
            make_snapshot("small", crypto_amount=10, merchant_rating=4.9),
            make_snapshot("big", crypto_amount=5000, merchant_rating=3.1),
            make_snapshot("unrated", crypto_amount=700),
        ]
        assert [o.id for o in sort_pool(orders, SORT_AMOUNT, now)] == ["big", "unrated", "small"]
        assert [o.id for o in sort_pool(orders, SORT_RATING, now)] == ["small", "big", "unrated"]

    def test_unknown_sort(self, make_snapshot):
        with pytest.raises(ValueError):
            sort_pool([make_snapshot()], "popularity")


class TestFilterPool:

    def test_premium_percent(self):
        assert premium_percent(3.67, REFERENCE) == pytest.approx(0.0)
        assert premium_percent(3.70, REFERENCE) == pytest.approx(0.8174, rel=1e-3)
        assert premium_percent(None, REFERENCE) == 0.0

    def test_filters(self, make_snapshot, now):
        secured = make_snapshot("secured", escrow_tx_hash="0xlock")
        rich = make_snapshot("rich", rate=3.70)
        large = make_snapshot("large", crypto_amount=2000)
        expiring = make_snapshot("expiring", expires_at=now + timedelta(seconds=120))
        plain = make_snapshot("plain", rate=3.68)
        orders = [secured, rich, large, expiring, plain]

        assert [o.id for o in filter_pool(orders, FILTER_MINEABLE, now, REFERENCE)] == ["secured"]
        assert [o.id for o in filter_pool(orders, FILTER_PREMIUM, now, REFERENCE)] == ["rich"]
        assert [o.id for o in filter_pool(orders, FILTER_LARGE, now, REFERENCE)] == ["large"]
        assert [o.id for o in filter_pool(orders, FILTER_EXPIRING, now, REFERENCE)] == ["expiring"]
        assert len(filter_pool(orders, "all", now, REFERENCE)) == 5

    def test_unknown_filter(self, make_snapshot):
        with pytest.raises(ValueError):
            filter_pool([make_snapshot()], "cheap")

    def test_order_pool_filters_then_sorts(self, make_snapshot, now):
        orders = [
            make_snapshot("a", rate=3.75),
            make_snapshot("b", rate=3.68),
            make_snapshot("c", rate=3.90),
        ]
        result = order_pool(orders, FILTER_PREMIUM, SORT_PREMIUM, now, REFERENCE)
        assert [o.id for o in result] == ["c", "a"]


class TestSearchPool:

    @pytest.fixture
    def orders(self, make_snapshot):
        return [
            make_snapshot("o-small", crypto_amount=100, type="buy", payment_method="bank"),
            make_snapshot("o-medium", crypto_amount=1500, type="sell", payment_method="cash",
                          escrow_tx_hash="0xlock"),
            make_snapshot("o-large", crypto_amount=2500, type="buy", payment_method="bank",
                          escrow_tx_hash="0xlock2"),
        ]

    def test_free_text(self, orders):
        assert [o.id for o in search_pool(orders, "ORD-o-medium")] == ["o-medium"]
        assert [o.id for o in search_pool(orders, "2500")] == ["o-large"]
        assert len(search_pool(orders, "")) == 3

    def test_amount_buckets(self, orders):
        assert [o.id for o in search_pool(orders, amount_bucket="small")] == ["o-small"]
        assert [o.id for o in search_pool(orders, amount_bucket="medium")] == ["o-medium"]
        assert [o.id for o in search_pool(orders, amount_bucket="large")] == ["o-large"]

    def test_type_method_and_secured(self, orders):
        assert [o.id for o in search_pool(orders, order_type="sell")] == ["o-medium"]
        assert [o.id for o in search_pool(orders, payment_method="bank")] == ["o-small", "o-large"]
        assert [o.id for o in search_pool(orders, secured=True)] == ["o-medium", "o-large"]
        assert [o.id for o in search_pool(orders, secured=False)] == ["o-small"]
