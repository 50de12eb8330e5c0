"""
Event batching and projection convergence tests

Coverage Focus Areas:
- Coalescing a burst into one projection update and one callback
- Highest version wins inside a window regardless of arrival order
- Stale and duplicate versions are dropped
- One consolidated refetch per window, SyncIncomplete when it fails
- Convergence on the highest version for every delivery order
"""

import asyncio
import itertools
from unittest.mock import AsyncMock

import pytest

from models import OrderEventName
from services.event_batcher import EventBatcher
from services.order_projection import OrderProjection
from utils.order_errors import SyncIncomplete
from utils.order_events import OrderCreated, OrderStatusUpdated


def status_event(order_id, version, status="accepted", snapshot=None):
    return OrderStatusUpdated(order_id=order_id, order_version=version, status=status, snapshot=snapshot)


class TestEventBatcherCoalescing:
    """Bursts collapse into one update per order"""

    @pytest.mark.asyncio
    async def test_burst_of_five_applies_once(self, make_snapshot):
        """Five status events in one window -> one apply, one callback, highest version"""
        projection = OrderProjection()
        projection.reset([make_snapshot("o1", "pending", 1)])
        batcher = EventBatcher(projection, window_ms=10)
        seen = []
        batcher.on_order_status_updated(lambda event, snapshot: seen.append((event.order_version, snapshot)))

        for version, status in enumerate(["accepted", "escrowed", "payment_sent", "payment_confirmed", "completed"],
                                         start=2):
            batcher.enqueue(status_event("o1", version, status))
        assert batcher.pending == 5

        applied = await batcher.flush()

        assert applied == 1
        assert len(seen) == 1
        assert seen[0][0] == 6
        assert projection.get("o1").order_version == 6
        assert projection.get("o1").status == "completed"
        assert projection.is_partial("o1") is True

    @pytest.mark.asyncio
    async def test_lower_version_later_in_window_does_not_win(self, make_snapshot):
        projection = OrderProjection()
        projection.reset([make_snapshot("o1", "pending", 1)])
        batcher = EventBatcher(projection, window_ms=10)

        batcher.enqueue(status_event("o1", 6, "payment_sent"))
        batcher.enqueue(status_event("o1", 4, "accepted"))
        await batcher.flush()

        assert projection.get("o1").order_version == 6
        assert projection.get("o1").status == "payment_sent"

    @pytest.mark.asyncio
    async def test_full_record_beats_partial_copy_of_same_version(self, make_snapshot):
        """A later partial twin must not replace the full record queued before it"""
        projection = OrderProjection()
        projection.reset([make_snapshot("o1", "pending", 1, merchant_id="m1")])
        batcher = EventBatcher(projection, window_ms=10)
        full = make_snapshot("o1", "accepted", 2, merchant_id="m2")

        batcher.enqueue(status_event("o1", 2, snapshot=full))
        batcher.enqueue(status_event("o1", 2))
        await batcher.flush()

        assert projection.get("o1") == full
        assert projection.is_partial("o1") is False

    @pytest.mark.asyncio
    async def test_independent_orders_each_get_one_update(self, make_snapshot):
        projection = OrderProjection()
        projection.reset([make_snapshot("o1"), make_snapshot("o2")])
        batcher = EventBatcher(projection, window_ms=10)

        batcher.enqueue(status_event("o1", 2))
        batcher.enqueue(status_event("o2", 2))
        batcher.enqueue(status_event("o1", 3, "escrowed"))

        assert await batcher.flush() == 2
        assert projection.get("o1").order_version == 3
        assert projection.get("o2").order_version == 2

    @pytest.mark.asyncio
    async def test_stale_event_is_dropped(self, make_snapshot):
        projection = OrderProjection()
        projection.reset([make_snapshot("o1", "escrowed", 5)])
        batcher = EventBatcher(projection, window_ms=10)
        callback = AsyncMock()
        batcher.on_order_status_updated(callback)

        batcher.enqueue(status_event("o1", 3))
        assert await batcher.flush() == 0

        callback.assert_not_called()
        assert batcher.stats["stale"] == 1
        assert projection.get("o1").order_version == 5

    @pytest.mark.asyncio
    async def test_callbacks_see_projection_already_updated(self, make_snapshot):
        projection = OrderProjection()
        projection.reset([make_snapshot("o1")])
        batcher = EventBatcher(projection, window_ms=10)
        observed = []
        batcher.on_order_status_updated(lambda event, snapshot: observed.append(projection.current_version("o1")))

        batcher.enqueue(status_event("o1", 2))
        await batcher.flush()

        assert observed == [2]

    @pytest.mark.asyncio
    async def test_timer_flushes_after_window(self, make_snapshot):
        projection = OrderProjection()
        projection.reset([make_snapshot("o1")])
        batcher = EventBatcher(projection, window_ms=10)

        batcher.enqueue(status_event("o1", 2))
        await asyncio.sleep(0.05)

        assert batcher.pending == 0
        assert projection.get("o1").order_version == 2
        assert batcher.stats["flushes"] == 1

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_others(self, make_snapshot):
        projection = OrderProjection()
        projection.reset([make_snapshot("o1")])
        batcher = EventBatcher(projection, window_ms=10)
        survivor = AsyncMock()

        def broken(event, snapshot):
            raise RuntimeError("consumer bug")

        batcher.on_order_status_updated(broken)
        batcher.on_order_status_updated(survivor)
        batcher.enqueue(status_event("o1", 2))
        await batcher.flush()

        survivor.assert_awaited_once()


class TestEventBatcherRefetch:
    """Events without enough data trigger a single consolidated refetch"""

    @pytest.mark.asyncio
    async def test_one_refetch_per_window(self, make_snapshot):
        projection = OrderProjection()

        async def refetch():
            projection.merge_snapshots([make_snapshot("o1"), make_snapshot("o2")])

        refetch_mock = AsyncMock(side_effect=refetch)
        batcher = EventBatcher(projection, refetch=refetch_mock, window_ms=10)
        created = []
        batcher.on_order_created(lambda event, snapshot: created.append(snapshot.id))

        batcher.enqueue(OrderCreated(order_id="o1"))
        batcher.enqueue(OrderCreated(order_id="o2"))
        await batcher.flush()

        refetch_mock.assert_awaited_once()
        assert created == ["o1", "o2"]
        assert batcher.stats["refetches"] == 1

    @pytest.mark.asyncio
    async def test_unversioned_partial_update_refetches(self, make_snapshot):
        projection = OrderProjection()
        projection.reset([make_snapshot("o1")])
        refetch = AsyncMock()
        batcher = EventBatcher(projection, refetch=refetch, window_ms=10)

        batcher.enqueue(OrderStatusUpdated(order_id="o1", status="accepted"))
        await batcher.flush()

        refetch.assert_awaited_once()
        assert projection.get("o1").status == "pending"

    @pytest.mark.asyncio
    async def test_failed_refetch_reports_sync_incomplete(self):
        projection = OrderProjection()
        batcher = EventBatcher(projection, refetch=AsyncMock(side_effect=RuntimeError("api down")), window_ms=10)
        errors = []
        batcher.on_sync_error(errors.append)

        batcher.enqueue(OrderCreated(order_id="o9"))
        await batcher.flush()

        assert len(errors) == 1
        assert isinstance(errors[0], SyncIncomplete)
        assert errors[0].order_ids == ["o9"]
        assert "api down" in str(errors[0])
        assert len(projection) == 0

    @pytest.mark.asyncio
    async def test_missing_refetch_handler_reports_sync_incomplete(self):
        batcher = EventBatcher(OrderProjection(), window_ms=10)
        errors = []
        batcher.on_sync_error(errors.append)

        batcher.enqueue(OrderCreated(order_id="o9"))
        await batcher.flush()

        assert len(errors) == 1
        assert "none is configured" in str(errors[0])


class TestEventBatcherClose:
    """Nothing fires after close"""

    @pytest.mark.asyncio
    async def test_close_clears_queue_and_drops_new_events(self, make_snapshot):
        projection = OrderProjection()
        projection.reset([make_snapshot("o1")])
        batcher = EventBatcher(projection, window_ms=10)
        callback = AsyncMock()
        batcher.on(OrderEventName.ORDER_STATUS_UPDATED, callback)

        batcher.enqueue(status_event("o1", 2))
        batcher.close()
        batcher.enqueue(status_event("o1", 3))
        await asyncio.sleep(0.05)

        assert batcher.pending == 0
        assert await batcher.flush() == 0
        callback.assert_not_called()
        assert projection.get("o1").order_version == 1

    @pytest.mark.asyncio
    async def test_unregister(self, make_snapshot):
        projection = OrderProjection()
        projection.reset([make_snapshot("o1")])
        batcher = EventBatcher(projection, window_ms=10)
        callback = AsyncMock()
        unregister = batcher.on_order_status_updated(callback)

        unregister()
        batcher.enqueue(status_event("o1", 2))
        await batcher.flush()

        callback.assert_not_called()


class TestProjectionConvergence:
    """Final state is the highest version regardless of delivery order or duplication"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("order", list(itertools.permutations([2, 3, 4, 3])))
    async def test_every_delivery_order_converges(self, make_snapshot, order):
        projection = OrderProjection()
        projection.reset([make_snapshot("o1", "pending", 1)])
        batcher = EventBatcher(projection, window_ms=10)
        statuses = {2: "accepted", 3: "escrowed", 4: "payment_sent"}

        for version in order:
            snapshot = make_snapshot("o1", statuses[version], version)
            batcher.enqueue(status_event("o1", version, statuses[version], snapshot=snapshot))
            await batcher.flush()

        assert projection.get("o1").order_version == 4
        assert projection.get("o1").status == "payment_sent"

    def test_versions_never_decrease(self, make_snapshot):
        projection = OrderProjection()
        projection.reset([make_snapshot("o1", "pending", 1)])
        history = []
        for version in [2, 5, 3, 5, 4, 6]:
            projection.merge_snapshots([make_snapshot("o1", "accepted", version)])
            history.append(projection.current_version("o1"))

        assert history == [2, 5, 5, 5, 5, 6]

    def test_full_snapshot_replaces_partial_at_same_version(self, make_snapshot):
        projection = OrderProjection()
        partial = make_snapshot("o1", "accepted", 2, order_number=None)
        projection.apply_batch([(partial, True)])

        applied = projection.merge_snapshots([make_snapshot("o1", "accepted", 2)])

        assert len(applied) == 1
        assert projection.is_partial("o1") is False
        assert projection.get("o1").order_number == "ORD-o1"

    def test_active_excludes_terminal(self, make_snapshot):
        projection = OrderProjection()
        projection.reset([make_snapshot("o1", "accepted"), make_snapshot("o2", "completed")])
        assert [o.id for o in projection.active()] == ["o1"]
