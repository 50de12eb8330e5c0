"""
Realtime Order Sync end-to-end tests

Channels (in-process hub) -> dedup -> batcher -> version gate -> projection -> callbacks,
with the REST collaborator mocked.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from services.channel_multiplexer import ChannelMultiplexer
from services.orders_api_client import OrdersAPIClient
from services.realtime_order_sync import RealtimeOrderSync
from utils.order_errors import MutationFailed, SyncIncomplete
from utils.datetime_helpers import utc_now
from utils.order_events import build_status_payload, parse_socket_envelope


def mock_api(snapshots):
    api = MagicMock(spec=OrdersAPIClient)
    api.list_orders = AsyncMock(return_value=list(snapshots))
    api.update_status = AsyncMock()
    return api


async def publish_status(hub, channel, snapshot, previous_status, include_snapshot=False):
    await hub.publish(
        channel,
        "ORDER_CANCELLED" if snapshot.status == "cancelled" else "ORDER_STATUS_UPDATED",
        build_status_payload(snapshot, previous_status, include_snapshot=include_snapshot),
    )


class TestRealtimeOrderSync:

    @pytest.mark.asyncio
    async def test_version_sequence_with_duplicate(self, hub, make_snapshot):
        """v1 -> v2 -> duplicate v2 ignored -> v4"""
        api = mock_api([make_snapshot("o1", "pending", 1, user_id="u1")])
        sync = RealtimeOrderSync("user", "u1", api, ChannelMultiplexer(hub), window_ms=10, enable_chat=False)
        updates = []
        sync.on_order_status_updated(lambda event, snapshot: updates.append(snapshot.order_version))
        await sync.start()

        assert sync.projection.current_version("o1") == 1

        await publish_status(hub, "user-u1", make_snapshot("o1", "accepted", 2, user_id="u1"), "pending")
        await sync.batcher.flush()
        assert sync.projection.current_version("o1") == 2

        # Same event again, e.g. via a second channel
        await publish_status(hub, "user-u1", make_snapshot("o1", "accepted", 2, user_id="u1"), "pending")
        assert sync.batcher.pending == 0

        await publish_status(hub, "user-u1", make_snapshot("o1", "payment_sent", 4, user_id="u1"), "escrowed")
        await sync.batcher.flush()

        assert sync.projection.current_version("o1") == 4
        assert sync.projection.get("o1").status == "payment_sent"
        assert updates == [2, 4]
        await sync.stop()

    @pytest.mark.asyncio
    async def test_out_of_order_delivery_keeps_newest(self, hub, make_snapshot):
        api = mock_api([make_snapshot("o1", "pending", 1, user_id="u1")])
        sync = RealtimeOrderSync("user", "u1", api, ChannelMultiplexer(hub), window_ms=10, enable_chat=False)
        await sync.start()

        await publish_status(hub, "user-u1", make_snapshot("o1", "escrowed", 3, user_id="u1"), "accepted")
        await sync.batcher.flush()
        await publish_status(hub, "user-u1", make_snapshot("o1", "accepted", 2, user_id="u1"), "pending")
        await sync.batcher.flush()

        assert sync.projection.get("o1").status == "escrowed"
        assert sync.projection.current_version("o1") == 3
        await sync.stop()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("flush_between", [False, True])
    async def test_socket_partial_then_channel_full_copy_converges(self, hub, make_snapshot, flush_between):
        """The fallback socket's partial copy arrives first; the full channel copy still lands"""
        api = mock_api([make_snapshot("o1", "pending", 1, user_id="u1", merchant_id="m1")])
        sync = RealtimeOrderSync("user", "u1", api, ChannelMultiplexer(hub), window_ms=10, enable_chat=False)
        await sync.start()
        full = make_snapshot("o1", "accepted", 2, user_id="u1", merchant_id="m2",
                             accepted_at=utc_now(), expires_at=utc_now() + timedelta(minutes=45))

        assert sync.ingest(parse_socket_envelope({
            "type": "order_event", "event_type": "ORDER_STATUS_UPDATED", "order_id": "o1",
            "status": "accepted", "minimal_status": "accepted", "order_version": 2,
            "previousStatus": "pending",
        })) is True
        if flush_between:
            await sync.batcher.flush()
            assert sync.projection.is_partial("o1") is True
        await publish_status(hub, "user-u1", full, "pending", include_snapshot=True)
        await sync.batcher.flush()

        current = sync.projection.get("o1")
        assert current.order_version == 2
        assert current.merchant_id == "m2"
        assert current.accepted_at == full.accepted_at
        assert current.expires_at == full.expires_at
        assert sync.projection.is_partial("o1") is False
        await sync.stop()

    @pytest.mark.asyncio
    async def test_failed_initial_fetch_leaves_empty_view(self, hub):
        api = mock_api([])
        api.list_orders.side_effect = MutationFailed("list_orders", None, "HTTP 503", 503)
        sync = RealtimeOrderSync("user", "u1", api, ChannelMultiplexer(hub), window_ms=10, enable_chat=False)

        await sync.start()

        assert len(sync.projection) == 0
        assert isinstance(sync.last_sync_error, SyncIncomplete)
        assert hub.subscriber_count("user-u1") == 1
        await sync.stop()

    @pytest.mark.asyncio
    async def test_stop_releases_channels_and_ignores_events(self, hub, make_snapshot):
        api = mock_api([make_snapshot("o1", "pending", 1, user_id="u1")])
        sync = RealtimeOrderSync("user", "u1", api, ChannelMultiplexer(hub), window_ms=10, enable_chat=False)
        await sync.start()

        await sync.stop()

        assert hub.channel_names() == []
        assert sync.mounted is False
        assert sync.ingest(MagicMock()) is False

    @pytest.mark.asyncio
    async def test_unversioned_event_triggers_refetch(self, hub, make_snapshot):
        api = mock_api([make_snapshot("o1", "pending", 1, user_id="u1")])
        sync = RealtimeOrderSync("user", "u1", api, ChannelMultiplexer(hub), window_ms=10, enable_chat=False)
        await sync.start()
        api.list_orders.return_value = [make_snapshot("o1", "accepted", 2, user_id="u1")]

        await hub.publish("user-u1", "ORDER_STATUS_UPDATED", {"orderId": "o1", "status": "accepted"})
        await sync.batcher.flush()

        assert api.list_orders.await_count == 2
        assert sync.projection.current_version("o1") == 2
        await sync.stop()


class TestRealtimeOrderSyncMutations:
    """Self-initiated mutations apply the server response through the gate"""

    @pytest.mark.asyncio
    async def test_accept_applies_server_snapshot(self, hub, make_snapshot):
        api = mock_api([make_snapshot("o1", "pending", 1, merchant_id="m1")])
        api.update_status.return_value = make_snapshot("o1", "accepted", 2, merchant_id="m1")
        sync = RealtimeOrderSync("merchant", "m1", api, ChannelMultiplexer(hub), window_ms=10, enable_chat=False)
        await sync.start()

        result = await sync.accept("o1")

        api.update_status.assert_awaited_once_with("o1", "accepted", "merchant", "m1")
        assert result.order_version == 2
        assert sync.projection.get("o1").status == "accepted"
        await sync.stop()

    @pytest.mark.asyncio
    async def test_mutation_failure_is_raised_and_reported(self, hub, make_snapshot):
        api = mock_api([make_snapshot("o1", "pending", 1, merchant_id="m1")])
        api.update_status.side_effect = MutationFailed("update_status", "o1", "Invalid transition", 400)
        sync = RealtimeOrderSync("merchant", "m1", api, ChannelMultiplexer(hub), window_ms=10, enable_chat=False)
        listener = MagicMock()
        sync.on_mutation_error(listener)
        await sync.start()

        with pytest.raises(MutationFailed):
            await sync.mark_paid("o1")

        listener.assert_called_once()
        # Nothing was optimistically applied, so nothing needs rolling back
        assert sync.projection.get("o1").status == "pending"
        assert sync.projection.current_version("o1") == 1
        await sync.stop()

    @pytest.mark.asyncio
    async def test_late_channel_echo_of_own_mutation_is_stale(self, hub, make_snapshot):
        api = mock_api([make_snapshot("o1", "pending", 1, merchant_id="m1")])
        api.update_status.return_value = make_snapshot("o1", "accepted", 2, merchant_id="m1")
        sync = RealtimeOrderSync("merchant", "m1", api, ChannelMultiplexer(hub), window_ms=10, enable_chat=False)
        callback = MagicMock()
        sync.on_order_status_updated(callback)
        await sync.start()

        await sync.accept("o1")
        await publish_status(hub, "merchant-m1", make_snapshot("o1", "accepted", 2, merchant_id="m1"), "pending")
        await sync.batcher.flush()

        callback.assert_not_called()
        assert sync.batcher.stats["stale"] == 1
        await sync.stop()


class TestRealtimeOrderSyncChat:

    @pytest.mark.asyncio
    async def test_chat_follows_order_lifecycle(self, hub, make_snapshot):
        """Chat opens for an active order and closes once the order completes"""
        api = mock_api([make_snapshot("o1", "accepted", 2, user_id="u1")])
        sync = RealtimeOrderSync("user", "u1", api, ChannelMultiplexer(hub), window_ms=10)
        await sync.start()

        assert sync.multiplexer.has_chat("user", "u1", "o1") is True
        await hub.publish("order-o1", "MESSAGE_NEW",
                          {"orderId": "o1", "message": {"id": "m1", "sender_type": "merchant", "content": "sent"}})
        assert [m.content for m in sync.chats["o1"].messages] == ["sent"]

        await publish_status(hub, "user-u1", make_snapshot("o1", "completed", 5, user_id="u1"), "payment_sent")
        await sync.batcher.flush()

        assert sync.multiplexer.has_chat("user", "u1", "o1") is False
        assert "o1" not in sync.chats
        await sync.stop()
