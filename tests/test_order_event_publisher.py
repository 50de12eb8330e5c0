"""
Order event publishing tests

Coverage Focus Areas:
- Channel routing per event and status
- Publish failures never reach the caller
- Fallback socket server subscribe / ping / broadcast
- Store mutation -> hub -> live merchant view
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp import test_utils

from services.channel_multiplexer import ChannelMultiplexer
from services.order_event_publisher import OrderEventPublisher, channels_for_order
from services.order_lifecycle_service import OrderLifecycleService
from services.order_socket_server import OrderSocketServer
from services.realtime_order_sync import RealtimeOrderSync


class TestChannelRouting:

    def test_created_goes_to_all_merchants(self, make_snapshot):
        snapshot = make_snapshot("o1", user_id="u1", merchant_id="m1")

        channels = channels_for_order(snapshot, "ORDER_CREATED")

        assert channels == ["user-u1", "merchant-m1", "order-o1", "merchants-global"]

    @pytest.mark.parametrize("status,is_global", [
        ("accepted", True),
        ("cancelled", True),
        ("expired", True),
        ("escrowed", False),
        ("payment_sent", False),
    ])
    def test_pool_visible_statuses(self, make_snapshot, status, is_global):
        event_name = "ORDER_CANCELLED" if status == "cancelled" else "ORDER_STATUS_UPDATED"
        channels = channels_for_order(make_snapshot("o1", status, 2), event_name)
        assert ("merchants-global" in channels) is is_global

    def test_buyer_merchant_gets_own_channel(self, make_snapshot):
        snapshot = make_snapshot("o1", "escrowed", 3, merchant_id="m1", buyer_merchant_id="m2")
        channels = channels_for_order(snapshot, "ORDER_STATUS_UPDATED")
        assert "merchant-m2" in channels

        same = make_snapshot("o2", "escrowed", 3, merchant_id="m1", buyer_merchant_id="m1")
        assert channels_for_order(same, "ORDER_STATUS_UPDATED").count("merchant-m1") == 1


class TestOrderEventPublisher:

    @pytest.mark.asyncio
    async def test_order_created_reaches_every_channel(self, hub, make_snapshot):
        received = []
        for channel in ("user-user-1", "merchant-merchant-1", "order-o1", "merchants-global"):
            hub.subscribe(channel, lambda name, payload, ch=channel: received.append((ch, name, payload)))
        publisher = OrderEventPublisher(hub)

        await publisher.order_created(make_snapshot("o1"))

        assert len(received) == 4
        _, name, payload = received[0]
        assert name == "ORDER_CREATED"
        assert payload["orderId"] == "o1"
        assert payload["order_version"] == 1
        assert payload["data"]["id"] == "o1"

    @pytest.mark.asyncio
    async def test_cancellation_uses_cancel_event(self, hub, make_snapshot):
        names = []
        hub.subscribe("order-o1", lambda name, payload: names.append(name))
        publisher = OrderEventPublisher(hub)

        await publisher.status_changed(make_snapshot("o1", "cancelled", 3), "accepted")
        await publisher.status_changed(make_snapshot("o1", "expired", 4), "cancelled")

        assert names == ["ORDER_CANCELLED", "ORDER_STATUS_UPDATED"]

    @pytest.mark.asyncio
    async def test_publish_failure_is_logged_not_raised(self, make_snapshot):
        hub = MagicMock()
        hub.publish = AsyncMock(side_effect=RuntimeError("hub down"))
        socket_server = MagicMock()
        socket_server.broadcast = AsyncMock(side_effect=RuntimeError("socket down"))
        publisher = OrderEventPublisher(hub, socket_server)

        await publisher.status_changed(make_snapshot("o1", "accepted", 2), "pending")

        assert hub.publish.await_count == 4
        socket_server.broadcast.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_socket_targets(self, hub, make_snapshot):
        socket_server = MagicMock()
        socket_server.broadcast = AsyncMock(return_value=1)
        publisher = OrderEventPublisher(hub, socket_server)
        snapshot = make_snapshot("o1", "accepted", 2, user_id="u1", merchant_id="m1")

        await publisher.status_changed(snapshot, "pending")

        socket_server.broadcast.assert_awaited_once_with(
            "ORDER_STATUS_UPDATED", snapshot, "pending",
            [("user", "u1"), ("merchant", "m1")], all_merchants=True,
        )

    @pytest.mark.asyncio
    async def test_without_channel_transport_socket_still_broadcasts(self, make_snapshot):
        socket_server = MagicMock()
        socket_server.broadcast = AsyncMock(return_value=1)
        publisher = OrderEventPublisher(socket_server=socket_server)

        await publisher.order_created(make_snapshot("o1"))

        socket_server.broadcast.assert_awaited_once()
        assert socket_server.broadcast.await_args.args[0] == "ORDER_CREATED"


class TestOrderSocketServer:

    @pytest.mark.asyncio
    async def test_subscribe_ping_and_broadcast(self, make_snapshot):
        server = OrderSocketServer()
        async with test_utils.TestClient(test_utils.TestServer(server.create_app())) as client:
            ws = await client.ws_connect("/ws/orders")

            await ws.send_json({"type": "subscribe", "actorType": "merchant", "actorId": "m9"})
            assert await ws.receive_json(timeout=2) == {
                "type": "subscribed", "actorType": "merchant", "actorId": "m9",
            }
            await ws.send_json({"type": "ping"})
            assert await ws.receive_json(timeout=2) == {"type": "pong"}
            assert server.is_subscribed("merchant", "m9")

            # m9 is not a party, but new orders go to every merchant
            snapshot = make_snapshot("o1", user_id="u1", merchant_id="m1")
            sent = await server.broadcast("ORDER_CREATED", snapshot, None,
                                          [("user", "u1"), ("merchant", "m1")], all_merchants=True)
            assert sent == 1
            envelope = await ws.receive_json(timeout=2)
            assert envelope["type"] == "order_event"
            assert envelope["event_type"] == "ORDER_CREATED"
            assert envelope["order_id"] == "o1"
            assert envelope["order_version"] == 1

            not_targeted = await server.broadcast("ORDER_STATUS_UPDATED", snapshot.with_status("escrowed", 3),
                                                  "accepted", [("user", "u1")])
            assert not_targeted == 0

            response = await client.get("/health")
            assert (await response.json()) == {"status": "ok", "clients": 1}
            await ws.close()

    @pytest.mark.asyncio
    async def test_invalid_subscribe(self):
        server = OrderSocketServer()
        async with test_utils.TestClient(test_utils.TestServer(server.create_app())) as client:
            ws = await client.ws_connect("/ws/orders")

            await ws.send_json({"type": "subscribe", "actorType": "compliance", "actorId": "c1"})

            reply = await ws.receive_json(timeout=2)
            assert reply["type"] == "error"
            assert server.client_count() == 0
            await ws.close()


class TestPublishToLiveView:
    """A committed mutation shows up in a subscribed merchant's projection"""

    @pytest.mark.asyncio
    async def test_create_and_accept_flow(self, session_factory, hub):
        lifecycle = OrderLifecycleService(session_factory, OrderEventPublisher(hub))
        api = MagicMock()
        api.list_orders = AsyncMock(return_value=[])
        sync = RealtimeOrderSync("merchant", "m1", api, ChannelMultiplexer(hub), window_ms=10, enable_chat=False)
        created = []
        sync.on_order_created(lambda event, snapshot: created.append(snapshot.id))
        await sync.start()

        order = await lifecycle.create_order(
            user_id="u1", merchant_id="m1", order_type="buy",
            crypto_amount=100, fiat_amount=367, rate=3.67,
        )
        await sync.batcher.flush()

        # Delivered on merchant-m1 and merchants-global, applied once
        assert created == [order.id]
        assert sync.projection.current_version(order.id) == 1

        await lifecycle.accept_order(order.id, "m1")
        await sync.batcher.flush()

        assert sync.projection.get(order.id).status == "accepted"
        assert sync.projection.current_version(order.id) == 2
        assert sync.batcher.stats["stale"] == 0
        await sync.stop()
