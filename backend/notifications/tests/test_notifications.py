"""
Notifications Tests

The channel layer gateway and the device WebSocket consumer that forwards
push messages and receives liveness ping-backs.

Test Categories:
1. Message builders
2. Channel layer gateway
3. Device consumer
"""
from decimal import Decimal
from types import SimpleNamespace

import pytest
from channels.layers import InMemoryChannelLayer
from channels.testing import WebsocketCommunicator

from notifications import messages
from notifications.gateway import (
    NOTIFICATION_EVENT_TYPE,
    ChannelLayerNotificationGateway,
    device_group,
)
from notifications.models import TopicSubscription

TOKEN_DANA = "ZGFuYQ=="


@pytest.fixture
def fresh_channel_layer(settings):
    """Every test gets its own in-memory layer bound to its own event loop."""
    settings.CHANNEL_LAYERS = {"default": {"BACKEND": "channels.layers.InMemoryChannelLayer"}}


class FailingChannelLayer:
    async def group_send(self, group, message):
        raise ConnectionError("layer down")


# ============================================================================
# MESSAGE BUILDERS
# ============================================================================

class TestMessages:

    def _restaurant(self):
        return SimpleNamespace(
            restaurant_id=555,
            name="Hummus Bar",
            group_order_sum=Decimal("110.00"),
            pooled_order_sum=Decimal("0.00"),
            minimum_price_for_order=Decimal("100.00"),
        )

    def _user(self):
        return SimpleNamespace(user_token=TOKEN_DANA, test_user_id="")

    def test_every_value_is_a_string(self):
        restaurant = self._restaurant()
        user = self._user()
        office = SimpleNamespace(company_id=1234, address_key="1-22-333-4444")
        order = SimpleNamespace(total_amount=Decimal("60.00"), shopping_cart_guid="cart-1")

        payloads = [
            messages.order_passed_minimum_message(restaurant),
            messages.order_confirmation_message(restaurant, office, user, order),
            messages.ping_update_message(user, "Title", "Text"),
            messages.unseen_order_canceled_message(restaurant, user),
            messages.could_not_pass_minimum_message(restaurant, user),
        ]

        for payload in payloads:
            assert all(isinstance(value, str) for value in payload.values()), payload

    def test_message_types(self):
        restaurant = self._restaurant()
        user = self._user()

        assert messages.order_passed_minimum_message(restaurant)["type"] == "1"
        assert messages.ping_update_message(user, "t", "m")["type"] == "3"
        assert messages.unseen_order_canceled_message(restaurant, user)["type"] == "4"
        assert messages.could_not_pass_minimum_message(restaurant, user)["type"] == "4"

    def test_confirmation_carries_the_charge(self):
        restaurant = self._restaurant()
        office = SimpleNamespace(company_id=1234, address_key="1-22-333-4444")
        order = SimpleNamespace(total_amount=Decimal("60.00"), shopping_cart_guid="cart-1")

        payload = messages.order_confirmation_message(restaurant, office, self._user(), order)

        assert payload["type"] == "2"
        assert payload["totalAmount"] == "60.00"
        assert payload["shoppingCartGuid"] == "cart-1"
        assert payload["addressCompanyId"] == "1234"
        assert payload["restaurantId"] == "555"


# ============================================================================
# CHANNEL LAYER GATEWAY
# ============================================================================

class TestDeviceGroup:

    def test_device_group_is_a_valid_group_name(self):
        group = device_group("https://push.example.com/endpoint?id=1")

        assert group.startswith("device.")
        assert len(group) < 100
        assert all(char.isalnum() or char in "._-" for char in group)


@pytest.mark.asyncio
class TestChannelLayerGateway:

    async def test_send_to_device_reaches_device_group(self):
        layer = InMemoryChannelLayer()
        channel = await layer.new_channel()
        await layer.group_add(device_group("endpoint-a"), channel)
        gateway = ChannelLayerNotificationGateway(channel_layer=layer)

        result = await gateway.send_to_device("endpoint-a", {"type": "2", "title": "Paid"})

        assert result.success
        assert result.delivered == 1
        message = await layer.receive(channel)
        assert message == {"type": NOTIFICATION_EVENT_TYPE, "data": {"type": "2", "title": "Paid"}}

    async def test_send_without_endpoint_fails_quietly(self):
        gateway = ChannelLayerNotificationGateway(channel_layer=InMemoryChannelLayer())

        result = await gateway.send_to_device("", {"type": "2"})

        assert not result.success

    async def test_layer_failure_is_reported_not_raised(self):
        gateway = ChannelLayerNotificationGateway(channel_layer=FailingChannelLayer())

        result = await gateway.send_to_device("endpoint-a", {"type": "2"})

        assert not result.success
        assert "layer down" in result.error


@pytest.mark.django_db(transaction=True)
@pytest.mark.asyncio
class TestTopics:

    async def test_subscribe_and_send_to_topic(self):
        layer = InMemoryChannelLayer()
        gateway = ChannelLayerNotificationGateway(channel_layer=layer)
        channels = {}
        for endpoint in ("endpoint-a", "endpoint-b"):
            channels[endpoint] = await layer.new_channel()
            await layer.group_add(device_group(endpoint), channels[endpoint])

        await gateway.subscribe(["endpoint-a", "endpoint-b"], "1-22-333-4444_1234")
        await gateway.subscribe("endpoint-a", "1-22-333-4444_1234")
        result = await gateway.send_to_topic("1-22-333-4444_1234", {"type": "1"})

        assert result.success
        assert result.delivered == 2
        assert await TopicSubscription.objects.acount() == 2
        for channel in channels.values():
            assert (await layer.receive(channel))["data"] == {"type": "1"}

    async def test_unsubscribe(self):
        gateway = ChannelLayerNotificationGateway(channel_layer=InMemoryChannelLayer())
        await gateway.subscribe(["endpoint-a", "endpoint-b"], "topic")

        result = await gateway.unsubscribe(["endpoint-a"], "topic")

        assert result.delivered == 1
        remaining = [row async for row in TopicSubscription.objects.values_list("endpoint_id", flat=True)]
        assert remaining == ["endpoint-b"]

    async def test_subscribe_without_endpoints_fails_quietly(self):
        gateway = ChannelLayerNotificationGateway(channel_layer=InMemoryChannelLayer())

        assert not (await gateway.subscribe([], "topic")).success
        assert not (await gateway.subscribe(["endpoint-a"], "")).success


# ============================================================================
# DEVICE CONSUMER
# ============================================================================

@pytest.mark.django_db(transaction=True)
@pytest.mark.asyncio
class TestDeviceConsumer:

    async def _connect(self, endpoint="endpoint-a"):
        from core_backend.asgi import application

        communicator = WebsocketCommunicator(application, f"/ws/devices/{endpoint}/")
        connected, _ = await communicator.connect()
        assert connected
        return communicator

    async def test_push_message_is_forwarded(self, fresh_channel_layer):
        """
        HIGH: Verify a message sent through the gateway reaches the connected client.

        Scenario:
        - A client connects for endpoint-a
        - The gateway sends a confirmation to endpoint-a
        - Expected: the client receives the payload as JSON
        """
        communicator = await self._connect()

        result = await ChannelLayerNotificationGateway().send_to_device("endpoint-a", {"type": "2", "title": "Paid"})

        assert result.success
        assert await communicator.receive_json_from() == {"type": "2", "title": "Paid"}
        await communicator.disconnect()

    async def test_ping_back_stamps_the_user(self, world, fresh_channel_layer):
        dana = await world.create_user(TOKEN_DANA, endpoint="endpoint-a")
        communicator = await self._connect()

        await communicator.send_json_to({"type": "ping_back", "userToken": TOKEN_DANA})
        response = await communicator.receive_json_from()

        assert response["type"] == "ping_ack"
        await world.reload(dana)
        assert dana.last_ping_time is not None
        assert dana.last_ping_time.isoformat() == response["timestamp"]
        await communicator.disconnect()

    async def test_ping_back_from_unknown_user(self, fresh_channel_layer):
        communicator = await self._connect()

        await communicator.send_json_to({"type": "ping_back", "userToken": TOKEN_DANA})

        assert await communicator.receive_json_from() == {"type": "error", "errorId": 3}
        await communicator.disconnect()

    async def test_ping_back_with_invalid_token(self, fresh_channel_layer):
        communicator = await self._connect()

        await communicator.send_json_to({"type": "ping_back", "userToken": "not base64!"})

        assert await communicator.receive_json_from() == {"type": "error", "errorId": 2}
        await communicator.disconnect()

    async def test_invalid_json_is_answered_with_an_error(self, fresh_channel_layer):
        communicator = await self._connect()

        await communicator.send_to(text_data="{not json")

        assert await communicator.receive_json_from() == {"type": "error", "errorId": 2}
        await communicator.disconnect()
