"""
Root conftest.py for all backend tests.

This file makes fixtures available to all test files across all apps.
"""
from decimal import Decimal

import pytest
from django.utils import timezone

from notifications.gateway import DeliveryResult, NotificationGateway
from notifications.messages import PING_UPDATE_TYPE


ORDER_ITEMS = [
    {
        "assignedUserId": 1,
        "categoryId": 10,
        "choices": [],
        "dishId": 100,
        "dishNotes": "",
        "itemName": "Falafel plate",
        "price": 45.5,
        "quantity": 1,
        "shoppingCartDishId": 1000,
    }
]


class RecordingGateway(NotificationGateway):
    """
    In-memory gateway that records every call.

    Endpoints in ``responsive`` answer liveness pings immediately by stamping
    the user's last ping time, like a connected client would. Sends to
    endpoints in ``failing`` report a delivery failure.
    """

    def __init__(self):
        self.device_messages = []
        self.topic_messages = []
        self.subscriptions = {}
        self.responsive = set()
        self.failing = set()

    async def send_to_device(self, endpoint_id, payload):
        if not endpoint_id:
            return DeliveryResult(False, 0, "Missing endpoint id.")

        if endpoint_id in self.failing:
            return DeliveryResult(False, 0, "Endpoint unreachable.")

        self.device_messages.append((endpoint_id, payload))

        if payload.get("type") == PING_UPDATE_TYPE and endpoint_id in self.responsive:
            from users.models import User

            await User.objects.filter(fcm_id=endpoint_id).aupdate(last_ping_time=timezone.now())

        return DeliveryResult(True, 1)

    async def send_to_topic(self, topic, payload):
        if not topic:
            return DeliveryResult(False, 0, "Missing topic.")

        self.topic_messages.append((topic, payload))
        return DeliveryResult(True, len(self.subscriptions.get(topic, ())))

    async def subscribe(self, endpoint_ids, topic):
        self.subscriptions.setdefault(topic, set()).update(endpoint_ids)
        return DeliveryResult(True, len(endpoint_ids))

    async def unsubscribe(self, endpoint_ids, topic):
        self.subscriptions.setdefault(topic, set()).difference_update(endpoint_ids)
        return DeliveryResult(True, len(endpoint_ids))

    def messages_to(self, endpoint_id, message_type=None):
        return [
            payload
            for endpoint, payload in self.device_messages
            if endpoint == endpoint_id and (message_type is None or payload.get("type") == message_type)
        ]


class GroupeatWorld:
    """Services wired to one recording gateway and one lock registry, plus setup helpers."""

    def __init__(self, gateway):
        from offices.services import OfficeService
        from restaurants.services import RestaurantService, SettlementLocks
        from users.services import UserService

        self.gateway = gateway
        self.locks = SettlementLocks()
        self.users = UserService(gateway=gateway)
        self.offices = OfficeService(gateway=gateway, user_service=self.users)
        self.restaurants = RestaurantService(gateway=gateway, locks=self.locks, user_service=self.users)

    @property
    def settlement(self):
        return self.restaurants.settlement

    async def create_user(self, user_token, endpoint=None, full_name="Dana Levi", responsive=True):
        await self.users.create_user(user_token, full_name, "0527654321", "dana@example.com")
        user = await self.users.get_user(user_token=user_token)

        if endpoint:
            await self.users.update_push_endpoint(user, endpoint)
            if responsive:
                self.gateway.responsive.add(endpoint)

        return user

    async def create_office(self, company_id=1234, address_key="1-22-333-4444", members=()):
        office = await self.offices.create_office(company_id, address_key)

        for user in members:
            await self.offices.add_user(office, user)

        return office

    async def create_restaurant(self, office, restaurant_id=555, minimum=None, pooled=0, name="Hummus Bar"):
        """Create a restaurant with its metadata set directly, without triggering a settlement."""
        from restaurants.models import Restaurant

        restaurant = await self.restaurants.get_restaurant(office, restaurant_id, create_if_not_exists=True)
        fields = {
            "name": name,
            "has_meta_data": True,
            "minimum_price_for_order": None if minimum is None else Decimal(str(minimum)),
            "pooled_order_sum": Decimal(str(pooled)),
        }
        await Restaurant.objects.filter(pk=restaurant.pk).aupdate(**fields)

        for key, value in fields.items():
            setattr(restaurant, key, value)

        return restaurant

    async def set_minimum(self, restaurant, minimum, pooled=None):
        """Set the minimum behind the services' back, so no settlement is triggered."""
        from restaurants.models import Restaurant

        fields = {"minimum_price_for_order": None if minimum is None else Decimal(str(minimum))}
        if pooled is not None:
            fields["pooled_order_sum"] = Decimal(str(pooled))

        await Restaurant.objects.filter(pk=restaurant.pk).aupdate(**fields)

        for key, value in fields.items():
            setattr(restaurant, key, value)

        return restaurant

    async def add_order(self, restaurant, user, office, total_amount, shopping_cart_guid=None):
        return await self.restaurants.add_order(
            restaurant,
            user,
            office,
            ORDER_ITEMS,
            total_amount,
            shopping_cart_guid or f"cart-{user.pk}-{restaurant.restaurant_id}",
        )

    async def reload(self, instance):
        await instance.arefresh_from_db()
        return instance

    async def settle(self):
        await self.settlement.wait_for_pending()


# ============================================================================
# AUTO-USE FIXTURES (Run automatically for every test)
# ============================================================================

@pytest.fixture(autouse=True)
def fast_liveness(settings):
    """
    Shrink the liveness poll so settlement tests finish in well under a
    second. Retries are disabled unless a test turns them back on.
    """
    settings.GROUPEAT = {
        **settings.GROUPEAT,
        "LIVENESS_CHECK_INTERVAL": 0.05,
        "LIVENESS_TIMEOUT": 0.5,
        "SETTLEMENT_RETRY_DELAY": 0,
        "DAY_START_HOUR": None,
        "DAY_END_HOUR": None,
    }
    return settings


# ============================================================================
# SHARED FIXTURES
# ============================================================================

@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def world(gateway):
    world = GroupeatWorld(gateway)
    yield world
    world.settlement.cancel_pending_retries()


@pytest.fixture
def order_items():
    return [dict(item) for item in ORDER_ITEMS]
