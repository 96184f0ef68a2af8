"""
OrderStore Tests

The document-style persistence layer over the Django ORM.
"""
from decimal import Decimal

import pytest
from django.db import DatabaseError
from django.db.models import Q

from core_backend.exceptions import StorageError
from core_backend.infrastructure.store import OrderStore, storage_operation
from offices.models import Office
from restaurants.models import GroupOrder, Restaurant
from users.models import User


async def _restaurant_with_orders(amounts):
    office = await Office.objects.acreate(company_id=1234, address_key="1-22-333-4444")
    restaurant = await Restaurant.objects.acreate(office=office, restaurant_id=555, name="Hummus Bar")

    for index, amount in enumerate(amounts):
        user = await User.objects.acreate(
            user_token="ZGFuYQ==", full_name="Dana Levi", cellphone="0527654321", email=f"user{index}@example.com"
        )
        await GroupOrder.objects.acreate(
            restaurant=restaurant,
            user=user,
            total_amount=Decimal(amount),
            shopping_cart_guid=f"cart-{index}",
            is_canceled=index == 0,
        )

    return restaurant


@pytest.mark.django_db(transaction=True)
@pytest.mark.asyncio
class TestOrderStore:

    async def test_find_with_projection_and_q_filters(self):
        store = OrderStore()
        restaurant = await _restaurant_with_orders(["10", "20", "30"])

        rows = await store.find(
            GroupOrder,
            Q(restaurant=restaurant) & Q(is_canceled=False),
            fields=["shopping_cart_guid"],
            order_by=["shopping_cart_guid"],
        )

        assert rows == [{"shopping_cart_guid": "cart-1"}, {"shopping_cart_guid": "cart-2"}]

    async def test_aggregate_sums_and_groups(self):
        store = OrderStore()
        restaurant = await _restaurant_with_orders(["10", "20", "30"])

        [totals] = await store.aggregate(GroupOrder, {"restaurant": restaurant}, sums={"total": "total_amount"})
        assert totals["total"] == Decimal("60.00")

        grouped = await store.aggregate(
            GroupOrder,
            {"restaurant": restaurant},
            group_by=["is_canceled"],
            sums={"total": "total_amount"},
            order_by=["is_canceled"],
        )
        assert grouped == [
            {"is_canceled": False, "total": Decimal("50.00")},
            {"is_canceled": True, "total": Decimal("10.00")},
        ]

    async def test_aggregate_pages(self):
        store = OrderStore()
        restaurant = await _restaurant_with_orders(["10", "20", "30"])

        page = await store.aggregate(
            GroupOrder,
            {"restaurant": restaurant},
            fields=["shopping_cart_guid"],
            order_by=["shopping_cart_guid"],
            limit=1,
            skip=1,
        )

        assert page == [{"shopping_cart_guid": "cart-1"}]

    async def test_array_style_writes(self):
        store = OrderStore()
        restaurant = await _restaurant_with_orders(["10"])
        user = await User.objects.afirst()

        order = await store.push_to_array(
            restaurant, "orders", user=user, total_amount=Decimal("12.00"), shopping_cart_guid="pushed"
        )
        assert order.restaurant_id == restaurant.pk

        updated = await store.update_array_elements_matching(
            restaurant, "orders", {"shopping_cart_guid": "pushed"}, is_paid=True
        )
        assert updated == 1
        assert await store.exists(GroupOrder, {"shopping_cart_guid": "pushed", "is_paid": True})

    async def test_database_errors_become_storage_errors(self):
        class BrokenStore(OrderStore):
            @storage_operation
            async def find(self, *args, **kwargs):
                raise DatabaseError("disk I/O error")

        with pytest.raises(StorageError) as exc_info:
            await BrokenStore().find(GroupOrder)

        assert exc_info.value.error_id == 6
        assert exc_info.value.details["operation"] == "find"
