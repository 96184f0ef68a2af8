import logging
from datetime import datetime
from decimal import Decimal

from django.utils import timezone
from django.utils.dateparse import parse_datetime

from core_backend.config import app_settings
from core_backend.exceptions import (
    AlreadyExistsError,
    GroupeatError,
    InvalidInputError,
    PaidOrderExistsError,
    RestaurantAlreadyExistsError,
    RestaurantNotExistsError,
)
from core_backend.infrastructure import order_store
from core_backend.utils import day_window
from core_backend.utils.validation import is_true_integer
from notifications.gateway import get_gateway
from restaurants.models import GroupOrder, OrderStatus, Restaurant
from restaurants.serializers import OrderInputSerializer, RestaurantMetaDataSerializer
from .settlement_service import SettlementCoordinator, SettlementState

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

RESTAURANT_ORDER_FIELDS = (
    "restaurant__restaurant_id",
    "restaurant__name",
    "restaurant__group_order_sum",
    "restaurant__minimum_price_for_order",
    "restaurant__pooled_order_sum",
    "restaurant__address",
    "restaurant__city_name",
    "restaurant__header_image_url",
    "restaurant__logo_url",
    "restaurant__phone",
    "user_id",
    "items",
    "billing_lines",
    "total_amount",
    "shopping_cart_guid",
    "date_added",
    "is_canceled",
    "is_removed",
    "is_paid",
    "notification_sent",
)


class RestaurantService:
    """
    The restaurant aggregate: today's order log per restaurant and office,
    the group order sum, and the trigger of the settlement once the minimum
    is passed.

    Every service instance owns a SettlementCoordinator; production code goes
    through the module level ``restaurant_service`` so all restaurants share
    one lock registry.
    """

    def __init__(self, store=None, gateway=None, locks=None, user_service=None):
        self.store = store or order_store
        self.gateway = gateway or get_gateway()
        self._user_service = user_service
        self.settlement = SettlementCoordinator(self, locks=locks)

    @property
    def user_service(self):
        if self._user_service is None:
            from users.services import UserService

            self._user_service = UserService(store=self.store, gateway=self.gateway)
        return self._user_service

    @property
    def locks(self):
        return self.settlement.locks

    # ------------------------------------------------------------------
    # Restaurants
    # ------------------------------------------------------------------

    @staticmethod
    def is_restaurant_id_valid(restaurant_id):
        return is_true_integer(restaurant_id)

    def _validate_restaurant_id(self, office, restaurant_id):
        if not self.is_restaurant_id_valid(restaurant_id):
            raise InvalidInputError(
                f"The restaurant id: {restaurant_id} is invalid.",
                {"office": getattr(office, "pk", None), "restaurant_id": restaurant_id},
            )

        return int(restaurant_id)

    async def restaurant_exists(self, office, restaurant_id):
        restaurant_id = self._validate_restaurant_id(office, restaurant_id)
        return await self.store.exists(Restaurant, {"office": office, "restaurant_id": restaurant_id})

    async def create_restaurant(self, office, restaurant_id):
        if await self.restaurant_exists(office, restaurant_id):
            raise RestaurantAlreadyExistsError(
                f"The restaurant with the restaurant id: {restaurant_id} already exists.",
                {"office": office.pk, "restaurant_id": restaurant_id},
            )

        restaurant = await self.store.insert(
            Restaurant,
            office=office,
            restaurant_id=int(restaurant_id),
            created_at=day_window.now(),
        )
        logger.info(f"Created restaurant {restaurant_id} for office {office.pk}")
        return restaurant

    async def get_restaurant(self, office, restaurant_id, create_if_not_exists=False):
        """Load the office's restaurant, optionally creating it on first use."""
        restaurant_id = self._validate_restaurant_id(office, restaurant_id)
        restaurant = await self.store.first(
            Restaurant, {"office": office, "restaurant_id": restaurant_id}, select_related=["office"]
        )

        if restaurant is not None:
            return restaurant

        if create_if_not_exists:
            return await self.create_restaurant(office, restaurant_id)

        raise RestaurantNotExistsError(
            f"The restaurant with the restaurant id: {restaurant_id} does not exist.",
            {"office": office.pk, "restaurant_id": restaurant_id},
        )

    @staticmethod
    def get_basic_restaurant_data(restaurant):
        return {
            "restaurantId": restaurant.restaurant_id,
            "hasMetaData": restaurant.has_meta_data,
            "minimumPriceForOrder": restaurant.minimum_price_for_order,
            "pooledOrderSum": restaurant.pooled_order_sum,
            "restaurantName": restaurant.name,
            "groupOrderSum": restaurant.group_order_sum,
            "restaurantLogoUrl": restaurant.logo_url,
        }

    # ------------------------------------------------------------------
    # Order queries
    # ------------------------------------------------------------------

    @staticmethod
    def _today_filters(**extra):
        window = day_window.today_window()
        return {
            "date_added__gte": window.start,
            "date_added__lte": window.end,
            **extra,
        }

    async def get_today_user_order(self, restaurant, user):
        """The user's active order in this restaurant for today, or None."""
        return await self.store.first(
            GroupOrder,
            self._today_filters(restaurant=restaurant, user=user, is_canceled=False, is_removed=False),
            order_by=["-date_added"],
        )

    async def get_today_user_orders(self, user):
        """The user's active orders for today across every restaurant."""
        return await self.store.find(
            GroupOrder,
            self._today_filters(user=user, is_canceled=False, is_removed=False),
            order_by=["-date_added"],
            select_related=["restaurant"],
        )

    async def get_today_user_paid_order(self, user):
        for order in await self.get_today_user_orders(user):
            if order.is_paid:
                return order

        return None

    async def get_today_user_orders_amount(self, user):
        return len(await self.get_today_user_orders(user))

    async def can_user_make_new_order(self, user):
        """Returns {"result": bool} plus a "reason" when the user cannot order."""
        if not day_window.is_order_time():
            return {"result": False, "reason": "Ordering time is over, you cannot join office orders now."}

        orders = await self.get_today_user_orders(user)
        threshold = app_settings.ORDERS_PER_DAY_THRESHOLD

        if len(orders) >= threshold:
            return {"result": False, "reason": f"You cannot join more than {threshold} office orders a day."}

        if any(order.is_paid for order in orders):
            return {"result": False, "reason": "You already have a paid order today."}

        return {"result": True}

    async def get_all_user_orders(self, user, office, limit=None, skip=0):
        """The user's order history in an office, newest first, without removed orders."""
        if not is_true_integer(skip) or int(skip) < 0:
            skip = 0
        if limit is None or not is_true_integer(limit) or int(limit) <= 0:
            limit = app_settings.ORDERS_PER_PAGE

        return await self.store.aggregate(
            GroupOrder,
            filters={"user": user, "restaurant__office": office, "is_removed": False},
            fields=RESTAURANT_ORDER_FIELDS,
            order_by=["-date_added", "-id"],
            limit=int(limit),
            skip=int(skip),
        )

    async def get_today_office_orders(self, office):
        """
        Today's active orders of the office grouped per restaurant. Each
        entry carries the restaurant data, its orders and "orders_amount".
        """
        rows = await self.store.aggregate(
            GroupOrder,
            filters=self._today_filters(restaurant__office=office, is_canceled=False, is_removed=False),
            fields=RESTAURANT_ORDER_FIELDS,
            order_by=["-date_added", "-id"],
        )

        grouped = {}
        for row in rows:
            restaurant_id = row["restaurant__restaurant_id"]
            entry = grouped.get(restaurant_id)

            if entry is None:
                entry = {
                    key[len("restaurant__"):]: value
                    for key, value in row.items()
                    if key.startswith("restaurant__")
                }
                entry["orders"] = []
                entry["orders_amount"] = 0
                grouped[restaurant_id] = entry

            entry["orders"].append({key: value for key, value in row.items() if not key.startswith("restaurant__")})
            entry["orders_amount"] += 1

        return list(grouped.values())

    async def get_today_group_order(self, restaurant):
        """Today's active orders in the restaurant, with their users loaded."""
        return await self.store.find(
            GroupOrder,
            self._today_filters(restaurant=restaurant, is_canceled=False, is_removed=False),
            order_by=["-date_added", "-id"],
            select_related=["user"],
        )

    # ------------------------------------------------------------------
    # Group order sum
    # ------------------------------------------------------------------

    async def compute_group_order_sum(self, restaurant):
        """Recompute the group order sum from today's order log."""
        filters = self._today_filters(restaurant=restaurant, is_canceled=False, is_removed=False)

        if not app_settings.ALLOW_PAID_ORDERS_UPDATE:
            filters["is_paid"] = False

        rows = await self.store.aggregate(GroupOrder, filters=filters, sums={"total": "total_amount"})
        return rows[0]["total"] or ZERO

    async def refresh_group_order_sum(self, restaurant):
        total = await self.compute_group_order_sum(restaurant)
        await self.store.update_matching(Restaurant, {"pk": restaurant.pk}, group_order_sum=total)
        restaurant.group_order_sum = total
        return total

    async def _refresh_group_order_sum_quietly(self, restaurant):
        try:
            return await self.refresh_group_order_sum(restaurant)
        except GroupeatError as e:
            logger.error(f"Could not refresh the group order sum of restaurant {restaurant.pk}: {e.message}")
            return None

    async def _refresh_restaurants_quietly(self, restaurant_pks):
        for restaurant in await self.store.find(Restaurant, {"pk__in": list(restaurant_pks)}):
            await self._refresh_group_order_sum_quietly(restaurant)

    @staticmethod
    def is_group_order_passed_minimum(restaurant):
        minimum = restaurant.minimum_price_for_order

        if minimum is None:
            return False

        if minimum == 0:
            return True

        return restaurant.pooled_order_sum + restaurant.group_order_sum >= minimum

    async def get_settlement_state(self, restaurant):
        """Where the restaurant's group order stands for the current business day."""
        if self.locks.is_restaurant_locked(restaurant.pk):
            return SettlementState.SETTLING

        orders = await self.store.find(GroupOrder, self._today_filters(restaurant=restaurant, is_removed=False))

        if any(order.notification_sent for order in orders):
            if any(order.canceled_unseen for order in orders):
                return SettlementState.PARTIALLY_SETTLED
            return SettlementState.SETTLED

        if all(order.is_canceled for order in orders):
            return SettlementState.EMPTY

        if self.is_group_order_passed_minimum(restaurant):
            return SettlementState.THRESHOLD_CROSSED

        return SettlementState.ACCUMULATING

    # ------------------------------------------------------------------
    # Order mutations
    # ------------------------------------------------------------------

    def _validate_order_data(self, restaurant, user, office, items, total_amount, shopping_cart_guid, billing_lines):
        details = {
            "restaurant_id": restaurant.restaurant_id,
            "user": getattr(user, "pk", None),
            "office": getattr(office, "pk", None),
            "total_amount": total_amount,
            "shopping_cart_guid": shopping_cart_guid,
        }

        if user is None or user.pk is None:
            raise InvalidInputError("Invalid user received.", details)

        if office is not None and office.pk != restaurant.office_id:
            raise InvalidInputError("The office does not match the restaurant's office.", details)

        serializer = OrderInputSerializer(
            data={
                "items": items,
                "totalAmount": total_amount,
                "shoppingCartGuid": shopping_cart_guid,
                "billingLines": billing_lines if billing_lines is not None else [],
            }
        )

        if not serializer.is_valid():
            raise InvalidInputError(
                "The order that was received is invalid.",
                {**details, "errors": serializer.errors},
            )

        return serializer.validated_data

    async def add_order(self, restaurant, user, office, items, total_amount, shopping_cart_guid, billing_lines=None):
        data = self._validate_order_data(
            restaurant, user, office, items, total_amount, shopping_cart_guid, billing_lines
        )
        details = {"restaurant_id": restaurant.restaurant_id, "user": user.pk}

        async with self.locks.order_lock(user.pk):
            if await self.get_today_user_paid_order(user) is not None:
                raise PaidOrderExistsError("The user already has a paid order.", details)

            if await self.get_today_user_order(restaurant, user) is not None:
                raise AlreadyExistsError("The user already has an order for this restaurant.", details)

            threshold = app_settings.ORDERS_PER_DAY_THRESHOLD
            if await self.get_today_user_orders_amount(user) >= threshold:
                raise AlreadyExistsError(
                    f"The user already has {threshold} or more orders and cannot create another one.",
                    details,
                )

            order = await self.store.push_to_array(
                restaurant,
                "orders",
                user=user,
                items=list(items),
                billing_lines=list(data["billingLines"]),
                total_amount=data["totalAmount"],
                shopping_cart_guid=data["shoppingCartGuid"],
                date_added=day_window.now(),
            )
            logger.info(f"User {user.pk} added an order of {order.total_amount} to restaurant {restaurant.pk}")

            await self._refresh_group_order_sum_quietly(restaurant)

        self.settlement.trigger_if_passed_minimum(restaurant)
        return order

    async def update_order(self, restaurant, user, office, items, total_amount, shopping_cart_guid, billing_lines=None):
        """
        Replace the user's order for today in place. The order keeps its
        date_added and its confirmation flag; paid and canceled flags reset.
        """
        data = self._validate_order_data(
            restaurant, user, office, items, total_amount, shopping_cart_guid, billing_lines
        )
        details = {"restaurant_id": restaurant.restaurant_id, "user": user.pk}

        async with self.locks.order_lock(user.pk):
            order = await self.get_today_user_order(restaurant, user)
            if order is None:
                raise InvalidInputError("The user does not have an active order.", details)

            if not app_settings.ALLOW_PAID_ORDERS_UPDATE and order.is_paid:
                raise InvalidInputError("The user tried to update a paid order.", details)

            if self.locks.is_user_locked(user.pk):
                raise InvalidInputError("The user is in the middle of an automatic payment.", details)

            now = day_window.now()
            fields = {
                "items": list(items),
                "billing_lines": list(data["billingLines"]),
                "total_amount": data["totalAmount"],
                "shopping_cart_guid": data["shoppingCartGuid"],
                "date_updated": now,
                "date_canceled": None,
                "date_removed": None,
                "date_paid": None,
                "is_canceled": False,
                "is_removed": False,
                "is_paid": False,
            }
            await self.store.update_matching(GroupOrder, {"pk": order.pk}, **fields)
            for name, value in fields.items():
                setattr(order, name, value)

            await self._refresh_group_order_sum_quietly(restaurant)

        self.settlement.trigger_if_passed_minimum(restaurant)
        return order

    async def cancel_order(self, restaurant, user, is_system_initiated=False):
        """
        Cancel the user's order for today. Users in the middle of a
        settlement cannot cancel; the settlement itself cancels the orders of
        unseen users with is_system_initiated.
        """
        details = {
            "restaurant_id": restaurant.restaurant_id,
            "user": getattr(user, "pk", None),
            "is_system_initiated": is_system_initiated,
        }

        if user is None or user.pk is None:
            raise InvalidInputError("Invalid user received.", details)

        async with self.locks.order_lock(user.pk):
            order = await self.get_today_user_order(restaurant, user)
            if order is None:
                raise InvalidInputError("The user does not have an active order.", details)

            allow_paid = app_settings.ALLOW_PAID_ORDERS_UPDATE

            if not allow_paid and order.is_paid:
                raise InvalidInputError("The user tried to cancel a paid order.", details)

            locked = self.locks.is_user_locked(user.pk)
            if (not allow_paid or not order.is_paid) and not is_system_initiated and locked:
                raise InvalidInputError("The user is in the middle of an automatic payment.", details)

            now = day_window.now()
            await self.store.update_matching(
                GroupOrder,
                {"pk": order.pk},
                is_canceled=True,
                date_canceled=now,
                canceled_unseen=bool(is_system_initiated),
            )
            order.is_canceled = True
            order.date_canceled = now
            order.canceled_unseen = bool(is_system_initiated)
            logger.info(
                f"Order {order.pk} of user {user.pk} canceled{' by the system' if is_system_initiated else ''}"
            )

            await self._refresh_group_order_sum_quietly(restaurant)

        return order

    async def remove_order(self, restaurant, user, date_added):
        """Hide an order from the user's history. date_added identifies the order."""
        details = {"restaurant_id": restaurant.restaurant_id, "user": user.pk, "date_added": date_added}

        if isinstance(date_added, str):
            try:
                date_added = parse_datetime(date_added)
            except ValueError:
                date_added = None

        if not isinstance(date_added, datetime):
            raise InvalidInputError("Invalid date received.", details)

        if timezone.is_naive(date_added):
            date_added = timezone.make_aware(date_added)

        async with self.locks.order_lock(user.pk):
            if self.locks.is_user_locked(user.pk):
                raise InvalidInputError("The user is in the middle of an automatic payment.", details)

            updated = await self.store.update_array_elements_matching(
                restaurant,
                "orders",
                {"user": user, "date_added": date_added, "is_removed": False},
                is_removed=True,
                date_removed=day_window.now(),
            )

            if not updated:
                raise InvalidInputError("No order was found for the given date.", details)

            await self._refresh_group_order_sum_quietly(restaurant)

        return updated

    async def pay_order(self, restaurant, user):
        """
        Mark the user's order in this restaurant as paid and cancel the
        user's other unpaid orders of the day.
        """
        details = {"restaurant_id": restaurant.restaurant_id, "user": user.pk}

        async with self.locks.order_lock(user.pk):
            order = await self.get_today_user_order(restaurant, user)
            if order is None:
                raise InvalidInputError("The user does not have an active order.", details)

            if order.is_paid:
                raise AlreadyExistsError("The order has already been paid.", {**details, "order": order.pk})

            now = day_window.now()
            await self.store.update_matching(GroupOrder, {"pk": order.pk}, is_paid=True, date_paid=now)
            order.is_paid = True
            order.date_paid = now

            await self.cancel_today_unpaid_orders(user, exclude_order=order)
            await self._refresh_group_order_sum_quietly(restaurant)

        return order

    async def cancel_today_unpaid_orders(self, user, exclude_order=None):
        """Cancel the user's unpaid orders of today, except exclude_order. Returns the canceled orders."""
        orders = [
            order
            for order in await self.get_today_user_orders(user)
            if order.status == OrderStatus.ACTIVE and (exclude_order is None or order.pk != exclude_order.pk)
        ]

        if not orders:
            return []

        now = day_window.now()
        await self.store.update_matching(
            GroupOrder,
            {"pk__in": [order.pk for order in orders]},
            is_canceled=True,
            date_canceled=now,
        )
        for order in orders:
            order.is_canceled = True
            order.date_canceled = now

        logger.info(f"Canceled {len(orders)} unpaid orders of user {user.pk}")
        await self._refresh_restaurants_quietly({order.restaurant_id for order in orders})
        return orders

    async def remove_all_user_orders(self, user):
        """Soft-remove the user's whole order history."""
        rows = await self.store.find(GroupOrder, {"user": user, "is_removed": False}, fields=["restaurant_id"])
        removed = await self.store.update_matching(
            GroupOrder,
            {"user": user, "is_removed": False},
            is_removed=True,
            date_removed=day_window.now(),
        )

        await self._refresh_restaurants_quietly({row["restaurant_id"] for row in rows})
        return removed

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def update_meta_data(self, restaurant, meta_data):
        """
        Merge metadata reported by the ordering platform, recompute the group
        order sum and check whether the restaurant now passes its minimum.
        """
        serializer = RestaurantMetaDataSerializer(data=meta_data)
        if not serializer.is_valid():
            raise InvalidInputError(
                "The restaurant metadata that was received is invalid.",
                {"restaurant_id": restaurant.restaurant_id, "errors": serializer.errors},
            )

        fields = dict(serializer.validated_data)
        fields.pop("restaurantId", None)
        fields["meta_data"] = {**(restaurant.meta_data or {}), **fields.get("meta_data", {})}
        fields["has_meta_data"] = True
        fields["meta_data_updated_at"] = day_window.now()
        fields["group_order_sum"] = await self.compute_group_order_sum(restaurant)

        await self.store.update_matching(Restaurant, {"pk": restaurant.pk}, **fields)
        for name, value in fields.items():
            setattr(restaurant, name, value)

        self.settlement.trigger_if_passed_minimum(restaurant)
        return restaurant

    async def update_restaurants_meta_data(self, office, restaurants):
        """Batch metadata refresh for the office's restaurants, creating unknown ones."""
        if not restaurants:
            raise InvalidInputError("No restaurants received.", {"office": office.pk})

        updated = []
        for entry in restaurants:
            if not isinstance(entry, dict) or entry.get("restaurantId") is None:
                raise InvalidInputError("Invalid restaurant received.", {"office": office.pk, "restaurant": entry})

            restaurant = await self.get_restaurant(office, entry["restaurantId"], create_if_not_exists=True)
            updated.append(await self.update_meta_data(restaurant, entry))

        return updated
