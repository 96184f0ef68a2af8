"""
Settlement of a restaurant's group order once it passes the minimum.

Flow for one restaurant:
1. Lock the restaurant. A restaurant that is already settling is skipped.
2. Snapshot today's orders and lock every participant. If one of them is
   already settling with another restaurant, give up and schedule a retry.
3. Ping every participant and poll their liveness stamps every
   LIVENESS_CHECK_INTERVAL seconds, for at most LIVENESS_TIMEOUT seconds.
4. Re-read the orders. Everyone seen: commit. Otherwise cancel the unseen
   participants' orders and commit for the seen ones only if their orders
   still pass the minimum, or tell them the group order failed.
5. Release every lock, whatever happened.
"""
import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal

from django.db import models

from core_backend.config import app_settings
from core_backend.exceptions import GroupeatError
from notifications import messages
from .locks import SettlementLocks

logger = logging.getLogger(__name__)

ORDER_STATE_FIELDS = ["is_canceled", "is_removed", "is_paid", "notification_sent", "total_amount"]


class SettlementState(models.TextChoices):
    EMPTY = "EMPTY", "Empty"
    ACCUMULATING = "ACCUMULATING", "Accumulating"
    THRESHOLD_CROSSED = "THRESHOLD_CROSSED", "Threshold crossed"
    SETTLING = "SETTLING", "Settling"
    SETTLED = "SETTLED", "Settled"
    PARTIALLY_SETTLED = "PARTIALLY_SETTLED", "Partially settled"


class SettlementOutcome(models.TextChoices):
    SKIPPED = "SKIPPED", "Skipped"
    DEFERRED = "DEFERRED", "Deferred"
    SETTLED = "SETTLED", "Settled"
    PARTIALLY_SETTLED = "PARTIALLY_SETTLED", "Partially settled"
    FAILED = "FAILED", "Failed"


@dataclass
class Participant:
    """A user taking part in a settlement, with the order it is settling."""
    user: object
    order: object
    seen: bool = False
    # A confirmation was already sent for this order by an earlier settlement.
    confirmed: bool = False

    @property
    def live(self):
        return self.seen or self.confirmed


class SettlementCoordinator:
    """
    Runs settlements for a RestaurantService.

    The lock registry is owned by the coordinator; share a coordinator (or
    its locks) between every service that may settle the same restaurants.
    """

    def __init__(self, restaurant_service, locks=None):
        self.restaurants = restaurant_service
        self.locks = locks or SettlementLocks()
        self._tasks = set()
        self._retries = {}

    @property
    def store(self):
        return self.restaurants.store

    @property
    def gateway(self):
        return self.restaurants.gateway

    @property
    def user_service(self):
        return self.restaurants.user_service

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def trigger_if_passed_minimum(self, restaurant):
        """
        Start a settlement in the background when the restaurant passed its
        minimum. Returns the task, or None when nothing was started.
        """
        if not self.restaurants.is_group_order_passed_minimum(restaurant):
            return None

        if self.locks.is_restaurant_locked(restaurant.pk):
            logger.debug(f"Restaurant {restaurant.pk} is already settling")
            return None

        return self._spawn(restaurant.pk)

    def _spawn(self, restaurant_pk):
        task = asyncio.get_running_loop().create_task(self.settle(restaurant_pk))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task):
        self._tasks.discard(task)

        if task.cancelled():
            return

        exc = task.exception()
        if exc is not None:
            logger.error(f"Settlement task failed: {exc!r}", exc_info=exc)

    def schedule_retry(self, restaurant_pk):
        """Re-check the restaurant later. At most one retry is pending per restaurant."""
        delay = app_settings.SETTLEMENT_RETRY_DELAY

        if not delay or restaurant_pk in self._retries:
            return None

        handle = asyncio.get_running_loop().call_later(delay, self._run_retry, restaurant_pk)
        self._retries[restaurant_pk] = handle
        logger.info(f"Settlement of restaurant {restaurant_pk} deferred, retrying in {delay}s")
        return handle

    def _run_retry(self, restaurant_pk):
        self._retries.pop(restaurant_pk, None)
        self._spawn(restaurant_pk)

    def has_pending_retry(self, restaurant_pk):
        return restaurant_pk in self._retries

    def cancel_pending_retries(self):
        for handle in self._retries.values():
            handle.cancel()
        self._retries.clear()

    async def wait_for_pending(self):
        """Wait until every running settlement task finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def settle(self, restaurant_pk):
        from restaurants.models import Restaurant

        if not self.locks.acquire_restaurant(restaurant_pk):
            return SettlementOutcome.SKIPPED

        user_pks = []
        try:
            restaurant = await self.store.first(Restaurant, {"pk": restaurant_pk}, select_related=["office"])

            if restaurant is None or not self.restaurants.is_group_order_passed_minimum(restaurant):
                return SettlementOutcome.SKIPPED

            orders = await self.restaurants.get_today_group_order(restaurant)
            participants = [
                Participant(user=order.user, order=order, confirmed=order.notification_sent)
                for order in orders
            ]

            if not participants:
                return SettlementOutcome.SKIPPED

            pks = [participant.user.pk for participant in participants]

            if not self.locks.acquire_users(pks):
                busy = self.locks.locked_users(pks)
                logger.info(
                    f"Restaurant {restaurant_pk} abstains from settling, users {sorted(busy)} "
                    "are settling with another restaurant"
                )
                self.schedule_retry(restaurant_pk)
                return SettlementOutcome.DEFERRED

            user_pks = pks
            logger.info(f"Settling restaurant {restaurant_pk} with {len(participants)} participants")

            await self._publish_passed_minimum(restaurant)
            await self._request_pings(restaurant, participants)
            all_seen = await self.wait_for_liveness(participants)

            outcome = await self._resolve(restaurant, participants, all_seen)
            logger.info(f"Settlement of restaurant {restaurant_pk} finished: {outcome}")
            return outcome
        finally:
            self.locks.release_users(user_pks)
            self.locks.release_restaurant(restaurant_pk)

    async def _publish_passed_minimum(self, restaurant):
        from offices.services import get_topic

        result = await self.gateway.send_to_topic(
            get_topic(restaurant.office), messages.order_passed_minimum_message(restaurant)
        )
        if not result.success:
            logger.error(f"Could not publish passed minimum of restaurant {restaurant.pk}: {result.error}")

    async def _request_pings(self, restaurant, participants):
        title, text = messages.settlement_ping_texts(restaurant)

        for participant in participants:
            if participant.confirmed:
                continue

            try:
                result = await self.user_service.request_ping_update(participant.user, title, text)
            except GroupeatError as e:
                logger.error(f"Could not ping user {participant.user.pk}: {e.message}")
                continue

            if not result.success:
                logger.error(f"Ping to user {participant.user.pk} was not delivered: {result.error}")

    async def wait_for_liveness(self, participants):
        """
        Poll the participants' liveness stamps until all of them were seen or
        the ceiling is reached. Returns whether everyone was seen.
        """
        pending = [participant for participant in participants if not participant.confirmed]
        if not pending:
            return True

        interval = app_settings.LIVENESS_CHECK_INTERVAL
        timeout = app_settings.LIVENESS_TIMEOUT
        elapsed = 0.0

        while True:
            await asyncio.sleep(interval)
            elapsed += interval

            all_seen = await self._update_seen(pending)
            if all_seen or elapsed >= timeout:
                return all_seen

    async def _update_seen(self, pending):
        from core_backend.utils import day_window

        now = day_window.now()

        for participant in pending:
            if participant.seen:
                continue

            await self.store.refresh(participant.user, fields=["last_ping_time"])
            participant.seen = self.user_service.was_seen_recently(participant.user, now)

        return all(participant.seen for participant in pending)

    async def _reload_order(self, order):
        await self.store.refresh(order, fields=ORDER_STATE_FIELDS)
        return order

    async def _resolve(self, restaurant, participants, all_seen):
        # The snapshot is as old as the liveness wait.
        for participant in participants:
            await self._reload_order(participant.order)

        live = [participant for participant in participants if participant.live]

        if all_seen:
            await self._commit(restaurant, live)
            return SettlementOutcome.SETTLED

        unseen = [participant for participant in participants if not participant.live]
        await self._cancel_unseen(restaurant, unseen)

        if not self.live_participants_pass_minimum(restaurant, participants):
            await self._notify_failed(restaurant, live)
            return SettlementOutcome.FAILED

        await self._commit(restaurant, live)
        return SettlementOutcome.PARTIALLY_SETTLED

    def live_participants_pass_minimum(self, restaurant, participants):
        """Whether the pooled sum plus the live participants' orders still reach the minimum."""
        minimum = restaurant.minimum_price_for_order

        if minimum is None:
            return False

        if minimum == 0:
            return True

        allow_paid = app_settings.ALLOW_PAID_ORDERS_UPDATE
        total = sum(
            (
                participant.order.total_amount
                for participant in participants
                if participant.order.is_in_group(allow_paid) and (participant.live or participant.order.is_paid)
            ),
            Decimal("0"),
        )

        return restaurant.pooled_order_sum + total >= minimum

    async def _cancel_unseen(self, restaurant, unseen):
        for participant in unseen:
            try:
                await self.restaurants.cancel_order(restaurant, participant.user, is_system_initiated=True)
            except GroupeatError as e:
                logger.error(f"Could not cancel the order of unseen user {participant.user.pk}: {e.message}")
                continue

            participant.order.is_canceled = True
            await self._notify(participant.user, messages.unseen_order_canceled_message(restaurant, participant.user))

    async def _notify_failed(self, restaurant, live):
        allow_paid = app_settings.ALLOW_PAID_ORDERS_UPDATE

        for participant in live:
            order = await self._reload_order(participant.order)

            if order.notification_sent or not order.is_in_group(allow_paid) or not participant.user.fcm_id:
                continue

            await self._notify(participant.user, messages.could_not_pass_minimum_message(restaurant, participant.user))

    async def _commit(self, restaurant, live):
        allow_paid = app_settings.ALLOW_PAID_ORDERS_UPDATE
        committed = []

        for participant in live:
            user = participant.user

            async with self.locks.order_lock(user.pk):
                # Earlier confirmations in this pass may have canceled the order.
                order = await self._reload_order(participant.order)

                # Never send a second confirmation for the same order.
                if order.notification_sent:
                    continue

                if not order.is_in_group(allow_paid) or not user.fcm_id:
                    continue

                message = messages.order_confirmation_message(restaurant, restaurant.office, user, order)
                result = await self.gateway.send_to_device(user.fcm_id, message)

                if not result.success:
                    logger.error(f"Payment confirmation for order {order.pk} was not delivered: {result.error}")
                    continue

                await self._add_to_log(user, message)
                await self._mark_notification_sent(order)

                try:
                    await self.restaurants.cancel_today_unpaid_orders(user, exclude_order=order)
                except GroupeatError as e:
                    logger.error(f"Could not cancel the other orders of user {user.pk}: {e.message}")

            committed.append(participant)

        return committed

    async def _mark_notification_sent(self, order):
        from core_backend.utils import day_window
        from restaurants.models import GroupOrder

        now = day_window.now()
        try:
            await self.store.update_matching(
                GroupOrder, {"pk": order.pk}, notification_sent=True, notification_sent_date=now
            )
        except GroupeatError as e:
            logger.error(f"Could not mark the confirmation of order {order.pk} as sent: {e.message}")
            return

        order.notification_sent = True
        order.notification_sent_date = now

    async def _notify(self, user, message):
        if user.fcm_id:
            result = await self.gateway.send_to_device(user.fcm_id, message)
            if not result.success:
                logger.error(f"Notification to user {user.pk} was not delivered: {result.error}")

        await self._add_to_log(user, message)

    async def _add_to_log(self, user, message):
        try:
            await self.user_service.add_notification(user, message)
        except GroupeatError as e:
            logger.error(f"Could not add a notification to the log of user {user.pk}: {e.message}")
