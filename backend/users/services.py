import logging
import secrets
from datetime import timedelta

from core_backend.config import app_settings
from core_backend.exceptions import (
    InvalidInputError,
    UserAlreadyExistsError,
    UserNotExistsError,
)
from core_backend.infrastructure import order_store
from core_backend.utils import day_window
from core_backend.utils.validation import (
    is_email_valid,
    is_full_name_valid,
    is_phone_valid,
    is_user_token_valid,
)
from notifications import messages
from notifications.gateway import get_gateway
from .models import User, UserNotification

logger = logging.getLogger(__name__)

TEST_USER_ID_BYTES = 20
NOTIFICATION_FIELDS = (
    "title",
    "message",
    "notification_type",
    "payload",
    "is_read",
    "date_added",
    "date_read",
)


class UserService:
    """
    User registration, push endpoint management, the notification log and
    the liveness stamp the settlement flow reads.
    """

    def __init__(self, store=None, gateway=None):
        self.store = store or order_store
        self.gateway = gateway or get_gateway()

    # ------------------------------------------------------------------
    # Registration and lookup
    # ------------------------------------------------------------------

    async def user_exists(self, user_token):
        if not is_user_token_valid(user_token):
            raise InvalidInputError(f"The user token: {user_token} is invalid.", {"user_token": user_token})

        return await self.store.exists(User, {"user_token": user_token, "test_user_id": ""})

    async def create_user(self, user_token, full_name, cellphone, email, is_test_user=False):
        """
        Register a user and return its test user id ("" for regular users).

        Test users may reuse a registered token; each gets a fresh random id.
        """
        details = {
            "user_token": user_token,
            "full_name": full_name,
            "cellphone": cellphone,
            "email": email,
            "is_test_user": is_test_user,
        }

        if not is_user_token_valid(user_token):
            raise InvalidInputError(f"The user token: {user_token} is invalid.", details)

        if not is_full_name_valid(full_name):
            raise InvalidInputError(f"The user's full name: {full_name} is invalid.", details)

        if not is_phone_valid(cellphone):
            raise InvalidInputError(f"The user's cellphone: {cellphone} is invalid.", details)

        if not is_email_valid(email):
            raise InvalidInputError(f"The user's email: {email} is invalid.", details)

        if not is_test_user and await self.user_exists(user_token):
            raise UserAlreadyExistsError(f"The user with the user token: {user_token} already exists.", details)

        test_user_id = secrets.token_hex(TEST_USER_ID_BYTES) if is_test_user else ""

        await self.store.insert(
            User,
            user_token=user_token,
            test_user_id=test_user_id,
            full_name=full_name,
            cellphone=cellphone,
            email=email,
            created_at=day_window.now(),
        )
        logger.info(f"Created {'test ' if is_test_user else ''}user for token {user_token}")

        return test_user_id

    async def get_user(self, user_token=None, test_user_id=None):
        """Load a user by its test user id when given, otherwise by its token."""
        if test_user_id:
            user = await self.store.first(User, {"test_user_id": test_user_id})
        else:
            if not is_user_token_valid(user_token):
                raise InvalidInputError(
                    f"The user token: {user_token} is invalid.",
                    {"user_token": user_token, "test_user_id": test_user_id},
                )
            user = await self.store.first(User, {"user_token": user_token, "test_user_id": ""})

        if user is None:
            raise UserNotExistsError(
                f"The user with the user token: {user_token} does not exist.",
                {"user_token": user_token, "test_user_id": test_user_id},
            )

        return user

    async def refresh(self, user):
        return await self.store.refresh(user)

    # ------------------------------------------------------------------
    # Offices and push endpoint
    # ------------------------------------------------------------------

    async def get_user_offices(self, user):
        from offices.models import Office

        return await self.store.find(Office, {"memberships__user": user}, order_by=["created_at"])

    async def resubscribe_to_user_offices(self, user, previous_endpoint, endpoint):
        from offices.services import get_topic

        for office in await self.get_user_offices(user):
            topic = get_topic(office)

            if previous_endpoint:
                await self.gateway.unsubscribe([previous_endpoint], topic)

            if endpoint:
                await self.gateway.subscribe([endpoint], topic)

    async def update_push_endpoint(self, user, endpoint_id):
        """
        Store the endpoint the user's client listens on. Returns False when
        nothing changed, otherwise moves the office topic subscriptions over.
        """
        previous = user.fcm_id

        if previous == endpoint_id:
            return False

        now = day_window.now()
        await self.store.update_matching(User, {"pk": user.pk}, fcm_id=endpoint_id, fcm_id_updated_at=now)
        user.fcm_id = endpoint_id
        user.fcm_id_updated_at = now

        await self.resubscribe_to_user_offices(user, previous, endpoint_id)
        return True

    # ------------------------------------------------------------------
    # Notification log
    # ------------------------------------------------------------------

    async def add_notification(self, user, message):
        """Append a push message to the user's notification log."""
        return await self.store.push_to_array(
            user,
            "notifications",
            title=message.get("title", ""),
            message=message.get("message", ""),
            notification_type=message.get("type", ""),
            payload=message,
            date_added=day_window.now(),
        )

    async def get_notifications(self, user, limit=None, skip=0):
        if limit is None:
            limit = app_settings.NOTIFICATIONS_PER_PAGE

        return await self.store.aggregate(
            UserNotification,
            filters={"user": user, "is_removed": False},
            fields=NOTIFICATION_FIELDS,
            order_by=["-date_added", "-id"],
            limit=limit,
            skip=skip,
        )

    async def get_unread_notifications(self, user):
        return await self.store.aggregate(
            UserNotification,
            filters={"user": user, "is_removed": False, "is_read": False},
            fields=NOTIFICATION_FIELDS,
            order_by=["-date_added", "-id"],
        )

    async def mark_notifications_as_read(self, user):
        return await self.store.update_array_elements_matching(
            user, "notifications", {"is_read": False}, is_read=True, date_read=day_window.now()
        )

    async def remove_notification(self, user, date_added):
        updated = await self.store.update_array_elements_matching(
            user,
            "notifications",
            {"date_added": date_added, "is_removed": False},
            is_removed=True,
            date_removed=day_window.now(),
        )

        if not updated:
            raise InvalidInputError(
                "No notification was found for the given date.",
                {"user": user.pk, "date_added": date_added},
            )

        return updated

    async def remove_all_notifications(self, user):
        return await self.store.update_array_elements_matching(
            user, "notifications", {"is_removed": False}, is_removed=True, date_removed=day_window.now()
        )

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    async def request_ping_update(self, user, title, message):
        """Ask the user's client to answer with a ping-back."""
        if not user.fcm_id:
            raise InvalidInputError(
                "The push endpoint is missing from the user.",
                {"user": user.pk, "title": title, "message": message},
            )

        return await self.gateway.send_to_device(user.fcm_id, messages.ping_update_message(user, title, message))

    async def update_ping_time(self, user):
        now = day_window.now()
        await self.store.update_matching(User, {"pk": user.pk}, last_ping_time=now)
        user.last_ping_time = now
        return now

    def was_seen_recently(self, user, now=None):
        if user.last_ping_time is None:
            return False

        now = now or day_window.now()
        return now - user.last_ping_time <= timedelta(seconds=app_settings.LIVENESS_TIMEOUT)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def reset_user(self, user):
        """Soft-remove the user's whole order history and notification log."""
        from restaurants.services import RestaurantService

        restaurant_service = RestaurantService(store=self.store, gateway=self.gateway, user_service=self)
        await restaurant_service.remove_all_user_orders(user)
        await self.remove_all_notifications(user)
        logger.info(f"Reset user {user.pk}")


user_service = UserService()
