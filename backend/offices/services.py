import logging

from core_backend.exceptions import (
    AlreadyExistsError,
    InvalidInputError,
    NotExistsError,
    OfficeAlreadyExistsError,
    OfficeNotExistsError,
)
from core_backend.infrastructure import order_store
from core_backend.utils import day_window
from core_backend.utils.validation import is_address_key_valid, is_true_integer
from notifications.gateway import get_gateway
from .models import Office, OfficeMembership

logger = logging.getLogger(__name__)


def get_topic(office):
    """Push topic every member of the office is subscribed to."""
    return f"{office.address_key}_{office.company_id}"


class OfficeService:
    """
    Office registration and membership.

    Usage:
        service = OfficeService()
        office = await service.get_office(1234, "1-2-3-4")
    """

    def __init__(self, store=None, gateway=None, user_service=None):
        self.store = store or order_store
        self.gateway = gateway or get_gateway()
        self._user_service = user_service

    @property
    def user_service(self):
        if self._user_service is None:
            from users.services import UserService

            self._user_service = UserService(store=self.store, gateway=self.gateway)
        return self._user_service

    @staticmethod
    def is_address_valid(company_id, address_key):
        if is_true_integer(company_id) and is_address_key_valid(address_key):
            return True

        logger.info(f"Invalid address: company_id={company_id!r}, address_key={address_key!r}")
        return False

    def _validate_address(self, company_id, address_key):
        if not self.is_address_valid(company_id, address_key):
            raise InvalidInputError(
                f"The address company id: {company_id} or address key: {address_key} is invalid.",
                {"company_id": company_id, "address_key": address_key},
            )

        return int(company_id)

    async def office_exists(self, company_id, address_key):
        company_id = self._validate_address(company_id, address_key)
        return await self.store.exists(Office, {"company_id": company_id, "address_key": address_key})

    async def create_office(self, company_id, address_key):
        if await self.office_exists(company_id, address_key):
            raise OfficeAlreadyExistsError(
                f"The office with company id: {company_id}, address key: {address_key} already exists.",
                {"company_id": company_id, "address_key": address_key},
            )

        office = await self.store.insert(
            Office,
            company_id=int(company_id),
            address_key=address_key,
            created_at=day_window.now(),
        )
        logger.info(f"Created office {get_topic(office)}")
        return office

    async def get_office(self, company_id, address_key):
        company_id = self._validate_address(company_id, address_key)
        office = await self.store.first(Office, {"company_id": company_id, "address_key": address_key})

        if office is None:
            raise OfficeNotExistsError(
                f"The office with company id: {company_id}, address key: {address_key} does not exist.",
                {"company_id": company_id, "address_key": address_key},
            )

        return office

    async def is_user_in_office(self, office, user):
        return await self.store.exists(OfficeMembership, {"office": office, "user": user})

    async def add_user(self, office, user):
        """Add a member and subscribe its push endpoint to the office topic."""
        if await self.is_user_in_office(office, user):
            raise AlreadyExistsError(
                f"The user {user.pk} is already a member of office {get_topic(office)}.",
                {"office": office.pk, "user": user.pk},
            )

        membership = await self.store.push_to_array(
            office, "memberships", user=user, date_added=day_window.now()
        )

        if user.fcm_id:
            await self.gateway.subscribe([user.fcm_id], get_topic(office))

        return membership

    async def send_office_updated_notification(self, office, message):
        return await self.gateway.send_to_topic(get_topic(office), message)

    async def authenticate_user_and_office(self, user_token, company_id, address_key, test_user_id=None):
        """
        Resolve a user and an office and make sure the user belongs to it.
        Returns (user, office).
        """
        user = await self.user_service.get_user(user_token=user_token, test_user_id=test_user_id)
        office = await self.get_office(company_id, address_key)

        if not await self.is_user_in_office(office, user):
            raise NotExistsError(
                "Could not authenticate user and office.",
                {
                    "user_token": user_token,
                    "company_id": company_id,
                    "address_key": address_key,
                    "test_user_id": test_user_id,
                },
            )

        return user, office
