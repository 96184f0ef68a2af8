"""
Settlement lock registry.

Tracks which restaurants are settling and which users are taking part in a
settlement. Acquire methods check and mark without awaiting in between, so
on a single event loop they are atomic with respect to other coroutines.

Order mutations of one user additionally go through an asyncio.Lock per
user, held from the checks on today's orders until the write.
"""
from typing import Iterable
import asyncio
import logging

logger = logging.getLogger(__name__)


class SettlementLocks:
    def __init__(self):
        self._restaurants = set()
        self._users = set()
        self._order_locks = {}

    def is_restaurant_locked(self, restaurant_pk) -> bool:
        return restaurant_pk in self._restaurants

    def is_user_locked(self, user_pk) -> bool:
        return user_pk in self._users

    def locked_users(self, user_pks: Iterable) -> set:
        return {pk for pk in user_pks if pk in self._users}

    def acquire_restaurant(self, restaurant_pk) -> bool:
        """Mark the restaurant as settling. Returns False when it already is."""
        if restaurant_pk in self._restaurants:
            return False

        self._restaurants.add(restaurant_pk)
        return True

    def release_restaurant(self, restaurant_pk):
        self._restaurants.discard(restaurant_pk)

    def acquire_users(self, user_pks: Iterable) -> bool:
        """Mark every user as in settlement, or none of them if one already is."""
        user_pks = set(user_pks)

        if user_pks & self._users:
            return False

        self._users |= user_pks
        return True

    def release_users(self, user_pks: Iterable):
        self._users.difference_update(user_pks)

    def order_lock(self, user_pk) -> asyncio.Lock:
        """The lock serializing the order mutations of one user."""
        lock = self._order_locks.get(user_pk)
        if lock is None:
            lock = self._order_locks[user_pk] = asyncio.Lock()
        return lock

    def clear(self):
        self._restaurants.clear()
        self._users.clear()
        self._order_locks.clear()

    def __repr__(self):
        return f"<SettlementLocks restaurants={sorted(self._restaurants)} users={sorted(self._users)}>"
