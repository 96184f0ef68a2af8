"""
Restaurants services package.

- RestaurantService: restaurants, the daily order log and the group order sum
- SettlementCoordinator: liveness check and commit once a group order passes its minimum
- SettlementLocks: restaurants and users currently settling
"""

from .locks import SettlementLocks
from .restaurant_service import RestaurantService
from .settlement_service import (
    Participant,
    SettlementCoordinator,
    SettlementOutcome,
    SettlementState,
)

# Shared instance so every restaurant settles against the same lock registry.
restaurant_service = RestaurantService()

__all__ = [
    "Participant",
    "RestaurantService",
    "SettlementCoordinator",
    "SettlementLocks",
    "SettlementOutcome",
    "SettlementState",
    "restaurant_service",
]
