"""
                        Services Module

Contains the business logic with the hybrid architecture pattern: the
record store has Memory (development) and SQL (production) implementations
behind one interface.

Services:
    - store: record store + change feeds
    - claims: single-winner order claim coordinator
    - live_views: live order lists built on store subscriptions
"""

from courier_dispatch.services.claims import (
    OrderClaimCoordinator,
    get_claim_coordinator,
    reset_claim_coordinator,
)

__all__ = ["OrderClaimCoordinator", "get_claim_coordinator", "reset_claim_coordinator"]
