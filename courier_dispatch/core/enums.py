"""
Shared enumerations.

Kept free of database imports so configuration validation can use them.
"""

import enum


class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    ACCEPTED = "accepted"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class ClaimErrorCode(str, enum.Enum):
    """Machine-readable failure codes returned to callers."""
    ORDER_NOT_AVAILABLE = "ORDER_NOT_AVAILABLE"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    NOT_ASSIGNED = "NOT_ASSIGNED"
    NO_RESPONSE = "NO_RESPONSE"
    NETWORK_ERROR = "NETWORK_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    CHECK_FAILED = "CHECK_FAILED"

    @classmethod
    def from_store_code(cls, code) -> "ClaimErrorCode":
        """Map a store-reported code onto a known code, else UNKNOWN_ERROR."""
        try:
            return cls(code)
        except ValueError:
            return cls.UNKNOWN_ERROR
