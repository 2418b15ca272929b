"""Record store exceptions."""

from typing import Optional


class StoreError(Exception):
    """Base exception for failures reported by the record store."""

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        self.message = message
        self.code = code
        super().__init__(message)


class StoreConnectionError(StoreError):
    """Transport failure before the store could confirm any effect."""


class StoreResponseError(StoreError):
    """The store answered, but the payload could not be interpreted."""
