"""
Core module initialization.
Exports configuration, logging utilities and store exceptions.
"""

from courier_dispatch.core.config import get_settings, Settings, EnvironmentMode
from courier_dispatch.core.exceptions import (
    StoreError,
    StoreConnectionError,
    StoreResponseError,
)

__all__ = [
    "get_settings",
    "Settings",
    "EnvironmentMode",
    "StoreError",
    "StoreConnectionError",
    "StoreResponseError",
]
