"""
                Courier Dispatch

Order acceptance service for delivery couriers. Guarantees that exactly one
courier wins each open order, with a hybrid Memory/SQL store architecture.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
