"""
Pydantic Schemas for Request/Response Validation

- OrderSnapshot: immutable view of an order row, shared by the record
  stores, change events and live views
- Request/response bodies for the HTTP and WebSocket API

Version: 1.0.0
"""

from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from courier_dispatch.core.enums import OrderStatus, ClaimErrorCode


# =============================================================================
# ORDER SNAPSHOT
# =============================================================================

class OrderSnapshot(BaseModel):
    """Point-in-time copy of an order as the record store returned it."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    order_number: Optional[str] = None
    restaurant_id: Optional[str] = None
    customer_id: Optional[str] = None
    delivery_address: Optional[str] = None
    total_amount: float = 0.0
    status: OrderStatus
    delivery_person_id: Optional[str] = None
    version: int = 0
    created_at: datetime
    updated_at: datetime
    accepted_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class CourierActionRequest(BaseModel):
    """Body for accept / pickup / deliver / release calls."""
    courier_id: str = Field(..., min_length=1, max_length=36, examples=["courier-42"])

    @field_validator("courier_id")
    @classmethod
    def validate_courier_id(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("courier_id must not be blank")
        return v.strip()


class SeedOrderRequest(BaseModel):
    """Development-only request to place an order straight into the store."""
    order_number: Optional[str] = Field(None, max_length=32, examples=["A-1001"])
    restaurant_id: Optional[str] = Field(None, max_length=36)
    customer_id: Optional[str] = Field(None, max_length=36)
    delivery_address: Optional[str] = Field(None, max_length=255, examples=["350 Fifth Avenue"])
    total_amount: float = Field(default=0.0, ge=0)
    status: OrderStatus = Field(default=OrderStatus.READY)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class AvailabilityResponse(BaseModel):
    """Advisory availability of an order."""
    order_id: str
    available: bool
    reason: Optional[str] = None
    code: Optional[ClaimErrorCode] = None


class ClaimResponse(BaseModel):
    """Result of accept / pickup / deliver / release."""
    success: bool
    order: Optional[OrderSnapshot] = None
    message: Optional[str] = None
    error: Optional[str] = None
    code: Optional[ClaimErrorCode] = None


class OrderListResponse(BaseModel):
    """Response for listing multiple orders."""
    total: int
    orders: List[OrderSnapshot]


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    store: str
    environment: str
    timestamp: datetime
