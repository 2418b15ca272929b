"""
SQLAlchemy Database Models

Tables backing the SQL record store:
- orders: deliverable orders and their courier assignment
- claim_attempts: audit trail of every courier claim attempt

Version: 1.0.0
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Float, DateTime, Text, Enum, Boolean

from courier_dispatch.core.enums import OrderStatus
from courier_dispatch.database import Base


def _new_order_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Order(Base):
    """
    Main Order table.

    Rows are only ever mutated through conditional updates issued by the
    record store; delivery_person_id goes from NULL to a courier exactly once
    per claim.
    """
    __tablename__ = "orders"

    # Primary Key
    id = Column(String(36), primary_key=True, default=_new_order_id)

    # =========================================================================
    # ORDER DETAILS
    # =========================================================================
    order_number = Column(String(32), nullable=True, index=True)
    restaurant_id = Column(String(36), nullable=True, index=True)
    customer_id = Column(String(36), nullable=True)
    delivery_address = Column(String(255), nullable=True)
    total_amount = Column(Float, nullable=False, default=0.0)

    # =========================================================================
    # STATUS & ASSIGNMENT
    # =========================================================================
    status = Column(
        Enum(
            OrderStatus,
            name="order_status",
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True
    )
    delivery_person_id = Column(String(36), nullable=True, index=True)
    version = Column(Integer, nullable=False, default=0)  # bumped by every conditional update

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    picked_up_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Order #{self.order_number or self.id} - {self.status.value} - courier={self.delivery_person_id}>"


class ClaimAttemptLog(Base):
    """
    Stores every courier claim attempt, including the ones that lost.

    Used for:
    - Auditing that no order was ever won twice
    - Diagnosing UNKNOWN_ERROR / NO_RESPONSE outcomes
    - Measuring claim latency under contention
    """
    __tablename__ = "claim_attempts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    order_id = Column(String(36), nullable=False, index=True)
    courier_id = Column(String(36), nullable=False, index=True)
    requested_at = Column(DateTime(timezone=True), nullable=False)

    # Outcome
    success = Column(Boolean, default=False, nullable=False)
    code = Column(String(32), nullable=True)
    error = Column(Text, nullable=True)
    response_time_ms = Column(Float, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        outcome = "won" if self.success else (self.code or "failed")
        return f"<ClaimAttemptLog order={self.order_id} courier={self.courier_id} {outcome}>"


orders_table = Order.__table__
