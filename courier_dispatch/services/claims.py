"""
Order Claim Coordinator

Lets delivery couriers claim open orders with first-writer-wins semantics.

How a claim is decided:
    accept_order issues ONE conditional update to the record store:

        SET delivery_person_id = <courier>, status = <claim status>
        WHERE id = <order> AND delivery_person_id IS NULL
          AND status IN <claimable statuses>

    The store applies it atomically, so among any number of concurrent
    claims on the same order exactly one gets the updated row back. There is
    no client-side read-then-write and no in-process lock: a stale read can
    never let two couriers through.

Result codes (never raised, always returned):
    ORDER_NOT_AVAILABLE  condition matched zero rows; do not retry
    NO_RESPONSE          reply could not be interpreted; safe to retry
    NETWORK_ERROR        transport failure or timeout; safe to retry
    UNKNOWN_ERROR        store-reported failure with no known code
    CHECK_FAILED         advisory availability check failed; claim anyway

Only programmer errors (empty ids) raise.

Usage:
    coordinator = get_claim_coordinator()
    result = await coordinator.accept_order(order_id, courier_id)
    if not result.success and result.code == ClaimErrorCode.ORDER_NOT_AVAILABLE:
        show("This order was just accepted by another courier")

Version: 1.0.0
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any, Iterable, Mapping, Optional

from courier_dispatch.core.config import get_settings
from courier_dispatch.core.enums import ClaimErrorCode, OrderStatus
from courier_dispatch.core.exceptions import (
    StoreConnectionError,
    StoreError,
    StoreResponseError,
)
from courier_dispatch.models import utcnow
from courier_dispatch.schemas import OrderSnapshot
from courier_dispatch.services.live_views import OrderListView
from courier_dispatch.services.store import BaseRecordStore, get_record_store

logger = logging.getLogger(__name__)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class ClaimAttempt:
    """One courier's request to claim one order. Never persisted by the coordinator."""
    order_id: str
    courier_id: str
    requested_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "courier_id": self.courier_id,
            "requested_at": self.requested_at.isoformat(),
        }


@dataclass
class Availability:
    """
    Advisory answer to "could this order be claimed right now?".

    A True answer followed by a lost claim is normal: the order can be taken
    between the check and the claim.
    """
    available: bool
    reason: Optional[str] = None
    code: Optional[ClaimErrorCode] = None


@dataclass
class AcceptResult:
    """
    Outcome of accept_order.

    Attributes:
        success: True only if this courier now holds the order
        order: Updated order snapshot (success only)
        message: Human-readable success message
        error: Human-readable failure reason
        code: Machine-readable failure code
        attempt: The claim attempt this result answers
        response_time_ms: Time spent in the coordinator
    """
    success: bool
    order: Optional[OrderSnapshot] = None
    message: Optional[str] = None
    error: Optional[str] = None
    code: Optional[ClaimErrorCode] = None
    attempt: Optional[ClaimAttempt] = None
    response_time_ms: float = 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "order": self.order.model_dump(mode="json") if self.order else None,
            "message": self.message,
            "error": self.error,
            "code": self.code.value if self.code else None,
            "attempt": self.attempt.to_dict() if self.attempt else None,
            "response_time_ms": self.response_time_ms,
        }


@dataclass
class StatusUpdateResult:
    """Outcome of pickup / delivery / release by the assigned courier."""
    success: bool
    order: Optional[OrderSnapshot] = None
    message: Optional[str] = None
    error: Optional[str] = None
    code: Optional[ClaimErrorCode] = None


@dataclass
class _UpdateOutcome:
    row: Optional[OrderSnapshot] = None
    code: Optional[ClaimErrorCode] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.code is not None


def _require(**values: str) -> None:
    for name, value in values.items():
        if not value or not str(value).strip():
            raise ValueError(f"{name} must be a non-empty string")


# =============================================================================
# COORDINATOR
# =============================================================================

class OrderClaimCoordinator:
    """
    Single-winner claim logic over a record store.

    Holds no mutable state of its own, so one instance can be shared by
    every request in the process.

    Attributes:
        claimable_statuses: Statuses from which a courier may claim
        claim_status: Status written by a winning claim
        claim_timeout: Seconds to wait for a store round-trip
        precheck_enabled: Run the advisory availability check before claiming
        view_reconnect_delay: Resubscribe delay for live views
    """

    def __init__(
        self,
        store: BaseRecordStore,
        claimable_statuses: Iterable[str] = (OrderStatus.READY,),
        claim_status: str = OrderStatus.ACCEPTED,
        claim_timeout: float = 10.0,
        precheck_enabled: bool = False,
        view_reconnect_delay: float = 2.0,
    ):
        self._store = store
        self.claimable_statuses = tuple(OrderStatus(s) for s in claimable_statuses)
        self.claim_status = OrderStatus(claim_status)
        self.claim_timeout = claim_timeout
        self.precheck_enabled = precheck_enabled
        self.view_reconnect_delay = view_reconnect_delay

        if not self.claimable_statuses:
            raise ValueError("At least one claimable status is required")
        if self.claim_status in self.claimable_statuses:
            raise ValueError("claim_status must not itself be claimable")

        logger.info(
            f"OrderClaimCoordinator initialized "
            f"(store={store.provider_name}, "
            f"claimable={[s.value for s in self.claimable_statuses]}, "
            f"claim_status={self.claim_status.value}, "
            f"precheck={precheck_enabled})"
        )

    @property
    def store(self) -> BaseRecordStore:
        return self._store

    @property
    def claimable_where(self) -> dict[str, Any]:
        """Predicate of an order that is free to claim."""
        return {
            "delivery_person_id": None,
            "status": self.claimable_statuses,
        }

    @property
    def release_status(self) -> OrderStatus:
        """Status a released order returns to: the furthest-along claimable one."""
        workflow = list(OrderStatus)
        return max(self.claimable_statuses, key=workflow.index)

    # -------------------------------------------------------------------------
    # Availability
    # -------------------------------------------------------------------------

    async def check_order_availability(self, order_id: str) -> Availability:
        """
        Ask the store whether the order is unclaimed and claimable.

        One server-evaluated read. Advisory only.
        """
        _require(order_id=order_id)

        try:
            matches = await self._store.evaluate(order_id, self.claimable_where)
        except StoreError as e:
            logger.warning(f"Availability check failed for order {order_id}: {e}")
            return Availability(
                available=False,
                reason=f"Failed to check order availability: {e}",
                code=ClaimErrorCode.CHECK_FAILED,
            )

        if matches is None:
            return Availability(
                available=False,
                reason="Order not found",
                code=ClaimErrorCode.ORDER_NOT_FOUND,
            )
        if not matches:
            return Availability(
                available=False,
                reason="Order is no longer available",
                code=ClaimErrorCode.ORDER_NOT_AVAILABLE,
            )
        return Availability(available=True)

    # -------------------------------------------------------------------------
    # Claim
    # -------------------------------------------------------------------------

    async def _conditional_update(
        self,
        action: str,
        order_id: str,
        where: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> _UpdateOutcome:
        """One bounded store round-trip with transport errors turned into codes."""
        try:
            row = await asyncio.wait_for(
                self._store.conditional_update(order_id, where, changes),
                timeout=self.claim_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"{action}: store did not answer within {self.claim_timeout}s (order {order_id})")
            return _UpdateOutcome(
                code=ClaimErrorCode.NETWORK_ERROR,
                error=f"Network error: no answer within {self.claim_timeout}s",
            )
        except StoreConnectionError as e:
            logger.error(f"{action}: network error for order {order_id}: {e}")
            return _UpdateOutcome(code=ClaimErrorCode.NETWORK_ERROR, error=f"Network error: {e}")
        except StoreResponseError as e:
            logger.error(f"{action}: unreadable store reply for order {order_id}: {e}")
            return _UpdateOutcome(code=ClaimErrorCode.NO_RESPONSE, error="No response from server")
        except StoreError as e:
            code = ClaimErrorCode.from_store_code(e.code)
            logger.error(f"{action}: store error for order {order_id} ({code.value}): {e}")
            return _UpdateOutcome(code=code, error=e.message or "Unknown error")

        return _UpdateOutcome(row=row)

    def _confirms_claim(self, row: OrderSnapshot, order_id: str, courier_id: str) -> bool:
        return (
            row.id == order_id
            and row.delivery_person_id == courier_id
            and row.status == self.claim_status
        )

    async def accept_order(self, order_id: str, courier_id: str) -> AcceptResult:
        """
        Claim an order for a courier.

        Args:
            order_id: Order to claim
            courier_id: Courier making the claim

        Returns:
            AcceptResult: success with the updated order, or a failure code

        Raises:
            ValueError: If either id is empty
        """
        _require(order_id=order_id, courier_id=courier_id)

        attempt = ClaimAttempt(order_id=order_id, courier_id=courier_id)
        start = time.perf_counter()

        def finish(**kwargs) -> AcceptResult:
            elapsed = round((time.perf_counter() - start) * 1000, 2)
            return AcceptResult(attempt=attempt, response_time_ms=elapsed, **kwargs)

        logger.debug(f"Courier {courier_id} claiming order {order_id}")

        if self.precheck_enabled:
            availability = await self.check_order_availability(order_id)
            if not availability.available and availability.code != ClaimErrorCode.CHECK_FAILED:
                logger.info(f"Order {order_id} not claimable ({availability.reason}); skipping claim")
                return finish(
                    success=False,
                    error=availability.reason or "Order is no longer available",
                    code=ClaimErrorCode.ORDER_NOT_AVAILABLE,
                )

        outcome = await self._conditional_update(
            "accept_order",
            order_id,
            self.claimable_where,
            {
                "delivery_person_id": courier_id,
                "status": self.claim_status,
                "accepted_at": utcnow(),
            },
        )

        if outcome.failed:
            return finish(success=False, error=outcome.error, code=outcome.code)

        if outcome.row is None:
            logger.warning(f"Courier {courier_id} lost order {order_id}: already claimed or not claimable")
            return finish(
                success=False,
                error="Order is no longer available",
                code=ClaimErrorCode.ORDER_NOT_AVAILABLE,
            )

        if not self._confirms_claim(outcome.row, order_id, courier_id):
            logger.error(
                f"Store reply for order {order_id} does not confirm courier {courier_id}: "
                f"id={outcome.row.id} courier={outcome.row.delivery_person_id} "
                f"status={outcome.row.status}"
            )
            return finish(
                success=False,
                error="No response from server",
                code=ClaimErrorCode.NO_RESPONSE,
            )

        logger.info(f"Order {order_id} accepted by courier {courier_id}")
        return finish(
            success=True,
            order=outcome.row,
            message="Order accepted successfully",
        )

    # -------------------------------------------------------------------------
    # Assigned-courier transitions
    # -------------------------------------------------------------------------

    async def _transition(
        self,
        action: str,
        order_id: str,
        courier_id: str,
        from_status: OrderStatus,
        changes: Mapping[str, Any],
        message: str,
    ) -> StatusUpdateResult:
        _require(order_id=order_id, courier_id=courier_id)

        outcome = await self._conditional_update(
            action,
            order_id,
            {"delivery_person_id": courier_id, "status": from_status},
            changes,
        )
        if outcome.failed:
            return StatusUpdateResult(success=False, error=outcome.error, code=outcome.code)
        if outcome.row is None:
            logger.warning(
                f"{action}: order {order_id} is not {from_status.value} "
                f"and assigned to courier {courier_id}"
            )
            return StatusUpdateResult(
                success=False,
                error=f"Order is not assigned to this courier in status '{from_status.value}'",
                code=ClaimErrorCode.NOT_ASSIGNED,
            )

        logger.info(f"{action}: order {order_id} is now {outcome.row.status.value}")
        return StatusUpdateResult(success=True, order=outcome.row, message=message)

    async def mark_picked_up(self, order_id: str, courier_id: str) -> StatusUpdateResult:
        """Record pickup by the courier holding the claim."""
        return await self._transition(
            "mark_picked_up",
            order_id,
            courier_id,
            from_status=self.claim_status,
            changes={"status": OrderStatus.PICKED_UP, "picked_up_at": utcnow()},
            message="Order picked up",
        )

    async def mark_delivered(self, order_id: str, courier_id: str) -> StatusUpdateResult:
        """Record delivery by the courier holding the order."""
        return await self._transition(
            "mark_delivered",
            order_id,
            courier_id,
            from_status=OrderStatus.PICKED_UP,
            changes={"status": OrderStatus.DELIVERED, "delivered_at": utcnow()},
            message="Order delivered",
        )

    async def release_order(self, order_id: str, courier_id: str) -> StatusUpdateResult:
        """Give an accepted, not yet picked up order back to the pool."""
        return await self._transition(
            "release_order",
            order_id,
            courier_id,
            from_status=self.claim_status,
            changes={
                "delivery_person_id": None,
                "status": self.release_status,
                "accepted_at": None,
            },
            message="Order released",
        )

    # -------------------------------------------------------------------------
    # Listings
    # -------------------------------------------------------------------------

    def _courier_where(self, courier_id: str, statuses: Optional[Iterable[str]]) -> dict[str, Any]:
        _require(courier_id=courier_id)
        where: dict[str, Any] = {"delivery_person_id": courier_id}
        if statuses:
            where["status"] = tuple(OrderStatus(s) for s in statuses)
        return where

    async def list_available_orders(self) -> list[OrderSnapshot]:
        """One-shot snapshot of claimable orders, newest first."""
        return await self._store.query(self.claimable_where)

    async def list_courier_orders(
        self,
        courier_id: str,
        statuses: Optional[Iterable[str]] = None,
    ) -> list[OrderSnapshot]:
        """One-shot snapshot of a courier's orders, newest first."""
        return await self._store.query(self._courier_where(courier_id, statuses))

    def get_available_orders_view(self) -> OrderListView:
        """Live list of claimable orders, newest first."""
        return OrderListView(
            self._store,
            self.claimable_where,
            name="available",
            reconnect_delay=self.view_reconnect_delay,
        )

    def get_courier_orders_view(
        self,
        courier_id: str,
        statuses: Optional[Iterable[str]] = None,
    ) -> OrderListView:
        """Live list of orders assigned to a courier, newest first."""
        return OrderListView(
            self._store,
            self._courier_where(courier_id, statuses),
            name=f"courier:{courier_id}",
            reconnect_delay=self.view_reconnect_delay,
        )


# =============================================================================
# FACTORY
# =============================================================================

@lru_cache()
def get_claim_coordinator() -> OrderClaimCoordinator:
    """
    Get the process-wide claim coordinator.

    Built once from settings on top of get_record_store(); inject it into
    request handlers rather than constructing new instances.
    """
    settings = get_settings()
    return OrderClaimCoordinator(
        store=get_record_store(),
        claimable_statuses=settings.claimable_status_list,
        claim_status=settings.claim_status,
        claim_timeout=settings.claim_timeout_seconds,
        precheck_enabled=settings.claim_precheck_enabled,
        view_reconnect_delay=settings.view_reconnect_delay_seconds,
    )


def reset_claim_coordinator() -> None:
    """Clear the cached coordinator (tests, configuration changes)."""
    get_claim_coordinator.cache_clear()
