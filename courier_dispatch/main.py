"""
FastAPI Application Entry Point

Courier Dispatch - order acceptance under contention.
Supports both the in-memory store (development) and SQL + Redis (production).

Endpoints:
    - GET  /api/orders/available: Claimable orders
    - GET  /api/orders/{id}/availability: Advisory availability check
    - POST /api/orders/{id}/accept: Claim an order (first courier wins)
    - POST /api/orders/{id}/pickup | /deliver | /release: Assigned-courier transitions
    - GET  /api/couriers/{id}/orders: A courier's orders
    - WS   /ws/orders/available, /ws/couriers/{id}/orders: Live views
    - POST /api/dev/orders: Seed an order (development only)
    - GET  /health: System health check

Version: 1.0.0
"""

import asyncio
import sys
import logging
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from typing import Optional, Union

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from courier_dispatch.core.config import get_settings, setup_logging
from courier_dispatch.core.enums import ClaimErrorCode, OrderStatus
from courier_dispatch.core.exceptions import StoreConnectionError, StoreError
from courier_dispatch.database import engine, init_db
from courier_dispatch.schemas import (
    AvailabilityResponse,
    ClaimResponse,
    CourierActionRequest,
    ErrorResponse,
    HealthResponse,
    OrderListResponse,
    OrderSnapshot,
    SeedOrderRequest,
)
from courier_dispatch.services.claims import (
    AcceptResult,
    OrderClaimCoordinator,
    StatusUpdateResult,
    get_claim_coordinator,
)
from courier_dispatch.services.live_views import OrderListView
from courier_dispatch.tasks import audit_claim_attempt

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    coordinator_factory = app.dependency_overrides.get(get_claim_coordinator, get_claim_coordinator)
    coordinator = coordinator_factory()
    store = coordinator.store

    if store.provider_name == "sql":
        await init_db()
        logger.info("✅ Database initialized")

    logger.info(f"✅ Record Store: {store.provider_name}")
    logger.info(
        f"✅ Claimable statuses: {[s.value for s in coordinator.claimable_statuses]} "
        f"→ {coordinator.claim_status.value}"
    )

    if settings.use_real_services:
        problems = settings.validate_production_config()
        if problems:
            logger.warning(f"⚠️ Production config problems: {problems}")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    logger.info("Shutting down...")
    await store.close()
    if store.provider_name == "sql":
        await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Courier order acceptance with first-writer-wins claims. "
        "Exactly one courier wins each order; everyone else gets a clean rejection."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

HTTP_STATUS_FOR_CODE = {
    ClaimErrorCode.ORDER_NOT_AVAILABLE: 409,
    ClaimErrorCode.NOT_ASSIGNED: 409,
    ClaimErrorCode.NETWORK_ERROR: 503,
    ClaimErrorCode.NO_RESPONSE: 503,
    ClaimErrorCode.UNKNOWN_ERROR: 502,
}


def claim_response(result: Union[AcceptResult, StatusUpdateResult]) -> JSONResponse:
    """Same body for every outcome; the HTTP status reflects the code."""
    body = ClaimResponse(
        success=result.success,
        order=result.order,
        message=result.message,
        error=result.error,
        code=result.code,
    )
    status_code = 200 if result.success else HTTP_STATUS_FOR_CODE.get(result.code, 500)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def queue_claim_audit(result: AcceptResult) -> None:
    """Hand the attempt and its outcome to the Celery audit task."""
    if not settings.audit_claims or result.attempt is None:
        return
    try:
        audit_claim_attempt.delay({
            **result.attempt.to_dict(),
            "success": result.success,
            "code": result.code.value if result.code else None,
            "error": result.error,
            "response_time_ms": result.response_time_ms,
        })
    except Exception as e:
        logger.warning(f"Could not queue claim audit for order {result.attempt.order_id}: {e}")


async def stream_view(websocket: WebSocket, view: OrderListView) -> None:
    """Push every list a live view yields until either side goes away."""
    await websocket.accept()

    async def pump() -> None:
        async for orders in view:
            payload = OrderListResponse(total=len(orders), orders=orders)
            await websocket.send_json(payload.model_dump(mode="json"))

    async def wait_for_disconnect() -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

    pump_task = asyncio.create_task(pump())
    disconnect_task = asyncio.create_task(wait_for_disconnect())
    try:
        done, _ = await asyncio.wait(
            {pump_task, disconnect_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        # Both tasks are torn down on every exit, including cancellation.
        for task in (pump_task, disconnect_task):
            task.cancel()
        await asyncio.gather(pump_task, disconnect_task, return_exceptions=True)

    if pump_task in done:
        error = pump_task.exception()
        if isinstance(error, WebSocketDisconnect):
            return
        if error is not None:
            logger.error(f"Live view '{view.name}' failed: {error}")
        with suppress(RuntimeError):
            await websocket.close(code=1011 if error is not None else 1000)


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🛵 Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    coordinator: OrderClaimCoordinator = Depends(get_claim_coordinator),
) -> HealthResponse:
    """Verify the record store and its change feed are reachable."""
    store = coordinator.store
    store_status = "healthy" if await store.health_check() else "unhealthy"

    return HealthResponse(
        status="operational" if store_status == "healthy" else "degraded",
        store=f"{store.provider_name}: {store_status}",
        environment=settings.env_mode.value,
        timestamp=datetime.now(),
    )


# =============================================================================
# ORDER CLAIM ENDPOINTS
# =============================================================================

@app.get(
    "/api/orders/available",
    response_model=OrderListResponse,
    tags=["Orders"],
    summary="List Claimable Orders",
)
async def list_available_orders(
    coordinator: OrderClaimCoordinator = Depends(get_claim_coordinator),
) -> OrderListResponse:
    """Orders currently open for claims, newest first. Display data only."""
    orders = await coordinator.list_available_orders()
    return OrderListResponse(total=len(orders), orders=orders)


@app.get(
    "/api/orders/{order_id}/availability",
    response_model=AvailabilityResponse,
    tags=["Orders"],
    summary="Advisory Availability Check",
)
async def check_availability(
    order_id: str,
    coordinator: OrderClaimCoordinator = Depends(get_claim_coordinator),
) -> AvailabilityResponse:
    """Whether the order looks claimable right now. Claim anyway to find out for sure."""
    availability = await coordinator.check_order_availability(order_id)
    return AvailabilityResponse(
        order_id=order_id,
        available=availability.available,
        reason=availability.reason,
        code=availability.code,
    )


@app.post(
    "/api/orders/{order_id}/accept",
    response_model=ClaimResponse,
    responses={409: {"model": ClaimResponse}, 502: {"model": ClaimResponse}, 503: {"model": ClaimResponse}},
    tags=["Orders"],
    summary="Accept (Claim) Order",
)
async def accept_order(
    order_id: str,
    request: CourierActionRequest,
    background_tasks: BackgroundTasks,
    coordinator: OrderClaimCoordinator = Depends(get_claim_coordinator),
) -> JSONResponse:
    """
    Claim an order for a courier.

    Exactly one concurrent caller per order gets 200; the others get 409
    ORDER_NOT_AVAILABLE. 503 responses are safe to retry.
    """
    result = await coordinator.accept_order(order_id, request.courier_id)
    background_tasks.add_task(queue_claim_audit, result)
    return claim_response(result)


@app.post(
    "/api/orders/{order_id}/pickup",
    response_model=ClaimResponse,
    responses={409: {"model": ClaimResponse}, 503: {"model": ClaimResponse}},
    tags=["Orders"],
)
async def pickup_order(
    order_id: str,
    request: CourierActionRequest,
    coordinator: OrderClaimCoordinator = Depends(get_claim_coordinator),
) -> JSONResponse:
    """Mark an accepted order as picked up by its courier."""
    return claim_response(await coordinator.mark_picked_up(order_id, request.courier_id))


@app.post(
    "/api/orders/{order_id}/deliver",
    response_model=ClaimResponse,
    responses={409: {"model": ClaimResponse}, 503: {"model": ClaimResponse}},
    tags=["Orders"],
)
async def deliver_order(
    order_id: str,
    request: CourierActionRequest,
    coordinator: OrderClaimCoordinator = Depends(get_claim_coordinator),
) -> JSONResponse:
    """Mark a picked-up order as delivered by its courier."""
    return claim_response(await coordinator.mark_delivered(order_id, request.courier_id))


@app.post(
    "/api/orders/{order_id}/release",
    response_model=ClaimResponse,
    responses={409: {"model": ClaimResponse}, 503: {"model": ClaimResponse}},
    tags=["Orders"],
)
async def release_order(
    order_id: str,
    request: CourierActionRequest,
    coordinator: OrderClaimCoordinator = Depends(get_claim_coordinator),
) -> JSONResponse:
    """Give an accepted order back so another courier can claim it."""
    return claim_response(await coordinator.release_order(order_id, request.courier_id))


@app.get(
    "/api/couriers/{courier_id}/orders",
    response_model=OrderListResponse,
    tags=["Couriers"],
    summary="List Courier Orders",
)
async def list_courier_orders(
    courier_id: str,
    status: Optional[list[OrderStatus]] = Query(None),
    coordinator: OrderClaimCoordinator = Depends(get_claim_coordinator),
) -> OrderListResponse:
    """Orders assigned to a courier, newest first."""
    orders = await coordinator.list_courier_orders(courier_id, statuses=status)
    return OrderListResponse(total=len(orders), orders=orders)


# =============================================================================
# LIVE VIEWS
# =============================================================================

@app.websocket("/ws/orders/available")
async def available_orders_socket(
    websocket: WebSocket,
    coordinator: OrderClaimCoordinator = Depends(get_claim_coordinator),
) -> None:
    """Stream the claimable orders list on every change."""
    await stream_view(websocket, coordinator.get_available_orders_view())


@app.websocket("/ws/couriers/{courier_id}/orders")
async def courier_orders_socket(
    websocket: WebSocket,
    courier_id: str,
    coordinator: OrderClaimCoordinator = Depends(get_claim_coordinator),
) -> None:
    """Stream a courier's orders list on every change."""
    await stream_view(websocket, coordinator.get_courier_orders_view(courier_id))


# =============================================================================
# DEVELOPMENT ENDPOINTS
# =============================================================================

@app.post(
    "/api/dev/orders",
    response_model=OrderSnapshot,
    status_code=201,
    tags=["Simulation"],
    summary="Seed Order (Development)",
)
async def seed_order(
    order_data: SeedOrderRequest,
    coordinator: OrderClaimCoordinator = Depends(get_claim_coordinator),
) -> OrderSnapshot:
    """
    Place an order straight into the store.

    Stands in for the ordering flow so scripts/simulate.py has something
    to fight over.
    """
    if not settings.is_development:
        raise HTTPException(
            status_code=403,
            detail="Seeding endpoint only available in development mode"
        )

    order = await coordinator.store.insert(order_data.model_dump(exclude_none=True))
    logger.info(f"Seeded order {order.id} ({order.status.value})")
    return order


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(StoreError)
async def store_exception_handler(request: Request, exc: StoreError) -> JSONResponse:
    """Store failures outside the claim path (listings, seeding)."""
    logger.error(f"Store error on {request.url.path}: {exc}")
    status_code = 503 if isinstance(exc, StoreConnectionError) else 502
    body = ErrorResponse(
        error="Store unavailable" if status_code == 503 else "Store error",
        detail=str(exc) if settings.debug else None,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )
