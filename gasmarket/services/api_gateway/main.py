"""Public HTTP entrypoint for orders, payments and agent earnings.

The gateway enforces the upstream API key, turns identity headers into an
explicit `Principal`, keeps an optional Redis idempotency cache for create
calls, and maps domain errors to `{success: false, message}` responses.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from time import perf_counter
from uuid import uuid4

import redis
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from gasmarket.common.auth import Principal
from gasmarket.common.config import settings
from gasmarket.common.db import SessionLocal
from gasmarket.common.errors import MarketplaceError
from gasmarket.common.logging import configure_logging, logger, request_context
from gasmarket.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from gasmarket.common.startup import log_startup_config
from gasmarket.common.tracing import setup_tracing
from gasmarket.services.inventory.service import InventoryLedger
from gasmarket.services.orchestrator.service import OrderOrchestrator
from gasmarket.services.orders.schemas import CancelOrderRequest, OrderStatusPatch, PlaceOrderRequest, RatingRequest
from gasmarket.services.orders.service import OrderService, order_to_dict
from gasmarket.services.payments.schemas import InitiatePaymentRequest, ResendCodeRequest, VerifyPaymentRequest
from gasmarket.services.payments.service import PaymentVerificationEngine, payment_to_dict
from gasmarket.services.wallet.service import WalletLedger

configure_logging()
log_startup_config(
    settings,
    [
        "environment",
        "database_url",
        "redis_url",
        "kafka_bootstrap_servers",
        "api_key",
        "payment_code_ttl_seconds",
        "payment_simulation_mode",
    ],
)


@dataclass
class Marketplace:
    """Wired service graph for one session factory."""

    orders: OrderService
    orchestrator: OrderOrchestrator
    payments: PaymentVerificationEngine
    wallet: WalletLedger


def build_marketplace(session_factory) -> Marketplace:
    inventory = InventoryLedger()
    wallet = WalletLedger(session_factory)
    orders = OrderService(session_factory, inventory, wallet)
    orchestrator = OrderOrchestrator(session_factory, orders, inventory)
    payments = PaymentVerificationEngine(session_factory, orchestrator)
    return Marketplace(orders=orders, orchestrator=orchestrator, payments=payments, wallet=wallet)


marketplace = build_marketplace(SessionLocal)


def get_marketplace() -> Marketplace:
    return marketplace


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher with the app lifecycle."""

    publisher_task = asyncio.create_task(marketplace.orchestrator.outbox_publisher())
    yield
    publisher_task.cancel()
    await marketplace.orchestrator.kafka.close()


app = FastAPI(title="GasMarket API", lifespan=lifespan)
setup_tracing(app)
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency, and bind the correlation id."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    correlation_id = request.headers.get("x-correlation-id") or str(uuid4())
    try:
        with request_context(correlation_id):
            response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Correlation-Id"] = correlation_id
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(_: Request, exc: MarketplaceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Invalid request", "error": "validation_error", "details": errors},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(_: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": str(exc.detail)})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error path=%s error=%s", request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error",
            "error": str(exc) if settings.is_development else None,
        },
    )


def enforce_api_key(x_api_key: str | None = Header(default=None)) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def current_principal(
    _: None = Depends(enforce_api_key),
    x_user_id: str | None = Header(default=None),
    x_user_type: str | None = Header(default=None),
) -> Principal:
    """Authenticated caller as asserted by the identity proxy."""

    if not x_user_id or x_user_type not in ("customer", "agent", "admin"):
        raise HTTPException(status_code=401, detail="authentication required")
    return Principal(user_id=x_user_id, user_type=x_user_type)


def _idempotency_cache_key(scope: str, principal: Principal, idempotency_key: str) -> str:
    return f"idempotency:{scope}:{principal.user_id}:{idempotency_key}"


def _cached_response(cache_key: str | None) -> dict | None:
    if cache_key is None:
        return None
    try:
        cached = rdb.get(cache_key)
        if cached:
            return json.loads(cached)
    except Exception as exc:
        logger.warning("idempotency_cache_read_failed: %s", exc)
    return None


def _store_response(cache_key: str | None, payload: dict) -> None:
    if cache_key is None:
        return
    try:
        rdb.setex(cache_key, settings.idempotency_ttl_seconds, json.dumps(payload, default=str))
    except Exception as exc:
        logger.warning("idempotency_cache_write_failed: %s", exc)


# Orders


@app.post("/orders", status_code=201)
def place_order(
    req: PlaceOrderRequest,
    principal: Principal = Depends(current_principal),
    mp: Marketplace = Depends(get_marketplace),
    idempotency_key: str | None = Header(default=None),
):
    """Place an order; replays the cached response for a repeated Idempotency-Key."""

    cache_key = _idempotency_cache_key("orders", principal, idempotency_key) if idempotency_key else None
    cached = _cached_response(cache_key)
    if cached is not None:
        return cached
    order = mp.orchestrator.place_order(principal, req)
    payload = {"success": True, "message": "Order placed successfully", "order": order_to_dict(order)}
    _store_response(cache_key, payload)
    return payload


@app.get("/orders/customer")
def customer_orders(
    status: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    principal: Principal = Depends(current_principal),
    mp: Marketplace = Depends(get_marketplace),
):
    return {"success": True, **mp.orders.list_orders(principal, "customer", status, page, limit)}


@app.get("/orders/agent")
def agent_orders(
    status: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    principal: Principal = Depends(current_principal),
    mp: Marketplace = Depends(get_marketplace),
):
    return {"success": True, **mp.orders.list_orders(principal, "agent", status, page, limit)}


@app.get("/orders/agent/summary")
def agent_order_summary(principal: Principal = Depends(current_principal), mp: Marketplace = Depends(get_marketplace)):
    return {"success": True, "summary": mp.orders.status_summary(principal)}


@app.get("/orders/{order_id}")
def order_details(order_id: str, principal: Principal = Depends(current_principal), mp: Marketplace = Depends(get_marketplace)):
    order = mp.orders.get_order(principal, order_id)
    timeline = mp.orders.timeline(principal, order_id)
    return {
        "success": True,
        "order": order_to_dict(order),
        "timeline": [
            {
                "from_status": t.from_status,
                "to_status": t.to_status,
                "actor_id": t.actor_id,
                "reason": t.reason,
                "created_at": t.created_at,
            }
            for t in timeline
        ],
    }


@app.put("/orders/agent/{order_id}/status")
def update_order_status(
    order_id: str,
    patch: OrderStatusPatch,
    principal: Principal = Depends(current_principal),
    mp: Marketplace = Depends(get_marketplace),
):
    order = mp.orders.update_status(principal, order_id, patch)
    return {"success": True, "message": f"Order status updated to {order.status}", "order": order_to_dict(order)}


@app.put("/orders/customer/{order_id}/cancel")
def cancel_order(
    order_id: str,
    req: CancelOrderRequest | None = None,
    principal: Principal = Depends(current_principal),
    mp: Marketplace = Depends(get_marketplace),
):
    reason = req.cancellation_reason if req else None
    order = mp.orchestrator.cancel_order(principal, order_id, reason)
    return {"success": True, "message": "Order cancelled successfully", "order": order_to_dict(order)}


@app.post("/orders/{order_id}/rating")
def rate_order(
    order_id: str,
    req: RatingRequest,
    principal: Principal = Depends(current_principal),
    mp: Marketplace = Depends(get_marketplace),
):
    order = mp.orders.add_rating(principal, order_id, req.rating, req.review)
    return {
        "success": True,
        "message": "Thank you for your rating!",
        "rating": {"order_id": order.id, "rating": order.rating, "review": order.review, "updated_at": order.updated_at},
    }


# Payments


@app.post("/payments/initiate")
def initiate_payment(
    req: InitiatePaymentRequest,
    principal: Principal = Depends(current_principal),
    mp: Marketplace = Depends(get_marketplace),
    idempotency_key: str | None = Header(default=None),
):
    cache_key = _idempotency_cache_key("payments", principal, idempotency_key) if idempotency_key else None
    cached = _cached_response(cache_key)
    if cached is not None:
        return cached
    payment = mp.payments.initiate(principal, req.order_id, req.phone_number, req.amount)
    payload = {
        "success": True,
        "message": "Verification code generated",
        "payment": payment_to_dict(payment, include_code=True),
    }
    if settings.payment_simulation_mode:
        payload["note"] = "Simulation mode: in production the verification code is sent via SMS"
    _store_response(cache_key, payload)
    return payload


@app.post("/payments/verify")
def verify_payment(
    req: VerifyPaymentRequest,
    principal: Principal = Depends(current_principal),
    mp: Marketplace = Depends(get_marketplace),
):
    payment, order = mp.payments.verify(principal, req.payment_id, req.verification_code)
    return {
        "success": True,
        "message": "Payment successful! Order confirmed and waiting for agent.",
        "payment": payment_to_dict(payment),
        "order": {
            "id": order.id,
            "order_number": order.order_number,
            "status": order.status,
            "payment_status": order.payment_status,
        },
        "cart_cleared": True,
    }


@app.post("/payments/resend")
def resend_code(
    req: ResendCodeRequest,
    principal: Principal = Depends(current_principal),
    mp: Marketplace = Depends(get_marketplace),
):
    payment = mp.payments.resend(principal, req.payment_id)
    return {
        "success": True,
        "message": "New verification code generated",
        "payment": payment_to_dict(payment, include_code=True),
    }


@app.get("/payments/status")
def payment_status(
    order_id: str = Query(min_length=1),
    principal: Principal = Depends(current_principal),
    mp: Marketplace = Depends(get_marketplace),
):
    payment = mp.payments.status(principal, order_id)
    return {"success": True, "payment": payment_to_dict(payment, include_code=True)}


@app.get("/payments/order/{order_id}")
def payments_by_order(order_id: str, principal: Principal = Depends(current_principal), mp: Marketplace = Depends(get_marketplace)):
    payments = mp.payments.payments_for_order(principal, order_id)
    return {"success": True, "order_id": order_id, "payments": [payment_to_dict(p) for p in payments]}


@app.get("/payments/customer")
def customer_payments(
    status: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    principal: Principal = Depends(current_principal),
    mp: Marketplace = Depends(get_marketplace),
):
    return {"success": True, **mp.payments.list_payments(principal, "customer", status, page, limit)}


@app.get("/payments/agent")
def agent_payments(
    status: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    principal: Principal = Depends(current_principal),
    mp: Marketplace = Depends(get_marketplace),
):
    return {"success": True, **mp.payments.list_payments(principal, "agent", status, page, limit)}


@app.post("/payments/mpesa/callback")
async def mpesa_callback(request: Request, mp: Marketplace = Depends(get_marketplace)):
    """Gateway webhook; unauthenticated and always answers with a ResultCode."""

    try:
        body = await request.json()
    except ValueError:
        logger.warning("mpesa_callback_unparseable")
        return {"ResultCode": 1, "ResultDesc": "Failed to process callback"}
    if not isinstance(body, dict):
        return {"ResultCode": 1, "ResultDesc": "Failed to process callback"}
    return await run_in_threadpool(mp.payments.handle_callback, body)


# Wallet


@app.get("/wallet/earnings")
def wallet_earnings(principal: Principal = Depends(current_principal), mp: Marketplace = Depends(get_marketplace)):
    return {"success": True, "data": mp.wallet.earnings(principal)}


@app.get("/wallet/reconciliation", dependencies=[Depends(enforce_api_key)])
def wallet_reconciliation(limit: int = Query(default=1000, ge=1), mp: Marketplace = Depends(get_marketplace)):
    """Operator check that every wallet balance equals the sum of its entries."""

    return mp.wallet.reconciliation_report(limit)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
