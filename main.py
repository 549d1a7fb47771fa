from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import redis
from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field, field_validator
from sqlalchemy import text

from auth import AuthError, AuthIdentity, decode_access_token, extract_bearer_token
from billing import (
    ENGINE as BILLING_ENGINE,
)
from billing import (
    AdminRequired,
    AuthenticationRequired,
    BasePaymentGateway,
    BillingError,
    BillingPeriod,
    BillingRateLimiter,
    BillingRepository,
    NoNewAddons,
    NotFoundError,
    PaymentType,
    SignatureMismatch,
    build_payment_gateway,
    describe_subscription,
    dispatch_payment_receipt,
    fetch_gateway_payment,
    get_current_subscription,
    get_payment_status,
    init_billing_db,
    payment_rate_limit_subject,
    place_order,
    process_gateway_webhook,
    quote_addon_order,
    quote_subscription_order,
    refund_payment,
    run_payment_maintenance,
    seed_default_catalog,
    session_scope,
    verify_payment,
)
from billing.pricing import plan_charge
from config import (
    API_HOST,
    API_PORT,
    APP_VERSION,
    AUTH_ENABLED,
    AUTH_TOKEN_SECRET,
    CORS_ORIGINS,
    DISABLE_PAYMENT_RATE_LIMIT,
    PAYMENT_RATE_LIMIT_RPM,
    RAZORPAY_KEY_SECRET,
    RAZORPAY_WEBHOOK_SECRET,
    REDIS_DISABLED,
    REDIS_URL,
    ROOT_PATH,
    STARTUP_BOOTSTRAP_ENABLED,
)
from errors import explain_error
from observability import bind_trace_id, configure_json_logging, get_logger, log_event

GATEWAY_ID_PATTERN = r"^[A-Za-z0-9_]{1,64}$"

SECURITY_HEADERS: Dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}
CONTENT_SECURITY_POLICY = (
    "default-src 'self'; "
    "script-src 'self' https://checkout.razorpay.com; "
    "frame-src https://api.razorpay.com https://checkout.razorpay.com; "
    "img-src 'self' data: https:; "
    "connect-src 'self' https://api.razorpay.com; "
    "frame-ancestors 'none'; "
    "base-uri 'self'; "
    "form-action 'self'"
)

configure_json_logging(level=logging.INFO)
APP_LOGGER = get_logger("marketplace.api")


@asynccontextmanager
async def lifespan(_: FastAPI):
    if AUTH_ENABLED:
        if not AUTH_TOKEN_SECRET:
            raise RuntimeError("AUTH_TOKEN_SECRET is required when AUTH_ENABLED=true")
    if STARTUP_BOOTSTRAP_ENABLED:
        init_billing_db()
        seed_default_catalog()
    yield


app = FastAPI(title="Marketplace Payments", version=APP_VERSION, root_path=ROOT_PATH, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Trace-Id"],
    expose_headers=["X-Trace-Id", "X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"],
)

WEBHOOK_PATH = "/payments/webhooks/razorpay"

PUBLIC_AUTH_PATHS = {
    "/health",
    WEBHOOK_PATH,
    "/docs",
    "/redoc",
    "/openapi.json",
}

BILLING_RATE_LIMITER = BillingRateLimiter()


# Request and response models


class PlanResponse(BaseModel):
    id: str
    identifier: str
    name: str
    description: Optional[str] = None
    price: Decimal
    yearly_price: Decimal
    currency: str
    billing_period: str
    limits: Dict[str, Any] = Field(default_factory=dict)
    subscriber_count: int = 0


class AddonResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    price: Decimal
    currency: str
    category: str
    billing_type: str


class SubscriptionAddonResponse(BaseModel):
    addon_id: str
    name: str
    price: Decimal
    currency: str
    category: Optional[str] = None
    billing_type: Optional[str] = None
    granted_at: datetime


class SubscriptionResponse(BaseModel):
    id: str
    user_id: str
    plan_id: str
    plan: Dict[str, Any] = Field(default_factory=dict)
    status: str
    starts_at: datetime
    ends_at: datetime
    amount: Decimal
    currency: str
    addons: List[SubscriptionAddonResponse] = Field(default_factory=list)


class SubscriptionOrderRequest(BaseModel):
    plan_id: str = Field(..., min_length=1, max_length=64)
    billing_cycle: str = Field(default=BillingPeriod.MONTHLY.value, max_length=16)
    addon_ids: List[str] = Field(default_factory=list, max_length=32)
    total_amount: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=2)

    @field_validator("plan_id", "billing_cycle", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> str:
        return str(value or "").strip()


class AddonOrderRequest(BaseModel):
    addon_ids: List[str] = Field(default_factory=list, max_length=32)
    total_amount: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=2)


class OrderResponse(BaseModel):
    payment_id: str
    gateway_order_id: str
    payment_type: str
    amount: Decimal
    currency: str
    receipt: str
    expires_at: datetime
    key_id: str
    plan_id: Optional[str] = None
    addon_ids: List[str] = Field(default_factory=list)


class VerifyPaymentRequest(BaseModel):
    gateway_order_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        pattern=GATEWAY_ID_PATTERN,
        validation_alias=AliasChoices("razorpay_order_id", "gateway_order_id"),
    )
    gateway_payment_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        pattern=GATEWAY_ID_PATTERN,
        validation_alias=AliasChoices("razorpay_payment_id", "gateway_payment_id"),
    )
    signature: str = Field(
        ...,
        min_length=1,
        max_length=256,
        validation_alias=AliasChoices("razorpay_signature", "signature"),
    )
    plan_id: Optional[str] = Field(default=None, max_length=64)
    billing_cycle: Optional[str] = Field(default=None, max_length=16)
    addon_ids: Optional[List[str]] = Field(default=None, max_length=32)

    def order_context(self) -> Dict[str, Any]:
        return {"plan_id": self.plan_id, "billing_cycle": self.billing_cycle, "addon_ids": self.addon_ids}


class PaymentVerificationResponse(BaseModel):
    payment_id: str
    gateway_order_id: str
    gateway_payment_id: Optional[str] = None
    status: str
    payment_type: str
    amount: Decimal
    currency: str
    already_processed: bool = False
    granted_addon_ids: List[str] = Field(default_factory=list)
    subscription: Optional[SubscriptionResponse] = None


class PaymentStatusResponse(BaseModel):
    payment_id: str
    gateway_order_id: str
    gateway_payment_id: Optional[str] = None
    status: str
    payment_type: str
    amount: Decimal
    currency: str
    plan_id: Optional[str] = None
    addon_ids: List[str] = Field(default_factory=list)
    subscription_id: Optional[str] = None
    status_reason: Optional[str] = None
    expires_at: datetime
    paid_at: Optional[datetime] = None
    created_at: datetime


class WebhookResponse(BaseModel):
    status: str
    reason: Optional[str] = None
    payment_id: Optional[str] = None
    gateway_order_id: Optional[str] = None
    subscription_id: Optional[str] = None


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    reason: Optional[str] = Field(default=None, max_length=255)


class RefundResponse(BaseModel):
    refund_id: str
    gateway_refund_id: str
    payment_id: str
    gateway_payment_id: str
    amount: Decimal
    currency: str
    status: str
    remaining: Decimal


class GatewayPaymentResponse(BaseModel):
    id: str
    order_id: Optional[str] = None
    status: str
    amount: Decimal
    currency: str
    method: Optional[str] = None
    created_at: Optional[int] = None


class PaymentStatsResponse(BaseModel):
    payments: Dict[str, int]
    subscriptions: Dict[str, int]
    total_revenue: Decimal
    monthly_revenue: Decimal
    total_refunded: Decimal


class SweepResponse(BaseModel):
    cancelled_payments: int
    expired_subscriptions: int


class PlanPriceChangeRequest(BaseModel):
    price: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    reason: Optional[str] = Field(default=None, max_length=500)


class PlanPriceChangeResponse(BaseModel):
    id: str
    plan_id: str
    previous_price: Optional[Decimal] = None
    price: Decimal
    changed_by: str
    reason: Optional[str] = None
    changed_at: datetime


# Middleware and dependencies


def _normalize_request_path(path: str) -> str:
    normalized = path or "/"
    if ROOT_PATH and normalized.startswith(ROOT_PATH):
        stripped = normalized[len(ROOT_PATH):]
        normalized = stripped if stripped.startswith("/") else f"/{stripped}"
    return normalized or "/"


def _is_public_path(path: str) -> bool:
    normalized = _normalize_request_path(path)
    if normalized in PUBLIC_AUTH_PATHS:
        return True
    return normalized.startswith("/docs/") or normalized.startswith("/redoc/")


def _should_rate_limit_payment(request: Request) -> bool:
    if request.method.upper() != "POST":
        return False
    normalized = _normalize_request_path(request.url.path)
    return normalized.startswith("/payments/") and normalized != WEBHOOK_PATH


def _anonymous_identity() -> AuthIdentity:
    return AuthIdentity(user_id="anonymous", role="user")


def _get_identity_for_rate_limit(request: Request) -> AuthIdentity | None:
    identity = getattr(request.state, "auth_identity", None)
    if isinstance(identity, AuthIdentity):
        return identity
    if not AUTH_ENABLED:
        return _anonymous_identity()
    try:
        return decode_access_token(extract_bearer_token(request.headers.get("Authorization")), AUTH_TOKEN_SECRET)
    except AuthError:
        return None


def _request_user_id(request: Request) -> str:
    identity = getattr(request.state, "auth_identity", None)
    if isinstance(identity, AuthIdentity):
        return str(identity.user_id or "anonymous")
    return "anonymous"


def _request_trace_id(request: Request) -> str:
    raw = str(getattr(request.state, "trace_id", "") or "").strip()
    if raw:
        return raw
    return uuid.uuid4().hex


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    trace_id = str(request.headers.get("X-Trace-Id") or uuid.uuid4().hex).strip()[:64]
    request.state.trace_id = trace_id
    bind_trace_id(trace_id)
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = int((time.perf_counter() - started) * 1000)
    log_event(
        APP_LOGGER,
        logging.INFO,
        "request.completed",
        method=request.method,
        path=_normalize_request_path(request.url.path),
        status_code=response.status_code,
        duration_ms=duration_ms,
        user_id=_request_user_id(request),
    )
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    for key, value in SECURITY_HEADERS.items():
        if key not in response.headers:
            response.headers[key] = value
    path = _normalize_request_path(request.url.path)
    if path.startswith("/docs") or path.startswith("/redoc"):
        return response
    if "Content-Security-Policy" not in response.headers:
        response.headers["Content-Security-Policy"] = CONTENT_SECURITY_POLICY
    return response


@app.middleware("http")
async def auth_middleware(request: Request, call_next):
    if request.method.upper() == "OPTIONS" or _is_public_path(request.url.path):
        return await call_next(request)
    if not AUTH_ENABLED:
        request.state.auth_identity = _anonymous_identity()
        return await call_next(request)
    try:
        token = extract_bearer_token(request.headers.get("Authorization"))
        identity = decode_access_token(token, AUTH_TOKEN_SECRET)
    except AuthError as exc:
        explained = explain_error(AuthenticationRequired.code) or {}
        return JSONResponse(
            status_code=401,
            content={
                "error_code": AuthenticationRequired.code,
                "message": str(exc),
                "hint": explained.get("hint"),
                "trace_id": _request_trace_id(request),
            },
        )
    request.state.auth_identity = identity
    return await call_next(request)


@app.middleware("http")
async def payment_rate_limit_middleware(request: Request, call_next):
    if DISABLE_PAYMENT_RATE_LIMIT or not _should_rate_limit_payment(request):
        return await call_next(request)

    identity = _get_identity_for_rate_limit(request)
    if identity is None:
        return await call_next(request)

    path = _normalize_request_path(request.url.path)
    try:
        verdict = BILLING_RATE_LIMITER.allow(
            subject=payment_rate_limit_subject(identity.user_id, path),
            limit_rpm=PAYMENT_RATE_LIMIT_RPM,
        )
    except RuntimeError as exc:
        trace_id = _request_trace_id(request)
        log_event(
            APP_LOGGER,
            logging.ERROR,
            "rate_limit.unavailable",
            user_id=identity.user_id,
            error=str(exc),
        )
        return JSONResponse(
            status_code=503,
            content={"error_code": "RATE_LIMITER_UNAVAILABLE", "message": "rate limiter unavailable", "trace_id": trace_id},
            headers={"X-Trace-Id": trace_id},
        )
    if not verdict.allowed:
        return JSONResponse(
            status_code=429,
            content={
                "error_code": "RATE_LIMITED",
                "message": "rate limit exceeded",
                "limit_rpm": verdict.limit_rpm,
                "retry_after_seconds": verdict.retry_after_seconds,
            },
            headers={
                "Retry-After": str(verdict.retry_after_seconds),
                "X-RateLimit-Limit": str(verdict.limit_rpm),
                "X-RateLimit-Remaining": str(verdict.remaining),
            },
        )

    response = await call_next(request)
    response.headers["X-RateLimit-Limit"] = str(verdict.limit_rpm)
    response.headers["X-RateLimit-Remaining"] = str(verdict.remaining)
    return response


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    trace_id = _request_trace_id(request)
    log_event(
        APP_LOGGER,
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "billing.request_failed",
        user_id=_request_user_id(request),
        method=request.method,
        path=_normalize_request_path(request.url.path),
        error_code=exc.code,
        status_code=exc.status_code,
        detail=exc.message,
    )
    explained = explain_error(exc.code) or {}
    content: Dict[str, Any] = {
        "error_code": exc.code,
        "message": exc.message,
        "hint": explained.get("hint"),
        "trace_id": trace_id,
    }
    if exc.details:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(content), headers={"X-Trace-Id": trace_id})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    trace_id = _request_trace_id(request)
    log_event(
        APP_LOGGER,
        logging.ERROR,
        "request.unhandled_exception",
        user_id=_request_user_id(request),
        method=request.method,
        path=_normalize_request_path(request.url.path),
        exception_type=type(exc).__name__,
        exception_message=str(exc),
    )
    return JSONResponse(
        status_code=500,
        content={
            "error_code": "INTERNAL_SERVER_ERROR",
            "message": "internal server error",
            "trace_id": trace_id,
        },
        headers={"X-Trace-Id": trace_id},
    )


def get_current_identity(request: Request) -> AuthIdentity:
    identity = getattr(request.state, "auth_identity", None)
    if isinstance(identity, AuthIdentity):
        return identity
    raise AuthenticationRequired("authentication required")


def require_admin(identity: AuthIdentity = Depends(get_current_identity)) -> AuthIdentity:
    if not identity.is_admin:
        raise AdminRequired("admin role required")
    return identity


def get_payment_gateway() -> BasePaymentGateway:
    return build_payment_gateway()


# Response mapping


def _to_plan_response(plan: Any) -> PlanResponse:
    return PlanResponse(
        id=str(plan.id),
        identifier=str(plan.identifier),
        name=str(plan.name),
        description=plan.description,
        price=plan.price,
        yearly_price=plan_charge(plan, BillingPeriod.YEARLY),
        currency=str(plan.currency),
        billing_period=BillingPeriod(plan.billing_period).value,
        limits=dict(plan.limits or {}),
        subscriber_count=int(plan.subscriber_count or 0),
    )


def _to_addon_response(addon: Any) -> AddonResponse:
    return AddonResponse(
        id=str(addon.id),
        name=str(addon.name),
        description=addon.description,
        price=addon.price,
        currency=str(addon.currency),
        category=str(addon.category),
        billing_type=str(addon.billing_type),
    )


def _to_order_response(placed: Any) -> OrderResponse:
    return OrderResponse(
        payment_id=placed.payment_id,
        gateway_order_id=placed.gateway_order_id,
        payment_type=placed.payment_type.value,
        amount=placed.amount,
        currency=placed.currency,
        receipt=placed.receipt,
        expires_at=placed.expires_at,
        key_id=placed.key_id,
        plan_id=placed.plan_id,
        addon_ids=list(placed.addon_ids),
    )


def _to_price_change_response(change: Any) -> PlanPriceChangeResponse:
    return PlanPriceChangeResponse(
        id=str(change.id),
        plan_id=str(change.plan_id),
        previous_price=change.previous_price,
        price=change.price,
        changed_by=str(change.changed_by),
        reason=change.reason,
        changed_at=change.changed_at,
    )


def _run_verification(
    identity: AuthIdentity,
    payload: VerifyPaymentRequest,
    expected_type: PaymentType,
) -> PaymentVerificationResponse:
    with session_scope() as session:
        repo = BillingRepository(session)
        result = verify_payment(
            repo,
            secret=RAZORPAY_KEY_SECRET,
            user_id=identity.user_id,
            gateway_order_id=payload.gateway_order_id,
            gateway_payment_id=payload.gateway_payment_id,
            signature=payload.signature,
            expected_type=expected_type,
            context=payload.order_context(),
        )
        payment = result.payment
        subscription = (
            SubscriptionResponse(**describe_subscription(repo, result.subscription))
            if result.subscription is not None
            else None
        )
        response = PaymentVerificationResponse(
            payment_id=payment.id,
            gateway_order_id=payment.gateway_order_id,
            gateway_payment_id=payment.gateway_payment_id,
            status=payment.status.value,
            payment_type=payment.payment_type.value,
            amount=payment.amount,
            currency=payment.currency,
            already_processed=result.already_processed,
            granted_addon_ids=list(result.granted_addon_ids),
            subscription=subscription,
        )
        receipt = None
        if not result.already_processed and not result.no_new_addons:
            receipt = (repo.get_user(identity.user_id), payment, result.subscription)

    # The payment is committed as paid; the conflict only reports that nothing was granted.
    if result.no_new_addons:
        raise NoNewAddons(
            "All selected addons are already active",
            details={"payment_id": response.payment_id, "payment_status": response.status},
        )
    if receipt is not None:
        dispatch_payment_receipt(*receipt)
    return response


# Routes


def _build_runtime_health_report() -> Dict[str, Any]:
    report: Dict[str, Any] = {
        "status": "ok",
        "api": "ok",
        "db": "ok",
        "redis": "ok",
        "version": app.version,
        "api_host": API_HOST,
        "api_port": API_PORT,
        "details": {},
    }
    if REDIS_DISABLED:
        report["redis"] = "disabled"
    else:
        started = time.perf_counter()
        try:
            redis.Redis.from_url(REDIS_URL, socket_connect_timeout=1, socket_timeout=1).ping()
            report["details"]["redis_latency_ms"] = int((time.perf_counter() - started) * 1000)
        except redis.RedisError as exc:
            report["redis"] = "error"
            report["details"]["redis"] = str(exc)
            report["status"] = "degraded"

    db_started = time.perf_counter()
    try:
        with session_scope() as session:
            session.execute(text("SELECT 1"))
        report["details"]["db_latency_ms"] = int((time.perf_counter() - db_started) * 1000)
    except Exception as exc:  # noqa: BLE001
        report["db"] = "error"
        report["details"]["db"] = str(exc)
        report["status"] = "degraded"
    report["details"]["db_pool"] = {"pool_class": type(getattr(BILLING_ENGINE, "pool", None)).__name__}
    return report


@app.get("/health")
async def health() -> dict:
    return await asyncio.to_thread(_build_runtime_health_report)


@app.get("/billing/plans", response_model=List[PlanResponse])
async def billing_plans(_: AuthIdentity = Depends(get_current_identity)) -> List[PlanResponse]:
    with session_scope() as session:
        repo = BillingRepository(session)
        return [_to_plan_response(plan) for plan in repo.list_plans()]


@app.get("/billing/addons", response_model=List[AddonResponse])
async def billing_addons(_: AuthIdentity = Depends(get_current_identity)) -> List[AddonResponse]:
    with session_scope() as session:
        repo = BillingRepository(session)
        return [_to_addon_response(addon) for addon in repo.list_addons()]


@app.get("/billing/subscription/me", response_model=SubscriptionResponse)
async def my_subscription(identity: AuthIdentity = Depends(get_current_identity)) -> SubscriptionResponse:
    with session_scope() as session:
        repo = BillingRepository(session)
        subscription = get_current_subscription(repo, identity.user_id)
        if subscription is None:
            raise NotFoundError("no active subscription found")
        return SubscriptionResponse(**describe_subscription(repo, subscription))


@app.post("/payments/subscription-orders", response_model=OrderResponse)
async def create_subscription_order(
    payload: SubscriptionOrderRequest,
    identity: AuthIdentity = Depends(get_current_identity),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
) -> OrderResponse:
    def _quote(repo: BillingRepository, now: datetime):
        return quote_subscription_order(
            repo,
            user_id=identity.user_id,
            plan_id=payload.plan_id,
            addon_ids=payload.addon_ids,
            billing_cycle=payload.billing_cycle,
            client_total=payload.total_amount,
            now=now,
        )

    placed = await asyncio.to_thread(place_order, gateway, _quote, scope=session_scope)
    return _to_order_response(placed)


@app.post("/payments/addon-orders", response_model=OrderResponse)
async def create_addon_order(
    payload: AddonOrderRequest,
    identity: AuthIdentity = Depends(get_current_identity),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
) -> OrderResponse:
    def _quote(repo: BillingRepository, now: datetime):
        return quote_addon_order(
            repo,
            user_id=identity.user_id,
            addon_ids=payload.addon_ids,
            client_total=payload.total_amount,
            now=now,
        )

    placed = await asyncio.to_thread(place_order, gateway, _quote, scope=session_scope)
    return _to_order_response(placed)


@app.post("/payments/subscription-orders/verify", response_model=PaymentVerificationResponse)
async def verify_subscription_payment(
    payload: VerifyPaymentRequest,
    identity: AuthIdentity = Depends(get_current_identity),
) -> PaymentVerificationResponse:
    return await asyncio.to_thread(_run_verification, identity, payload, PaymentType.SUBSCRIPTION_PURCHASE)


@app.post("/payments/addon-orders/verify", response_model=PaymentVerificationResponse)
async def verify_addon_payment(
    payload: VerifyPaymentRequest,
    identity: AuthIdentity = Depends(get_current_identity),
) -> PaymentVerificationResponse:
    return await asyncio.to_thread(_run_verification, identity, payload, PaymentType.ADDON_PURCHASE)


@app.get("/payments/orders/{gateway_order_id}/status", response_model=PaymentStatusResponse)
async def payment_status(
    gateway_order_id: str,
    identity: AuthIdentity = Depends(get_current_identity),
) -> PaymentStatusResponse:
    with session_scope() as session:
        repo = BillingRepository(session)
        snapshot = get_payment_status(
            repo,
            user_id=identity.user_id,
            gateway_order_id=gateway_order_id,
            is_admin=identity.is_admin,
        )
    return PaymentStatusResponse(**snapshot)


@app.post(WEBHOOK_PATH, response_model=WebhookResponse)
async def razorpay_webhook(request: Request) -> WebhookResponse:
    body = await request.body()
    signature = request.headers.get("X-Razorpay-Signature")
    event_id = request.headers.get("X-Razorpay-Event-Id")

    def _process() -> Dict[str, Any]:
        with session_scope() as session:
            return process_gateway_webhook(
                BillingRepository(session),
                body=body,
                signature=signature,
                secret=RAZORPAY_WEBHOOK_SECRET,
                event_id=event_id,
            )

    result = await asyncio.to_thread(_process)
    if result.get("status") == "rejected":
        # Raised after the audit row committed.
        raise SignatureMismatch("webhook signature verification failed")
    return WebhookResponse(**result)


@app.post("/admin/payments/{gateway_payment_id}/refund", response_model=RefundResponse)
async def admin_refund_payment(
    gateway_payment_id: str,
    payload: RefundRequest,
    identity: AuthIdentity = Depends(require_admin),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
) -> RefundResponse:
    outcome = await asyncio.to_thread(
        refund_payment,
        gateway,
        gateway_payment_id=gateway_payment_id,
        amount=payload.amount,
        reason=payload.reason,
        actor=identity.user_id,
        scope=session_scope,
    )
    return RefundResponse(
        refund_id=outcome.refund_id,
        gateway_refund_id=outcome.gateway_refund_id,
        payment_id=outcome.payment_id,
        gateway_payment_id=outcome.gateway_payment_id,
        amount=outcome.amount,
        currency=outcome.currency,
        status=outcome.status,
        remaining=outcome.remaining,
    )


@app.get("/admin/payments/gateway/{gateway_payment_id}", response_model=GatewayPaymentResponse)
async def admin_gateway_payment(
    gateway_payment_id: str,
    _: AuthIdentity = Depends(require_admin),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
) -> GatewayPaymentResponse:
    snapshot = await asyncio.to_thread(fetch_gateway_payment, gateway, gateway_payment_id)
    return GatewayPaymentResponse(**snapshot)


@app.get("/admin/payments/stats", response_model=PaymentStatsResponse)
async def admin_payment_stats(_: AuthIdentity = Depends(require_admin)) -> PaymentStatsResponse:
    with session_scope() as session:
        stats = BillingRepository(session).payment_stats()
    return PaymentStatsResponse(**stats)


@app.post("/admin/payments/expire", response_model=SweepResponse)
async def admin_expire_payments(identity: AuthIdentity = Depends(require_admin)) -> SweepResponse:
    summary = await asyncio.to_thread(run_payment_maintenance, session_scope)
    log_event(APP_LOGGER, logging.INFO, "billing.sweep.manual", actor=identity.user_id, **summary)
    return SweepResponse(**summary)


@app.post("/admin/billing/plans/{plan_id}/price", response_model=PlanPriceChangeResponse)
async def admin_change_plan_price(
    plan_id: str,
    payload: PlanPriceChangeRequest,
    identity: AuthIdentity = Depends(require_admin),
) -> PlanPriceChangeResponse:
    with session_scope() as session:
        change = BillingRepository(session).change_plan_price(
            plan_id,
            price=payload.price,
            changed_by=identity.user_id,
            reason=payload.reason,
        )
        response = _to_price_change_response(change)
    log_event(
        APP_LOGGER,
        logging.INFO,
        "billing.plan.price_changed",
        plan_id=plan_id,
        actor=identity.user_id,
        previous_price=response.previous_price,
        price=response.price,
    )
    return response


@app.get("/admin/billing/plans/{plan_id}/price-history", response_model=List[PlanPriceChangeResponse])
async def admin_plan_price_history(
    plan_id: str,
    _: AuthIdentity = Depends(require_admin),
) -> List[PlanPriceChangeResponse]:
    with session_scope() as session:
        repo = BillingRepository(session)
        if repo.get_plan(plan_id) is None:
            raise NotFoundError("plan not found")
        return [_to_price_change_response(change) for change in repo.list_plan_price_history(plan_id)]
