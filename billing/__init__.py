from .addons import AddonMergeResult, merge_addons
from .db import (
    ENGINE,
    SessionLocal,
    build_session_factory,
    init_billing_db,
    session_scope,
)
from .errors import (
    ActiveSubscriptionExists,
    AdminRequired,
    AlreadyFinalized,
    AuthenticationRequired,
    BillingError,
    ConfigurationError,
    ConflictError,
    GatewayError,
    GatewayTimeout,
    NoNewAddons,
    NotFoundError,
    SignatureMismatch,
    ValidationError,
)
from .gateway import (
    BasePaymentGateway,
    GatewayOrder,
    GatewayPayment,
    GatewayRefund,
    RazorpayGateway,
    build_payment_gateway,
)
from .middleware import BillingRateLimiter, RateLimitResult, payment_rate_limit_subject
from .models import (
    AddonService,
    Base,
    BillingAuditLog,
    BillingPeriod,
    Payment,
    PaymentRefund,
    PaymentStatus,
    PaymentType,
    Plan,
    PlanPriceChange,
    Subscription,
    SubscriptionAddon,
    SubscriptionPaymentEvent,
    SubscriptionStatus,
    User,
)
from .orders import (
    OrderQuote,
    PlacedOrder,
    place_order,
    quote_addon_order,
    quote_subscription_order,
)
from .receipts import dispatch_payment_receipt
from .refunds import RefundOutcome, fetch_gateway_payment, refund_payment
from .repository import BillingRepository
from .seed import seed_default_catalog
from .subscriptions import (
    ActivationResult,
    activate_subscription,
    describe_subscription,
    get_current_subscription,
)
from .sweeper import expire_stale_payments, run_payment_maintenance
from .verification import (
    VerificationResult,
    compute_payment_signature,
    get_payment_status,
    process_gateway_webhook,
    verify_payment,
    verify_payment_signature,
    verify_webhook_signature,
)

__all__ = [
    "Base",
    "ENGINE",
    "SessionLocal",
    "User",
    "Plan",
    "PlanPriceChange",
    "AddonService",
    "Payment",
    "PaymentRefund",
    "Subscription",
    "SubscriptionAddon",
    "SubscriptionPaymentEvent",
    "BillingAuditLog",
    "BillingPeriod",
    "PaymentStatus",
    "PaymentType",
    "SubscriptionStatus",
    "BillingError",
    "ConfigurationError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "ActiveSubscriptionExists",
    "NoNewAddons",
    "AuthenticationRequired",
    "AdminRequired",
    "SignatureMismatch",
    "GatewayError",
    "GatewayTimeout",
    "AlreadyFinalized",
    "BillingRateLimiter",
    "RateLimitResult",
    "payment_rate_limit_subject",
    "BasePaymentGateway",
    "GatewayOrder",
    "GatewayPayment",
    "GatewayRefund",
    "RazorpayGateway",
    "build_payment_gateway",
    "BillingRepository",
    "OrderQuote",
    "PlacedOrder",
    "quote_subscription_order",
    "quote_addon_order",
    "place_order",
    "VerificationResult",
    "compute_payment_signature",
    "verify_payment_signature",
    "verify_webhook_signature",
    "verify_payment",
    "process_gateway_webhook",
    "get_payment_status",
    "ActivationResult",
    "activate_subscription",
    "describe_subscription",
    "get_current_subscription",
    "AddonMergeResult",
    "merge_addons",
    "expire_stale_payments",
    "run_payment_maintenance",
    "RefundOutcome",
    "refund_payment",
    "fetch_gateway_payment",
    "dispatch_payment_receipt",
    "seed_default_catalog",
    "build_session_factory",
    "init_billing_db",
    "session_scope",
]
