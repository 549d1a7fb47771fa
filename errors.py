from typing import Dict

ERROR_CODE_MAP: Dict[str, Dict[str, str]] = {
    "GATEWAY_NOT_CONFIGURED": {
        "message": "Payment gateway is not configured",
        "hint": "Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET for this environment.",
    },
    "GATEWAY_ERROR": {
        "message": "Payment gateway request failed",
        "hint": "Retry shortly. No payment was recorded for this request.",
    },
    "GATEWAY_TIMEOUT": {
        "message": "Payment gateway did not respond in time",
        "hint": "The outcome is unknown. Check the payment status before retrying.",
    },
    "VALIDATION_FAILED": {
        "message": "Request validation failed",
        "hint": "Check plan, add-on and billing cycle values.",
    },
    "NOT_FOUND": {
        "message": "Resource not found",
        "hint": "Check the identifier and that it belongs to your account.",
    },
    "CONFLICT": {
        "message": "Request conflicts with current state",
        "hint": "Reload the current subscription and retry.",
    },
    "ACTIVE_SUBSCRIPTION_EXISTS": {
        "message": "An active subscription already exists",
        "hint": "Wait for the current subscription to end or purchase add-ons instead.",
    },
    "NO_NEW_ADDONS": {
        "message": "All selected addons are already active",
        "hint": "Select at least one add-on that is not already part of the subscription.",
    },
    "SIGNATURE_MISMATCH": {
        "message": "Payment signature verification failed",
        "hint": "Submit the order id, payment id and signature exactly as returned by the gateway.",
    },
    "PAYMENT_ALREADY_FINALIZED": {
        "message": "Payment is no longer pending",
        "hint": "The payment expired or failed. Create a new order.",
    },
    "RATE_LIMITED": {
        "message": "Too many payment requests",
        "hint": "Wait for Retry-After seconds before retrying.",
    },
    "NOT_ADMIN": {
        "message": "Admin role required",
        "hint": "Only admin and superadmin accounts can call this endpoint.",
    },
    "UNAUTHORIZED": {
        "message": "Authentication required",
        "hint": "Send a valid Bearer token.",
    },
    "INTERNAL_SERVER_ERROR": {
        "message": "internal server error",
        "hint": "Check the server logs with the trace id.",
    },
}


def explain_error(code: str | None) -> Dict[str, str] | None:
    if not code:
        return None
    return ERROR_CODE_MAP.get(code)
