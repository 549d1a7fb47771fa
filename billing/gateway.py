from __future__ import annotations

import abc
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from config import get_gateway_settings
from observability import get_logger, log_event

from .errors import ConfigurationError, GatewayError, GatewayTimeout, ValidationError
from .pricing import from_minor_units, to_minor_units

LOGGER = get_logger("marketplace.billing.gateway")

_GATEWAY_ID_RE = re.compile(r"^[A-Za-z0-9_]{1,64}$")
_MAX_NOTES = 15
_MAX_NOTE_LENGTH = 256


@dataclass(frozen=True)
class GatewayOrder:
    """
    Normalized gateway order.

    Amounts are major-unit Decimals; the adapter converts to and from paise.
    """

    id: str
    amount: Decimal
    currency: str
    receipt: Optional[str] = None
    status: str = "created"
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayPayment:
    id: str
    status: str
    amount: Decimal
    currency: str
    order_id: Optional[str] = None
    method: Optional[str] = None
    created_at: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayRefund:
    id: str
    payment_id: str
    amount: Decimal
    currency: str
    status: str
    raw: Dict[str, Any] = field(default_factory=dict)


class BasePaymentGateway(abc.ABC):
    @property
    @abc.abstractmethod
    def name(self) -> str:
        raise NotImplementedError

    @property
    def key_id(self) -> str:
        """Public key id handed to the client checkout widget."""
        return ""

    @abc.abstractmethod
    def create_order(
        self,
        *,
        amount: Decimal,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, Any]] = None,
    ) -> GatewayOrder:
        raise NotImplementedError

    @abc.abstractmethod
    def fetch_payment(self, payment_id: str) -> GatewayPayment:
        raise NotImplementedError

    @abc.abstractmethod
    def refund(
        self,
        payment_id: str,
        *,
        amount: Optional[Decimal] = None,
        notes: Optional[Dict[str, Any]] = None,
    ) -> GatewayRefund:
        """Refund a captured payment. ``amount=None`` refunds the full remaining amount."""


def _require_gateway_id(value: str, label: str) -> str:
    normalized = str(value or "").strip()
    if not _GATEWAY_ID_RE.match(normalized):
        raise ValidationError(f"invalid {label}")
    return normalized


def _clean_notes(notes: Optional[Dict[str, Any]]) -> Dict[str, str]:
    cleaned: Dict[str, str] = {}
    for key, value in list((notes or {}).items())[:_MAX_NOTES]:
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            value = ",".join(str(item) for item in value)
        cleaned[str(key)] = str(value)[:_MAX_NOTE_LENGTH]
    return cleaned


def _error_description(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return "unexpected response"
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return str(error.get("description") or error.get("code") or "unknown error")[:200]
    return "unknown error"


class RazorpayGateway(BasePaymentGateway):
    def __init__(
        self,
        *,
        key_id: str,
        key_secret: str,
        api_base_url: str = "https://api.razorpay.com/v1",
        timeout_seconds: float = 20.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if not key_id or not key_secret:
            raise ConfigurationError("payment gateway is not configured")
        self._key_id = key_id
        self._key_secret = key_secret
        self._api_base_url = api_base_url.rstrip("/")
        self._timeout_seconds = float(timeout_seconds)
        self._transport = transport

    @property
    def name(self) -> str:
        return "razorpay"

    @property
    def key_id(self) -> str:
        return self._key_id

    def _request(self, method: str, path: str, *, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            with httpx.Client(
                base_url=self._api_base_url,
                auth=httpx.BasicAuth(self._key_id, self._key_secret),
                timeout=self._timeout_seconds,
                trust_env=False,
                transport=self._transport,
            ) as client:
                response = client.request(method, path, json=payload)
        except httpx.TimeoutException as exc:
            log_event(LOGGER, 40, "billing.gateway.timeout", method=method, path=path)
            raise GatewayTimeout(f"payment gateway timed out: {method} {path}") from exc
        except httpx.HTTPError as exc:
            log_event(LOGGER, 40, "billing.gateway.transport_error", method=method, path=path, error=exc.__class__.__name__)
            raise GatewayError(f"payment gateway unreachable: {exc.__class__.__name__}") from exc

        if response.status_code >= 400:
            description = _error_description(response)
            log_event(
                LOGGER,
                40,
                "billing.gateway.http_error",
                method=method,
                path=path,
                status_code=response.status_code,
                description=description,
            )
            raise GatewayError(
                f"payment gateway returned {response.status_code}: {description}",
                details={"gateway_status": response.status_code},
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayError("payment gateway returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise GatewayError("payment gateway returned an unexpected payload")
        return data

    def create_order(
        self,
        *,
        amount: Decimal,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, Any]] = None,
    ) -> GatewayOrder:
        data = self._request(
            "POST",
            "/orders",
            payload={
                "amount": to_minor_units(amount),
                "currency": str(currency).upper(),
                "receipt": receipt,
                "notes": _clean_notes(notes),
            },
        )
        order_id = str(data.get("id") or "").strip()
        if not order_id:
            raise GatewayError("payment gateway returned an order without id")
        return GatewayOrder(
            id=order_id,
            amount=from_minor_units(data.get("amount") or 0),
            currency=str(data.get("currency") or currency).upper(),
            receipt=data.get("receipt") or receipt,
            status=str(data.get("status") or "created"),
            raw=data,
        )

    def fetch_payment(self, payment_id: str) -> GatewayPayment:
        key = _require_gateway_id(payment_id, "payment id")
        data = self._request("GET", f"/payments/{key}")
        created_at = data.get("created_at")
        return GatewayPayment(
            id=str(data.get("id") or key),
            status=str(data.get("status") or "unknown"),
            amount=from_minor_units(data.get("amount") or 0),
            currency=str(data.get("currency") or "").upper(),
            order_id=data.get("order_id"),
            method=data.get("method"),
            created_at=int(created_at) if created_at is not None else None,
            raw=data,
        )

    def refund(
        self,
        payment_id: str,
        *,
        amount: Optional[Decimal] = None,
        notes: Optional[Dict[str, Any]] = None,
    ) -> GatewayRefund:
        key = _require_gateway_id(payment_id, "payment id")
        payload: Dict[str, Any] = {"notes": _clean_notes(notes)}
        if amount is not None:
            payload["amount"] = to_minor_units(amount)
        data = self._request("POST", f"/payments/{key}/refund", payload=payload)
        refund_id = str(data.get("id") or "").strip()
        if not refund_id:
            raise GatewayError("payment gateway returned a refund without id")
        return GatewayRefund(
            id=refund_id,
            payment_id=str(data.get("payment_id") or key),
            amount=from_minor_units(data.get("amount") or 0),
            currency=str(data.get("currency") or "").upper(),
            status=str(data.get("status") or "pending"),
            raw=data,
        )


def build_payment_gateway(settings: Optional[Dict[str, Any]] = None) -> BasePaymentGateway:
    """
    Gateway factory.

    Reads Razorpay credentials from config when ``settings`` is not given.
    Missing credentials are a configuration error; there is no offline mode.
    """

    resolved = settings if settings is not None else get_gateway_settings()
    key_id = str(resolved.get("key_id") or "").strip()
    key_secret = str(resolved.get("key_secret") or "").strip()
    if not key_id or not key_secret:
        raise ConfigurationError("payment gateway is not configured")
    return RazorpayGateway(
        key_id=key_id,
        key_secret=key_secret,
        api_base_url=str(resolved.get("api_base_url") or "https://api.razorpay.com/v1"),
        timeout_seconds=float(resolved.get("timeout_seconds") or 20.0),
    )
