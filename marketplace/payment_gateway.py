"""Hosted payment provider adapter (Paymob Accept).

Flow: authenticate -> create order -> create payment key -> buyer completes
payment in the provider iframe -> provider POSTs a signed callback to
``/payments/webhook``.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from prometheus_client import Counter

from .config import settings
from .errors import PaymentGatewayRejected, PaymentGatewayUnavailable


logger = logging.getLogger("marketplace.gateway")

GATEWAY_CALLS = Counter(
    "marketplace_gateway_calls_total",
    "Payment provider calls",
    ["op", "result"],  # result: ok|unavailable|rejected|mock
)

IFRAME_URL = "https://accept.paymob.com/api/acceptance/iframes/{iframe_id}?payment_token={token}"

# Order matters: the provider signs the concatenation of these fields
HMAC_FIELDS = (
    "amount_cents",
    "created_at",
    "currency",
    "error_occured",
    "has_parent_transaction",
    "id",
    "integration_id",
    "is_3d_secure",
    "is_auth",
    "is_capture",
    "is_refunded",
    "is_standalone_payment",
    "is_voided",
    "order.id",
    "owner",
    "pending",
    "source_data.pan",
    "source_data.sub_type",
    "source_data.type",
    "success",
)


@dataclass
class BuyerInfo:
    phone: str
    name: Optional[str] = None
    email: Optional[str] = None


@dataclass
class PaymentKeyResult:
    order_id: str
    payment_key: str
    iframe_url: str


def _count(op: str, result: str) -> None:
    try:
        GATEWAY_CALLS.labels(op, result).inc()
    except Exception:
        pass


def _field(payload: Dict[str, Any], path: str) -> str:
    val: Any = payload
    for key in path.split("."):
        if isinstance(val, dict):
            val = val.get(key)
        elif path == "order.id":
            # "order" may arrive as a bare id rather than an object
            break
        else:
            val = None
            break
    if val is None:
        return ""
    if isinstance(val, bool):
        return "true" if val else "false"
    return str(val)


def signature_string(payload: Dict[str, Any]) -> str:
    return "".join(_field(payload, f) for f in HMAC_FIELDS)


def sign_payload(payload: Dict[str, Any], secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), signature_string(payload).encode("utf-8"), hashlib.sha512).hexdigest()


class _Unauthorized(Exception):
    pass


class PaymobGateway:
    def __init__(
        self,
        *,
        api_base: Optional[str] = None,
        api_key: Optional[str] = None,
        integration_id: Optional[int] = None,
        iframe_id: Optional[str] = None,
        hmac_secret: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_base = (api_base or settings.PAYMOB_API_BASE).rstrip("/")
        self.api_key = settings.PAYMOB_API_KEY if api_key is None else api_key
        self.integration_id = settings.PAYMOB_INTEGRATION_ID if integration_id is None else integration_id
        self.iframe_id = settings.PAYMOB_IFRAME_ID if iframe_id is None else iframe_id
        self.hmac_secret = settings.PAYMOB_HMAC_SECRET if hmac_secret is None else hmac_secret
        self.timeout = timeout or settings.PAYMOB_TIMEOUT_SECS
        self._transport = transport
        self._token: Optional[str] = None
        self._token_fetched_at = 0.0
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.integration_id)

    def _post(self, op: str, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                r = client.post(f"{self.api_base}{path}", json=body)
        except httpx.HTTPError as e:
            _count(op, "unavailable")
            logger.warning("paymob %s transport error: %s", op, e)
            raise PaymentGatewayUnavailable(details={"op": op})
        if r.status_code == 401:
            raise _Unauthorized()
        if r.status_code >= 500 or r.status_code == 429:
            _count(op, "unavailable")
            logger.warning("paymob %s returned %s", op, r.status_code)
            raise PaymentGatewayUnavailable(details={"op": op, "status": r.status_code})
        if r.status_code >= 400:
            _count(op, "rejected")
            logger.warning("paymob %s rejected with %s: %s", op, r.status_code, r.text[:200])
            raise PaymentGatewayRejected(details={"op": op, "status": r.status_code})
        try:
            data = r.json()
        except ValueError:
            _count(op, "unavailable")
            raise PaymentGatewayUnavailable("Malformed provider response", details={"op": op})
        _count(op, "ok")
        return data

    def authenticate(self, *, force: bool = False) -> str:
        ttl = settings.PAYMOB_TOKEN_TTL_SECS - settings.PAYMOB_TOKEN_REFRESH_MARGIN_SECS
        with self._lock:
            if not force and self._token and time.monotonic() - self._token_fetched_at < ttl:
                return self._token
            try:
                data = self._post("auth", "/auth/tokens", {"api_key": self.api_key})
            except _Unauthorized:
                _count("auth", "rejected")
                raise PaymentGatewayRejected("Provider refused the API key", details={"op": "auth", "status": 401})
            token = data.get("token")
            if not token:
                raise PaymentGatewayUnavailable("Provider returned no token", details={"op": "auth"})
            self._token = token
            self._token_fetched_at = time.monotonic()
            return token

    def invalidate_token(self) -> None:
        with self._lock:
            self._token = None
            self._token_fetched_at = 0.0

    def _authorized_post(self, op: str, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        token = self.authenticate()
        try:
            return self._post(op, path, {"auth_token": token, **body})
        except _Unauthorized:
            logger.info("paymob token rejected on %s, re-authenticating", op)
            self.invalidate_token()
        token = self.authenticate(force=True)
        try:
            return self._post(op, path, {"auth_token": token, **body})
        except _Unauthorized:
            _count(op, "rejected")
            raise PaymentGatewayRejected(details={"op": op, "status": 401})

    def create_order_and_payment_key(self, amount_cents: int, buyer: BuyerInfo) -> PaymentKeyResult:
        if not self.enabled:
            if not settings.DEV_MODE:
                raise PaymentGatewayUnavailable("Payment provider not configured")
            _count("order", "mock")
            order_id = f"mock_order_{uuid.uuid4().hex[:12]}"
            return PaymentKeyResult(
                order_id=order_id,
                payment_key="mock_payment_key_dev",
                iframe_url=IFRAME_URL.format(iframe_id=self.iframe_id, token="mock"),
            )

        order = self._authorized_post("order", "/ecommerce/orders", {
            "delivery_needed": False,
            "amount_cents": amount_cents,
            "currency": settings.DEFAULT_CURRENCY,
            "items": [],
        })
        order_id = order.get("id")
        if order_id is None:
            raise PaymentGatewayUnavailable("Provider returned no order id", details={"op": "order"})

        parts = (buyer.name or "Marketplace User").split(" ")
        first, last = parts[0] or "N/A", " ".join(parts[1:]) or "User"
        key = self._authorized_post("payment_key", "/acceptance/payment_keys", {
            "amount_cents": amount_cents,
            "expiration": settings.PAYMOB_PAYMENT_KEY_EXPIRY_SECS,
            "order_id": str(order_id),
            "billing_data": {
                "first_name": first,
                "last_name": last,
                "email": buyer.email or "notprovided@example.com",
                "phone_number": buyer.phone,
                "apartment": "N/A",
                "floor": "N/A",
                "street": "N/A",
                "building": "N/A",
                "shipping_method": "PKG",
                "postal_code": "N/A",
                "city": "Cairo",
                "country": "EG",
                "state": "Cairo",
            },
            "currency": settings.DEFAULT_CURRENCY,
            "integration_id": self.integration_id,
        })
        payment_key = key.get("token")
        if not payment_key:
            raise PaymentGatewayUnavailable("Provider returned no payment key", details={"op": "payment_key"})
        logger.info("paymob order %s created for %s cents", order_id, amount_cents)
        return PaymentKeyResult(
            order_id=str(order_id),
            payment_key=payment_key,
            iframe_url=IFRAME_URL.format(iframe_id=self.iframe_id, token=payment_key),
        )

    def verify_webhook_signature(self, payload: Dict[str, Any], signature: Optional[str]) -> bool:
        if not self.hmac_secret:
            # Unsigned callbacks are only tolerated in dev
            return settings.DEV_MODE
        if not signature:
            return False
        expected = sign_payload(payload, self.hmac_secret)
        return hmac.compare_digest(expected, signature.lower())


_gateway: Optional[PaymobGateway] = None
_gateway_lock = threading.Lock()


def get_gateway() -> PaymobGateway:
    global _gateway
    with _gateway_lock:
        if _gateway is None:
            _gateway = PaymobGateway()
        return _gateway


def set_gateway(gateway: Optional[PaymobGateway]) -> None:
    global _gateway
    with _gateway_lock:
        _gateway = gateway
