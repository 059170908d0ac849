import asyncio
import functools
import hashlib
import hmac
import random
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
import httpx
from backend.common.circuit_breaker import CircuitBreaker, CircuitOpenError, gateway_circuit
from backend.common.errors import GatewayUnavailable
from backend.common.utils import from_centavos, to_centavos
from backend.config.settings import config_settings
from backend.payments.constants import DEFAULT_BACKOFF_BASE, GATEWAY_PAID_STATUS, MAX_BACKOFF, logger

TRANSIENT_EXCEPTIONS = (httpx.ConnectError, httpx.ReadTimeout, httpx.WriteTimeout, httpx.PoolTimeout,
                        httpx.RemoteProtocolError, httpx.NetworkError)


def retry_gateway(*, max_retries: Optional[int] = None, backoff_base: float = DEFAULT_BACKOFF_BASE,
                  circuit: CircuitBreaker = gateway_circuit):
    """Retry transient transport errors and 5xx answers; 4xx is final.

    Anything that does not end in a response surfaces as GatewayUnavailable.
    """

    def deco(fn: Callable):
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            retries = max_retries or config_settings.GATEWAY_MAX_RETRIES
            last_exc: Optional[BaseException] = None

            for attempt in range(1, retries + 1):
                try:
                    await circuit.before_call()
                except CircuitOpenError as exc:
                    raise GatewayUnavailable("payment gateway temporarily unavailable", circuit=circuit.name) from exc

                try:
                    result = await fn(*args, **kwargs)
                    await circuit.record_success()
                    return result
                except TRANSIENT_EXCEPTIONS as exc:
                    last_exc = exc
                    await circuit.record_failure()
                    logger.warning("paymongo.transient_error", extra={"attempt": attempt, "error": str(exc)})
                except httpx.HTTPStatusError as exc:
                    status_code = exc.response.status_code
                    if status_code < 500:
                        logger.warning("paymongo.rejected", extra={"status_code": status_code, "body": exc.response.text[:500]})
                        raise GatewayUnavailable("payment gateway rejected the request",
                                                 status_code=status_code) from exc
                    last_exc = exc
                    await circuit.record_failure()
                    logger.warning("paymongo.server_error", extra={"attempt": attempt, "status_code": status_code})

                if attempt < retries:
                    delay = min(MAX_BACKOFF, backoff_base * (2 ** (attempt - 1)))
                    await asyncio.sleep(delay + random.uniform(0, delay / 4))

            logger.error("paymongo.retries_exhausted", extra={"attempts": retries, "error": str(last_exc)})
            raise GatewayUnavailable("payment gateway unavailable", attempts=retries) from last_exc

        return wrapper
    return deco


class PayMongoClient:
    """Thin async client for the PayMongo checkout session API."""

    def __init__(self, secret_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.secret_key = config_settings.PAYMONGO_SECRET_KEY if secret_key is None else secret_key
        self.base_url = (base_url or config_settings.PAYMONGO_API_URL).rstrip("/")
        self.timeout = timeout or config_settings.GATEWAY_TIMEOUT_SECONDS
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            auth=(self.secret_key, ""),
            headers={"Accept": "application/json"},
            transport=self.transport,
        )

    @retry_gateway()
    async def create_checkout_session(self, *, line_items: List[Dict[str, Any]], reference_number: str,
                                      description: str, success_url: str, cancel_url: str,
                                      metadata: Optional[Dict[str, Any]] = None,
                                      payment_method_types: Optional[List[str]] = None) -> Dict[str, Any]:
        payload = {
            "data": {
                "attributes": {
                    "line_items": line_items,
                    "payment_method_types": payment_method_types or payment_methods(),
                    "reference_number": reference_number,
                    "description": description,
                    "success_url": success_url,
                    "cancel_url": cancel_url,
                    "send_email_receipt": False,
                    "show_line_items": True,
                    "metadata": metadata or {},
                }
            }
        }
        async with self._client() as client:
            resp = await client.post("/checkout_sessions", json=payload)
            resp.raise_for_status()
            return resp.json()

    @retry_gateway()
    async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        async with self._client() as client:
            resp = await client.get(f"/checkout_sessions/{session_id}")
            resp.raise_for_status()
            return resp.json()


def payment_methods() -> List[str]:
    return [m.strip() for m in config_settings.PAYMENT_METHOD_TYPES.split(",") if m.strip()]


def line_item(name: str, amount: Decimal, quantity: int = 1, currency: Optional[str] = None) -> Dict[str, Any]:
    return {
        "name": name,
        "amount": to_centavos(amount),
        "currency": currency or config_settings.CURRENCY,
        "quantity": int(quantity),
    }


# ---------------------------------------------------------------------------------------------------------
# signature & payload parsing

def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature:
        return False
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected, signature.strip().lower())


def event_id(payload: Dict[str, Any]) -> Optional[str]:
    data = payload.get("data")
    if isinstance(data, dict):
        return data.get("id")
    return None


def event_type(payload: Dict[str, Any]) -> Optional[str]:
    return ((payload.get("data") or {}).get("attributes") or {}).get("type")


def event_resource(payload: Dict[str, Any]) -> Dict[str, Any]:
    """The object the event is about (a checkout session or a payment)."""
    return (((payload.get("data") or {}).get("attributes") or {}).get("data")) or {}


def session_attributes(resource: Dict[str, Any]) -> Dict[str, Any]:
    return resource.get("attributes") or {}


def session_payments(resource: Dict[str, Any]) -> List[Dict[str, Any]]:
    return list(session_attributes(resource).get("payments") or [])


def paid_amount(resource: Dict[str, Any]) -> Decimal:
    """Sum of paid payments in a checkout session, in pesos."""
    total = Decimal("0.00")
    for p in session_payments(resource):
        attrs = p.get("attributes") or {}
        if attrs.get("status") == GATEWAY_PAID_STATUS:
            total += from_centavos(attrs.get("amount"))
    return total


def first_paid_payment_id(resource: Dict[str, Any]) -> Optional[str]:
    for p in session_payments(resource):
        if (p.get("attributes") or {}).get("status") == GATEWAY_PAID_STATUS:
            return p.get("id")
    return None


def correlation_ids(resource: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """Checkout session id and reference number for order lookup.

    Checkout session events carry the session itself; bare payment events point
    back to it through metadata.
    """
    attrs = session_attributes(resource)
    metadata = attrs.get("metadata") or {}
    if resource.get("type") == "checkout_session" or str(resource.get("id", "")).startswith("cs_"):
        session_id = resource.get("id")
    else:
        session_id = metadata.get("checkout_session_id")
    reference = attrs.get("reference_number") or metadata.get("reference_number") or metadata.get("order_reference")
    return {"session_id": session_id, "reference": reference}


def single_payment_amount(resource: Dict[str, Any]) -> Decimal:
    """Amount of a bare payment resource (payment.paid events)."""
    return from_centavos(session_attributes(resource).get("amount"))
