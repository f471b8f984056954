"""
Billing provider client for Entitlements Service.

Speaks the provider's REST dialect (form-encoded requests, bearer API key,
list envelopes with a ``data`` array, epoch-second timestamps) and maps
every payload into the typed models before returning.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar

import httpx

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException, get_circuit_breaker
from shared.errors import OracleUnavailable
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, call_with_retry
from shared.tracing import add_span_attributes, trace_function
from ..resolver.models import BillingSubscription, CheckoutSession

T = TypeVar("T")

# Anything a mapper raises on a payload of the wrong shape
MAPPING_ERRORS = (KeyError, IndexError, TypeError, ValueError, AttributeError, OverflowError, OSError)


class RetryableProviderError(Exception):
    """Provider answered with a status worth retrying (5xx, 429)."""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"Provider returned {status_code}")
        self.status_code = status_code
        self.body = body


def _to_datetime(value: Any) -> Optional[datetime]:
    """Convert provider epoch seconds to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _ref_id(value: Any) -> Optional[str]:
    """Provider references may be a bare id or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _object_id(payload: Dict[str, Any]) -> str:
    value = payload["id"]
    if not isinstance(value, str) or not value:
        raise TypeError(f"object id must be a non-empty string, got {value!r}")
    return value


def _list_data(envelope: Dict[str, Any]) -> List[Dict[str, Any]]:
    items = envelope.get("data") or []
    if not isinstance(items, list):
        raise TypeError("list envelope without a data array")
    return items


def map_customer_id(envelope: Dict[str, Any]) -> Optional[str]:
    """First customer id of a customer list, or None when it is empty."""
    customers = _list_data(envelope)
    return _object_id(customers[0]) if customers else None


def map_subscription_list(envelope: Dict[str, Any]) -> List[BillingSubscription]:
    return [map_subscription(item) for item in _list_data(envelope)]


def map_subscription(payload: Dict[str, Any]) -> BillingSubscription:
    """Map a raw provider subscription into a BillingSubscription."""
    period_end = payload.get("current_period_end")
    if period_end is None:
        # Newer API versions carry the period on the subscription items
        items = (payload.get("items") or {}).get("data") or []
        ends = [item.get("current_period_end") for item in items if item.get("current_period_end")]
        period_end = max(ends) if ends else None

    return BillingSubscription(
        id=_object_id(payload),
        status=payload.get("status", ""),
        current_period_end=_to_datetime(period_end),
        customer_id=_ref_id(payload.get("customer")),
        created=_to_datetime(payload.get("created")),
        cancel_at=_to_datetime(payload.get("cancel_at")),
        trial_end=_to_datetime(payload.get("trial_end")),
        account_id=(payload.get("metadata") or {}).get("account_id"),
    )


def map_invoice_subscription_id(payload: Dict[str, Any]) -> Optional[str]:
    """Subscription an invoice bills for, if any."""
    subscription = payload.get("subscription")
    if subscription is None:
        details = (payload.get("parent") or {}).get("subscription_details") or {}
        subscription = details.get("subscription")
    return _ref_id(subscription)


def map_checkout_session(payload: Dict[str, Any]) -> CheckoutSession:
    """Map a raw provider checkout session into a CheckoutSession."""
    return CheckoutSession(
        id=_object_id(payload),
        url=payload.get("url"),
        customer_id=_ref_id(payload.get("customer")),
        subscription_id=_ref_id(payload.get("subscription")),
        client_reference_id=payload.get("client_reference_id"),
        status=payload.get("status"),
    )


class BillingOracleClient:
    """Client for the external billing provider."""

    def __init__(self,
                 api_url: str,
                 api_key: str,
                 price_id: str,
                 success_url: str,
                 cancel_url: str,
                 checkout_trial_days: int = 30,
                 timeout: float = 10.0,
                 retry_config: Optional[RetryConfig] = None,
                 circuit_breaker: Optional[CircuitBreaker] = None,
                 metrics: Optional[MetricsCollector] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = api_url.rstrip('/')
        self.api_key = api_key
        self.price_id = price_id
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.checkout_trial_days = checkout_trial_days
        self.timeout = timeout
        self.metrics = metrics
        self.transport = transport
        self.logger = get_logger("entitlements.billing.client")

        self.retry_config = retry_config or RetryConfig(
            max_attempts=3,
            base_delay=0.5,
            max_delay=5.0,
            exponential_base=2.0,
            jitter=True
        )

        self.circuit_breaker = circuit_breaker or get_circuit_breaker(
            "billing_provider",
            failure_threshold=5,
            recovery_timeout=30.0,
            expected_exception=RetryError
        )

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    @trace_function("billing.find_customer")
    async def find_customer(self, email: str) -> Optional[str]:
        """Return the provider customer id for an email, or None."""
        customer_id = await self._request(
            "find_customer", "GET", "/v1/customers", map_customer_id,
            params={"email": email, "limit": 1}
        )
        add_span_attributes(customer_found=customer_id is not None)
        return customer_id

    @trace_function("billing.create_customer")
    async def create_customer(self, email: str, account_id: str) -> str:
        """Create a provider customer tagged with the account id."""
        return await self._request(
            "create_customer", "POST", "/v1/customers", _object_id,
            data={"email": email, "metadata[account_id]": account_id}
        )

    @trace_function("billing.list_active_subscriptions")
    async def list_active_subscriptions(self, customer_id: str) -> List[BillingSubscription]:
        """List the customer's subscriptions the provider reports as active."""
        subscriptions = await self._request(
            "list_active_subscriptions", "GET", "/v1/subscriptions", map_subscription_list,
            params={"customer": customer_id, "status": "active", "limit": 100}
        )
        add_span_attributes(subscription_count=len(subscriptions))
        return subscriptions

    @trace_function("billing.get_subscription")
    async def get_subscription(self, subscription_id: str) -> Optional[BillingSubscription]:
        """Read one subscription; None when the provider does not know it."""
        return await self._request(
            "get_subscription", "GET", f"/v1/subscriptions/{subscription_id}", map_subscription,
            allow_missing=True
        )

    @trace_function("billing.cancel_subscription")
    async def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> BillingSubscription:
        """Cancel now, or schedule cancellation for the end of the current period."""
        path = f"/v1/subscriptions/{subscription_id}"
        if at_period_end:
            return await self._request(
                "cancel_subscription", "POST", path, map_subscription,
                data={"cancel_at_period_end": "true"}
            )
        return await self._request("cancel_subscription", "DELETE", path, map_subscription)

    @trace_function("billing.create_checkout_session")
    async def create_checkout_session(self, customer_id: str, account_id: str, with_trial: bool) -> CheckoutSession:
        """Start a subscription checkout for the customer."""
        form = {
            "mode": "subscription",
            "customer": customer_id,
            "client_reference_id": account_id,
            "line_items[0][price]": self.price_id,
            "line_items[0][quantity]": "1",
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
            "subscription_data[metadata][account_id]": account_id,
        }
        if with_trial and self.checkout_trial_days > 0:
            form["subscription_data[trial_period_days]"] = str(self.checkout_trial_days)

        return await self._request(
            "create_checkout_session", "POST", "/v1/checkout/sessions", map_checkout_session, data=form
        )

    @trace_function("billing.get_checkout_session")
    async def get_checkout_session(self, session_id: str) -> Optional[CheckoutSession]:
        """Read a checkout session; None when unknown."""
        return await self._request(
            "get_checkout_session", "GET", f"/v1/checkout/sessions/{session_id}", map_checkout_session,
            allow_missing=True
        )

    async def _request(self,
                       operation: str,
                       method: str,
                       path: str,
                       mapper: Callable[[Any], T],
                       params: Optional[Dict[str, Any]] = None,
                       data: Optional[Dict[str, Any]] = None,
                       allow_missing: bool = False) -> Optional[T]:
        """Execute a provider call with retry, circuit breaker and error mapping.

        The mapped result is returned; a payload the mapper cannot read is
        reported as OracleUnavailable like any other provider fault.
        """
        url = f"{self.base_url}{path}"

        async def _send():
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(method, url, params=params, data=data, headers=self._headers)

            if response.status_code == 404 and allow_missing:
                return None

            if response.status_code >= 500 or response.status_code == 429:
                raise RetryableProviderError(response.status_code, response.text)

            if response.status_code >= 400:
                self.logger.error(
                    "Billing provider rejected request",
                    operation=operation,
                    status_code=response.status_code,
                    response=response.text
                )
                raise OracleUnavailable(
                    message=f"Billing provider returned {response.status_code}",
                    details={"operation": operation, "status_code": response.status_code}
                )

            return response.json()

        try:
            result = await self.circuit_breaker.call(
                call_with_retry,
                _send,
                exceptions=(httpx.TransportError, RetryableProviderError),
                config=self.retry_config
            )
        except OracleUnavailable:
            self._record(operation, "rejected")
            raise
        except CircuitBreakerOpenException as exc:
            self._record(operation, "circuit_open")
            raise OracleUnavailable(
                message="Billing provider circuit open",
                details={"operation": operation}
            ) from exc
        except RetryError as exc:
            self._record(operation, "error")
            self.logger.error("Billing provider unreachable", operation=operation, error=str(exc.last_exception))
            raise OracleUnavailable(
                message=str(exc.last_exception),
                details={"operation": operation, "attempts": exc.attempts}
            ) from exc
        except ValueError as exc:
            raise self._malformed(operation, exc) from exc

        if result is None:
            self._record(operation, "success")
            return None

        try:
            mapped = mapper(result)
        except MAPPING_ERRORS as exc:
            raise self._malformed(operation, exc) from exc

        self._record(operation, "success")
        return mapped

    def _malformed(self, operation: str, exc: Exception) -> OracleUnavailable:
        self._record(operation, "malformed")
        self.logger.error(
            "Billing provider returned malformed payload",
            operation=operation,
            error=str(exc) or type(exc).__name__
        )
        return OracleUnavailable(
            message="Billing provider returned malformed payload",
            details={"operation": operation}
        )

    def _record(self, operation: str, outcome: str):
        if self.metrics:
            self.metrics.increment_counter("billing_oracle_calls_total", operation=operation, outcome=outcome)
