"""Minimal Stripe REST connector.

Only the handful of endpoints the reconciliation pipeline needs are
wrapped: customer, charge and payment intent retrieval plus subscription
creation.  Requests are synchronous (``requests``); async callers run them
with :func:`asyncio.to_thread`.

The connector is a lazily created process-lifetime singleton obtained via
:func:`get_stripe_client`.  Tests replace it with :func:`set_stripe_client`.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import requests
import structlog

from payrecon.config import StripeSettings, get_stripe_settings
from payrecon.errors import StripeAPIError, StripeConfigurationError

logger = structlog.get_logger(__name__)

_client: Optional["StripeClient"] = None
_client_lock = threading.Lock()


def _flatten_params(params: Mapping[str, Any], prefix: str = "") -> Iterable[Tuple[str, str]]:
    """Encode nested dicts/lists using Stripe's bracket form convention."""

    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, Mapping):
            yield from _flatten_params(value, name)
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                if isinstance(item, Mapping):
                    yield from _flatten_params(item, f"{name}[{index}]")
                else:
                    yield f"{name}[]", str(item)
        elif isinstance(value, bool):
            yield name, "true" if value else "false"
        else:
            yield name, str(value)


class StripeClient:
    """Thin wrapper over the Stripe REST API with bounded retries."""

    def __init__(
        self,
        settings: StripeSettings,
        *,
        session: Optional[requests.Session] = None,
        sleep=time.sleep,
    ) -> None:
        if not settings.is_configured:
            raise StripeConfigurationError("STRIPE_SECRET_KEY is not configured")
        self.settings = settings
        self._session = session or requests.Session()
        self._session.auth = (settings.secret_key or "", "")
        self._sleep = sleep

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.settings.api_base}/{path.lstrip('/')}"
        encoded = list(_flatten_params(params or {}))
        attempts = max(0, self.settings.max_retries) + 1
        last_error: Optional[StripeAPIError] = None
        for attempt in range(attempts):
            try:
                resp = self._session.request(
                    method,
                    url,
                    params=encoded if method == "GET" else None,
                    data=encoded if method != "GET" else None,
                    timeout=self.settings.timeout_seconds,
                )
            except requests.RequestException as exc:
                last_error = StripeAPIError(f"Stripe request failed: {exc}")
            else:
                if resp.status_code < 400:
                    payload = resp.json()
                    return payload if isinstance(payload, dict) else {}
                last_error = StripeAPIError(
                    _error_message(resp), status_code=resp.status_code
                )
            if not last_error.retryable or attempt == attempts - 1:
                break
            delay = self.settings.backoff_seconds * (2 ** attempt)
            logger.warning(
                "stripe_request_retry",
                path=path,
                attempt=attempt + 1,
                status_code=last_error.status_code,
                delay=delay,
            )
            self._sleep(delay)
        assert last_error is not None
        raise last_error

    def retrieve_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """Return the customer object, or ``None`` when missing or deleted."""

        try:
            customer = self._request("GET", f"customers/{customer_id}")
        except StripeAPIError as exc:
            if exc.not_found:
                return None
            raise
        if customer.get("deleted"):
            return None
        return customer

    def retrieve_charge(self, charge_id: str) -> Dict[str, Any]:
        return self._request("GET", f"charges/{charge_id}", {"expand": ["refunds"]})

    def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return self._request(
            "GET", f"payment_intents/{payment_intent_id}", {"expand": ["latest_charge"]}
        )

    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        *,
        trial_days: Optional[int] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "metadata": dict(metadata or {}),
        }
        if trial_days:
            params["trial_period_days"] = trial_days
        return self._request("POST", "subscriptions", params)


def _error_message(resp: requests.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return f"Stripe returned HTTP {resp.status_code}"
    error = payload.get("error") if isinstance(payload, Mapping) else None
    if isinstance(error, Mapping) and error.get("message"):
        return str(error["message"])
    return f"Stripe returned HTTP {resp.status_code}"


def get_stripe_client() -> StripeClient:
    """Return the shared :class:`StripeClient`, creating it on first use.

    Raises :class:`StripeConfigurationError` when no secret key is set.
    """

    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = StripeClient(get_stripe_settings())
    return _client


def set_stripe_client(client: Optional[StripeClient]) -> None:
    """Override (or clear with ``None``) the shared client."""

    global _client
    with _client_lock:
        _client = client


__all__ = ["StripeClient", "get_stripe_client", "set_stripe_client"]
