from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List

import stripe

from reconciler.core.errors import MalformedEvent, ProviderUnavailable, ReconciliationError
from reconciler.core.settings import S

logger = logging.getLogger(__name__)

SUBSCRIPTION_EXPAND = [
    "items.data.price.product",
    "default_payment_method",
    "discounts",
]


def plain(obj: Any) -> Dict[str, Any]:
    """Turn a StripeObject (or a plain mapping) into a plain dict."""
    if obj is None:
        return {}
    if isinstance(obj, stripe.StripeObject):
        return obj.to_dict()
    return dict(obj)


class StripeProvider:
    """Read/cancel calls against Stripe, with errors mapped to retryability."""

    def __init__(
        self,
        api_key: str = S.stripe_secret_key,
        api_version: str = S.stripe_api_version,
        max_network_retries: int = S.stripe_max_network_retries,
    ):
        self.api_key = api_key
        self.api_version = api_version
        self.max_network_retries = max_network_retries

    def ensure_configured(self) -> None:
        if not self.api_key:
            raise ReconciliationError(
                "Stripe is not configured",
                code="provider_not_configured",
                status_code=501,
                retryable=False,
            )
        stripe.api_key = self.api_key
        stripe.max_network_retries = self.max_network_retries
        if self.api_version:
            stripe.api_version = self.api_version

    @contextmanager
    def _call(self, what: str, object_id: str) -> Iterator[None]:
        self.ensure_configured()
        try:
            yield
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "code", None) == "resource_missing" or exc.http_status == 404:
                raise MalformedEvent(f"Stripe has no {what} {object_id!r}") from exc
            raise MalformedEvent(
                f"Stripe rejected {what} request: {exc.user_message or exc}",
                details={"object_id": object_id, "stripe_code": getattr(exc, "code", None)},
            ) from exc
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as exc:
            logger.warning("stripe call failed", extra={"what": what, "object_id": object_id, "error": str(exc)})
            raise ProviderUnavailable(f"Stripe unavailable while fetching {what}") from exc
        except stripe.StripeError as exc:
            raise ProviderUnavailable(f"Stripe error while fetching {what}: {exc}") from exc

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        with self._call("subscription", subscription_id):
            return plain(stripe.Subscription.retrieve(subscription_id, expand=SUBSCRIPTION_EXPAND))

    def retrieve_invoice(self, invoice_id: str) -> Dict[str, Any]:
        with self._call("invoice", invoice_id):
            return plain(stripe.Invoice.retrieve(invoice_id, expand=["discounts"]))

    def retrieve_payment_method(self, payment_method_id: str) -> Dict[str, Any]:
        with self._call("payment_method", payment_method_id):
            return plain(stripe.PaymentMethod.retrieve(payment_method_id))

    def list_customer_subscriptions(self, customer_id: str) -> List[Dict[str, Any]]:
        with self._call("customer subscriptions", customer_id):
            resp = plain(stripe.Subscription.list(customer=customer_id, status="all", limit=20))
        return list(resp.get("data") or [])

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        with self._call("subscription", subscription_id):
            stripe.Subscription.cancel(subscription_id)
        # Re-read with expansions so the snapshot has product and card detail
        return self.retrieve_subscription(subscription_id)
