from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import stripe

from reconciler.core.errors import ReconciliationError, Unauthenticated
from reconciler.core.settings import S


class EventCategory(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAID = "invoice_paid"
    INVOICE_FAILED = "invoice_failed"
    PAYMENT_METHOD_ATTACHED = "payment_method_attached"


EVENT_CATEGORIES: Dict[str, EventCategory] = {
    "checkout.session.completed": EventCategory.CHECKOUT_COMPLETED,
    "customer.subscription.created": EventCategory.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventCategory.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventCategory.SUBSCRIPTION_DELETED,
    "invoice.payment_succeeded": EventCategory.INVOICE_PAID,
    "invoice.paid": EventCategory.INVOICE_PAID,
    "invoice.payment_failed": EventCategory.INVOICE_FAILED,
    "payment_method.attached": EventCategory.PAYMENT_METHOD_ATTACHED,
}


@dataclass(frozen=True)
class ProviderEvent:
    id: str
    type: str
    data_object: Dict[str, Any] = field(default_factory=dict)
    created: Optional[int] = None
    livemode: bool = False

    @property
    def category(self) -> Optional[EventCategory]:
        return classify(self.type)


def classify(event_type: str) -> Optional[EventCategory]:
    return EVENT_CATEGORIES.get(event_type)


def verify_event(
    payload: bytes,
    sig_header: Optional[str],
    secret: str = S.stripe_webhook_secret,
    tolerance: int = S.stripe_webhook_tolerance_seconds,
) -> ProviderEvent:
    """Check the Stripe-Signature header and parse the envelope.

    The HMAC comparison is done by stripe's WebhookSignature, which compares
    in constant time.
    """
    if not secret:
        raise ReconciliationError(
            "Stripe webhook secret not configured",
            code="webhook_not_configured",
            status_code=501,
            retryable=False,
        )
    if not sig_header:
        raise Unauthenticated("Missing Stripe-Signature header")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise Unauthenticated("Webhook payload is not UTF-8") from exc

    try:
        stripe.WebhookSignature.verify_header(body, sig_header, secret, tolerance)
    except (stripe.SignatureVerificationError, ValueError, IndexError) as exc:
        raise Unauthenticated(f"Invalid webhook signature: {exc}") from exc

    try:
        envelope = json.loads(body)
    except ValueError as exc:
        raise Unauthenticated("Webhook payload is not valid JSON") from exc

    if not isinstance(envelope, dict):
        raise Unauthenticated("Webhook payload is not an event object")
    event_id = envelope.get("id")
    event_type = envelope.get("type")
    if not isinstance(event_id, str) or not event_id or not isinstance(event_type, str) or not event_type:
        raise Unauthenticated("Webhook payload is missing id or type")

    data_object = (envelope.get("data") or {}).get("object") or {}
    if not isinstance(data_object, dict):
        raise Unauthenticated("Webhook payload has no data object")

    created = envelope.get("created")
    return ProviderEvent(
        id=event_id,
        type=event_type,
        data_object=data_object,
        created=int(created) if isinstance(created, (int, float)) else None,
        livemode=bool(envelope.get("livemode", False)),
    )
