"""Per-category reconciliation handlers.

Each handler re-fetches the authoritative subscription (and invoice, where the
category involves one) from the provider and derives the new snapshot and
history item from that, so the result does not depend on the order in which
events arrive.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

from reconciler.core.errors import MalformedEvent, OwnerNotFound
from reconciler.core.time import to_iso, utcnow
from reconciler.models import CardInfo, SubscriptionHistoryItem, SubscriptionSnapshot, TaxData
from reconciler.services.entitlement import snapshot_entitles
from reconciler.services.owners import EntityResolver, OwnerRef
from reconciler.services.stripe_events import EventCategory, ProviderEvent

HISTORY_NAMESPACE = uuid.UUID("6f1d3c2e-5b0a-4a39-9a57-1f0e8e3c2b71")


@dataclass
class Reconciliation:
    owner: OwnerRef
    snapshot: Optional[SubscriptionSnapshot] = None
    history_item: Optional[SubscriptionHistoryItem] = None
    card_info: Optional[CardInfo] = None
    entitled: Optional[bool] = None


def _id(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return None


def _int(value: Any) -> int:
    if value is None or value == "":
        return 0
    return int(value)


def _items(subscription: Dict[str, Any]) -> List[Dict[str, Any]]:
    return list((subscription.get("items") or {}).get("data") or [])


def subscription_period(subscription: Dict[str, Any]) -> tuple[Optional[str], Optional[str]]:
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        # Newer API versions carry the billing period per subscription item
        items = _items(subscription)
        if items:
            start = start if start is not None else items[0].get("current_period_start")
            end = end if end is not None else items[0].get("current_period_end")
    return to_iso(start), to_iso(end)


def subscription_price(subscription: Dict[str, Any]) -> tuple[str, str, int]:
    """Returns (price_id, display name, subtotal in minor units)."""
    items = _items(subscription)
    if not items:
        plan = subscription.get("plan") or {}
        return plan.get("id") or "", plan.get("nickname") or "", _int(plan.get("amount"))

    first_price = items[0].get("price") or {}
    product = first_price.get("product")
    if isinstance(product, dict):
        name = product.get("name") or ""
    else:
        name = first_price.get("nickname") or ""

    subtotal = 0
    for item in items:
        price = item.get("price") or {}
        subtotal += _int(price.get("unit_amount")) * _int(item.get("quantity") or 1)
    return first_price.get("id") or "", name, subtotal


def discount_code(obj: Dict[str, Any]) -> Optional[str]:
    discounts = list(obj.get("discounts") or [])
    if obj.get("discount"):
        discounts.append(obj["discount"])

    codes: List[str] = []
    for discount in discounts:
        if not isinstance(discount, dict):
            # unexpanded discount id
            if discount:
                codes.append(str(discount))
            continue
        promo = discount.get("promotion_code")
        coupon = discount.get("coupon") or (discount.get("source") or {}).get("coupon")
        if isinstance(promo, dict) and promo.get("code"):
            codes.append(promo["code"])
        elif _id(coupon):
            codes.append(_id(coupon))
        elif _id(promo):
            codes.append(_id(promo))
    return ",".join(codes) if codes else None


def card_from_payment_method(pm: Any) -> Optional[CardInfo]:
    if not isinstance(pm, dict):
        return None
    card = pm.get("card") or {}
    if not card:
        return None
    exp_month = card.get("exp_month")
    exp_year = card.get("exp_year")
    expiry = f"{int(exp_month):02d}/{int(exp_year) % 100:02d}" if exp_month and exp_year else ""
    return CardInfo(
        card_id=pm.get("id") or "",
        card_owner_name=(pm.get("billing_details") or {}).get("name") or "",
        card_brand=card.get("brand") or "",
        card_last4=card.get("last4") or "",
        card_expiry=expiry,
    )


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    sub_id = _id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    sub_id = _id(details.get("subscription"))
    if sub_id:
        return sub_id
    for line in (invoice.get("lines") or {}).get("data") or []:
        sub_id = _id(line.get("subscription"))
        if sub_id:
            return sub_id
        item_details = ((line.get("parent") or {}).get("subscription_item_details") or {})
        sub_id = _id(item_details.get("subscription"))
        if sub_id:
            return sub_id
    return None


def invoice_payment_status(invoice: Dict[str, Any]) -> str:
    if invoice.get("status") == "paid" or invoice.get("paid") is True:
        return "paid"
    if _int(invoice.get("amount_paid")) > 0 and _int(invoice.get("amount_remaining")) > 0:
        return "partially_paid"
    return "unpaid"


def invoice_tax(invoice: Dict[str, Any], subscription: Optional[Dict[str, Any]] = None) -> TaxData:
    if invoice.get("tax") is not None:
        amount = _int(invoice.get("tax"))
    else:
        entries = invoice.get("total_taxes") or invoice.get("total_tax_amounts") or []
        amount = sum(_int(entry.get("amount")) for entry in entries)

    rate: Any = None
    for entry in invoice.get("total_tax_amounts") or []:
        tax_rate = entry.get("tax_rate")
        if isinstance(tax_rate, dict) and tax_rate.get("percentage") is not None:
            rate = tax_rate["percentage"]
            break
    if rate is None:
        for source in (invoice, subscription or {}):
            rates = source.get("default_tax_rates") or []
            if rates and isinstance(rates[0], dict) and rates[0].get("percentage") is not None:
                rate = rates[0]["percentage"]
                break
    try:
        rate_value = Decimal(str(rate)) if rate is not None else Decimal("0")
    except InvalidOperation:
        rate_value = Decimal("0")
    return TaxData(rate=rate_value, amount=amount)


def build_snapshot(
    subscription: Dict[str, Any],
    *,
    invoice: Optional[Dict[str, Any]] = None,
    force_status: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SubscriptionSnapshot:
    sub_id = subscription.get("id")
    if not sub_id:
        raise MalformedEvent("Subscription detail has no id")
    price_id, name, subtotal = subscription_price(subscription)
    start, end = subscription_period(subscription)
    total = _int(invoice.get("total")) if invoice and invoice.get("total") is not None else subtotal
    return SubscriptionSnapshot(
        id=sub_id,
        name=name,
        price_id=price_id,
        status=force_status or subscription.get("status") or "incomplete",
        amount_subtotal=_int(invoice.get("subtotal")) if invoice and invoice.get("subtotal") is not None else subtotal,
        amount_total=total,
        currency=(subscription.get("currency") or (invoice or {}).get("currency") or "").lower(),
        discounts=discount_code(subscription),
        current_period_start=start,
        current_period_end=end,
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
        customer_id=_id(subscription.get("customer")),
        updated_at=to_iso(now or utcnow()),
    )


def history_item_id(subscription_id: str, event_id: Optional[str]) -> str:
    if not event_id:
        return uuid.uuid4().hex
    return uuid.uuid5(HISTORY_NAMESPACE, f"{subscription_id}:{event_id}").hex


def build_history_item(
    owner: OwnerRef,
    snapshot: SubscriptionSnapshot,
    *,
    event_id: Optional[str],
    event_type: str,
    invoice: Optional[Dict[str, Any]] = None,
    subscription: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> SubscriptionHistoryItem:
    item = SubscriptionHistoryItem(
        item_id=history_item_id(snapshot.id, event_id),
        owner_type=owner.kind.value,
        owner_id=owner.owner_id,
        payer_id=owner.payer_id,
        subscription_id=snapshot.id,
        event_id=event_id,
        event_type=event_type,
        subscription_name=snapshot.name,
        price_id=snapshot.price_id,
        status=snapshot.status,
        amount_subtotal=snapshot.amount_subtotal,
        amount_total=snapshot.amount_total,
        currency=snapshot.currency,
        discount_code=snapshot.discounts,
        current_period_start=snapshot.current_period_start,
        current_period_end=snapshot.current_period_end,
        created_at=to_iso(now or utcnow()),
    )
    if invoice:
        item.invoice_id = invoice.get("id")
        item.invoice_link = invoice.get("hosted_invoice_url") or invoice.get("invoice_pdf")
        item.payment_status = invoice_payment_status(invoice)
        item.paid_date = to_iso((invoice.get("status_transitions") or {}).get("paid_at"))
        item.tax = invoice_tax(invoice, subscription)
        item.discount_code = discount_code(invoice) or item.discount_code
    return item


def _reconcile_subscription(
    owner: OwnerRef,
    event: ProviderEvent,
    subscription: Dict[str, Any],
    *,
    invoice: Optional[Dict[str, Any]] = None,
    force_status: Optional[str] = None,
    now: datetime,
) -> Reconciliation:
    snapshot = build_snapshot(subscription, invoice=invoice, force_status=force_status, now=now)
    history = build_history_item(
        owner,
        snapshot,
        event_id=event.id,
        event_type=event.type,
        invoice=invoice,
        subscription=subscription,
        now=now,
    )
    return Reconciliation(
        owner=owner,
        snapshot=snapshot,
        history_item=history,
        card_info=card_from_payment_method(subscription.get("default_payment_method")),
        entitled=snapshot_entitles(snapshot, now),
    )


def handle_checkout_completed(event, provider, resolver: EntityResolver, now: datetime) -> Optional[Reconciliation]:
    session = event.data_object
    if session.get("mode") not in (None, "subscription"):
        return None
    sub_id = _id(session.get("subscription"))
    if not sub_id:
        raise MalformedEvent("Checkout session has no subscription id", details={"session_id": session.get("id")})

    owner = resolver.resolve(
        sub_id,
        metadata=session.get("metadata"),
        client_reference_id=session.get("client_reference_id"),
        prefer_forward=True,
    )
    subscription = provider.retrieve_subscription(sub_id)
    invoice_id = _id(session.get("invoice")) or _id(subscription.get("latest_invoice"))
    invoice = provider.retrieve_invoice(invoice_id) if invoice_id else None
    return _reconcile_subscription(owner, event, subscription, invoice=invoice, now=now)


def _handle_subscription_event(event, provider, resolver: EntityResolver, now: datetime, force_status=None):
    sub_id = _id(event.data_object.get("id"))
    if not sub_id:
        raise MalformedEvent("Subscription event has no subscription id")
    owner = resolver.resolve(sub_id, metadata=event.data_object.get("metadata"))
    subscription = provider.retrieve_subscription(sub_id)
    return _reconcile_subscription(owner, event, subscription, force_status=force_status, now=now)


def handle_subscription_created(event, provider, resolver, now):
    return _handle_subscription_event(event, provider, resolver, now)


def handle_subscription_updated(event, provider, resolver, now):
    return _handle_subscription_event(event, provider, resolver, now)


def handle_subscription_deleted(event, provider, resolver, now):
    return _handle_subscription_event(event, provider, resolver, now, force_status="canceled")


def _handle_invoice_event(event, provider, resolver: EntityResolver, now: datetime):
    invoice_id = _id(event.data_object.get("id"))
    if not invoice_id:
        raise MalformedEvent("Invoice event has no invoice id")
    invoice = provider.retrieve_invoice(invoice_id)
    sub_id = invoice_subscription_id(invoice) or invoice_subscription_id(event.data_object)
    if not sub_id:
        # one-off invoice, nothing subscription-related to reconcile
        return None
    subscription = provider.retrieve_subscription(sub_id)
    owner = resolver.resolve(sub_id, metadata=subscription.get("metadata"))
    return _reconcile_subscription(owner, event, subscription, invoice=invoice, now=now)


def handle_invoice_paid(event, provider, resolver, now):
    return _handle_invoice_event(event, provider, resolver, now)


def handle_invoice_failed(event, provider, resolver, now):
    return _handle_invoice_event(event, provider, resolver, now)


def handle_payment_method_attached(event, provider, resolver: EntityResolver, now: datetime):
    pm = event.data_object
    customer_id = _id(pm.get("customer"))
    card = card_from_payment_method(pm)
    if not customer_id or card is None:
        return None

    subscriptions = provider.list_customer_subscriptions(customer_id)
    owner = None
    for sub in subscriptions:
        owner = resolver.backward(_id(sub.get("id")) or "")
        if owner:
            break
    if owner is None:
        owner = resolver.forward(pm.get("metadata"))
    if owner is None:
        if not subscriptions:
            return None
        raise OwnerNotFound(
            f"No owner found for customer {customer_id!r}",
            details={"customer_id": customer_id},
        )
    return Reconciliation(owner=owner, card_info=card)


Handler = Callable[..., Optional[Reconciliation]]

HANDLERS: Dict[EventCategory, Handler] = {
    EventCategory.CHECKOUT_COMPLETED: handle_checkout_completed,
    EventCategory.SUBSCRIPTION_CREATED: handle_subscription_created,
    EventCategory.SUBSCRIPTION_UPDATED: handle_subscription_updated,
    EventCategory.SUBSCRIPTION_DELETED: handle_subscription_deleted,
    EventCategory.INVOICE_PAID: handle_invoice_paid,
    EventCategory.INVOICE_FAILED: handle_invoice_failed,
    EventCategory.PAYMENT_METHOD_ATTACHED: handle_payment_method_attached,
}
