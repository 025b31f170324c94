from __future__ import annotations

import copy
import hashlib
import hmac
import json
import sys
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from botocore.exceptions import ClientError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from reconciler.core.errors import MalformedEvent
from reconciler.core.settings import Settings
from reconciler.core.tables import Tables
from reconciler.services.engine import ReconciliationEngine
from reconciler.services.subscription_store import SubscriptionStore

NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)
WEBHOOK_SECRET = "whsec_test"


def epoch(dt: datetime) -> int:
    return int(dt.timestamp())


def _matches(cond: Any, item: Dict[str, Any]) -> bool:
    """Evaluate a boto3 Key/Attr condition object against an item."""
    if cond is None:
        return True
    expr = cond.get_expression()
    op = expr["operator"]
    vals = expr["values"]
    if op == "AND":
        return all(_matches(v, item) for v in vals)
    if op == "OR":
        return any(_matches(v, item) for v in vals)
    name = vals[0].name
    if op == "=":
        return item.get(name) == vals[1]
    if op == "begins_with":
        return str(item.get(name, "")).startswith(vals[1])
    raise NotImplementedError(op)


def _split_top(expr: str, sep: str) -> List[str]:
    parts: List[str] = []
    depth = 0
    current = ""
    i = 0
    while i < len(expr):
        ch = expr[i]
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if depth == 0 and expr.startswith(sep, i):
            parts.append(current)
            current = ""
            i += len(sep)
            continue
        current += ch
        i += 1
    parts.append(current)
    return [p.strip() for p in parts]


def check_condition(
    expr: Optional[str],
    item: Optional[Dict[str, Any]],
    names: Optional[Dict[str, str]],
    values: Optional[Dict[str, Any]],
) -> bool:
    """Just enough of the DynamoDB condition grammar for the store's writes."""
    if not expr:
        return True
    names = names or {}
    values = values or {}
    expr = expr.strip()
    ors = _split_top(expr, " OR ")
    if len(ors) > 1:
        return any(check_condition(p, item, names, values) for p in ors)
    ands = _split_top(expr, " AND ")
    if len(ands) > 1:
        return all(check_condition(p, item, names, values) for p in ands)
    if expr.startswith("(") and expr.endswith(")"):
        return check_condition(expr[1:-1], item, names, values)

    def attr(token: str) -> str:
        return names.get(token, token)

    if expr.startswith("attribute_not_exists("):
        return item is None or attr(expr[len("attribute_not_exists("):-1]) not in item
    if expr.startswith("attribute_exists("):
        return item is not None and attr(expr[len("attribute_exists("):-1]) in item
    left, right = [s.strip() for s in expr.split("=", 1)]
    return item is not None and item.get(attr(left)) == values[right]


class FakeTable:
    def __init__(self, name: str, key_attrs: Tuple[str, ...]) -> None:
        self.name = name
        self.key_attrs = key_attrs
        self.items: Dict[Tuple[str, ...], Dict[str, Any]] = {}

    def _key(self, key: Dict[str, Any]) -> Tuple[str, ...]:
        return tuple(key[a] for a in self.key_attrs)

    def get_item(self, *, Key: Dict[str, Any], **_: Any) -> Dict[str, Any]:
        item = self.items.get(self._key(Key))
        return {"Item": copy.deepcopy(item)} if item else {}

    def put_item(self, *, Item: Dict[str, Any], **_: Any) -> None:
        self.items[self._key(Item)] = copy.deepcopy(Item)

    def query(self, *, KeyConditionExpression: Any, FilterExpression: Any = None, **_: Any) -> Dict[str, Any]:
        items = [
            copy.deepcopy(it) for it in self.items.values()
            if _matches(KeyConditionExpression, it) and _matches(FilterExpression, it)
        ]
        return {"Items": items}

    def scan(self, *, FilterExpression: Any = None, **_: Any) -> Dict[str, Any]:
        return {"Items": [copy.deepcopy(it) for it in self.items.values() if _matches(FilterExpression, it)]}


class FakeDynamoClient:
    """transact_write_items over FakeTables, all-or-nothing."""

    def __init__(self, tables: List[FakeTable]) -> None:
        self.tables = {t.name: t for t in tables}
        self.lock = threading.Lock()
        self.calls = 0
        self.before_transact: Optional[Callable[[int], None]] = None
        self.fail_with: List[str] = []

    def transact_write_items(self, *, TransactItems: List[Dict[str, Any]]) -> Dict[str, Any]:
        self.calls += 1
        if self.before_transact:
            self.before_transact(self.calls)
        if self.fail_with:
            code = self.fail_with.pop(0)
            raise ClientError({"Error": {"Code": code, "Message": code}}, "TransactWriteItems")
        with self.lock:
            reasons = []
            for op in TransactItems:
                kind, body = next(iter(op.items()))
                table = self.tables[body["TableName"]]
                key = body["Key"] if kind == "Update" else {a: body["Item"][a] for a in table.key_attrs}
                current = table.items.get(table._key(key))
                ok = check_condition(
                    body.get("ConditionExpression"),
                    current,
                    body.get("ExpressionAttributeNames"),
                    body.get("ExpressionAttributeValues"),
                )
                reasons.append({"Code": "None"} if ok else {"Code": "ConditionalCheckFailed"})
            if any(r["Code"] != "None" for r in reasons):
                raise ClientError(
                    {
                        "Error": {"Code": "TransactionCanceledException", "Message": "Transaction cancelled"},
                        "CancellationReasons": reasons,
                    },
                    "TransactWriteItems",
                )
            for op in TransactItems:
                kind, body = next(iter(op.items()))
                table = self.tables[body["TableName"]]
                if kind == "Put":
                    table.put_item(Item=body["Item"])
                    continue
                item = table.items.setdefault(table._key(body["Key"]), dict(body["Key"]))
                names = body.get("ExpressionAttributeNames", {})
                values = body["ExpressionAttributeValues"]
                for assignment in body["UpdateExpression"].replace("SET", "", 1).split(","):
                    left, right = [s.strip() for s in assignment.split("=", 1)]
                    item[names.get(left, left)] = values[right]
        return {}


class FakeProvider:
    """Stands in for StripeProvider; serves authoritative state from dicts."""

    def __init__(self) -> None:
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.invoices: Dict[str, Dict[str, Any]] = {}
        self.customer_subscriptions: Dict[str, List[Dict[str, Any]]] = {}
        self.fetches: List[str] = []
        self.canceled: List[str] = []
        self.error: Optional[Exception] = None

    def _maybe_fail(self) -> None:
        if self.error:
            raise self.error

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        self._maybe_fail()
        self.fetches.append(subscription_id)
        if subscription_id not in self.subscriptions:
            raise MalformedEvent(f"Stripe has no subscription {subscription_id!r}")
        return copy.deepcopy(self.subscriptions[subscription_id])

    def retrieve_invoice(self, invoice_id: str) -> Dict[str, Any]:
        self._maybe_fail()
        self.fetches.append(invoice_id)
        if invoice_id not in self.invoices:
            raise MalformedEvent(f"Stripe has no invoice {invoice_id!r}")
        return copy.deepcopy(self.invoices[invoice_id])

    def list_customer_subscriptions(self, customer_id: str) -> List[Dict[str, Any]]:
        self._maybe_fail()
        return copy.deepcopy(self.customer_subscriptions.get(customer_id, []))

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        self._maybe_fail()
        self.canceled.append(subscription_id)
        self.subscriptions[subscription_id]["status"] = "canceled"
        return self.retrieve_subscription(subscription_id)


def stripe_subscription(
    sub_id: str = "sub_1",
    *,
    status: str = "active",
    period_end: Optional[datetime] = None,
    period_start: Optional[datetime] = None,
    customer: str = "cus_1",
    unit_amount: int = 2000,
    metadata: Optional[Dict[str, Any]] = None,
    latest_invoice: Optional[str] = None,
) -> Dict[str, Any]:
    period_end = period_end or NOW + timedelta(days=30)
    period_start = period_start or period_end - timedelta(days=30)
    return {
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "customer": customer,
        "currency": "usd",
        "cancel_at_period_end": False,
        "metadata": metadata or {},
        "latest_invoice": latest_invoice,
        "discounts": [],
        "default_payment_method": {
            "id": "pm_1",
            "billing_details": {"name": "Ada Lovelace"},
            "card": {"brand": "visa", "last4": "4242", "exp_month": 4, "exp_year": 2030},
        },
        "items": {
            "data": [
                {
                    "id": "si_1",
                    "quantity": 1,
                    "current_period_start": epoch(period_start),
                    "current_period_end": epoch(period_end),
                    "price": {
                        "id": "price_insight",
                        "unit_amount": unit_amount,
                        "nickname": "Insight monthly",
                        "product": {"id": "prod_1", "name": "Insight Lookup"},
                    },
                },
            ],
        },
    }


def stripe_invoice(
    invoice_id: str = "in_1",
    *,
    subscription: str = "sub_1",
    status: str = "paid",
    total: int = 2000,
    amount_paid: Optional[int] = None,
    amount_remaining: int = 0,
    paid_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    return {
        "id": invoice_id,
        "object": "invoice",
        "status": status,
        "currency": "usd",
        "subtotal": total,
        "total": total,
        "amount_paid": total if amount_paid is None else amount_paid,
        "amount_remaining": amount_remaining,
        "hosted_invoice_url": f"https://invoice.stripe.com/i/{invoice_id}",
        "status_transitions": {"paid_at": epoch(paid_at) if paid_at else None},
        "parent": {"subscription_details": {"subscription": subscription}},
        "total_taxes": [{"amount": 0}],
        "discounts": [],
    }


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, ts: Optional[int] = None) -> str:
    ts = ts or int(time.time())
    signature = hmac.new(secret.encode(), f"{ts}.{payload.decode()}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def event_payload(event_id: str, event_type: str, data_object: Dict[str, Any]) -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": epoch(NOW),
        "livemode": False,
        "data": {"object": data_object},
    }).encode()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        stripe_secret_key="sk_test",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_webhook_tolerance_seconds=300,
        store_max_retries=3,
    )


@pytest.fixture
def tables() -> Tables:
    billing = FakeTable("billing", ("pk", "sk"))
    users = FakeTable("users", ("id",))
    locations = FakeTable("locations", ("id",))
    users.put_item(Item={"id": "u1", "email": "u1@example.com", "insight_lookup": False})
    users.put_item(Item={"id": "u2", "email": "u2@example.com", "insight_lookup": False})
    locations.put_item(Item={"id": "loc1", "name": "Main St", "insight_certified": False})
    return Tables(
        billing=billing,
        users=users,
        locations=locations,
        client=FakeDynamoClient([billing, users, locations]),
    )


@pytest.fixture
def store(tables: Tables, settings: Settings) -> SubscriptionStore:
    return SubscriptionStore(tables, settings)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def engine(store: SubscriptionStore, provider: FakeProvider, settings: Settings) -> ReconciliationEngine:
    return ReconciliationEngine(store, provider, settings=settings)
