from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

OwnerType = Literal["user", "location"]
PaymentStatus = Literal["paid", "unpaid", "partially_paid"]


class CardInfo(BaseModel):
    card_id: str = ""
    card_owner_name: str = ""
    card_brand: str = ""
    card_last4: str = ""
    card_expiry: str = ""


class TaxData(BaseModel):
    rate: Decimal = Decimal("0")
    amount: int = 0  # minor units


class SubscriptionSnapshot(BaseModel):
    id: str
    name: str = ""
    price_id: str = ""
    status: str
    amount_subtotal: int = 0
    amount_total: int = 0
    currency: str = ""
    discounts: Optional[str] = None
    current_period_start: Optional[str] = None
    current_period_end: Optional[str] = None
    cancel_at_period_end: bool = False
    customer_id: Optional[str] = None
    updated_at: Optional[str] = None


class SubscriptionList(BaseModel):
    owner_type: OwnerType
    owner_id: str
    payer_id: Optional[str] = None
    subscriptions: List[SubscriptionSnapshot] = Field(default_factory=list)
    card_info: Optional[CardInfo] = None
    version: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def find(self, subscription_id: str) -> Optional[SubscriptionSnapshot]:
        for snap in self.subscriptions:
            if snap.id == subscription_id:
                return snap
        return None

    def upsert(self, snapshot: SubscriptionSnapshot) -> bool:
        """Replace the entry with the same id in place; append otherwise.

        Returns True when the subscription was not in the list before.
        """
        for i, snap in enumerate(self.subscriptions):
            if snap.id == snapshot.id:
                self.subscriptions[i] = snapshot
                return False
        self.subscriptions.append(snapshot)
        return True


class SubscriptionHistoryItem(BaseModel):
    item_id: str
    owner_type: OwnerType
    owner_id: str
    payer_id: Optional[str] = None
    subscription_id: str
    event_id: Optional[str] = None
    event_type: str
    subscription_name: str = ""
    price_id: str = ""
    status: str
    amount_subtotal: int = 0
    amount_total: int = 0
    currency: str = ""
    discount_code: Optional[str] = None
    current_period_start: Optional[str] = None
    current_period_end: Optional[str] = None
    invoice_id: Optional[str] = None
    invoice_link: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    paid_date: Optional[str] = None
    tax: TaxData = Field(default_factory=TaxData)
    created_at: str


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None


class SubscriptionHistoryOut(BaseModel):
    items: List[SubscriptionHistoryItem]


class OwnerLookupOut(BaseModel):
    subscription_id: str
    owner_type: OwnerType
    owner_id: str
    payer_id: Optional[str] = None


class CancelSubscriptionOut(BaseModel):
    subscription: SubscriptionSnapshot
    entitled: bool


class SweepReport(BaseModel):
    scanned: int = 0
    revoked: int = 0
    details: List[Dict[str, Any]] = Field(default_factory=list)
