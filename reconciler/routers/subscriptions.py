from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from reconciler.auth.deps import get_authenticated_user_sub
from reconciler.core.errors import Forbidden
from reconciler.models import (
    CancelSubscriptionOut,
    OwnerLookupOut,
    OwnerType,
    SubscriptionHistoryOut,
    SubscriptionList,
)
from reconciler.services.engine import ReconciliationEngine, get_engine
from reconciler.services.owners import OwnerKind, OwnerRef

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


def authorize_owner(engine: ReconciliationEngine, owner_type: str, owner_id: str, user_sub: str) -> OwnerRef:
    """Users see their own records; a location's records are visible to its payer."""
    kind = OwnerKind.parse(owner_type)
    if kind is OwnerKind.USER:
        if owner_id != user_sub:
            raise Forbidden("Cannot access another user's subscriptions")
        return OwnerRef.user(owner_id)

    owner = OwnerRef.location(owner_id)
    sub_list = engine.store.get_list(owner, consistent=False)
    if not sub_list or sub_list.payer_id != user_sub:
        raise Forbidden("Only the paying user can access this location's subscriptions")
    return owner.with_payer(sub_list.payer_id)


@router.get("/by-id/{subscription_id}/owner", response_model=OwnerLookupOut)
def get_owner_by_subscription(
    subscription_id: str,
    engine: ReconciliationEngine = Depends(get_engine),
    user_sub: str = Depends(get_authenticated_user_sub),
) -> OwnerLookupOut:
    owner = engine.store.lookup_owner(subscription_id)
    if owner is None or user_sub not in (owner.owner_id, owner.payer_id):
        # same answer for "missing" and "not yours"
        raise Forbidden(f"No accessible owner for subscription {subscription_id!r}")
    return OwnerLookupOut(subscription_id=subscription_id, **owner.as_dict())


@router.get("/{owner_type}/{owner_id}", response_model=SubscriptionList)
def get_subscription_list(
    owner_type: OwnerType,
    owner_id: str,
    engine: ReconciliationEngine = Depends(get_engine),
    user_sub: str = Depends(get_authenticated_user_sub),
) -> SubscriptionList:
    owner = authorize_owner(engine, owner_type, owner_id, user_sub)
    sub_list = engine.store.get_list(owner, consistent=False)
    return sub_list or SubscriptionList(owner_type=owner_type, owner_id=owner_id, payer_id=owner.payer_id)


@router.get("/{owner_type}/{owner_id}/history", response_model=SubscriptionHistoryOut)
def get_subscription_history(
    owner_type: OwnerType,
    owner_id: str,
    subscription_id: Optional[str] = None,
    limit: int = Query(10, ge=1, le=200),
    engine: ReconciliationEngine = Depends(get_engine),
    user_sub: str = Depends(get_authenticated_user_sub),
) -> SubscriptionHistoryOut:
    owner = authorize_owner(engine, owner_type, owner_id, user_sub)
    items = engine.store.list_history(owner, subscription_id=subscription_id, limit=limit)
    return SubscriptionHistoryOut(items=items)


@router.post("/{owner_type}/{owner_id}/{subscription_id}/cancel", response_model=CancelSubscriptionOut)
def cancel_subscription(
    owner_type: OwnerType,
    owner_id: str,
    subscription_id: str,
    engine: ReconciliationEngine = Depends(get_engine),
    user_sub: str = Depends(get_authenticated_user_sub),
) -> CancelSubscriptionOut:
    owner = authorize_owner(engine, owner_type, owner_id, user_sub)
    return engine.cancel_subscription(owner, subscription_id)
