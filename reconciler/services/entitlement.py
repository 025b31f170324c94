from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from reconciler.core.time import parse_iso, utcnow
from reconciler.models import SubscriptionSnapshot

ENTITLED_STATUSES = {"active", "trialing"}
GRACE_STATUSES = {"canceled", "past_due", "unpaid"}


def snapshot_entitles(snapshot: SubscriptionSnapshot, now: Optional[datetime] = None) -> bool:
    status = (snapshot.status or "").lower()
    if status in ENTITLED_STATUSES:
        return True
    if status in GRACE_STATUSES:
        period_end = parse_iso(snapshot.current_period_end)
        return period_end is not None and (now or utcnow()) < period_end
    return False


def owner_entitled(snapshots: Iterable[SubscriptionSnapshot], now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return any(snapshot_entitles(s, now) for s in snapshots)
