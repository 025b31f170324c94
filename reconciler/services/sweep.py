from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from reconciler.core.errors import OwnerNotFound
from reconciler.core.time import utcnow
from reconciler.metrics import ENTITLEMENTS_REVOKED
from reconciler.models import SweepReport
from reconciler.services.entitlement import owner_entitled
from reconciler.services.owners import OwnerKind, OwnerRef
from reconciler.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


def sweep_entitlements(store: SubscriptionStore, now: Optional[datetime] = None) -> SweepReport:
    """Revoke entitlements whose grace period has run out.

    No provider event fires at period end, so canceled or past-due owners stay
    entitled until this runs. The revocation goes through the normal commit
    path, which recomputes entitlement from the freshly read list.
    """
    now = now or utcnow()
    report = SweepReport()
    for sub_list in store.scan_lists():
        report.scanned += 1
        if owner_entitled(sub_list.subscriptions, now):
            continue
        owner = OwnerRef(OwnerKind(sub_list.owner_type), sub_list.owner_id, sub_list.payer_id)
        if not store.get_owner_entitlement(owner):
            continue
        try:
            result = store.commit(owner, now=now)
        except OwnerNotFound:
            logger.warning("owner record missing during sweep", extra=owner.as_dict())
            continue
        if result.entitled is False:
            ENTITLEMENTS_REVOKED.inc()
            report.revoked += 1
            report.details.append(owner.as_dict())
            logger.info("entitlement revoked", extra=owner.as_dict())
    return report
