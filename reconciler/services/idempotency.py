from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from reconciler.core.settings import S, Settings
from reconciler.core.time import to_iso, utcnow

PROCESSED_EVENT_PK = "STRIPE_EVENT"


def with_ttl(item: Dict[str, Any], ttl_epoch: int, attr: str = S.ddb_ttl_attr) -> Dict[str, Any]:
    item[attr] = int(ttl_epoch)
    return item


def processed_event_item(
    event_id: str,
    event_type: str,
    *,
    now: Optional[datetime] = None,
    settings: Settings = S,
) -> Dict[str, Any]:
    now = now or utcnow()
    ts = int(now.timestamp())
    return with_ttl(
        {
            "pk": PROCESSED_EVENT_PK,
            "sk": event_id,
            "event_type": event_type,
            "ts": ts,
            "processed_at": to_iso(now),
        },
        ttl_epoch=ts + 60 * 60 * 24 * settings.processed_event_ttl_days,
        attr=settings.ddb_ttl_attr,
    )


class IdempotencyGuard:
    """Skips events whose effects are already durable.

    The processed-event record itself is written by the store inside the
    reconciliation transaction; this guard only reads it, so an event that
    crashed before commit is processed again on redelivery.
    """

    def __init__(self, table: Any):
        self.table = table

    def should_process(self, event_id: str) -> bool:
        resp = self.table.get_item(
            Key={"pk": PROCESSED_EVENT_PK, "sk": event_id},
            ConsistentRead=True,
        )
        return not resp.get("Item")
