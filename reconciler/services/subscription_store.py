from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from reconciler.core.errors import MalformedEvent, OwnerNotFound, StoreConflict
from reconciler.core.settings import S, Settings
from reconciler.core.tables import Tables
from reconciler.core.time import to_iso, utcnow
from reconciler.metrics import STORE_CONFLICTS
from reconciler.models import CardInfo, SubscriptionHistoryItem, SubscriptionList, SubscriptionSnapshot
from reconciler.services.entitlement import owner_entitled
from reconciler.services.idempotency import processed_event_item
from reconciler.services.owners import OwnerKind, OwnerRef

logger = logging.getLogger(__name__)

LIST_SK = "SUBSCRIPTIONS"
OWNER_SK = "OWNER"

# Transient store errors worth another attempt
RETRYABLE_CODES = {
    "TransactionConflict",
    "TransactionInProgressException",
    "ThrottlingException",
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "InternalServerError",
}


def history_sk(item_id: str) -> str:
    return f"HISTORY#{item_id}"


def subscription_pk(subscription_id: str) -> str:
    return f"SUBSCRIPTION#{subscription_id}"


@dataclass
class CommitResult:
    committed: bool
    duplicate: bool = False
    entitled: Optional[bool] = None
    attached: bool = False
    attempts: int = 0
    subscription_list: Optional[SubscriptionList] = None


class _Retry(Exception):
    pass


class SubscriptionStore:
    """DynamoDB-backed owner subscription records.

    The billing table holds, per owner, one SubscriptionList item and the
    append-only history items, plus the processed-event records and the
    subscription -> owner reverse index.
    """

    def __init__(self, tables: Tables, settings: Settings = S):
        self.billing = tables.billing
        self.users = tables.users
        self.locations = tables.locations
        self.client = tables.client
        self.settings = settings

    def owner_table(self, kind: OwnerKind) -> Any:
        return self.users if kind is OwnerKind.USER else self.locations

    def entitlement_attr(self, kind: OwnerKind) -> str:
        if kind is OwnerKind.USER:
            return self.settings.user_entitlement_attr
        return self.settings.location_entitlement_attr

    # Reads

    def get_list(self, owner: OwnerRef, *, consistent: bool = True) -> Optional[SubscriptionList]:
        resp = self.billing.get_item(Key={"pk": owner.pk, "sk": LIST_SK}, ConsistentRead=consistent)
        item = resp.get("Item")
        return SubscriptionList.model_validate(item) if item else None

    def lookup_owner(self, subscription_id: str) -> Optional[OwnerRef]:
        resp = self.billing.get_item(Key={"pk": subscription_pk(subscription_id), "sk": OWNER_SK}, ConsistentRead=True)
        item = resp.get("Item")
        if not item:
            return None
        return OwnerRef(OwnerKind(item["owner_type"]), item["owner_id"], item.get("payer_id"))

    def get_owner_entitlement(self, owner: OwnerRef) -> Optional[bool]:
        resp = self.owner_table(owner.kind).get_item(Key={"id": owner.owner_id})
        item = resp.get("Item")
        if not item:
            return None
        return bool(item.get(self.entitlement_attr(owner.kind), False))

    def list_history(
        self,
        owner: OwnerRef,
        *,
        subscription_id: Optional[str] = None,
        limit: int = 10,
    ) -> List[SubscriptionHistoryItem]:
        kwargs: Dict[str, Any] = {
            "KeyConditionExpression": Key("pk").eq(owner.pk) & Key("sk").begins_with("HISTORY#"),
        }
        if subscription_id:
            kwargs["FilterExpression"] = Attr("subscription_id").eq(subscription_id)

        items: List[Dict[str, Any]] = []
        while True:
            resp = self.billing.query(**kwargs)
            items.extend(resp.get("Items", []))
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                break
            kwargs["ExclusiveStartKey"] = last_key

        items.sort(key=lambda x: x.get("created_at") or "", reverse=True)
        return [SubscriptionHistoryItem.model_validate(it) for it in items[: max(1, min(limit, 200))]]

    def scan_lists(self) -> Iterator[SubscriptionList]:
        kwargs: Dict[str, Any] = {"FilterExpression": Attr("sk").eq(LIST_SK)}
        while True:
            resp = self.billing.scan(**kwargs)
            for item in resp.get("Items", []):
                yield SubscriptionList.model_validate(item)
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                return
            kwargs["ExclusiveStartKey"] = last_key

    # Writes

    def commit(
        self,
        owner: OwnerRef,
        *,
        snapshot: Optional[SubscriptionSnapshot] = None,
        history_item: Optional[SubscriptionHistoryItem] = None,
        card_info: Optional[CardInfo] = None,
        event_id: Optional[str] = None,
        event_type: str = "",
        now: Optional[datetime] = None,
    ) -> CommitResult:
        """Apply snapshot, history item and entitlement flag as one unit.

        The list is re-read on every attempt and written back with a version
        condition; a concurrent writer makes the transaction fail and the
        merge is redone against the newer list.
        """
        now = now or utcnow()
        max_attempts = max(1, self.settings.store_max_retries)
        for attempt in range(1, max_attempts + 1):
            try:
                result = self._commit_once(
                    owner,
                    snapshot=snapshot,
                    history_item=history_item,
                    card_info=card_info,
                    event_id=event_id,
                    event_type=event_type,
                    now=now,
                )
            except _Retry:
                STORE_CONFLICTS.inc()
                logger.info(
                    "subscription list write conflict",
                    extra={"attempt": attempt, "event_id": event_id, **owner.as_dict()},
                )
                continue
            result.attempts = attempt
            return result
        raise StoreConflict(
            f"Gave up after {max_attempts} conflicting writes for {owner.pk}",
            details={"event_id": event_id, **owner.as_dict()},
        )

    def _commit_once(
        self,
        owner: OwnerRef,
        *,
        snapshot: Optional[SubscriptionSnapshot],
        history_item: Optional[SubscriptionHistoryItem],
        card_info: Optional[CardInfo],
        event_id: Optional[str],
        event_type: str,
        now: datetime,
    ) -> CommitResult:
        now_iso = to_iso(now)
        current = self.get_list(owner)
        if current:
            sub_list = current.model_copy(deep=True)
        else:
            sub_list = SubscriptionList(
                owner_type=owner.kind.value,
                owner_id=owner.owner_id,
                created_at=now_iso,
            )

        attached = sub_list.upsert(snapshot) if snapshot else False
        if card_info:
            sub_list.card_info = card_info
        if owner.payer_id:
            sub_list.payer_id = owner.payer_id
        sub_list.version = (current.version if current else 0) + 1
        sub_list.updated_at = now_iso
        entitled = owner_entitled(sub_list.subscriptions, now)

        roles: List[str] = []
        ops: List[Dict[str, Any]] = []

        list_put: Dict[str, Any] = {
            "TableName": self.billing.name,
            "Item": {"pk": owner.pk, "sk": LIST_SK, **sub_list.model_dump()},
        }
        if current:
            list_put["ConditionExpression"] = "#v = :v"
            list_put["ExpressionAttributeNames"] = {"#v": "version"}
            list_put["ExpressionAttributeValues"] = {":v": current.version}
        else:
            list_put["ConditionExpression"] = "attribute_not_exists(pk)"
        roles.append("list")
        ops.append({"Put": list_put})

        roles.append("owner")
        ops.append({
            "Update": {
                "TableName": self.owner_table(owner.kind).name,
                "Key": {"id": owner.owner_id},
                "UpdateExpression": "SET #e = :e, #u = :u",
                "ConditionExpression": "attribute_exists(#id)",
                "ExpressionAttributeNames": {
                    "#e": self.entitlement_attr(owner.kind),
                    "#u": "entitlement_updated_at",
                    "#id": "id",
                },
                "ExpressionAttributeValues": {":e": entitled, ":u": now_iso},
            },
        })

        if history_item:
            roles.append("history")
            ops.append({
                "Put": {
                    "TableName": self.billing.name,
                    "Item": {"pk": owner.pk, "sk": history_sk(history_item.item_id), **history_item.model_dump()},
                    "ConditionExpression": "attribute_not_exists(pk)",
                },
            })

        if event_id:
            roles.append("event")
            ops.append({
                "Put": {
                    "TableName": self.billing.name,
                    "Item": processed_event_item(event_id, event_type, now=now, settings=self.settings),
                    "ConditionExpression": "attribute_not_exists(pk)",
                },
            })

        if attached and snapshot:
            roles.append("index")
            ops.append({
                "Put": {
                    "TableName": self.billing.name,
                    "Item": {
                        "pk": subscription_pk(snapshot.id),
                        "sk": OWNER_SK,
                        "subscription_id": snapshot.id,
                        "owner_type": owner.kind.value,
                        "owner_id": owner.owner_id,
                        "payer_id": owner.payer_id,
                        "created_at": now_iso,
                    },
                    "ConditionExpression": "attribute_not_exists(pk) OR (#o = :o AND #t = :t)",
                    "ExpressionAttributeNames": {"#o": "owner_id", "#t": "owner_type"},
                    "ExpressionAttributeValues": {":o": owner.owner_id, ":t": owner.kind.value},
                },
            })

        try:
            self.client.transact_write_items(TransactItems=ops)
        except ClientError as exc:
            self._raise_for_cancellation(exc, roles, owner, snapshot, event_id)
            return CommitResult(committed=False, duplicate=True)

        return CommitResult(
            committed=True,
            entitled=entitled,
            attached=attached,
            subscription_list=sub_list,
        )

    def _raise_for_cancellation(
        self,
        exc: ClientError,
        roles: List[str],
        owner: OwnerRef,
        snapshot: Optional[SubscriptionSnapshot],
        event_id: Optional[str],
    ) -> None:
        """Map a failed transaction to an error; returns only for duplicates."""
        code = exc.response.get("Error", {}).get("Code")
        if code in RETRYABLE_CODES:
            raise _Retry() from exc
        if code != "TransactionCanceledException":
            raise exc

        reasons = exc.response.get("CancellationReasons") or []
        failed = {
            roles[i]: (reason or {}).get("Code")
            for i, reason in enumerate(reasons)
            if i < len(roles) and (reason or {}).get("Code") not in (None, "None")
        }
        checks = {role for role, reason in failed.items() if reason == "ConditionalCheckFailed"}

        if checks & {"event", "history"}:
            logger.info("event already applied", extra={"event_id": event_id, **owner.as_dict()})
            return
        if "owner" in checks:
            raise OwnerNotFound(
                f"{owner.kind.value} {owner.owner_id!r} does not exist",
                details=owner.as_dict(),
            ) from exc
        if "index" in checks:
            sub_id = snapshot.id if snapshot else None
            raise MalformedEvent(
                f"Subscription {sub_id!r} belongs to another owner",
                details={"subscription_id": sub_id, **owner.as_dict()},
            ) from exc
        if "list" in checks or any(reason in RETRYABLE_CODES for reason in failed.values()):
            raise _Retry() from exc
        raise exc
