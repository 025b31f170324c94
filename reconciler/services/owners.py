from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from reconciler.core.errors import MalformedEvent, OwnerNotFound

logger = logging.getLogger(__name__)


class OwnerKind(str, Enum):
    USER = "user"
    LOCATION = "location"

    @classmethod
    def parse(cls, value: str) -> "OwnerKind":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            raise MalformedEvent(f"Unknown owner type: {value!r}") from None


@dataclass(frozen=True)
class OwnerRef:
    """An entitlement holder: a user, or a location paid for by a user."""

    kind: OwnerKind
    owner_id: str
    payer_id: Optional[str] = None

    @classmethod
    def user(cls, user_id: str) -> "OwnerRef":
        return cls(OwnerKind.USER, user_id, user_id)

    @classmethod
    def location(cls, location_id: str, payer_id: Optional[str] = None) -> "OwnerRef":
        return cls(OwnerKind.LOCATION, location_id, payer_id)

    @property
    def pk(self) -> str:
        return owner_pk(self.kind, self.owner_id)

    def with_payer(self, payer_id: Optional[str]) -> "OwnerRef":
        if self.kind is OwnerKind.USER or not payer_id or payer_id == self.payer_id:
            return self
        return OwnerRef(self.kind, self.owner_id, payer_id)

    def as_dict(self) -> Dict[str, Any]:
        return {"owner_type": self.kind.value, "owner_id": self.owner_id, "payer_id": self.payer_id}


def owner_pk(kind: OwnerKind, owner_id: str) -> str:
    return f"{kind.name}#{owner_id}"


def owner_from_metadata(
    metadata: Optional[Dict[str, Any]],
    client_reference_id: Optional[str] = None,
) -> Optional[OwnerRef]:
    """Forward resolution from metadata attached when checkout was started."""
    md = metadata or {}
    owner_type = md.get("owner_type")
    owner_id = md.get("owner_id")
    payer_id = md.get("payer_id") or md.get("userId") or client_reference_id

    if owner_type or owner_id:
        if not (owner_type and owner_id):
            raise MalformedEvent("Owner metadata needs both owner_type and owner_id")
        kind = OwnerKind.parse(str(owner_type))
        if kind is OwnerKind.USER:
            return OwnerRef.user(str(owner_id))
        return OwnerRef.location(str(owner_id), str(payer_id) if payer_id else None)

    # Sessions created before owner_type/owner_id existed
    if md.get("locationId"):
        return OwnerRef.location(str(md["locationId"]), str(payer_id) if payer_id else None)
    if payer_id:
        return OwnerRef.user(str(payer_id))
    return None


class EntityResolver:
    def __init__(self, store: Any):
        self.store = store

    def forward(
        self,
        metadata: Optional[Dict[str, Any]],
        client_reference_id: Optional[str] = None,
    ) -> Optional[OwnerRef]:
        return owner_from_metadata(metadata, client_reference_id)

    def backward(self, subscription_id: str) -> Optional[OwnerRef]:
        if not subscription_id:
            return None
        return self.store.lookup_owner(subscription_id)

    def resolve(
        self,
        subscription_id: Optional[str],
        *,
        metadata: Optional[Dict[str, Any]] = None,
        client_reference_id: Optional[str] = None,
        prefer_forward: bool = False,
    ) -> OwnerRef:
        paths = ("forward", "backward") if prefer_forward else ("backward", "forward")
        for path in paths:
            if path == "forward":
                owner = self.forward(metadata, client_reference_id)
            else:
                owner = self.backward(subscription_id or "")
            if owner:
                logger.debug(
                    "owner resolved",
                    extra={"subscription_id": subscription_id, "path": path, **owner.as_dict()},
                )
                return owner
        raise OwnerNotFound(
            f"No owner found for subscription {subscription_id!r}",
            details={"subscription_id": subscription_id},
        )
