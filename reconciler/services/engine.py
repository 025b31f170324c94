from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import Request

from reconciler.core.errors import ReconciliationError, SubscriptionNotFound
from reconciler.core.settings import S, Settings
from reconciler.core.tables import build_tables
from reconciler.core.time import utcnow
from reconciler.metrics import RECONCILE_LATENCY, record_webhook
from reconciler.models import CancelSubscriptionOut, SweepReport, WebhookAck
from reconciler.services.idempotency import IdempotencyGuard
from reconciler.services.owners import EntityResolver, OwnerRef
from reconciler.services.provider import StripeProvider
from reconciler.services.reconciliation import HANDLERS, build_history_item, build_snapshot
from reconciler.services.stripe_events import ProviderEvent, verify_event
from reconciler.services.subscription_store import SubscriptionStore
from reconciler.services.sweep import sweep_entitlements

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """verify -> dedupe -> classify -> handle -> commit."""

    def __init__(
        self,
        store: SubscriptionStore,
        provider: StripeProvider,
        *,
        guard: Optional[IdempotencyGuard] = None,
        resolver: Optional[EntityResolver] = None,
        settings: Settings = S,
    ):
        self.store = store
        self.provider = provider
        self.guard = guard or IdempotencyGuard(store.billing)
        self.resolver = resolver or EntityResolver(store)
        self.settings = settings

    @classmethod
    def from_settings(cls, settings: Settings = S) -> "ReconciliationEngine":
        store = SubscriptionStore(build_tables(), settings)
        provider = StripeProvider(
            api_key=settings.stripe_secret_key,
            api_version=settings.stripe_api_version,
            max_network_retries=settings.stripe_max_network_retries,
        )
        return cls(store, provider, settings=settings)

    def verify(self, payload: bytes, sig_header: Optional[str]) -> ProviderEvent:
        return verify_event(
            payload,
            sig_header,
            secret=self.settings.stripe_webhook_secret,
            tolerance=self.settings.stripe_webhook_tolerance_seconds,
        )

    def handle_webhook(self, payload: bytes, sig_header: Optional[str], now: Optional[datetime] = None) -> WebhookAck:
        try:
            event = self.verify(payload, sig_header)
        except ReconciliationError as exc:
            record_webhook(None, exc.code)
            logger.warning("webhook rejected", extra={"error": exc.code, "detail": exc.message})
            raise
        return self.process(event, now=now)

    def process(self, event: ProviderEvent, now: Optional[datetime] = None) -> WebhookAck:
        log_ctx = {"event_id": event.id, "event_type": event.type}
        category = event.category
        if category is None:
            logger.info("unhandled event type", extra=log_ctx)
            return self._ack(event, "ignored")

        if not self.guard.should_process(event.id):
            logger.info("duplicate event", extra=log_ctx)
            return self._ack(event, "duplicate")

        now = now or utcnow()
        try:
            with RECONCILE_LATENCY.labels(category=category.value).time():
                rec = HANDLERS[category](event, self.provider, self.resolver, now)
                if rec is None:
                    logger.info("event has nothing to reconcile", extra=log_ctx)
                    return self._ack(event, "ignored")
                result = self.store.commit(
                    rec.owner,
                    snapshot=rec.snapshot,
                    history_item=rec.history_item,
                    card_info=rec.card_info,
                    event_id=event.id,
                    event_type=event.type,
                    now=now,
                )
        except ReconciliationError as exc:
            record_webhook(event.type, exc.code)
            logger.warning(
                "reconciliation failed",
                extra={**log_ctx, "error": exc.code, "retryable": exc.retryable, "detail": exc.message},
            )
            raise

        if result.duplicate:
            logger.info("event applied concurrently", extra=log_ctx)
            return self._ack(event, "duplicate")

        logger.info(
            "event reconciled",
            extra={**log_ctx, **rec.owner.as_dict(), "entitled": result.entitled, "attempts": result.attempts},
        )
        return self._ack(event, "processed")

    def _ack(self, event: ProviderEvent, outcome: str) -> WebhookAck:
        record_webhook(event.type, outcome)
        return WebhookAck(outcome=outcome, event_id=event.id, event_type=event.type)

    def cancel_subscription(
        self,
        owner: OwnerRef,
        subscription_id: str,
        now: Optional[datetime] = None,
    ) -> CancelSubscriptionOut:
        """User-initiated cancellation; the later webhook re-derives the same state."""
        now = now or utcnow()
        sub_list = self.store.get_list(owner)
        if not sub_list or not sub_list.find(subscription_id):
            raise SubscriptionNotFound(
                f"Subscription {subscription_id!r} not found for {owner.kind.value} {owner.owner_id!r}",
            )
        owner = owner.with_payer(sub_list.payer_id)

        subscription = self.provider.cancel_subscription(subscription_id)
        snapshot = build_snapshot(subscription, force_status="canceled", now=now)
        history = build_history_item(
            owner,
            snapshot,
            event_id=None,
            event_type="subscription.cancel_requested",
            subscription=subscription,
            now=now,
        )
        result = self.store.commit(
            owner,
            snapshot=snapshot,
            history_item=history,
            event_type="subscription.cancel_requested",
            now=now,
        )
        logger.info(
            "subscription canceled by owner",
            extra={"subscription_id": subscription_id, "entitled": result.entitled, **owner.as_dict()},
        )
        return CancelSubscriptionOut(subscription=snapshot, entitled=bool(result.entitled))

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        return sweep_entitlements(self.store, now=now)


def get_engine(request: Request) -> ReconciliationEngine:
    return request.app.state.engine
