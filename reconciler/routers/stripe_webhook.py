from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from reconciler.models import WebhookAck
from reconciler.services.engine import ReconciliationEngine, get_engine

router = APIRouter(tags=["stripe"])


@router.post("/api/stripe/webhook", response_model=WebhookAck)
async def stripe_webhook(req: Request, engine: ReconciliationEngine = Depends(get_engine)) -> WebhookAck:
    payload = await req.body()
    sig = req.headers.get("stripe-signature")
    # boto3 and stripe are blocking clients
    return await run_in_threadpool(engine.handle_webhook, payload, sig)
