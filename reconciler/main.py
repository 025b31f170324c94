from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from reconciler.core.errors import ReconciliationError
from reconciler.core.logging import configure_logging
from reconciler.core.settings import S
from reconciler.metrics import metrics_endpoint, metrics_middleware, set_app_info
from reconciler.routers.stripe_webhook import router as stripe_webhook_router
from reconciler.routers.subscriptions import router as subscriptions_router
from reconciler.services.engine import ReconciliationEngine

logger = logging.getLogger(__name__)


async def reconciliation_error_handler(request: Request, exc: ReconciliationError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request failed", extra={"path": request.url.path, "error": exc.code, "detail": exc.message})
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": exc.message, "retryable": exc.retryable},
    )


def create_app(engine: Optional[ReconciliationEngine] = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title="Subscription Reconciler", version="0.1.0")
    app.state.engine = engine or ReconciliationEngine.from_settings(S)

    app.add_exception_handler(ReconciliationError, reconciliation_error_handler)

    if S.metrics_enabled:
        app.middleware("http")(metrics_middleware)
        set_app_info(app.title, app.version)
        app.get("/metrics")(metrics_endpoint)

    @app.get("/healthz")
    def healthz() -> dict:
        return {"ok": True}

    app.include_router(stripe_webhook_router)
    app.include_router(subscriptions_router)

    return app
