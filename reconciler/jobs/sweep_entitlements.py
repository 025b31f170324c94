from __future__ import annotations

import logging

from reconciler.core.logging import configure_logging
from reconciler.core.settings import S
from reconciler.services.engine import ReconciliationEngine

logger = logging.getLogger(__name__)


def main() -> int:
    configure_logging()
    engine = ReconciliationEngine.from_settings(S)
    report = engine.sweep()
    logger.info("entitlement sweep finished", extra={"scanned": report.scanned, "revoked": report.revoked})
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
