from __future__ import annotations

import logging
import threading
import time

from flask import Flask

log = logging.getLogger(__name__)


def maybe_start_sweeper(app: Flask) -> threading.Thread | None:
    """
    In-process expiry sweep for single-instance deployments.

    Multi-instance deployments should leave ENABLE_SCHEDULER off and call
    `POST /api/v1/jobs/expire-sweep` with `X-Internal-Token` from cron instead.
    """

    cfg = app.config["CFG"]
    if not cfg.ENABLE_SCHEDULER or cfg.TESTING:
        return None

    interval = max(60, int(cfg.SWEEP_INTERVAL_MINUTES) * 60)

    def _loop():
        while True:
            time.sleep(interval)
            orchestrator = app.extensions.get("verification")
            if orchestrator is None:
                continue
            try:
                result = orchestrator.sweep(trace_id="scheduler")
                log.info("expiry sweep records=%s tokens=%s", result["records"], result["tokens"])
            except Exception:
                log.exception("expiry sweep failed")

    thread = threading.Thread(target=_loop, name="expiry-sweeper", daemon=True)
    thread.start()
    return thread
