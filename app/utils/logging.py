from __future__ import annotations

import json
import logging
import sys
from typing import Any


def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    root.handlers.clear()
    root.addHandler(handler)

    # Outbound HTTP to the directory and mail webhook is noisy at INFO.
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Emit one JSON line, the same shape as the request log."""
    data: dict[str, Any] = {"type": "event", "event": event}
    data.update(fields)
    logger.log(level, json.dumps(data, separators=(",", ":"), default=str))
