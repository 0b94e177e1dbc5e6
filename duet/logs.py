from __future__ import annotations

import json
import logging
import sys
from typing import Any


logger = logging.getLogger("duet")


def log_event(component: str, event: str, *, level: int = logging.INFO, **payload: Any) -> None:
    base: dict[str, Any] = {
        "component": component,
        "event": event,
    }
    base.update(payload)
    if not logger.isEnabledFor(level):
        return
    logger.log(level, json.dumps(base, sort_keys=True, separators=(",", ":"), default=str))


def configure_logging(*, structured: bool, level: str = "INFO") -> None:
    fmt = "%(message)s" if structured else "[%(asctime)s] %(levelname)s %(name)s %(message)s"
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), stream=sys.stderr, format=fmt)
