# app/core/logs.py
from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from app.core.config import settings

log = logging.getLogger("sentinel")


def configure_logging(level: Optional[str] = None) -> None:
    """
    Basic process-wide logging for CLI / worker entry points.
    Library modules only ever call logging.getLogger("sentinel.<area>").
    """
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    if settings.log_sql:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)


def best_effort(what: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
    """
    Run a side effect whose failure must never fail the caller (audit writes).
    Failure is logged and swallowed. Returns True when fn completed.
    """
    try:
        fn(*args, **kwargs)
        return True
    except Exception as e:
        log.warning("best-effort %s failed (non-fatal): %s", what, e)
        return False
