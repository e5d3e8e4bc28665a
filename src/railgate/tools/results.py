"""Shared result shaping for the tools."""

from __future__ import annotations

import logging
from typing import Any

from railgate.errors import CustodyError, ExternalDependencyError, RailgateError

logger = logging.getLogger(__name__)


def failure(exc: RailgateError, action: str) -> dict[str, Any]:
    """Customer-safe failure dict. The operator detail only goes to the log."""
    if isinstance(exc, CustodyError):
        logger.error("CRITICAL: %s failed: %s", action, exc)
    elif isinstance(exc, ExternalDependencyError):
        logger.warning("%s failed: %s", action, exc)
    else:
        logger.info("%s rejected: %s", action, exc)
    return {"success": False, "error": exc.public_message, "reason": exc.reason}
