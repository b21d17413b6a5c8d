"""Retention sweep: garbage-collect terminal rows past the retention window."""
import logging

import aiosqlite

from centralhub.config import RETENTION_HOURS
from centralhub.db import crud

logger = logging.getLogger(__name__)


async def sweep(db: aiosqlite.Connection, retention_hours: float = RETENTION_HOURS) -> dict[str, int]:
    try:
        swept = await crud.sweep_expired(db, retention_hours)
    except Exception as e:
        logger.error(f"Retention sweep failed: {type(e).__name__}: {e}")
        return {"sweep_errors": 1}
    return {f"swept_{k}": v for k, v in swept.items()}
