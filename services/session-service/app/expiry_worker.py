import asyncio
import logging
from datetime import datetime

from .config import EXTENSION_SWEEP_INTERVAL_SECONDS
from .db import SessionLocal
from .extensions import ExtensionNegotiator

logger = logging.getLogger(__name__)


async def sweep_once(session_factory=SessionLocal, publisher=None, metrics=None, now: datetime | None = None) -> list[str]:
    """Time out pending extension requests whose response window has passed."""
    async with session_factory() as db:
        negotiator = ExtensionNegotiator(db, publisher=publisher, metrics=metrics)
        return await negotiator.expire_stale(now)


async def expiry_loop(
    stop_event: asyncio.Event,
    session_factory=SessionLocal,
    publisher=None,
    metrics=None,
    interval: float = EXTENSION_SWEEP_INTERVAL_SECONDS,
):
    while not stop_event.is_set():
        try:
            expired = await sweep_once(session_factory, publisher, metrics)
            if expired:
                logger.info("timed out %d stale extension request(s)", len(expired))
        except Exception:
            logger.exception("extension expiry sweep failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
