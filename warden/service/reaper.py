from __future__ import annotations

import asyncio
from typing import Optional

from warden.logging import get_logger
from warden.service.tokens import TokenService

logger = get_logger(__name__)


class ExpiryReaper:
    """Periodically removes token cache rows idle for longer than the TTL.

    The store deletes only rows it re-confirms as expired at delete time, so a
    sweep racing a renewal either sees the new timestamp and keeps the row or
    removes a row that really expired.
    """

    def __init__(self, tokens: TokenService, interval_seconds: int) -> None:
        self.tokens = tokens
        self.interval_seconds = max(1, interval_seconds)
        self.last_removed: Optional[int] = None

    def sweep(self, now: Optional[int] = None) -> int:
        removed = self.tokens.delete_expired(now)
        self.last_removed = removed
        if removed:
            logger.info("expired_tokens_swept", removed=removed)
        return removed

    async def run_forever(self) -> None:
        """Background loop; exits quietly on cancellation."""
        logger.info("token_reaper_started", interval_seconds=self.interval_seconds)
        try:
            while True:
                try:
                    await asyncio.to_thread(self.sweep)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    # next tick retries; validation rejects expired rows regardless
                    logger.warning(
                        "token_sweep_failed", error_type=type(exc).__name__, error=str(exc)
                    )
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("token_reaper_cancelled")
