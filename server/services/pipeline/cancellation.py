"""Cancellation signals.

A cancel request is recorded locally (same process) and as a cache flag so a
scheduler in another replica sharing Redis sees it at its next node boundary.

Key schema:
    execution:{id}:cancel -> {"reason", "cancelled_by", "cancelled_at"}
"""

import time
from typing import Any, Dict, Optional, TYPE_CHECKING

from core.logging import get_logger

if TYPE_CHECKING:
    from core.cache import CacheService

logger = get_logger(__name__)

CANCEL_FLAG_TTL = 3600


class CancellationSignals:
    def __init__(self, cache: Optional["CacheService"] = None):
        self.cache = cache
        self._local: Dict[str, Dict[str, Any]] = {}

    @staticmethod
    def _key(execution_id: str) -> str:
        return f"execution:{execution_id}:cancel"

    async def request(self, execution_id: str, reason: str,
                      cancelled_by: Optional[str] = None) -> Dict[str, Any]:
        signal = {
            "reason": reason,
            "cancelled_by": cancelled_by,
            "cancelled_at": time.time(),
        }
        self._local[execution_id] = signal
        if self.cache is not None:
            await self.cache.set(self._key(execution_id), signal, ttl=CANCEL_FLAG_TTL)
        logger.info("Cancellation requested", execution_id=execution_id, reason=reason)
        return signal

    async def get(self, execution_id: str) -> Optional[Dict[str, Any]]:
        """The pending cancel request for an execution, if any."""
        signal = self._local.get(execution_id)
        if signal is None and self.cache is not None:
            signal = await self.cache.get(self._key(execution_id))
        return signal

    async def clear(self, execution_id: str) -> None:
        self._local.pop(execution_id, None)
        if self.cache is not None:
            await self.cache.delete(self._key(execution_id))
