"""Advisory mirror of the server's daily quota.

The proxy's counter is the real gate. This one only drives UI hints and a fast
local refusal of sends that are obviously over the limit, so it is allowed to
drift (a reinstall resets it while the server still remembers the device).
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from local_store import LocalStore

logger = logging.getLogger(__name__)

DAILY_LIMIT = 20
WARN_AT = 15
QUOTA_KEY = "quota.daily"


def _today_utc() -> str:
    return time.strftime("%Y-%m-%d", time.gmtime())


@dataclass(frozen=True)
class CountInfo:
    count: int
    remaining: int
    is_limit_reached: bool
    should_warn: bool


def count_info_for(count: int, *, limit: int = DAILY_LIMIT, warn_at: int = WARN_AT) -> CountInfo:
    return CountInfo(
        count=count,
        remaining=max(0, limit - count),
        is_limit_reached=count >= limit,
        should_warn=count >= warn_at,
    )


class LocalQuota:
    def __init__(
        self,
        store: LocalStore,
        *,
        limit: int = DAILY_LIMIT,
        warn_at: int = WARN_AT,
        today: Optional[Callable[[], str]] = None,
    ):
        self._store = store
        self.limit = limit
        self.warn_at = warn_at
        self._today = today or _today_utc
        # Read-modify-write; concurrent sends bump through one writer.
        self._lock = asyncio.Lock()

    async def _read_count(self) -> int:
        rec = await self._store.get_json(QUOTA_KEY)
        if not isinstance(rec, dict) or rec.get("date") != self._today():
            return 0
        count = rec.get("count")
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            return 0
        return count

    async def get_count_info(self) -> CountInfo:
        try:
            count = await self._read_count()
        except Exception as e:
            logger.warning("local quota unreadable, assuming zero: %r", e)
            count = 0
        return count_info_for(count, limit=self.limit, warn_at=self.warn_at)

    async def bump(self) -> int:
        async with self._lock:
            count = await self._read_count() + 1
            await self._store.set_json(QUOTA_KEY, {"date": self._today(), "count": count})
        return count
