"""Per-device daily message counter backing the proxy's quota gate.

Rows are keyed by ``(device_id, day)`` with ``day`` as a UTC ``YYYY-MM-DD``
string, so a new day starts a fresh record and nothing ever needs resetting.
"""

import os
import sqlite3
import time
from contextlib import suppress

import aiosqlite


def today_utc() -> str:
    return time.strftime("%Y-%m-%d", time.gmtime())


def _ensure_dir(path: str) -> None:
    d = os.path.dirname(os.path.abspath(path))
    if d:
        os.makedirs(d, exist_ok=True)


class RateLimiter:
    def __init__(self, db_path: str, *, timeout: float = 5.0):
        self.db_path = db_path
        self.timeout = timeout
        self._ready = False

    async def init(self) -> None:
        _ensure_dir(self.db_path)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS rate_limits (
                  device_id TEXT NOT NULL,
                  day TEXT NOT NULL,
                  count INTEGER NOT NULL DEFAULT 0,
                  PRIMARY KEY (device_id, day)
                )
                """
            )
            await db.commit()
        self._ready = True

    async def increment(self, device_id: str, day: str) -> int:
        """Count one accepted request and return the post-increment total.

        Upsert and read-back share one ``BEGIN IMMEDIATE`` transaction, which
        takes the write lock up front, so concurrent sends from the same device
        each observe a distinct count. Storage errors propagate to the caller.
        """
        if not self._ready:
            await self.init()
        async with aiosqlite.connect(self.db_path, timeout=self.timeout, isolation_level=None) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                await db.execute(
                    """
                    INSERT INTO rate_limits(device_id, day, count)
                    VALUES (?, ?, 1)
                    ON CONFLICT(device_id, day) DO UPDATE SET count = count + 1
                    """,
                    (device_id, day),
                )
                async with db.execute(
                    "SELECT count FROM rate_limits WHERE device_id=? AND day=?",
                    (device_id, day),
                ) as cur:
                    row = await cur.fetchone()
                await db.execute("COMMIT")
            except Exception:
                with suppress(sqlite3.Error):
                    await db.execute("ROLLBACK")
                raise
        return int(row[0])

    async def count(self, device_id: str, day: str) -> int:
        if not self._ready:
            await self.init()
        async with aiosqlite.connect(self.db_path, timeout=self.timeout) as db:
            async with db.execute(
                "SELECT count FROM rate_limits WHERE device_id=? AND day=?",
                (device_id, day),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0
