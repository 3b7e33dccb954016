"""Client-local key/value state (device id, daily quota mirror).

Values are stored as JSON text in a single sqlite table so they survive app
restarts and are keyed independently of any other app data.
"""

import json
import os
from typing import Any, Optional

import aiosqlite

DEFAULT_STATE_PATH = os.getenv("NOOR_STATE_PATH", "./data/client_state.sqlite3")


def _ensure_dir(path: str) -> None:
    d = os.path.dirname(os.path.abspath(path))
    if d:
        os.makedirs(d, exist_ok=True)


class LocalStore:
    def __init__(self, path: Optional[str] = None):
        self.path = path or DEFAULT_STATE_PATH
        self._ready = False

    async def _init(self, db: aiosqlite.Connection) -> None:
        if self._ready:
            return
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS kv (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            )
            """
        )
        await db.commit()
        self._ready = True

    async def get(self, key: str) -> Optional[str]:
        _ensure_dir(self.path)
        async with aiosqlite.connect(self.path) as db:
            await self._init(db)
            async with db.execute("SELECT value FROM kv WHERE key=?", (key,)) as cur:
                row = await cur.fetchone()
        return row[0] if row else None

    async def set(self, key: str, value: str) -> None:
        _ensure_dir(self.path)
        async with aiosqlite.connect(self.path) as db:
            await self._init(db)
            await db.execute(
                "INSERT INTO kv(key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
            await db.commit()

    async def delete(self, key: str) -> None:
        _ensure_dir(self.path)
        async with aiosqlite.connect(self.path) as db:
            await self._init(db)
            await db.execute("DELETE FROM kv WHERE key=?", (key,))
            await db.commit()

    async def get_json(self, key: str) -> Any:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    async def set_json(self, key: str, value: Any) -> None:
        await self.set(key, json.dumps(value, ensure_ascii=False))
