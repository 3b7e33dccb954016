import uuid
from typing import Optional

from local_store import LocalStore

DEVICE_ID_KEY = "device_id"


class DeviceIdentity:
    """Opaque per-installation id, used only as the rate-limit key.

    Generated on first use and persisted; a new id appears only after the
    local store is cleared.
    """

    def __init__(self, store: LocalStore):
        self._store = store
        self._cached: Optional[str] = None

    async def get(self) -> str:
        if self._cached:
            return self._cached
        device_id = await self._store.get(DEVICE_ID_KEY)
        if not device_id:
            device_id = str(uuid.uuid4())
            await self._store.set(DEVICE_ID_KEY, device_id)
        self._cached = device_id
        return device_id
