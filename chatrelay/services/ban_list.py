"""Administrator-maintained list of banned network addresses."""

import logging
from typing import List

from chatrelay.services.kv_store import KeyValueStore, StoreUnavailable

logger = logging.getLogger(__name__)

BAN_LIST_KEY = "ban-list"


class BanList:
    """
    Read side of the ban list used by the gate, plus the admin helpers
    used by ``manage_bans.py``.

    The list is re-read on every check; nothing is cached.
    """

    def __init__(self, store: KeyValueStore, key: str = BAN_LIST_KEY):
        self.store = store
        self.key = key

    async def load(self) -> List[str]:
        """
        Load banned addresses.

        Raises:
            StoreUnavailable: Store read failed
        """
        value = await self.store.get_json(self.key)
        if value is None:
            return []
        if not isinstance(value, list):
            logger.error(f"Ban list under '{self.key}' is not a list, ignoring it")
            return []
        return [str(item) for item in value]

    async def is_banned(self, address: str) -> bool:
        """
        Check whether an address is banned.

        An absent or unreadable list counts as empty (fail open): bans are a
        layer on top of rate limiting, not the only defense.
        """
        try:
            banned = await self.load()
        except StoreUnavailable as e:
            logger.warning(f"Ban list unavailable, treating as empty: {e}")
            return False
        return address in banned

    async def ban(self, address: str) -> bool:
        """Add an address. Returns False if it was already banned."""
        banned = await self.load()
        if address in banned:
            return False
        banned.append(address)
        await self.store.set_json(self.key, banned)
        logger.info(f"Address {address} banned")
        return True

    async def unban(self, address: str) -> bool:
        """Remove an address. Returns False if it was not banned."""
        banned = await self.load()
        if address not in banned:
            return False
        banned.remove(address)
        await self.store.set_json(self.key, banned)
        logger.info(f"Address {address} unbanned")
        return True
