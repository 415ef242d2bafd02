"""Join tracking: when did a username declare presence at an address.

``join_time`` bounds which stored messages that username may later read.
The gate itself never looks at it.
"""

import logging
from typing import Optional

from chatrelay.services.abuse_record import AbuseRecord
from chatrelay.services.record_store import AbuseRecordRepository

logger = logging.getLogger(__name__)

# Re-joining overwrites join_time
POLICY_REFRESH = "refresh"
# Re-joining keeps the first join_time
POLICY_PRESERVE = "preserve"


class JoinTracker:
    """Stamps and reads join times stored inside AbuseRecords."""

    def __init__(
        self,
        records: AbuseRecordRepository,
        policy: str = POLICY_REFRESH,
        max_users_per_address: int = 0,
    ):
        if policy not in (POLICY_REFRESH, POLICY_PRESERVE):
            raise ValueError(f"Unknown join time policy: {policy}")
        self.records = records
        self.policy = policy
        self.max_users_per_address = max_users_per_address

    async def join(self, address: str, username: str, now: int) -> int:
        """
        Record that ``username`` joined from ``address``.

        Returns:
            The join time now in effect
        """
        def stamp(record: AbuseRecord):
            sub = record.user(username)
            if sub.join_time is not None and self.policy == POLICY_PRESERVE:
                return sub.join_time, False
            sub.join_time = now
            record.prune_users(self.max_users_per_address, keep=username)
            return now, True

        join_time = await self.records.update(address, stamp)
        logger.info(f"User {username!r} joined from {address} (join_time={join_time})")
        return join_time

    async def get_join_time(self, address: str, username: str) -> Optional[int]:
        """
        Join time of ``username`` at ``address``.

        Returns:
            Join time in ms, 0 if the username sent messages but never
            joined, or None if the username is unknown at this address
        """
        record = await self.records.load(address)
        sub = record.users.get(username)
        if sub is None:
            return None
        return sub.join_time or 0
