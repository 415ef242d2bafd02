"""AbuseRecord data model and its versioned JSON codec.

One record per network address, stored under a single key, holding the
address-level counters and a nested map of per-username sub-records.

Stored layout (schema version 1)::

    {
        "v": 1,
        "count": 3,
        "window_start": 1718000000000,
        "suspended_until": 0,
        "users": {
            "alice": {"count": 3, "window_start": ..., "suspended_until": 0, "join_time": ...}
        }
    }

Version-less documents written by the legacy relay (camelCase
``lastMessageTime``/``suspendedUntil``/``joinTime``) are migrated on read.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Legacy field names -> current names
_LEGACY_FIELDS = {
    "lastMessageTime": "window_start",
    "suspendedUntil": "suspended_until",
    "joinTime": "join_time",
}


class MalformedRecord(ValueError):
    """Stored value does not parse as a valid AbuseRecord."""


def _read_int(data: Dict[str, Any], name: str, default: int = 0) -> int:
    value = data.get(name, default)
    if value is None:
        return default
    # bool is an int subclass, but never a valid counter or timestamp
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedRecord(f"Field {name!r} is not a number: {value!r}")
    if isinstance(value, float) and not math.isfinite(value):
        raise MalformedRecord(f"Field {name!r} is not finite: {value!r}")
    if value < 0:
        raise MalformedRecord(f"Field {name!r} is negative: {value!r}")
    return int(value)


def _migrate_legacy(data: Dict[str, Any]) -> Dict[str, Any]:
    migrated = dict(data)
    for old, new in _LEGACY_FIELDS.items():
        if old in migrated and new not in migrated:
            migrated[new] = migrated.pop(old)
    return migrated


@dataclass
class UserSubRecord:
    """Counters scoped to one (address, username) pair."""
    count: int = 0
    window_start: int = 0
    suspended_until: int = 0
    join_time: Optional[int] = None

    @property
    def last_active(self) -> int:
        """Latest moment this username did anything at the address."""
        return max(self.window_start, self.join_time or 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "window_start": self.window_start,
            "suspended_until": self.suspended_until,
            "join_time": self.join_time,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "UserSubRecord":
        if not isinstance(data, dict):
            raise MalformedRecord(f"User sub-record is not an object: {data!r}")
        data = _migrate_legacy(data)
        join_time = data.get("join_time")
        return cls(
            count=_read_int(data, "count"),
            window_start=_read_int(data, "window_start"),
            suspended_until=_read_int(data, "suspended_until"),
            join_time=_read_int(data, "join_time") if join_time is not None else None,
        )


@dataclass
class AbuseRecord:
    """
    Composite abuse state for one network address.

    Attributes:
        count: Messages seen in the current window for this address
        window_start: Timestamp (ms) of the most recent counted message
        suspended_until: Address may not send while now < suspended_until
        users: Username -> UserSubRecord
    """
    count: int = 0
    window_start: int = 0
    suspended_until: int = 0
    users: Dict[str, UserSubRecord] = field(default_factory=dict)

    def user(self, username: str) -> UserSubRecord:
        """Get the sub-record for a username, creating a default one if missing."""
        sub = self.users.get(username)
        if sub is None:
            sub = UserSubRecord()
            self.users[username] = sub
        return sub

    def prune_users(self, limit: int, keep: Optional[str] = None) -> int:
        """
        Evict least-recently-active usernames beyond ``limit``.

        Args:
            limit: Maximum usernames to retain (0 or less disables pruning)
            keep: Username that must survive pruning (the one in use)

        Returns:
            Number of evicted usernames
        """
        if limit <= 0 or len(self.users) <= limit:
            return 0

        candidates = sorted(
            (name for name in self.users if name != keep),
            key=lambda name: self.users[name].last_active,
        )
        excess = len(self.users) - limit
        evicted = candidates[:excess]
        for name in evicted:
            del self.users[name]
        if evicted:
            logger.debug(f"Pruned {len(evicted)} idle usernames from record")
        return len(evicted)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "v": SCHEMA_VERSION,
            "count": self.count,
            "window_start": self.window_start,
            "suspended_until": self.suspended_until,
            "users": {name: sub.to_dict() for name, sub in self.users.items()},
        }

    @classmethod
    def from_dict(cls, data: Any) -> "AbuseRecord":
        """
        Decode a stored document.

        Raises:
            MalformedRecord: Wrong shape, wrong types, negative values or an
                unknown schema version.
        """
        if not isinstance(data, dict):
            raise MalformedRecord(f"Record is not an object: {type(data).__name__}")

        version = data.get("v", 0)
        if isinstance(version, bool):
            raise MalformedRecord(f"Record schema version is not a number: {version!r}")
        if version == 0:
            data = _migrate_legacy(data)
        elif version != SCHEMA_VERSION:
            raise MalformedRecord(f"Unsupported record schema version: {version!r}")

        users_raw = data.get("users")
        if users_raw is None:
            users_raw = {}
        if not isinstance(users_raw, dict):
            raise MalformedRecord("Field 'users' is not an object")

        return cls(
            count=_read_int(data, "count"),
            window_start=_read_int(data, "window_start"),
            suspended_until=_read_int(data, "suspended_until"),
            users={str(name): UserSubRecord.from_dict(sub) for name, sub in users_raw.items()},
        )
