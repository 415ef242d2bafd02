"""Persistence of AbuseRecords in the keyed state store.

Each address's whole record (including all nested username sub-records) is
read and written as one unit under ``record:<address>``.

Concurrency:
- atomic mode (default): optimistic compare-and-set against the raw value
  that was read, retried on conflict
- plain mode: unsynchronized read-modify-write. Concurrent bursts for the
  same address may lose updates and under-count; acceptable only for a
  best-effort deterrent
"""

import json
import logging
from typing import Callable, Optional, Tuple, TypeVar

from chatrelay.services.abuse_record import AbuseRecord, MalformedRecord
from chatrelay.services.kv_store import KeyValueStore, StoreUnavailable

logger = logging.getLogger(__name__)

RECORD_KEY_PREFIX = "record:"

T = TypeVar("T")

# Mutation callback: edits the record in place, returns (result, changed)
Mutator = Callable[[AbuseRecord], Tuple[T, bool]]


def record_key(address: str) -> str:
    """Composite store key for one address."""
    return f"{RECORD_KEY_PREFIX}{address}"


def decode_record(raw: Optional[str], address: str = "?") -> AbuseRecord:
    """Decode a raw stored value; absent or malformed values yield a fresh record."""
    if raw is None:
        return AbuseRecord()
    try:
        return AbuseRecord.from_dict(json.loads(raw))
    except (json.JSONDecodeError, MalformedRecord) as e:
        logger.warning(f"Malformed abuse record for {address}, using defaults: {e}")
        return AbuseRecord()


def encode_record(record: AbuseRecord) -> str:
    return json.dumps(record.to_dict(), separators=(",", ":"), sort_keys=True)


class AbuseRecordRepository:
    """Loads and updates AbuseRecords."""

    def __init__(
        self,
        store: KeyValueStore,
        atomic: bool = True,
        retries: int = 5,
    ):
        """
        Args:
            store: Keyed state store
            atomic: Use compare-and-set instead of a blind write
            retries: Extra CAS attempts after the first conflict
        """
        self.store = store
        self.atomic = atomic
        self.retries = retries

    async def load(self, address: str) -> AbuseRecord:
        """
        Load the record for an address (default-constructed if absent).

        Raises:
            StoreUnavailable: Store read failed
        """
        raw = await self.store.get(record_key(address))
        return decode_record(raw, address)

    async def exists(self, address: str) -> bool:
        return await self.store.get(record_key(address)) is not None

    async def update(self, address: str, mutate: Mutator) -> T:
        """
        Read the record, apply ``mutate`` and persist it in one write if changed.

        Args:
            address: Network address
            mutate: Callback editing the record in place and returning
                ``(result, changed)``

        Returns:
            Whatever ``mutate`` returned as its result

        Raises:
            StoreUnavailable: Read/write failed, or CAS kept conflicting
        """
        key = record_key(address)
        attempts = self.retries + 1 if self.atomic else 1

        for attempt in range(attempts):
            raw = await self.store.get(key)
            record = decode_record(raw, address)
            result, changed = mutate(record)
            if not changed:
                return result

            encoded = encode_record(record)
            if not self.atomic:
                await self.store.set(key, encoded)
                return result

            if await self.store.compare_and_set(key, raw, encoded):
                return result

            logger.debug(
                f"Record for {address} changed concurrently, retrying "
                f"(attempt {attempt + 1}/{attempts})"
            )

        logger.error(f"Gave up updating record for {address} after {attempts} attempts")
        raise StoreUnavailable(f"Too much contention on {key}", "write")
