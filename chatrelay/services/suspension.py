"""Escalating suspensions and the human-readable retry duration."""

from dataclasses import dataclass
from typing import Union

from chatrelay.services.abuse_record import AbuseRecord, UserSubRecord

Suspendable = Union[AbuseRecord, UserSubRecord]


@dataclass(frozen=True)
class RetryAfter:
    """Non-negative wait broken down into hours/minutes/seconds."""
    total_ms: int

    @classmethod
    def between(cls, until: int, now: int) -> "RetryAfter":
        return cls(total_ms=max(0, until - now))

    @property
    def hours(self) -> int:
        return self.total_ms // 3_600_000

    @property
    def minutes(self) -> int:
        return self.total_ms // 60_000 % 60

    @property
    def seconds(self) -> int:
        return self.total_ms // 1000 % 60

    @property
    def total_seconds(self) -> int:
        """Whole seconds, rounded up so a client never retries too early."""
        return -(-self.total_ms // 1000)

    def __str__(self) -> str:
        if self.total_ms <= 0:
            return "now"
        if self.hours > 0:
            return f"{self.hours} hour(s) and {self.minutes} minute(s)"
        if self.minutes > 0:
            return f"{self.minutes} minute(s) and {self.seconds} second(s)"
        return f"{self.seconds} second(s)"


class SuspensionPolicy:
    """
    Suspension check and escalating penalty.

    Penalty for a violation is ``window * count``: the higher the count that
    triggered it, the longer the suspension.
    """

    def __init__(self, window_ms: int):
        self.window_ms = window_ms

    @staticmethod
    def is_suspended(record: Suspendable, now: int) -> bool:
        return now < record.suspended_until

    def penalty_ms(self, violating_count: int) -> int:
        return self.window_ms * violating_count

    def suspend(self, record: Suspendable, now: int, violating_count: int) -> int:
        """
        Suspend ``record`` for ``window * violating_count``.

        Never shortens an existing suspension.

        Returns:
            The resulting ``suspended_until``
        """
        until = now + self.penalty_ms(violating_count)
        record.suspended_until = max(record.suspended_until, until)
        return record.suspended_until
