"""Fixed-window message counter.

Not a sliding window: only the count since the last reset is tracked, so a
burst straddling a window boundary can exceed the nominal rate. Each counted
message also moves ``window_start`` forward, which means the window only
expires after Δ of silence.
"""

from dataclasses import dataclass
from typing import Union

from chatrelay.services.abuse_record import AbuseRecord, UserSubRecord

# Threshold used by every known deployment
DEFAULT_THRESHOLD = 5

# Either scope of the composite record carries the same counters
Counted = Union[AbuseRecord, UserSubRecord]


@dataclass
class WindowResult:
    """Outcome of counting one message against one scope."""
    count: int
    exceeded: bool


class FixedWindowRateLimiter:
    """Counts messages per scope and flags threshold violations."""

    def __init__(self, window_ms: int, threshold: int = DEFAULT_THRESHOLD):
        if window_ms <= 0:
            raise ValueError("Window must be positive")
        if threshold < 1:
            raise ValueError("Threshold must be at least 1")
        self.window_ms = window_ms
        self.threshold = threshold

    def evaluate(self, record: Counted, now: int) -> WindowResult:
        """
        Count one message against ``record`` (updated in place).

        Args:
            record: Address record or username sub-record
            now: Current time in ms

        Returns:
            WindowResult with the new count and whether it exceeds the threshold
        """
        if now - record.window_start > self.window_ms:
            record.count = 1
        else:
            record.count += 1
        record.window_start = now
        return WindowResult(count=record.count, exceeded=record.count > self.threshold)
