"""Abuse gate: one decision per inbound message.

Order of checks:
1. Ban list (cheapest, highest priority, never rate limited)
2. Suspension of the address or the (address, username) pair; rejected
   requests are not counted and nothing is written
3. Fixed-window counting on both scopes; a violation on either scope
   suspends both, with the penalty taken from the larger of the two counts
4. One write of the whole AbuseRecord

Evaluations are not idempotent: replaying the same (address, username, now)
counts as another message.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from chatrelay.config import Settings
from chatrelay.services.abuse_record import AbuseRecord
from chatrelay.services.ban_list import BanList
from chatrelay.services.kv_store import KeyValueStore, StoreUnavailable
from chatrelay.services.metrics import track_gate_decision, track_store_error
from chatrelay.services.rate_limiter import DEFAULT_THRESHOLD, FixedWindowRateLimiter
from chatrelay.services.record_store import AbuseRecordRepository
from chatrelay.services.suspension import RetryAfter, SuspensionPolicy
from chatrelay.utils import now_ms

logger = logging.getLogger(__name__)

SERVICE_UNAVAILABLE_MESSAGE = "Service temporarily unavailable. Please try again later."


class ValidationError(ValueError):
    """Request is missing the address or the username."""


class DecisionKind(Enum):
    """Outcome of a gate evaluation."""
    ALLOWED = "allowed"
    BANNED = "banned"
    SUSPENDED = "suspended"
    RATE_LIMITED = "rate_limited"


@dataclass
class Decision:
    """
    Gate decision for one message.

    Attributes:
        kind: What happened
        now: Evaluation time (ms)
        suspended_until: End of the suspension for SUSPENDED/RATE_LIMITED
        count: Counter value that triggered RATE_LIMITED
        degraded: Decision taken without the record store (store unavailable)
    """
    kind: DecisionKind
    now: int
    suspended_until: int = 0
    count: int = 0
    degraded: bool = False

    @property
    def allowed(self) -> bool:
        return self.kind is DecisionKind.ALLOWED

    @property
    def retry_after(self) -> RetryAfter:
        return RetryAfter.between(self.suspended_until, self.now)

    @property
    def reason(self) -> str:
        """Human-readable explanation for the sender."""
        if self.degraded and not self.allowed:
            return SERVICE_UNAVAILABLE_MESSAGE
        if self.kind is DecisionKind.BANNED:
            return "Your IP address is banned from sending messages"
        if self.kind is DecisionKind.SUSPENDED:
            return (
                "You are suspended from sending messages. "
                f"Please check back in {self.retry_after}"
            )
        if self.kind is DecisionKind.RATE_LIMITED:
            return (
                f"Rate limit exceeded ({self.count} messages). "
                f"You are suspended from sending messages for {self.retry_after}"
            )
        return "Message accepted"


class AbuseGate:
    """Orchestrates BanList -> SuspensionPolicy -> RateLimiter -> record write."""

    def __init__(
        self,
        store: KeyValueStore,
        window_ms: int,
        threshold: int = DEFAULT_THRESHOLD,
        fail_closed: bool = True,
        atomic: bool = True,
        retries: int = 5,
        max_users_per_address: int = 0,
    ):
        """
        Args:
            store: Keyed state store holding the ban list and the records
            window_ms: Window length Δ in ms
            threshold: Messages allowed per window
            fail_closed: Deny when the record cannot be read
            atomic: Persist records with compare-and-set
            retries: CAS retries on conflict
            max_users_per_address: Cap on usernames per record (0 = no cap)
        """
        self.ban_list = BanList(store)
        self.records = AbuseRecordRepository(store, atomic=atomic, retries=retries)
        self.limiter = FixedWindowRateLimiter(window_ms, threshold)
        self.policy = SuspensionPolicy(window_ms)
        self.fail_closed = fail_closed
        self.max_users_per_address = max_users_per_address

    @classmethod
    def from_settings(cls, store: KeyValueStore, settings: Settings) -> "AbuseGate":
        return cls(
            store,
            window_ms=settings.rate_limit_window_ms,
            threshold=settings.rate_limit_threshold,
            fail_closed=settings.store_fail_closed,
            atomic=settings.atomic_record_updates,
            retries=settings.record_update_retries,
            max_users_per_address=settings.max_users_per_address,
        )

    @property
    def window_ms(self) -> int:
        return self.limiter.window_ms

    async def evaluate(
        self,
        address: Optional[str],
        username: Optional[str],
        now: Optional[int] = None,
    ) -> Decision:
        """
        Decide whether ``username`` at ``address`` may send a message now.

        Args:
            address: Sender network address
            username: Declared username
            now: Current time in ms (defaults to the wall clock)

        Returns:
            Decision

        Raises:
            ValidationError: Address or username missing
            StoreUnavailable: Record write failed; the request is abandoned
        """
        if not address:
            raise ValidationError("Missing sender address")
        if not username:
            raise ValidationError("Missing username")
        if now is None:
            now = now_ms()

        started = time.perf_counter()
        decision = await self._decide(address, username, now)
        await track_gate_decision(decision.kind.value, time.perf_counter() - started)
        return decision

    async def _decide(self, address: str, username: str, now: int) -> Decision:
        if await self.ban_list.is_banned(address):
            logger.info(f"Banned address {address} tried to send as {username!r}")
            return Decision(DecisionKind.BANNED, now)

        try:
            decision = await self.records.update(
                address, lambda record: self._apply(record, username, now)
            )
        except StoreUnavailable as e:
            await track_store_error(e.operation)
            if e.operation == "write":
                logger.error(f"Abandoning request from {address}: record write failed: {e}")
                raise
            return self._degraded(address, now, e)

        if decision.kind is DecisionKind.SUSPENDED:
            logger.info(
                f"Suspended sender {username!r}@{address} rejected, "
                f"retry in {decision.retry_after}"
            )
        elif decision.kind is DecisionKind.RATE_LIMITED:
            logger.warning(
                f"Rate limit exceeded by {username!r}@{address} "
                f"(count={decision.count}), suspended for {decision.retry_after}"
            )
        return decision

    def _apply(self, record: AbuseRecord, username: str, now: int) -> Tuple[Decision, bool]:
        """Evaluate one message against a freshly loaded record (mutated in place)."""
        sub = record.users.get(username)

        # Suspended requests are rejected before anything is counted
        address_suspended = self.policy.is_suspended(record, now)
        user_suspended = sub is not None and self.policy.is_suspended(sub, now)
        if address_suspended or user_suspended:
            until = max(record.suspended_until, sub.suspended_until if sub else 0)
            return Decision(DecisionKind.SUSPENDED, now, suspended_until=until), False

        sub = record.user(username)
        address_result = self.limiter.evaluate(record, now)
        user_result = self.limiter.evaluate(sub, now)
        record.prune_users(self.max_users_per_address, keep=username)

        if address_result.exceeded or user_result.exceeded:
            count = max(address_result.count, user_result.count)
            until = max(
                self.policy.suspend(record, now, count),
                self.policy.suspend(sub, now, count),
            )
            return Decision(DecisionKind.RATE_LIMITED, now, suspended_until=until, count=count), True

        return Decision(DecisionKind.ALLOWED, now), True

    def _degraded(self, address: str, now: int, error: StoreUnavailable) -> Decision:
        if self.fail_closed:
            logger.error(f"Record store unavailable for {address}, denying: {error}")
            return Decision(
                DecisionKind.SUSPENDED,
                now,
                suspended_until=now + self.window_ms,
                degraded=True,
            )
        logger.warning(f"Record store unavailable for {address}, allowing without counting: {error}")
        return Decision(DecisionKind.ALLOWED, now, degraded=True)
