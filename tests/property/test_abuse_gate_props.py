"""
Property-based tests for the abuse gate.

Properties covered:
- fixed-window counting matches a reference model for any arrival pattern
- a banned address never gets a record
- a rejected (suspended) request never changes the stored record
- a violation suspends for exactly window * count
- arbitrary stored garbage, including typed fields holding NaN/Infinity,
  decodes to a default record and never breaks the gate
"""

import asyncio
import json
from typing import List

from hypothesis import given, settings, strategies as st

from chatrelay.services.abuse_gate import AbuseGate, DecisionKind
from chatrelay.services.abuse_record import AbuseRecord
from chatrelay.services.ban_list import BAN_LIST_KEY
from chatrelay.services.kv_store import MemoryKeyValueStore
from chatrelay.services.rate_limiter import FixedWindowRateLimiter
from chatrelay.services.record_store import decode_record, encode_record, record_key
from chatrelay.services.suspension import RetryAfter

WINDOW_MS = 60_000
THRESHOLD = 5
ADDRESS = "203.0.113.7"

gaps_strategy = st.lists(st.integers(min_value=0, max_value=3 * WINDOW_MS), min_size=1, max_size=30)
usernames_strategy = st.text(
    alphabet=st.characters(whitelist_categories=("Ll", "Lu", "Nd")),
    min_size=1,
    max_size=12,
)


# JSON values of every type, including non-finite floats
field_values = st.one_of(
    st.none(),
    st.booleans(),
    st.integers(min_value=-(10 ** 20), max_value=10 ** 20),
    st.floats(allow_nan=True, allow_infinity=True),
    st.text(max_size=10),
    st.lists(st.integers(), max_size=3),
)
sub_record_documents = st.fixed_dictionaries(
    {},
    optional={
        "count": field_values,
        "window_start": field_values,
        "suspended_until": field_values,
        "join_time": field_values,
        "joinTime": field_values,
    },
)
record_documents = st.fixed_dictionaries(
    {},
    optional={
        "v": st.one_of(st.just(1), st.just(0), field_values),
        "count": field_values,
        "window_start": field_values,
        "suspended_until": field_values,
        "lastMessageTime": field_values,
        "users": st.one_of(
            field_values,
            st.dictionaries(st.text(max_size=5), st.one_of(sub_record_documents, field_values), max_size=3),
        ),
    },
)


def _times(gaps: List[int]) -> List[int]:
    now, times = 0, []
    for gap in gaps:
        now += gap
        times.append(now)
    return times


@settings(max_examples=100)
@given(gaps=gaps_strategy)
def test_window_counting_matches_model(gaps):
    """Count resets only after strictly more than one window of silence."""
    limiter = FixedWindowRateLimiter(WINDOW_MS, THRESHOLD)
    record = AbuseRecord()
    expected = 0
    last = 0

    for now in _times(gaps):
        expected = 1 if now - last > WINDOW_MS else expected + 1
        last = now
        result = limiter.evaluate(record, now)
        assert result.count == expected
        assert result.exceeded == (expected > THRESHOLD)
        assert record.window_start == now


@settings(max_examples=50)
@given(usernames=st.lists(usernames_strategy, min_size=1, max_size=10), gaps=gaps_strategy)
def test_banned_address_never_gets_record(usernames, gaps):
    async def scenario():
        store = MemoryKeyValueStore()
        await store.set_json(BAN_LIST_KEY, [ADDRESS])
        gate = AbuseGate(store, window_ms=WINDOW_MS, threshold=THRESHOLD)

        for i, now in enumerate(_times(gaps)):
            decision = await gate.evaluate(ADDRESS, usernames[i % len(usernames)], now)
            assert decision.kind is DecisionKind.BANNED

        assert await store.get(record_key(ADDRESS)) is None

    asyncio.run(scenario())


@settings(max_examples=50)
@given(
    usernames=st.lists(usernames_strategy, min_size=1, max_size=4),
    gaps=st.lists(st.integers(min_value=0, max_value=WINDOW_MS), min_size=1, max_size=40),
)
def test_rejections_never_write(usernames, gaps):
    async def scenario():
        store = MemoryKeyValueStore()
        gate = AbuseGate(store, window_ms=WINDOW_MS, threshold=THRESHOLD)

        for i, now in enumerate(_times(gaps)):
            before = await store.get(record_key(ADDRESS))
            decision = await gate.evaluate(ADDRESS, usernames[i % len(usernames)], now)
            after = await store.get(record_key(ADDRESS))

            if decision.kind is DecisionKind.SUSPENDED:
                assert after == before
            else:
                assert after != before

    asyncio.run(scenario())


@settings(max_examples=50)
@given(
    seeded_count=st.integers(min_value=0, max_value=50),
    threshold=st.integers(min_value=1, max_value=10),
    now=st.integers(min_value=1, max_value=WINDOW_MS),
)
def test_violation_penalty_is_window_times_count(seeded_count, threshold, now):
    async def scenario():
        store = MemoryKeyValueStore()
        record = AbuseRecord(count=seeded_count, window_start=0)
        await store.set(record_key(ADDRESS), encode_record(record))
        gate = AbuseGate(store, window_ms=WINDOW_MS, threshold=threshold)

        decision = await gate.evaluate(ADDRESS, "alice", now)
        count = seeded_count + 1

        if count > threshold:
            assert decision.kind is DecisionKind.RATE_LIMITED
            assert decision.count == count
            assert decision.suspended_until == now + WINDOW_MS * count
        else:
            assert decision.kind is DecisionKind.ALLOWED

    asyncio.run(scenario())


@given(raw=st.text(max_size=200))
def test_garbage_decodes_to_default(raw):
    record = decode_record(raw)
    assert isinstance(record, AbuseRecord)


@settings(max_examples=200)
@given(document=record_documents)
def test_typed_garbage_decodes_to_default(document):
    """Any JSON object, whatever its field types, decodes without raising."""
    record = decode_record(json.dumps(document))
    assert isinstance(record, AbuseRecord)


@settings(max_examples=50)
@given(document=record_documents, now=st.integers(min_value=0, max_value=10 * WINDOW_MS))
def test_gate_survives_any_stored_document(document, now):
    async def scenario():
        store = MemoryKeyValueStore()
        await store.set(record_key(ADDRESS), json.dumps(document))
        gate = AbuseGate(store, window_ms=WINDOW_MS, threshold=THRESHOLD)

        decision = await gate.evaluate(ADDRESS, "alice", now)
        assert decision.kind in DecisionKind

    asyncio.run(scenario())


@given(total_ms=st.integers(min_value=0, max_value=10 * 24 * 3_600_000))
def test_retry_after_breakdown(total_ms):
    retry = RetryAfter(total_ms)

    shown = retry.hours * 3_600_000 + retry.minutes * 60_000 + retry.seconds * 1000
    assert shown <= total_ms < shown + 1000
    assert retry.total_seconds * 1000 >= total_ms
