"""Pytest configuration for property-based tests.

Kept minimal: property tests build their own in-memory stores and drive
coroutines with ``asyncio.run`` inside each example.
"""

from hypothesis import HealthCheck, settings

settings.register_profile(
    "ci",
    max_examples=200,
    suppress_health_check=[HealthCheck.too_slow],
)
settings.register_profile("dev", max_examples=50)
