"""Test helpers for the rampsettle test suite"""

from tests.helpers.fakes import (
    FakeChainReader,
    FakeRoster,
    build_coordinator,
    build_registry,
    provider,
    rate_oracle,
)

__all__ = [
    "FakeChainReader",
    "FakeRoster",
    "build_coordinator",
    "build_registry",
    "provider",
    "rate_oracle",
]
