"""
Pytest configuration and fixtures for rampsettle tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from tests.helpers.fakes import build_registry


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    # Reset BEFORE test (cleanup from previous test pollution)
    MetricsRecorder._reset_for_testing()

    yield

    MetricsRecorder._reset_for_testing()


@pytest.fixture
def registry():
    return build_registry()


@pytest.fixture(autouse=True)
def no_static_rate(monkeypatch):
    """Keep the developer's shell from leaking a static fallback rate into tests."""
    monkeypatch.delenv("FALLBACK_USDC_NGN_RATE", raising=False)
