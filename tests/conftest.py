"""Pytest configuration and shared fixtures.

Tests run without a database: services get mock sessions and the flow
tests use the in-memory FakeWorld from ``factories``.
"""

from collections.abc import Generator

import pytest

from clm.core.settings import clear_settings_cache
from tests.factories import BASE_TIME, FakeWorld, FixedClock, tenant_ctx


# ---------------------------------------------------------------------------
# Settings isolation
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def clean_settings_cache() -> Generator[None, None, None]:
    """Make every test load settings from its own environment."""
    clear_settings_cache()
    yield
    clear_settings_cache()


# ---------------------------------------------------------------------------
# Time and tenancy
# ---------------------------------------------------------------------------
@pytest.fixture
def clock() -> FixedClock:
    """Clock frozen at BASE_TIME."""
    return FixedClock(BASE_TIME)


@pytest.fixture
def ctx():
    """Context for the default test tenant."""
    return tenant_ctx()


@pytest.fixture
def world(clock: FixedClock) -> FakeWorld:
    """Empty in-memory store sharing the test clock."""
    return FakeWorld(clock)
