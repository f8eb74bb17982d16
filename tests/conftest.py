"""
Shared pytest fixtures and configuration for querycache tests.
"""

import pytest

from querycache import ManualTimerScheduler, QueryClient, _reset_query_client


@pytest.fixture(autouse=True)
def reset_query_client():
    """Reset the default client after each test to prevent state leakage."""
    yield
    _reset_query_client()


@pytest.fixture
def timers():
    """Virtual clock and timer queue, starting at t=0."""
    return ManualTimerScheduler()


@pytest.fixture
def client(timers):
    """A client whose cache runs on virtual time."""
    return QueryClient(scheduler=timers)


@pytest.fixture
def cache(client):
    return client.get_query_cache()
