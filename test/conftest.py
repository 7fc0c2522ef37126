"""Pytest fixtures for order lifecycle tests."""

from datetime import timedelta

import pytest

from _helper import T0
from order_lifecycle.clock import ManualClock
from order_lifecycle.config import Settings
from order_lifecycle.services import LifecycleServices
from order_lifecycle.state_machine import OrderStateMachine
from order_lifecycle.storage import MemoryStore


@pytest.fixture
def clock():
    return ManualClock(T0)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def machine(store, clock):
    return OrderStateMachine(store, clock, stale_after=timedelta(hours=12), max_attempts=5, retry_backoff_ms=0)


@pytest.fixture
def test_settings():
    return Settings(storage_backend="memory", redis_url="", transition_retry_backoff_ms=0)


@pytest.fixture
def services(store, clock, test_settings):
    return LifecycleServices.create(store, clock=clock, settings=test_settings)
