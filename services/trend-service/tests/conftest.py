"""
Test configuration and fixtures
"""

import pytest

from app.domain.entities import Entity
from app.domain.periods import PeriodCalculator
from app.repositories.kv_store import MemoryKeyValueStore
from app.repositories.period_cache import PeriodCache

from .factories import FIXED_NOW, TZ, FakeCommerceClient


@pytest.fixture
def calculator():
    """Period calculator pinned to FIXED_NOW."""
    return PeriodCalculator(TZ, clock=lambda: FIXED_NOW)


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def period_cache(store, calculator):
    """Period cache with a long debounce so tests flush explicitly."""
    return PeriodCache(store, calculator, flush_delay=60)


@pytest.fixture
def entities():
    return [
        Entity(id="downtown", name="Downtown", upstream_id="loc-1"),
        Entity(id="eastside", name="Eastside", upstream_id="loc-2"),
    ]


@pytest.fixture
def commerce(entities, calculator):
    return FakeCommerceClient(entities, calculator)
