"""
Shared fixtures: a frozen registry of the test entity types, a ticking
clock and an entity store over the in-memory table.
"""

import pytest

from dataplane.tabledata.schema import EntityRegistry
from dataplane.tabledata.store import EntityStore, InMemoryTable
from dataplane.tabledata.telemetry import RecordingTelemetry

from .entities import ALL_TYPES, TickingClock


@pytest.fixture
def registry():
    """Frozen registry with every test entity type."""
    reg = EntityRegistry(ALL_TYPES)
    reg.freeze()
    return reg


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
async def table():
    t = InMemoryTable(table_name="Entities")
    await t.connect()
    yield t
    await t.close()


@pytest.fixture
def store(table, registry, clock):
    return EntityStore(table, registry, clock=clock)


@pytest.fixture
def telemetry():
    return RecordingTelemetry()
