import pytest

from fakes import MemoryStore
from relay.services.recorder import TurnRecorder


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def recorder(store):
    return TurnRecorder(store, timeout=1.0)
