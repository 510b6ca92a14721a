import pytest

from trainer_service.context.memory_store import MemoryStore
from trainer_service.core.executor_registry import ExecutorRegistry
from trainer_service.protocol.delivery.connectivity import ManualConnectivity
from tests.fakes import RecordingExecutor


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def connectivity():
    return ManualConnectivity(connected=True)


@pytest.fixture
def executor():
    return RecordingExecutor(["get_status", "A", "B", "plan"])


@pytest.fixture
def registry(executor):
    return ExecutorRegistry([executor])
