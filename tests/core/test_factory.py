import pytest

from trainer_service.context.memory_store import MemoryStore
from trainer_service.core.factory import ServiceFactory, load
from trainer_service.protocol.delivery.connectivity import ManualConnectivity
from trainer_service.providers.scripted.provider import ScriptedModelService

CONFIG = {
    "providers": {
        "model": {"impl": "trainer_service.providers.scripted.provider.ScriptedModelService", "args": {"replies": ["Hi"]}},
        "store": {"impl": "trainer_service.context.memory_store.MemoryStore"},
        "connectivity": {"impl": "trainer_service.protocol.delivery.connectivity.ManualConnectivity"},
    },
    "network": {"timeout_sec": 30},
    "limits": {"max_turns": 3, "tool_timeout_sec": 5},
    "retry": {"max_attempts": 4},
    "directives": {
        "reserved_payload_fields": ["workout_json"],
        "registry": [
            {"name": "time", "impl": "trainer_service.tools.time_tool.TimeExecutor"},
            {"name": "workouts", "impl": "trainer_service.tools.workout_tool.WorkoutExecutor"},
        ],
        "enabled": ["workouts"],
    },
    "system": {"prompt": "You are a coach.", "fallback_response": "Sorry."},
}


def test_load_filters_unknown_kwargs():
    model = load("trainer_service.providers.scripted.provider.ScriptedModelService", replies=["x"], timeout_sec=5)
    assert isinstance(model, ScriptedModelService)
    assert model.replies == ["x"]


def test_factory_wires_chat_service():
    factory = ServiceFactory(CONFIG)
    service = factory.get_chat_service()
    assert isinstance(service.store, MemoryStore)
    assert isinstance(service.connectivity, ManualConnectivity)
    assert service.registry.names() == ["get_workout", "plan_workout", "update_workout"]
    assert service.max_turns == 3
    assert service.fallback_response == "Sorry."
    assert service.delivery.policy.max_attempts == 4
    assert service.system_prompt.startswith("You are a coach.")
    assert "plan_workout" in service.system_prompt
    assert factory.get_store() is service.store


def test_missing_provider_impl():
    with pytest.raises(ValueError):
        ServiceFactory({"providers": {}}).get_model()
