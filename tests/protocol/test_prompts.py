import datetime

from trainer_service.context.memory_store import MemoryStore
from trainer_service.core.executor_registry import ExecutorRegistry
from trainer_service.protocol.prompts import build_system_prompt_with_directives, collect_catalog, with_temporal_context
from trainer_service.tools.time_tool import TimeExecutor
from trainer_service.tools.workout_tool import WorkoutExecutor
from tests.fakes import RecordingExecutor


def test_prompt_lists_directives_and_grammar():
    registry = ExecutorRegistry([TimeExecutor(), WorkoutExecutor(MemoryStore())])
    prompt = build_system_prompt_with_directives(registry, "You are a coach.")
    assert prompt.startswith("You are a coach.")
    assert "• get_current_time: Get the current date and time for a timezone." in prompt
    assert "  - workout_json (string, required):" in prompt
    assert "  - date (string, optional): today, tomorrow or YYYY-MM-DD." in prompt
    assert '[TOOL_CALL: tool_name(param1: "value1", param2: "value2")]' in prompt


def test_empty_registry_keeps_base_instruction():
    assert build_system_prompt_with_directives(ExecutorRegistry(), "Base.") == "Base."


def test_catalog_for_plain_executors():
    entries = collect_catalog(ExecutorRegistry([RecordingExecutor(["A"])]))
    assert entries == [{"name": "A", "description": "", "parameters": []}]


def test_temporal_context():
    now = datetime.datetime(2026, 3, 10, 7, 30, tzinfo=datetime.timezone.utc)
    text = with_temporal_context("Base.", now)
    assert text.startswith("Base.\n\n[TEMPORAL_CONTEXT]")
    assert "Today's date: 2026-03-10" in text
    assert "Tuesday, March 10, 2026" in text
