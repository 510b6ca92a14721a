import datetime
import json

import pytest

from trainer_service.context.memory_store import MemoryStore
from trainer_service.core.executor_registry import ExecutorRegistry
from trainer_service.core.types import DirectiveCall, escape_payload
from trainer_service.protocol.orchestration.router import DirectiveRouter
from trainer_service.protocol.parsers.directives import DirectiveDetector
from trainer_service.tools.workout_tool import WorkoutExecutor, parse_date, workout_key

TODAY = datetime.date(2026, 3, 10)
WORKOUT = {
    "title": "Lower body",
    "durationMinutes": 45,
    "exercises": [{"name": "Squat", "sets": 5, "reps": 5}, {"name": "RDL", "sets": 3, "reps": 8}],
}


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def tool(store):
    return WorkoutExecutor(store, today=lambda: TODAY)


def directive(name, params):
    return DirectiveDetector().detect(f"[TOOL_CALL: {name}({params})]")[0]


def test_parse_date():
    assert parse_date("today", TODAY) == TODAY
    assert parse_date("Tomorrow", TODAY) == datetime.date(2026, 3, 11)
    assert parse_date("yesterday", TODAY) == datetime.date(2026, 3, 9)
    assert parse_date("2026-04-01", TODAY) == datetime.date(2026, 4, 1)
    with pytest.raises(ValueError):
        parse_date("next week", TODAY)


@pytest.mark.asyncio
async def test_plan_from_directive_text(tool, store):
    payload = escape_payload(json.dumps(WORKOUT))
    call = directive("plan_workout", f'workout_json: "{payload}", date: tomorrow, notes: "keep it easy"')

    result = await tool.execute(call)

    assert result.success
    assert result.output.splitlines() == [
        "[Structured Workout Planned]",
        "• Date: 2026-03-11",
        "• Workout: Lower body",
        "• Exercises: 2",
        "• Duration: 45 min",
    ]
    saved = await store.load(workout_key(datetime.date(2026, 3, 11)))
    assert saved["workout"]["durationMinutes"] == 45
    assert saved["notes"] == "keep it easy"


@pytest.mark.asyncio
async def test_update_requires_existing_workout(tool):
    call = directive("update_workout", f'workout_json: "{escape_payload(json.dumps(WORKOUT))}"')
    result = await tool.execute(call)
    assert not result.success
    assert "No workout planned" in result.error


@pytest.mark.asyncio
async def test_update_then_get(tool):
    await tool.plan_workout({"title": "Easy run", "exercises": []})
    updated = dict(WORKOUT, title="Tempo run")
    result = await tool.execute(directive("update_workout", f'workout_json: "{escape_payload(json.dumps(updated))}"'))
    assert result.output.startswith("[Structured Workout Updated]")

    shown = await tool.execute(DirectiveCall("get_workout", {"date": "today"}))
    assert "• Workout: Tempo run" in shown.output


@pytest.mark.asyncio
async def test_get_without_plan(tool):
    result = await tool.execute(DirectiveCall("get_workout"))
    assert result.success
    assert result.output == "No workout planned for 2026-03-10."


@pytest.mark.asyncio
async def test_missing_required_parameter(tool):
    result = await tool.execute(DirectiveCall("plan_workout", {"date": "today"}))
    assert not result.success
    assert result.error == "Missing required parameter(s): workout_json"


@pytest.mark.asyncio
async def test_invalid_payload_fails_through_router(tool):
    router = DirectiveRouter(ExecutorRegistry([tool]))
    result = await router.route(directive("plan_workout", r'workout_json: "{\"title\": }"'))
    assert not result.success
    assert "not valid JSON" in result.error

    result = await router.route(directive("plan_workout", r'workout_json: "{\"exercises\": []}"'))
    assert not result.success
    assert "does not describe a workout" in result.error
