import datetime
import json
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from trainer_service.core.interfaces import PersistenceStore
from trainer_service.core.types import RawJSON
from trainer_service.core.logging import logger
from trainer_service.tools.base import BaseExecutor


class StructuredWorkout(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    title: str
    summary: Optional[str] = None
    duration_minutes: Optional[int] = Field(default=None, alias="durationMinutes")
    exercises: List[Dict[str, Any]] = Field(default_factory=list)


def parse_date(text: str, today: datetime.date) -> datetime.date:
    value = (text or "today").strip().lower()
    if value == "today":
        return today
    if value == "tomorrow":
        return today + datetime.timedelta(days=1)
    if value == "yesterday":
        return today - datetime.timedelta(days=1)
    try:
        return datetime.date.fromisoformat(value)
    except ValueError:
        raise ValueError(f"Invalid date '{text}'; use today, tomorrow or YYYY-MM-DD") from None


def _load_payload(payload: Any) -> Dict[str, Any]:
    if isinstance(payload, RawJSON):
        return payload.loads()
    if isinstance(payload, dict):
        return payload
    return json.loads(str(payload))


def workout_key(day: datetime.date) -> str:
    return f"workouts/{day.isoformat()}"


class WorkoutExecutor(BaseExecutor):
    """Stores structured workouts sent by the model as an embedded JSON document."""

    directives = {
        "plan_workout": "plan_workout",
        "update_workout": "update_workout",
        "get_workout": "get_workout",
    }
    descriptions = {
        "plan_workout": "Planning your workout",
        "update_workout": "Updating your workout",
        "get_workout": "Looking up your workout",
    }

    def __init__(self, store: PersistenceStore, today: Optional[Callable[[], datetime.date]] = None):
        self.store = store
        self._today = today or datetime.date.today

    def _validate(self, payload: Any) -> StructuredWorkout:
        try:
            return StructuredWorkout.model_validate(_load_payload(payload))
        except json.JSONDecodeError as e:
            raise ValueError(f"workout_json is not valid JSON: {e.msg} at position {e.pos}") from e
        except ValidationError as e:
            raise ValueError(f"workout_json does not describe a workout: {e.errors()[0]['msg']}") from e

    async def _save(self, day: datetime.date, workout: StructuredWorkout, notes: Optional[str], icon: Optional[str]) -> None:
        record = {
            "date": day.isoformat(),
            "workout": workout.model_dump(by_alias=True, exclude_none=True),
            "notes": notes,
            "icon": icon,
        }
        await self.store.save(workout_key(day), record)
        logger.info(f"Saved workout '{workout.title}' for {day.isoformat()}")

    @staticmethod
    def _summary(header: str, day: datetime.date, workout: StructuredWorkout) -> str:
        lines = [header, f"• Date: {day.isoformat()}", f"• Workout: {workout.title}", f"• Exercises: {len(workout.exercises)}"]
        if workout.duration_minutes:
            lines.append(f"• Duration: {workout.duration_minutes} min")
        return "\n".join(lines)

    async def plan_workout(self, workout_json: Any, date: str = "today", notes: Optional[str] = None, icon: Optional[str] = None) -> str:
        """
        Plan a structured workout for a day.
        Args:
            workout_json: The workout as a JSON object with at least a "title" and an "exercises" list, passed as an escaped quoted string.
            date: today, tomorrow or YYYY-MM-DD.
            notes: Optional coaching notes.
            icon: Optional emoji shown next to the workout.
        """
        day = parse_date(date, self._today())
        workout = self._validate(workout_json)
        await self._save(day, workout, notes, icon)
        return self._summary("[Structured Workout Planned]", day, workout)

    async def update_workout(self, workout_json: Any, date: str = "today", notes: Optional[str] = None, icon: Optional[str] = None) -> str | dict:
        """
        Replace the workout already planned for a day.
        Args:
            workout_json: The full replacement workout JSON.
            date: today, tomorrow or YYYY-MM-DD.
            notes: Optional coaching notes.
            icon: Optional emoji shown next to the workout.
        """
        day = parse_date(date, self._today())
        if await self.store.load(workout_key(day)) is None:
            return {"error": f"No workout planned for {day.isoformat()} to update"}
        workout = self._validate(workout_json)
        await self._save(day, workout, notes, icon)
        return self._summary("[Structured Workout Updated]", day, workout)

    async def get_workout(self, date: str = "today") -> str:
        """
        Show the workout planned for a day.
        Args:
            date: today, tomorrow or YYYY-MM-DD.
        """
        day = parse_date(date, self._today())
        record = await self.store.load(workout_key(day))
        if record is None:
            return f"No workout planned for {day.isoformat()}."
        workout = StructuredWorkout.model_validate(record["workout"])
        text = self._summary("[Workout]", day, workout)
        if record.get("notes"):
            text += f"\n• Notes: {record['notes']}"
        return text
