import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Optional

from vita.core.entity_store import EntityStore
from vita.core.errors import AggregationFailure

logger = logging.getLogger("uvicorn.error")

RECENT_MOOD_LIMIT = 3
RECENT_WORKOUT_LIMIT = 7


@dataclass(frozen=True)
class Identity:
    id: int
    display_name: str
    email: str


@dataclass(frozen=True)
class HealthContextSnapshot:
    user_name: str = "User"
    goal: Optional[str] = None
    today_steps: Optional[int] = None
    today_sleep_hours: Optional[float] = None
    sleep_quality: Optional[str] = None
    today_calories_consumed: float = 0
    recent_mood: Optional[str] = None
    recent_stress_level: Optional[int] = None
    workouts_this_week_count: int = 0


def _first(rows: list[dict[str, Any]]) -> Optional[dict[str, Any]]:
    return rows[0] if rows else None


def _calories(meals: list[dict[str, Any]]) -> float:
    total = sum(float(meal.get("calories") or 0) for meal in meals)
    return int(total) if total == int(total) else round(total, 1)


def reduce_health_context(
    identity: Identity,
    *,
    metric: Optional[dict[str, Any]],
    moods: list[dict[str, Any]],
    workouts: list[dict[str, Any]],
    meals: list[dict[str, Any]],
    profile: Optional[dict[str, Any]],
) -> HealthContextSnapshot:
    metric = metric or {}
    latest_mood = _first(moods) or {}
    goal = str((profile or {}).get("goal") or "").strip()
    return HealthContextSnapshot(
        user_name=(identity.display_name or "").strip() or "User",
        goal=goal or None,
        today_steps=metric.get("steps"),
        today_sleep_hours=metric.get("sleep_hours"),
        sleep_quality=metric.get("sleep_quality"),
        today_calories_consumed=_calories(meals),
        recent_mood=latest_mood.get("mood_label"),
        recent_stress_level=latest_mood.get("stress_level"),
        workouts_this_week_count=len(workouts),
    )


async def aggregate_health_context(store: EntityStore, identity: Identity, today: date) -> HealthContextSnapshot:
    """Read the five health sources concurrently and reduce them to one snapshot.

    ``today`` is supplied by the caller so a request that straddles midnight
    still reads a single calendar day. Empty sources are normal and fall back
    to the snapshot defaults; any failed read fails the whole aggregation.
    """
    owner = {"user_id": identity.id}
    try:
        metrics, moods, workouts, meals, profiles = await asyncio.gather(
            store.query("health_metric", {**owner, "date": today}),
            store.query("mood_entry", owner, sort="-created_at", limit=RECENT_MOOD_LIMIT),
            store.query("workout_log", owner, sort="-created_at", limit=RECENT_WORKOUT_LIMIT),
            store.query("meal_log", {**owner, "date": today}),
            store.query("user_profile", owner),
        )
    except Exception as exc:
        logger.exception("coach_context_read_failed user_id=%s detail=%s", identity.id, str(exc))
        raise AggregationFailure(
            "Could not load your health data. Please try again.", user_id=identity.id
        ) from exc

    return reduce_health_context(
        identity,
        metric=_first(metrics),
        moods=moods,
        workouts=workouts,
        meals=meals,
        profile=_first(profiles),
    )
