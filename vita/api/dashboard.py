import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from vita.api.auth import get_current_user, identity_for
from vita.core.context_builder import aggregate_health_context
from vita.core.entity_store import EntityStore
from vita.core.errors import AggregationFailure
from vita.db.models import User

router = APIRouter(prefix="/dashboard", tags=["dashboard"])
logger = logging.getLogger("uvicorn.error")

DEFAULT_CALORIE_GOAL = 2000
DEFAULT_WATER_GOAL = 2500
DEFAULT_STEP_GOAL = 10000
DEFAULT_SLEEP_GOAL_HOURS = 8.0


class GoalProgress(BaseModel):
    current: float
    goal: float
    ratio: float


class TodaySummaryResponse(BaseModel):
    date: date
    user_name: str
    goal: Optional[str] = None
    steps: GoalProgress
    sleep: GoalProgress
    calories: GoalProgress
    water: GoalProgress
    sleep_quality: Optional[str] = None
    recent_mood: Optional[str] = None
    recent_stress_level: Optional[int] = None
    workouts_this_week: int


def get_entity_store(request: Request) -> EntityStore:
    return request.app.state.entity_store


def _progress(current: Optional[float], goal: float) -> GoalProgress:
    value = float(current or 0)
    ratio = min(1.0, value / goal) if goal > 0 else 0.0
    return GoalProgress(current=value, goal=float(goal), ratio=round(ratio, 3))


async def _read_goal_records(store: EntityStore, user_id: int, today: date) -> tuple[dict[str, Any], dict[str, Any]]:
    try:
        profiles, metrics = await asyncio.gather(
            store.query("user_profile", {"user_id": user_id}, limit=1),
            store.query("health_metric", {"user_id": user_id, "date": today}, limit=1),
        )
    except Exception as exc:
        raise AggregationFailure("Could not load your goals. Please try again.", user_id=user_id) from exc
    return (profiles[0] if profiles else {}), (metrics[0] if metrics else {})


@router.get("/today", response_model=TodaySummaryResponse)
async def get_today_summary(
    user: User = Depends(get_current_user),
    store: EntityStore = Depends(get_entity_store),
) -> TodaySummaryResponse:
    today = datetime.now(timezone.utc).date()
    try:
        # Goals and water are not part of the coach snapshot.
        snapshot, (profile, metric) = await asyncio.gather(
            aggregate_health_context(store, identity_for(user), today),
            _read_goal_records(store, user.id, today),
        )
    except AggregationFailure as exc:
        logger.warning("dashboard_reads_failed user_id=%s detail=%s", user.id, str(exc))
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    return TodaySummaryResponse(
        date=today,
        user_name=snapshot.user_name,
        goal=snapshot.goal,
        steps=_progress(snapshot.today_steps, profile.get("daily_step_goal", DEFAULT_STEP_GOAL)),
        sleep=_progress(snapshot.today_sleep_hours, profile.get("sleep_goal_hours", DEFAULT_SLEEP_GOAL_HOURS)),
        calories=_progress(snapshot.today_calories_consumed, profile.get("daily_calorie_goal", DEFAULT_CALORIE_GOAL)),
        water=_progress(metric.get("water_intake"), profile.get("daily_water_goal", DEFAULT_WATER_GOAL)),
        sleep_quality=snapshot.sleep_quality,
        recent_mood=snapshot.recent_mood,
        recent_stress_level=snapshot.recent_stress_level,
        workouts_this_week=snapshot.workouts_this_week_count,
    )
