import json
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from vita.api.auth import get_current_user
from vita.db.models import User, UserProfile, Workout, WorkoutLog
from vita.db.session import get_db

router = APIRouter(prefix="/workouts", tags=["workouts"])

CATALOG_LIMIT = 50


class WorkoutType(str, Enum):
    hiit = "hiit"
    yoga = "yoga"
    strength = "strength"
    cardio = "cardio"
    stretching = "stretching"


class Difficulty(str, Enum):
    beginner = "beginner"
    intermediate = "intermediate"
    advanced = "advanced"


class ExerciseItem(BaseModel):
    name: str
    reps: Optional[int] = None
    duration_seconds: Optional[int] = None


class CatalogWorkoutItem(BaseModel):
    id: int
    name: str
    type: WorkoutType
    duration_minutes: Optional[int] = None
    calories: Optional[int] = None
    difficulty: Difficulty
    description: Optional[str] = None
    exercises: list[ExerciseItem]
    image_url: Optional[str] = None
    is_premium: bool
    locked: bool


class CatalogResponse(BaseModel):
    items: list[CatalogWorkoutItem]


class WorkoutLogCreateRequest(BaseModel):
    workout_id: Optional[int] = None
    workout_name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    workout_type: Optional[WorkoutType] = None
    duration_minutes: Optional[int] = Field(default=None, ge=1, le=600)
    calories_burned: Optional[int] = Field(default=None, ge=0, le=10000)
    log_date: Optional[date] = Field(default=None, alias="date")


class WorkoutLogItem(BaseModel):
    id: int
    workout_id: Optional[int] = None
    workout_name: str
    workout_type: Optional[WorkoutType] = None
    duration_minutes: Optional[int] = None
    calories_burned: Optional[int] = None
    date: date
    created_at: datetime


class WorkoutLogListResponse(BaseModel):
    items: list[WorkoutLogItem]


def _has_premium(db: Session, user_id: int) -> bool:
    profile = db.query(UserProfile).filter(UserProfile.user_id == user_id).first()
    return bool(profile and profile.is_premium)


def _exercises(row: Workout) -> list[ExerciseItem]:
    try:
        raw = json.loads(row.exercises_json or "[]")
    except json.JSONDecodeError:
        return []
    if not isinstance(raw, list):
        return []
    return [ExerciseItem(**item) for item in raw if isinstance(item, dict) and item.get("name")]


def _to_catalog_item(row: Workout, premium: bool) -> CatalogWorkoutItem:
    return CatalogWorkoutItem(
        id=row.id,
        name=row.name,
        type=WorkoutType(row.type),
        duration_minutes=row.duration_minutes,
        calories=row.calories,
        difficulty=Difficulty(row.difficulty) if row.difficulty in Difficulty.__members__ else Difficulty.beginner,
        description=row.description,
        exercises=_exercises(row),
        image_url=row.image_url,
        is_premium=row.is_premium,
        locked=row.is_premium and not premium,
    )


def _to_item(row: WorkoutLog) -> WorkoutLogItem:
    return WorkoutLogItem(
        id=row.id,
        workout_id=row.workout_id,
        workout_name=row.workout_name,
        workout_type=WorkoutType(row.workout_type) if row.workout_type else None,
        duration_minutes=row.duration_minutes,
        calories_burned=row.calories_burned,
        date=row.date,
        created_at=row.created_at,
    )


@router.get("/catalog", response_model=CatalogResponse)
def list_catalog(
    workout_type: Optional[WorkoutType] = Query(default=None, alias="type"),
    q: Optional[str] = Query(default=None, max_length=120),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> CatalogResponse:
    query = db.query(Workout)
    if workout_type is not None:
        query = query.filter(Workout.type == workout_type.value)
    needle = (q or "").strip().lower()
    if needle:
        query = query.filter(Workout.name.icontains(needle, autoescape=True))
    rows = query.order_by(Workout.created_at.desc(), Workout.id.desc()).limit(CATALOG_LIMIT).all()
    premium = _has_premium(db, user.id)
    return CatalogResponse(items=[_to_catalog_item(row, premium) for row in rows])


@router.post("", response_model=WorkoutLogItem, status_code=status.HTTP_201_CREATED)
def log_workout(
    payload: WorkoutLogCreateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> WorkoutLogItem:
    workout: Optional[Workout] = None
    if payload.workout_id is not None:
        workout = db.query(Workout).filter(Workout.id == payload.workout_id).first()
        if not workout:
            raise HTTPException(status_code=404, detail="Workout not found")
        if workout.is_premium and not _has_premium(db, user.id):
            raise HTTPException(status_code=403, detail="Premium workout")

    # Catalog values fill whatever the request leaves out.
    name = (payload.workout_name or "").strip() or (workout.name if workout else "")
    if not name:
        raise HTTPException(status_code=422, detail="workout_name or workout_id is required")
    if payload.workout_type:
        workout_type = payload.workout_type.value
    else:
        workout_type = workout.type if workout else None

    now = datetime.now(timezone.utc)
    row = WorkoutLog(
        user_id=user.id,
        workout_id=workout.id if workout else None,
        workout_name=name,
        workout_type=workout_type,
        duration_minutes=payload.duration_minutes or (workout.duration_minutes if workout else None),
        calories_burned=(
            payload.calories_burned if payload.calories_burned is not None else (workout.calories if workout else None)
        ),
        date=payload.log_date or now.date(),
        created_at=now,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return _to_item(row)


@router.get("", response_model=WorkoutLogListResponse)
def list_workouts(
    limit: int = Query(default=20, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> WorkoutLogListResponse:
    rows = (
        db.query(WorkoutLog)
        .filter(WorkoutLog.user_id == user.id)
        .order_by(WorkoutLog.created_at.desc(), WorkoutLog.id.desc())
        .limit(limit)
        .all()
    )
    return WorkoutLogListResponse(items=[_to_item(row) for row in rows])
