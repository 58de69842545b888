from datetime import datetime
from enum import Enum
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from vita.api.auth import get_current_user
from vita.db.models import User, UserProfile
from vita.db.session import get_db

router = APIRouter(prefix="/profile", tags=["profile"])


class WellnessGoal(str, Enum):
    lose_weight = "lose_weight"
    gain_muscle = "gain_muscle"
    maintain = "maintain"
    improve_fitness = "improve_fitness"
    reduce_stress = "reduce_stress"
    better_sleep = "better_sleep"


class ActivityLevel(str, Enum):
    sedentary = "sedentary"
    lightly_active = "lightly_active"
    moderately_active = "moderately_active"
    very_active = "very_active"


class ProfileUpsertRequest(BaseModel):
    full_name: Optional[str] = Field(default=None, max_length=120)
    goal: Optional[WellnessGoal] = None
    height_cm: Optional[float] = Field(default=None, ge=50, le=260)
    weight_kg: Optional[float] = Field(default=None, ge=20, le=400)
    target_weight_kg: Optional[float] = Field(default=None, ge=20, le=400)
    age: Optional[int] = Field(default=None, ge=13, le=120)
    gender: Optional[str] = Field(default=None, max_length=32)
    activity_level: Optional[ActivityLevel] = None
    daily_calorie_goal: Optional[int] = Field(default=None, ge=800, le=8000)
    daily_water_goal: Optional[int] = Field(default=None, ge=250, le=10000)
    daily_step_goal: Optional[int] = Field(default=None, ge=500, le=100000)
    sleep_goal_hours: Optional[float] = Field(default=None, ge=3, le=14)


class ProfileResponse(BaseModel):
    full_name: Optional[str] = None
    email: str
    goal: Optional[WellnessGoal] = None
    height_cm: Optional[float] = None
    weight_kg: Optional[float] = None
    target_weight_kg: Optional[float] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    activity_level: Optional[ActivityLevel] = None
    daily_calorie_goal: int
    daily_water_goal: int
    daily_step_goal: int
    sleep_goal_hours: float
    is_premium: bool
    updated_at: datetime


def _to_response(user: User, row: UserProfile) -> ProfileResponse:
    return ProfileResponse(
        full_name=user.full_name,
        email=user.email,
        goal=WellnessGoal(row.goal) if row.goal in WellnessGoal.__members__ else None,
        height_cm=row.height_cm,
        weight_kg=row.weight_kg,
        target_weight_kg=row.target_weight_kg,
        age=row.age,
        gender=row.gender,
        activity_level=ActivityLevel(row.activity_level) if row.activity_level else None,
        daily_calorie_goal=row.daily_calorie_goal,
        daily_water_goal=row.daily_water_goal,
        daily_step_goal=row.daily_step_goal,
        sleep_goal_hours=row.sleep_goal_hours,
        is_premium=row.is_premium,
        updated_at=row.updated_at,
    )


@router.get("", response_model=ProfileResponse)
def get_profile(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> ProfileResponse:
    row = db.query(UserProfile).filter(UserProfile.user_id == user.id).first()
    if not row:
        raise HTTPException(status_code=404, detail="Profile not found")
    return _to_response(user, row)


@router.put("", response_model=ProfileResponse)
def upsert_profile(
    payload: ProfileUpsertRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ProfileResponse:
    row = db.query(UserProfile).filter(UserProfile.user_id == user.id).first()
    if not row:
        row = UserProfile(user_id=user.id)
        db.add(row)
    updates = payload.model_dump(exclude_unset=True)
    full_name = updates.pop("full_name", None)
    if full_name is not None:
        user.full_name = full_name.strip() or None
    for name, value in updates.items():
        if isinstance(value, Enum):
            value = value.value
        if value is None and name in {"daily_calorie_goal", "daily_water_goal", "daily_step_goal", "sleep_goal_hours"}:
            continue
        setattr(row, name, value)
    db.commit()
    db.refresh(row)
    db.refresh(user)
    return _to_response(user, row)
