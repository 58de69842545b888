from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from vita.api.auth import get_current_user
from vita.db.models import HealthMetric, User
from vita.db.session import get_db

router = APIRouter(prefix="/metrics", tags=["metrics"])


class SleepQuality(str, Enum):
    poor = "poor"
    fair = "fair"
    good = "good"
    excellent = "excellent"


class HealthMetricUpsertRequest(BaseModel):
    steps: Optional[int] = Field(default=None, ge=0, le=100000)
    sleep_hours: Optional[float] = Field(default=None, ge=0, le=16)
    sleep_quality: Optional[SleepQuality] = None
    water_intake: Optional[int] = Field(default=None, ge=0, le=10000)
    heart_rate: Optional[int] = Field(default=None, ge=30, le=220)
    calories_burned: Optional[int] = Field(default=None, ge=0, le=10000)
    active_minutes: Optional[int] = Field(default=None, ge=0, le=1440)


class HealthMetricItem(BaseModel):
    id: int
    date: date
    steps: Optional[int] = None
    sleep_hours: Optional[float] = None
    sleep_quality: Optional[SleepQuality] = None
    water_intake: Optional[int] = None
    heart_rate: Optional[int] = None
    calories_burned: Optional[int] = None
    active_minutes: Optional[int] = None
    updated_at: datetime


class HealthMetricListResponse(BaseModel):
    items: list[HealthMetricItem]


def _to_item(row: HealthMetric) -> HealthMetricItem:
    return HealthMetricItem(
        id=row.id,
        date=row.date,
        steps=row.steps,
        sleep_hours=row.sleep_hours,
        sleep_quality=SleepQuality(row.sleep_quality) if row.sleep_quality else None,
        water_intake=row.water_intake,
        heart_rate=row.heart_rate,
        calories_burned=row.calories_burned,
        active_minutes=row.active_minutes,
        updated_at=row.updated_at,
    )


@router.put("/{metric_date}", response_model=HealthMetricItem)
def upsert_health_metric(
    payload: HealthMetricUpsertRequest,
    metric_date: date = Path(...),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> HealthMetricItem:
    row = (
        db.query(HealthMetric)
        .filter(HealthMetric.user_id == user.id, HealthMetric.date == metric_date)
        .first()
    )
    if not row:
        row = HealthMetric(user_id=user.id, date=metric_date)
        db.add(row)
    # Only fields present in the request are touched; e.g. the water tracker sends water_intake alone.
    for name, value in payload.model_dump(exclude_unset=True).items():
        if isinstance(value, Enum):
            value = value.value
        setattr(row, name, value)
    db.commit()
    db.refresh(row)
    return _to_item(row)


@router.get("/{metric_date}", response_model=HealthMetricItem)
def get_health_metric(
    metric_date: date = Path(...),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> HealthMetricItem:
    row = (
        db.query(HealthMetric)
        .filter(HealthMetric.user_id == user.id, HealthMetric.date == metric_date)
        .first()
    )
    if not row:
        raise HTTPException(status_code=404, detail="No metrics recorded for this date")
    return _to_item(row)


@router.get("", response_model=HealthMetricListResponse)
def list_health_metrics(
    from_date: Optional[date] = Query(default=None, alias="from"),
    to_date: Optional[date] = Query(default=None, alias="to"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> HealthMetricListResponse:
    today = datetime.now(timezone.utc).date()
    start = from_date or (today - timedelta(days=6))
    end = to_date or today
    rows = (
        db.query(HealthMetric)
        .filter(HealthMetric.user_id == user.id, HealthMetric.date >= start, HealthMetric.date <= end)
        .order_by(HealthMetric.date.desc())
        .all()
    )
    return HealthMetricListResponse(items=[_to_item(row) for row in rows])
