import json
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from vita.api.auth import get_current_user
from vita.db.models import MoodEntry, User
from vita.db.session import get_db

router = APIRouter(prefix="/mood", tags=["mood"])


class MoodLabel(str, Enum):
    great = "great"
    good = "good"
    okay = "okay"
    bad = "bad"
    terrible = "terrible"


# great -> 5 ... terrible -> 1
MOOD_SCORES: dict[MoodLabel, int] = {
    MoodLabel.great: 5,
    MoodLabel.good: 4,
    MoodLabel.okay: 3,
    MoodLabel.bad: 2,
    MoodLabel.terrible: 1,
}


class MoodEntryCreateRequest(BaseModel):
    mood_label: MoodLabel
    energy_level: Optional[int] = Field(default=None, ge=1, le=5)
    stress_level: Optional[int] = Field(default=None, ge=1, le=5)
    activities: list[str] = Field(default_factory=list, max_length=20)
    journal_entry: Optional[str] = Field(default=None, max_length=4000)


class MoodEntryItem(BaseModel):
    id: int
    mood_score: int
    mood_label: MoodLabel
    energy_level: Optional[int] = None
    stress_level: Optional[int] = None
    activities: list[str]
    journal_entry: Optional[str] = None
    created_at: datetime


class MoodEntryListResponse(BaseModel):
    items: list[MoodEntryItem]


def _activities(row: MoodEntry) -> list[str]:
    if not row.activities_json:
        return []
    try:
        loaded = json.loads(row.activities_json)
    except json.JSONDecodeError:
        return []
    return [str(item) for item in loaded] if isinstance(loaded, list) else []


def _to_item(row: MoodEntry) -> MoodEntryItem:
    return MoodEntryItem(
        id=row.id,
        mood_score=row.mood_score,
        mood_label=MoodLabel(row.mood_label),
        energy_level=row.energy_level,
        stress_level=row.stress_level,
        activities=_activities(row),
        journal_entry=row.journal_entry,
        created_at=row.created_at,
    )


@router.post("", response_model=MoodEntryItem, status_code=status.HTTP_201_CREATED)
def create_mood_entry(
    payload: MoodEntryCreateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> MoodEntryItem:
    activities = [item.strip() for item in payload.activities if item.strip()]
    row = MoodEntry(
        user_id=user.id,
        mood_score=MOOD_SCORES[payload.mood_label],
        mood_label=payload.mood_label.value,
        energy_level=payload.energy_level,
        stress_level=payload.stress_level,
        activities_json=json.dumps(activities),
        journal_entry=(payload.journal_entry or "").strip() or None,
        created_at=datetime.now(timezone.utc),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return _to_item(row)


@router.get("", response_model=MoodEntryListResponse)
def list_mood_entries(
    limit: int = Query(default=7, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> MoodEntryListResponse:
    rows = (
        db.query(MoodEntry)
        .filter(MoodEntry.user_id == user.id)
        .order_by(MoodEntry.created_at.desc(), MoodEntry.id.desc())
        .limit(limit)
        .all()
    )
    return MoodEntryListResponse(items=[_to_item(row) for row in rows])
