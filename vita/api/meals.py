import logging
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import AnyHttpUrl, BaseModel, Field
from sqlalchemy.orm import Session

from vita.api.auth import get_current_user
from vita.api.coach import get_llm_client
from vita.db.models import MealLog, User
from vita.db.session import get_db
from vita.services.llm import LLMRequestError, TextGenerationClient, parse_llm_json

router = APIRouter(prefix="/meals", tags=["meals"])
logger = logging.getLogger("uvicorn.error")


class MealType(str, Enum):
    breakfast = "breakfast"
    lunch = "lunch"
    dinner = "dinner"
    snack = "snack"


class MealLogCreateRequest(BaseModel):
    meal_type: MealType
    name: str = Field(min_length=1, max_length=160)
    calories: Optional[float] = Field(default=None, ge=0, le=10000)
    protein: Optional[float] = Field(default=None, ge=0, le=1000)
    carbs: Optional[float] = Field(default=None, ge=0, le=1000)
    fat: Optional[float] = Field(default=None, ge=0, le=1000)
    log_date: Optional[date] = Field(default=None, alias="date")


class MealLogItem(BaseModel):
    id: int
    meal_type: MealType
    name: str
    calories: Optional[float] = None
    protein: Optional[float] = None
    carbs: Optional[float] = None
    fat: Optional[float] = None
    date: date
    created_at: datetime


class MacroTotals(BaseModel):
    calories: float
    protein: float
    carbs: float
    fat: float


class MealLogListResponse(BaseModel):
    date: date
    items: list[MealLogItem]
    totals: MacroTotals


def _to_item(row: MealLog) -> MealLogItem:
    return MealLogItem(
        id=row.id,
        meal_type=MealType(row.meal_type),
        name=row.name,
        calories=row.calories,
        protein=row.protein,
        carbs=row.carbs,
        fat=row.fat,
        date=row.date,
        created_at=row.created_at,
    )


def _totals(rows: list[MealLog]) -> MacroTotals:
    return MacroTotals(
        calories=round(sum(row.calories or 0 for row in rows), 1),
        protein=round(sum(row.protein or 0 for row in rows), 1),
        carbs=round(sum(row.carbs or 0 for row in rows), 1),
        fat=round(sum(row.fat or 0 for row in rows), 1),
    )


@router.post("", response_model=MealLogItem, status_code=status.HTTP_201_CREATED)
def log_meal(
    payload: MealLogCreateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> MealLogItem:
    now = datetime.now(timezone.utc)
    row = MealLog(
        user_id=user.id,
        date=payload.log_date or now.date(),
        meal_type=payload.meal_type.value,
        name=payload.name.strip(),
        calories=payload.calories,
        protein=payload.protein,
        carbs=payload.carbs,
        fat=payload.fat,
        created_at=now,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return _to_item(row)


@router.get("", response_model=MealLogListResponse)
def list_meals(
    meal_date: Optional[date] = Query(default=None, alias="date"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> MealLogListResponse:
    day = meal_date or datetime.now(timezone.utc).date()
    rows = (
        db.query(MealLog)
        .filter(MealLog.user_id == user.id, MealLog.date == day)
        .order_by(MealLog.created_at.asc(), MealLog.id.asc())
        .all()
    )
    return MealLogListResponse(date=day, items=[_to_item(row) for row in rows], totals=_totals(rows))


MEAL_ANALYSIS_PROMPT = (
    "Analyze this food image and estimate its nutritional content. "
    "Be accurate with the calorie and macro estimates."
)
MEAL_ESTIMATE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "description": "Name of the food/meal"},
        "calories": {"type": "number", "description": "Estimated calories"},
        "protein": {"type": "number", "description": "Protein in grams"},
        "carbs": {"type": "number", "description": "Carbs in grams"},
        "fat": {"type": "number", "description": "Fat in grams"},
    },
}


class MealAnalyzeRequest(BaseModel):
    image_url: AnyHttpUrl


class MealEstimate(BaseModel):
    """Pre-fill values for the meal form; nothing is logged."""

    name: str = ""
    calories: Optional[float] = Field(default=None, ge=0, le=10000)
    protein: Optional[float] = Field(default=None, ge=0, le=1000)
    carbs: Optional[float] = Field(default=None, ge=0, le=1000)
    fat: Optional[float] = Field(default=None, ge=0, le=1000)


@router.post("/analyze", response_model=MealEstimate)
async def analyze_meal(
    payload: MealAnalyzeRequest,
    user: User = Depends(get_current_user),
    llm: TextGenerationClient = Depends(get_llm_client),
) -> MealEstimate:
    image_url = str(payload.image_url)
    try:
        result = await llm.complete(MEAL_ANALYSIS_PROMPT, file_urls=[image_url], response_schema=MEAL_ESTIMATE_SCHEMA)
        if isinstance(result, str):
            result = parse_llm_json(result)
        estimate = MealEstimate.model_validate({key: value for key, value in result.items() if value is not None})
    except (LLMRequestError, ValueError) as exc:
        logger.warning("meal_analysis_failed user_id=%s detail=%s", user.id, str(exc)[:220])
        raise HTTPException(status_code=502, detail="Could not analyze this meal photo. Please try again.") from exc
    logger.info("meal_analysis_completed user_id=%s name=%s", user.id, estimate.name)
    return estimate
