import asyncio
import json
import os
import tempfile
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Union
from uuid import uuid4

# Keep the import-time engine away from the production default path.
os.environ.setdefault("DB_PATH", str(Path(tempfile.gettempdir()) / "vita_import.db"))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from vita.core.security import encrypt_provider_key, get_password_hash  # noqa: E402
from vita.db.models import (  # noqa: E402
    AIConversation,
    HealthMetric,
    MealLog,
    MoodEntry,
    User,
    UserAIConfig,
    UserProfile,
    Workout,
    WorkoutLog,
)
from vita.db.session import SessionLocal, configure_database, create_tables  # noqa: E402
from vita.services.llm import LLMRequestError  # noqa: E402


class FakeScenario(str, Enum):
    OK = "OK"
    EMPTY = "EMPTY"
    FAIL = "FAIL"
    SLOW = "SLOW"


class FakeTextGenerationClient:
    def __init__(
        self,
        scenario: FakeScenario = FakeScenario.OK,
        reply: Union[str, dict[str, Any]] = "Try a 20 minute brisk walk today.",
    ) -> None:
        self.scenario = scenario
        self.reply = reply
        self.prompts: list[str] = []
        self.file_urls: list[list[str]] = []
        self.schemas: list[Optional[dict[str, Any]]] = []
        self.release = asyncio.Event()

    async def complete(self, prompt: str, *, file_urls=None, response_schema=None):
        self.prompts.append(prompt)
        self.file_urls.append(list(file_urls or []))
        self.schemas.append(response_schema)
        if self.scenario == FakeScenario.FAIL:
            raise LLMRequestError(provider="fake", model="fake-model", message="simulated provider outage")
        if self.scenario == FakeScenario.EMPTY:
            return "   "
        if self.scenario == FakeScenario.SLOW:
            await self.release.wait()
        return self.reply


class InMemoryEntityStore:
    """Dict-backed entity store with failure and latency hooks."""

    def __init__(self, delay: float = 0.0) -> None:
        self.records: dict[str, list[dict[str, Any]]] = {}
        self.delay = delay
        self.fail_on: set[tuple[str, str]] = set()
        self.fail_times: dict[tuple[str, str], int] = {}
        self.calls: list[tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._next_id = 1

    def seed(self, kind: str, **fields: Any) -> dict[str, Any]:
        record = {"id": self._next_id, **fields}
        self._next_id += 1
        self.records.setdefault(kind, []).append(record)
        return dict(record)

    async def _enter(self, operation: str, kind: str) -> None:
        self.calls.append((operation, kind))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            key = (operation, kind)
            if key in self.fail_on:
                raise RuntimeError(f"{operation} {kind} failed")
            if self.fail_times.get(key, 0) > 0:
                self.fail_times[key] -= 1
                raise RuntimeError(f"{operation} {kind} failed")
        finally:
            self.in_flight -= 1

    async def query(self, kind, filters, sort=None, limit=None):
        await self._enter("query", kind)
        rows = [
            dict(row)
            for row in self.records.get(kind, [])
            if all(row.get(name) == value for name, value in filters.items())
        ]
        if sort:
            field = sort.lstrip("-")
            rows.sort(key=lambda row: (row.get(field), row["id"]), reverse=sort.startswith("-"))
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def create(self, kind, fields):
        await self._enter("create", kind)
        return self.seed(kind, created_at=datetime.now(timezone.utc), **fields)

    async def update(self, kind, record_id, fields):
        await self._enter("update", kind)
        for row in self.records.get(kind, []):
            if row["id"] == record_id:
                row.update(fields)
                return dict(row)
        raise LookupError(f"{kind} {record_id} not found")


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    db_path = tmp_path_factory.mktemp("db") / "vita_test.db"
    configure_database(str(db_path))
    create_tables()
    return db_path


@pytest.fixture(scope="session")
def app(test_db_path: Path):
    from vita.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
def client(app):
    app.dependency_overrides = {}
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides = {}


@pytest.fixture
def db_session(test_db_path: Path):
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def create_user(db_session: Session) -> Callable[..., User]:
    def _create_user(full_name: Optional[str] = "Alex Rivera", with_ai_config: bool = False) -> User:
        email = f"user_{uuid4().hex[:10]}@test.com"
        user = User(email=email, full_name=full_name, password_hash=get_password_hash("StrongPass123"))
        db_session.add(user)
        db_session.flush()
        if with_ai_config:
            db_session.add(
                UserAIConfig(
                    user_id=user.id,
                    ai_provider="openai",
                    ai_model="gpt-4.1-mini",
                    encrypted_api_key=encrypt_provider_key("sk-test-12345678"),
                )
            )
        db_session.commit()
        db_session.refresh(user)
        return user

    return _create_user


def signup_and_login(client: TestClient, full_name: str = "Alex Rivera") -> str:
    email = f"auth_{uuid4().hex[:10]}@test.com"
    password = "StrongPass123"
    signup = client.post(
        "/auth/signup",
        json={"email": email, "password": password, "full_name": full_name},
    )
    assert signup.status_code == 201
    login = client.post("/auth/login", data={"username": email, "password": password})
    assert login.status_code == 200
    return login.json()["access_token"]


@pytest.fixture
def auth_headers(client: TestClient) -> dict[str, str]:
    return {"Authorization": f"Bearer {signup_and_login(client)}"}


@pytest.fixture
def current_user_id(client: TestClient, auth_headers: dict[str, str]) -> int:
    me = client.get("/auth/me", headers=auth_headers)
    assert me.status_code == 200
    return me.json()["id"]


@pytest.fixture
def override_llm(app):
    from vita.api.coach import get_llm_client

    def _override(
        scenario: FakeScenario = FakeScenario.OK, reply: Union[str, dict[str, Any]] = "Try a 20 minute brisk walk today."
    ):
        fake = FakeTextGenerationClient(scenario=scenario, reply=reply)
        app.dependency_overrides[get_llm_client] = lambda: fake
        return fake

    return _override


@pytest.fixture
def memory_store() -> InMemoryEntityStore:
    return InMemoryEntityStore()


@pytest.fixture
def seed_health_data(db_session: Session):
    """Profile, today's metric, two moods, three workouts and two meals."""

    def _seed(user_id: int, today: date) -> None:
        now = datetime.now(timezone.utc)
        db_session.add(UserProfile(user_id=user_id, goal="lose_weight", daily_calorie_goal=1800))
        db_session.add(
            HealthMetric(user_id=user_id, date=today, steps=8432, sleep_hours=7.5, sleep_quality="good", water_intake=1250)
        )
        db_session.add(
            MoodEntry(user_id=user_id, mood_score=2, mood_label="bad", stress_level=4, created_at=now - timedelta(days=1))
        )
        db_session.add(MoodEntry(user_id=user_id, mood_score=4, mood_label="good", stress_level=2, created_at=now))
        for idx in range(3):
            db_session.add(
                WorkoutLog(
                    user_id=user_id,
                    workout_name=f"Session {idx}",
                    workout_type="cardio",
                    date=today - timedelta(days=idx),
                    created_at=now - timedelta(days=idx),
                )
            )
        db_session.add(MealLog(user_id=user_id, date=today, meal_type="breakfast", name="Oats", calories=350))
        db_session.add(MealLog(user_id=user_id, date=today, meal_type="lunch", name="Salad", calories=520.5))
        # Yesterday's meal must not count toward today's calories.
        db_session.add(
            MealLog(user_id=user_id, date=today - timedelta(days=1), meal_type="dinner", name="Pasta", calories=900)
        )
        db_session.commit()

    return _seed


@pytest.fixture
def seed_conversation(db_session: Session):
    def _seed(user_id: int, turns: int, created_at: Optional[datetime] = None) -> AIConversation:
        messages = [
            {
                "role": "user" if idx % 2 == 0 else "assistant",
                "content": f"message {idx}",
                "timestamp": f"2026-01-01T00:00:{idx:02d}+00:00",
            }
            for idx in range(turns)
        ]
        row = AIConversation(
            user_id=user_id,
            title="Chat Jan 1",
            messages_json=json.dumps(messages),
            context_summary="User Health Context:",
            created_at=created_at or datetime.now(timezone.utc),
        )
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row

    return _seed


@pytest.fixture
def seed_workout(db_session: Session):
    def _seed(name: str, workout_type: str = "hiit", is_premium: bool = False, **fields: Any) -> Workout:
        exercises = fields.pop("exercises", [])
        row = Workout(
            name=name,
            type=workout_type,
            is_premium=is_premium,
            exercises_json=json.dumps(exercises),
            **fields,
        )
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row

    return _seed
