from datetime import datetime, timezone

from conftest import InMemoryEntityStore
from vita.api.dashboard import get_entity_store


def test_today_summary_defaults(client, auth_headers) -> None:
    response = client.get("/dashboard/today", headers=auth_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["user_name"] == "Alex Rivera"
    assert body["steps"] == {"current": 0.0, "goal": 10000.0, "ratio": 0.0}
    assert body["calories"]["goal"] == 2000.0
    assert body["workouts_this_week"] == 0
    assert body["recent_mood"] is None


def test_today_summary_with_data(client, auth_headers, current_user_id, seed_health_data) -> None:
    today = datetime.now(timezone.utc).date()
    seed_health_data(current_user_id, today)

    body = client.get("/dashboard/today", headers=auth_headers).json()
    assert body["date"] == today.isoformat()
    assert body["goal"] == "lose_weight"
    assert body["steps"]["current"] == 8432.0
    assert body["steps"]["ratio"] == 0.843
    assert body["calories"] == {"current": 870.5, "goal": 1800.0, "ratio": 0.484}
    assert body["water"]["current"] == 1250.0
    assert body["water"]["ratio"] == 0.5
    assert body["sleep_quality"] == "good"
    assert body["recent_mood"] == "good"
    assert body["recent_stress_level"] == 2
    assert body["workouts_this_week"] == 3


def test_today_summary_unavailable_when_reads_fail(app, client, auth_headers) -> None:
    store = InMemoryEntityStore()
    store.fail_on.add(("query", "user_profile"))
    app.dependency_overrides[get_entity_store] = lambda: store
    assert client.get("/dashboard/today", headers=auth_headers).status_code == 503


def test_today_summary_reads_goals_through_entity_store(app, client, auth_headers, current_user_id) -> None:
    today = datetime.now(timezone.utc).date()
    store = InMemoryEntityStore()
    store.seed("user_profile", user_id=current_user_id, goal="reduce_stress", daily_step_goal=5000, daily_water_goal=2000)
    store.seed("health_metric", user_id=current_user_id, date=today, steps=2500, water_intake=500)
    app.dependency_overrides[get_entity_store] = lambda: store

    body = client.get("/dashboard/today", headers=auth_headers).json()
    assert body["goal"] == "reduce_stress"
    assert body["steps"] == {"current": 2500.0, "goal": 5000.0, "ratio": 0.5}
    assert body["water"] == {"current": 500.0, "goal": 2000.0, "ratio": 0.25}
    assert body["calories"]["goal"] == 2000.0
    assert ("query", "user_profile") in store.calls
    assert store.calls.count(("query", "health_metric")) == 2
