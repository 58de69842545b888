from fastapi import FastAPI

from vita.api.auth import router as auth_router
from vita.api.coach import router as coach_router
from vita.api.dashboard import router as dashboard_router
from vita.api.meals import router as meals_router
from vita.api.metrics import router as metrics_router
from vita.api.mood import router as mood_router
from vita.api.profile import router as profile_router
from vita.api.workouts import router as workouts_router
from vita.core.chat_session import CoachSessionRegistry
from vita.core.entity_store import SqlEntityStore
from vita.db.session import create_tables

app = FastAPI(title="VITA Health Coach")
app.state.entity_store = SqlEntityStore()
app.state.coach_sessions = CoachSessionRegistry(app.state.entity_store)


@app.on_event("startup")
def on_startup() -> None:
    create_tables()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api")
def api_root() -> dict[str, str]:
    return {"service": "VITA Health Coach API", "status": "ok"}


app.include_router(auth_router)
app.include_router(profile_router)
app.include_router(metrics_router)
app.include_router(mood_router)
app.include_router(workouts_router)
app.include_router(meals_router)
app.include_router(dashboard_router)
app.include_router(coach_router)
