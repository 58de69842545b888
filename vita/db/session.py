import os
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import Session, sessionmaker

from vita.db.models import Base

DB_PATH = os.getenv("DB_PATH", "/var/data/vita.db")
SQLITE_BUSY_TIMEOUT_MS = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000"))

# The entity store opens sessions from worker threads.
connect_args = {"check_same_thread": False}


def _configure_sqlite_connection(dbapi_connection, _connection_record) -> None:
    # Health reads run in parallel with conversation writes.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _build_engine(db_path: str):
    Path(db_path).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
    built = create_engine(f"sqlite:///{db_path}", connect_args=connect_args)
    event.listen(built, "connect", _configure_sqlite_connection)
    return built


engine = _build_engine(DB_PATH)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def configure_database(db_path: str) -> None:
    """Point the app at another SQLite file; existing ``SessionLocal`` users follow."""
    global DB_PATH, engine
    DB_PATH = db_path
    engine = _build_engine(DB_PATH)
    SessionLocal.configure(bind=engine)


def create_tables() -> None:
    Base.metadata.create_all(bind=engine)
    # Column upgrades for databases created before the workout catalog existed.
    with engine.begin() as conn:
        log_columns = {row[1] for row in conn.execute(text("PRAGMA table_info(workout_logs)")).fetchall()}
        if "workout_id" not in log_columns:
            conn.execute(text("ALTER TABLE workout_logs ADD COLUMN workout_id INTEGER REFERENCES workouts(id)"))


@contextmanager
def session_scope(factory: Optional[Callable[[], Session]] = None) -> Iterator[Session]:
    db = (factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_db():
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
