"""Kind-keyed CRUD access to persisted records.

The coach only needs three operations (query, create, update) over a fixed set
of entity kinds. Records cross this boundary as plain dicts; list-valued fields
stored as JSON text are decoded under their public name (``messages_json`` is
exposed as ``messages``).

Every call runs in a worker thread with its own ``Session`` so independent
reads can be awaited concurrently.
"""

import asyncio
import json
from typing import Any, Callable, Optional, Protocol

from sqlalchemy import inspect
from sqlalchemy.orm import Session

from vita.db.models import AIConversation, Base, HealthMetric, MealLog, MoodEntry, UserProfile, WorkoutLog
from vita.db.session import SessionLocal, session_scope

ENTITY_KINDS: dict[str, type[Base]] = {
    "health_metric": HealthMetric,
    "mood_entry": MoodEntry,
    "workout_log": WorkoutLog,
    "meal_log": MealLog,
    "user_profile": UserProfile,
    "ai_conversation": AIConversation,
}

# public field name -> JSON text column
JSON_FIELDS: dict[str, dict[str, str]] = {
    "ai_conversation": {"messages": "messages_json"},
    "mood_entry": {"activities": "activities_json"},
}


class EntityStore(Protocol):
    async def query(
        self,
        kind: str,
        filters: dict[str, Any],
        sort: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        ...

    async def create(self, kind: str, fields: dict[str, Any]) -> dict[str, Any]:
        ...

    async def update(self, kind: str, record_id: int, fields: dict[str, Any]) -> dict[str, Any]:
        ...


def _model_for(kind: str) -> type[Base]:
    model = ENTITY_KINDS.get(kind)
    if model is None:
        raise ValueError(f"Unknown entity kind: {kind}")
    return model


def _column(model: type[Base], name: str):
    if name not in inspect(model).columns:
        raise ValueError(f"Unknown field {name!r} for {model.__tablename__}")
    return getattr(model, name)


def _encode_fields(kind: str, fields: dict[str, Any]) -> dict[str, Any]:
    json_fields = JSON_FIELDS.get(kind, {})
    encoded: dict[str, Any] = {}
    for key, value in fields.items():
        if key in json_fields:
            encoded[json_fields[key]] = json.dumps(value if value is not None else [])
        else:
            encoded[key] = value
    return encoded


def record_to_dict(kind: str, row: Base) -> dict[str, Any]:
    json_columns = {column: name for name, column in JSON_FIELDS.get(kind, {}).items()}
    record: dict[str, Any] = {}
    for column in inspect(row).mapper.column_attrs:
        value = getattr(row, column.key)
        if column.key in json_columns:
            try:
                decoded = json.loads(value) if value else []
            except json.JSONDecodeError:
                decoded = []
            record[json_columns[column.key]] = decoded if isinstance(decoded, list) else []
        else:
            record[column.key] = value
    return record


class SqlEntityStore:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    async def query(
        self,
        kind: str,
        filters: dict[str, Any],
        sort: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._query, kind, dict(filters), sort, limit)

    async def create(self, kind: str, fields: dict[str, Any]) -> dict[str, Any]:
        return await asyncio.to_thread(self._create, kind, dict(fields))

    async def update(self, kind: str, record_id: int, fields: dict[str, Any]) -> dict[str, Any]:
        return await asyncio.to_thread(self._update, kind, record_id, dict(fields))

    def _query(
        self, kind: str, filters: dict[str, Any], sort: Optional[str], limit: Optional[int]
    ) -> list[dict[str, Any]]:
        model = _model_for(kind)
        with session_scope(self._session_factory) as db:
            query = db.query(model)
            for name, value in filters.items():
                query = query.filter(_column(model, name) == value)
            if sort:
                descending = sort.startswith("-")
                column = _column(model, sort.lstrip("-"))
                if descending:
                    query = query.order_by(column.desc(), model.id.desc())
                else:
                    query = query.order_by(column.asc(), model.id.asc())
            else:
                query = query.order_by(model.id.asc())
            if limit is not None:
                query = query.limit(limit)
            return [record_to_dict(kind, row) for row in query.all()]

    def _create(self, kind: str, fields: dict[str, Any]) -> dict[str, Any]:
        model = _model_for(kind)
        encoded = _encode_fields(kind, fields)
        for name in encoded:
            _column(model, name)
        with session_scope(self._session_factory) as db:
            row = model(**encoded)
            db.add(row)
            db.flush()
            db.refresh(row)
            return record_to_dict(kind, row)

    def _update(self, kind: str, record_id: int, fields: dict[str, Any]) -> dict[str, Any]:
        model = _model_for(kind)
        encoded = _encode_fields(kind, fields)
        for name in encoded:
            _column(model, name)
        with session_scope(self._session_factory) as db:
            row = db.query(model).filter(model.id == record_id).first()
            if row is None:
                raise LookupError(f"{kind} {record_id} not found")
            for name, value in encoded.items():
                setattr(row, name, value)
            db.flush()
            db.refresh(row)
            return record_to_dict(kind, row)
