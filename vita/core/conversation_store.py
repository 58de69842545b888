"""The single active coach conversation per user.

Turns are only ever written in user/assistant pairs, and every write replaces
the stored ``messages`` list wholesale. There is no locking: when two writers
race, the last one wins.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Literal, Optional

from vita.core.entity_store import EntityStore
from vita.core.errors import PersistenceFailure

logger = logging.getLogger("uvicorn.error")

CONVERSATION_KIND = "ai_conversation"
COACH_PERSIST_RETRY_COUNT = int(os.getenv("COACH_PERSIST_RETRY_COUNT", "1"))

Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class ConversationTurn:
    role: Role
    content: str
    timestamp: str

    def to_record(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp}

    @classmethod
    def from_record(cls, raw: dict[str, Any]) -> "ConversationTurn":
        return cls(
            role="assistant" if raw.get("role") == "assistant" else "user",
            content=str(raw.get("content") or ""),
            timestamp=str(raw.get("timestamp") or ""),
        )


@dataclass(frozen=True)
class Conversation:
    id: int
    title: str
    messages: tuple[ConversationTurn, ...] = field(default_factory=tuple)
    context_summary: str = ""

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Conversation":
        return cls(
            id=int(record["id"]),
            title=str(record.get("title") or ""),
            messages=tuple(
                ConversationTurn.from_record(item)
                for item in record.get("messages") or []
                if isinstance(item, dict)
            ),
            context_summary=str(record.get("context_summary") or ""),
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def conversation_title(now: datetime) -> str:
    return f"Chat {now:%b} {now.day}"


class ConversationStore:
    def __init__(
        self,
        store: EntityStore,
        clock: Callable[[], datetime] = _utc_now,
        retry_count: int = COACH_PERSIST_RETRY_COUNT,
    ) -> None:
        self._store = store
        self._clock = clock
        self._retry_count = max(0, retry_count)

    async def load(self, user_id: int) -> Optional[Conversation]:
        rows = await self._store.query(CONVERSATION_KIND, {"user_id": user_id}, sort="-created_at", limit=1)
        if not rows:
            return None
        return Conversation.from_record(rows[0])

    async def append_exchange(
        self,
        conversation: Optional[Conversation],
        user_message: str,
        assistant_reply: str,
        context_summary: str,
        *,
        user_id: int,
    ) -> Conversation:
        now = self._clock()
        stamp = now.isoformat()
        exchange = (
            ConversationTurn(role="user", content=user_message, timestamp=stamp),
            ConversationTurn(role="assistant", content=assistant_reply, timestamp=stamp),
        )
        if conversation is None:
            messages = exchange
            fields = {
                "user_id": user_id,
                "title": conversation_title(now),
                "messages": [turn.to_record() for turn in messages],
                "context_summary": context_summary,
            }
            record = await self._persist(user_id, lambda: self._store.create(CONVERSATION_KIND, fields))
        else:
            messages = conversation.messages + exchange
            fields = {
                "messages": [turn.to_record() for turn in messages],
                "context_summary": context_summary,
            }
            record = await self._persist(
                user_id, lambda: self._store.update(CONVERSATION_KIND, conversation.id, fields)
            )
        return Conversation.from_record(record)

    async def _persist(self, user_id: int, write) -> dict[str, Any]:
        attempts = self._retry_count + 1
        for idx in range(attempts):
            try:
                return await write()
            except Exception as exc:
                if idx < attempts - 1:
                    logger.warning(
                        "coach_persist_retry user_id=%s attempt=%s detail=%s", user_id, idx + 1, str(exc)
                    )
                    continue
                logger.exception("coach_persist_failed user_id=%s detail=%s", user_id, str(exc))
                raise PersistenceFailure(
                    "Your message could not be saved. Please try again.", user_id=user_id
                ) from exc
        raise PersistenceFailure("Your message could not be saved. Please try again.", user_id=user_id)
