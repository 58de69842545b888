"""One coach exchange at a time, per authenticated user.

A session moves ``idle -> sending -> idle`` on success and
``idle -> sending -> failed`` when any step of the exchange raises. ``failed``
behaves like ``idle`` for the next submission. Nothing is persisted until the
assistant reply exists, so a failed exchange leaves the stored conversation
untouched and the submitted text in ``input_text`` for resubmission.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Callable, Optional

from vita.core.coach_prompt import build_coach_prompt, render_context_block
from vita.core.context_builder import Identity, aggregate_health_context
from vita.core.conversation_store import Conversation, ConversationStore
from vita.core.entity_store import EntityStore
from vita.core.errors import AggregationFailure, CoachError, GenerationFailure
from vita.services.llm import TextGenerationClient

logger = logging.getLogger("uvicorn.error")

COACH_GENERATION_TIMEOUT_SECONDS = float(os.getenv("COACH_GENERATION_TIMEOUT_SECONDS", "45"))


class SessionState(str, Enum):
    idle = "idle"
    sending = "sending"
    failed = "failed"


@dataclass(frozen=True)
class QuickPrompt:
    key: str
    text: str


QUICK_PROMPTS: dict[str, QuickPrompt] = {
    prompt.key: prompt
    for prompt in (
        QuickPrompt("workout", "Suggest a workout for today"),
        QuickPrompt("dinner", "What should I eat for dinner?"),
        QuickPrompt("sleep", "Help me sleep better"),
        QuickPrompt("stress", "I'm feeling stressed"),
    )
}


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


class ChatSessionController:
    def __init__(
        self,
        identity: Identity,
        store: EntityStore,
        llm: TextGenerationClient,
        *,
        today: date,
        conversations: Optional[ConversationStore] = None,
        generation_timeout: float = COACH_GENERATION_TIMEOUT_SECONDS,
    ) -> None:
        self.identity = identity
        self.today = today
        self.llm = llm
        self._store = store
        self._conversations = conversations or ConversationStore(store)
        self._generation_timeout = generation_timeout
        self._loaded = False

        self.state = SessionState.idle
        self.input_text = ""
        self.pending_message: Optional[str] = None
        self.conversation: Optional[Conversation] = None
        self.last_error: Optional[CoachError] = None

    @property
    def typing(self) -> bool:
        return self.state is SessionState.sending

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def load(self) -> Optional[Conversation]:
        self.conversation = await self._conversations.load(self.identity.id)
        self._loaded = True
        return self.conversation

    async def submit(self, text: Optional[str] = None) -> bool:
        """Run one exchange; returns False when the submission was ignored.

        Blank input and submissions made while another exchange is in flight are
        ignored without touching any state.
        """
        message = self.input_text if text is None else text
        if self.state is SessionState.sending or not message.strip():
            return False

        self.input_text = message
        self.pending_message = message
        self.last_error = None
        self.state = SessionState.sending
        logger.info("coach_exchange_started user_id=%s", self.identity.id)
        try:
            if not self._loaded:
                try:
                    await self.load()
                except Exception as exc:
                    raise AggregationFailure(
                        "Could not load your conversation. Please try again.", user_id=self.identity.id
                    ) from exc
            snapshot = await aggregate_health_context(self._store, self.identity, self.today)
            history = self.conversation.messages if self.conversation else ()
            prompt = build_coach_prompt(snapshot, history, message)
            reply = await self._generate(prompt)
            updated = await self._conversations.append_exchange(
                self.conversation,
                message,
                reply,
                render_context_block(snapshot),
                user_id=self.identity.id,
            )
        except CoachError as exc:
            self._fail(exc)
            return True
        except asyncio.CancelledError:
            self._fail(GenerationFailure("The request was cancelled.", user_id=self.identity.id))
            raise
        except Exception as exc:
            logger.exception("coach_exchange_unhandled_error user_id=%s detail=%s", self.identity.id, str(exc))
            self._fail(CoachError("Something went wrong. Please try again.", user_id=self.identity.id))
            return True

        self.conversation = updated
        self.input_text = ""
        self.pending_message = None
        self.state = SessionState.idle
        logger.info(
            "coach_exchange_completed user_id=%s conversation_id=%s turns=%s",
            self.identity.id,
            updated.id,
            len(updated.messages),
        )
        return True

    async def submit_quick_prompt(self, key: str) -> bool:
        prompt = QUICK_PROMPTS.get(key)
        if prompt is None:
            raise KeyError(key)
        return await self.submit(prompt.text)

    async def _generate(self, prompt: str) -> str:
        try:
            reply = await asyncio.wait_for(self.llm.complete(prompt), timeout=self._generation_timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("coach_generation_timeout user_id=%s timeout=%s", self.identity.id, self._generation_timeout)
            raise GenerationFailure(
                "The coach took too long to reply. Please try again.", user_id=self.identity.id
            ) from exc
        except Exception as exc:
            logger.exception("coach_generation_failed user_id=%s detail=%s", self.identity.id, str(exc))
            raise GenerationFailure(
                "The coach is unavailable right now. Please try again.", user_id=self.identity.id
            ) from exc
        text = reply.strip() if isinstance(reply, str) else ""
        if not text:
            raise GenerationFailure("The coach returned an empty reply. Please try again.", user_id=self.identity.id)
        return text

    def _fail(self, exc: CoachError) -> None:
        self.state = SessionState.failed
        self.pending_message = None
        self.last_error = exc
        logger.info("coach_exchange_failed user_id=%s kind=%s", self.identity.id, exc.kind)


class CoachSessionRegistry:
    """Live coach sessions keyed by user id.

    Only the current day's sessions are kept. Sessions from an earlier day are
    dropped on the next lookup unless an exchange is still in flight.
    """

    def __init__(self, store: EntityStore, today_provider: Callable[[], date] = utc_today) -> None:
        self._store = store
        self._today_provider = today_provider
        self._sessions: dict[int, ChatSessionController] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, identity: Identity, llm: TextGenerationClient) -> ChatSessionController:
        today = self._today_provider()
        self._evict_stale(today, keep=identity.id)
        session = self._sessions.get(identity.id)
        if session is not None and session.state is SessionState.sending:
            return session
        if session is None or session.today != today:
            replacement = ChatSessionController(identity, self._store, llm, today=today)
            if session is not None:
                replacement.input_text = session.input_text
            self._sessions[identity.id] = replacement
            return replacement
        session.identity = identity
        session.llm = llm
        return session

    def _evict_stale(self, today: date, *, keep: int) -> None:
        stale = [
            user_id
            for user_id, session in self._sessions.items()
            if user_id != keep and session.today != today and session.state is not SessionState.sending
        ]
        for user_id in stale:
            del self._sessions[user_id]
        if stale:
            logger.info("coach_sessions_evicted count=%s remaining=%s", len(stale), len(self._sessions))
