import logging
from datetime import date
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from vita.api.auth import get_current_user, identity_for
from vita.core.chat_session import QUICK_PROMPTS, ChatSessionController, CoachSessionRegistry, SessionState
from vita.core.conversation_store import Conversation
from vita.core.errors import AggregationFailure, GenerationFailure, PersistenceFailure
from vita.db.models import User
from vita.db.session import get_db
from vita.services.llm import RealTextGenerationClient, TextGenerationClient, build_text_generation_client

router = APIRouter(prefix="/coach", tags=["coach"])
logger = logging.getLogger("uvicorn.error")

FAILURE_STATUS: dict[str, int] = {
    AggregationFailure.kind: status.HTTP_503_SERVICE_UNAVAILABLE,
    GenerationFailure.kind: status.HTTP_502_BAD_GATEWAY,
    PersistenceFailure.kind: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class CoachMessageRequest(BaseModel):
    message: str = Field(min_length=1, max_length=4000)


class TurnItem(BaseModel):
    role: str
    content: str
    timestamp: str


class ConversationItem(BaseModel):
    id: int
    title: str
    messages: list[TurnItem]
    context_summary: str


class ConversationResponse(BaseModel):
    conversation: Optional[ConversationItem] = None


class ErrorItem(BaseModel):
    kind: str
    message: str


class SessionResponse(BaseModel):
    state: SessionState
    typing: bool
    today: date
    input_text: str
    pending_message: Optional[str] = None
    last_error: Optional[ErrorItem] = None
    conversation: Optional[ConversationItem] = None


class QuickPromptItem(BaseModel):
    key: str
    text: str


class QuickPromptListResponse(BaseModel):
    items: list[QuickPromptItem]


def get_session_registry(request: Request) -> CoachSessionRegistry:
    return request.app.state.coach_sessions


def get_llm_client(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
) -> TextGenerationClient:
    try:
        return build_text_generation_client(db, user.id)
    except ValueError as exc:
        # An unreadable stored key behaves like a missing config: the exchange fails, the app does not.
        logger.warning("coach_ai_config_unreadable user_id=%s detail=%s", user.id, str(exc))
        return RealTextGenerationClient(None)


def get_coach_session(
    user: User = Depends(get_current_user),
    llm_client: TextGenerationClient = Depends(get_llm_client),
    registry: CoachSessionRegistry = Depends(get_session_registry),
) -> ChatSessionController:
    return registry.get(identity_for(user), llm_client)


def _conversation_item(conversation: Optional[Conversation]) -> Optional[ConversationItem]:
    if conversation is None:
        return None
    return ConversationItem(
        id=conversation.id,
        title=conversation.title,
        messages=[
            TurnItem(role=turn.role, content=turn.content, timestamp=turn.timestamp)
            for turn in conversation.messages
        ],
        context_summary=conversation.context_summary,
    )


def _session_response(session: ChatSessionController) -> SessionResponse:
    error = session.last_error
    return SessionResponse(
        state=session.state,
        typing=session.typing,
        today=session.today,
        input_text=session.input_text,
        pending_message=session.pending_message,
        last_error=ErrorItem(kind=error.kind, message=str(error)) if error else None,
        conversation=_conversation_item(session.conversation),
    )


def _raise_for_failure(session: ChatSessionController) -> None:
    if session.state is not SessionState.failed or session.last_error is None:
        return
    error = session.last_error
    detail: dict[str, Any] = {
        "kind": error.kind,
        "message": str(error),
        "input_text": session.input_text,
    }
    raise HTTPException(status_code=FAILURE_STATUS.get(error.kind, 500), detail=detail)


def _ensure_not_sending(session: ChatSessionController) -> None:
    if session.state is SessionState.sending:
        raise HTTPException(status_code=409, detail="A message is already being answered")


async def _load_conversation(session: ChatSessionController) -> None:
    try:
        await session.load()
    except Exception as exc:
        logger.warning("coach_conversation_load_failed user_id=%s detail=%s", session.identity.id, str(exc))
        raise HTTPException(
            status_code=FAILURE_STATUS[AggregationFailure.kind],
            detail={
                "kind": AggregationFailure.kind,
                "message": "Could not load your conversation. Please try again.",
                "input_text": session.input_text,
            },
        ) from exc


async def _run_exchange(session: ChatSessionController, text: str) -> SessionResponse:
    _ensure_not_sending(session)
    if not text.strip():
        raise HTTPException(status_code=422, detail="Message must not be blank")
    await session.submit(text)
    _raise_for_failure(session)
    return _session_response(session)


@router.get("/quick-prompts", response_model=QuickPromptListResponse)
def list_quick_prompts(user: User = Depends(get_current_user)) -> QuickPromptListResponse:
    return QuickPromptListResponse(
        items=[QuickPromptItem(key=prompt.key, text=prompt.text) for prompt in QUICK_PROMPTS.values()]
    )


@router.get("/conversation", response_model=ConversationResponse)
async def get_conversation(session: ChatSessionController = Depends(get_coach_session)) -> ConversationResponse:
    if session.state is not SessionState.sending:
        await _load_conversation(session)
    return ConversationResponse(conversation=_conversation_item(session.conversation))


@router.get("/session", response_model=SessionResponse)
async def get_session(session: ChatSessionController = Depends(get_coach_session)) -> SessionResponse:
    if not session.loaded and session.state is not SessionState.sending:
        await _load_conversation(session)
    return _session_response(session)


@router.post("/messages", response_model=SessionResponse)
async def send_message(
    payload: CoachMessageRequest,
    session: ChatSessionController = Depends(get_coach_session),
) -> SessionResponse:
    return await _run_exchange(session, payload.message)


@router.post("/quick-prompts/{key}", response_model=SessionResponse)
async def send_quick_prompt(
    key: str,
    session: ChatSessionController = Depends(get_coach_session),
) -> SessionResponse:
    if key not in QUICK_PROMPTS:
        raise HTTPException(status_code=404, detail="Quick prompt not found")
    _ensure_not_sending(session)
    await session.submit_quick_prompt(key)
    _raise_for_failure(session)
    return _session_response(session)
