import asyncio
from datetime import date, datetime, timezone

import pytest

from conftest import FakeScenario, FakeTextGenerationClient, InMemoryEntityStore
from vita.core.chat_session import ChatSessionController, CoachSessionRegistry, SessionState
from vita.core.context_builder import Identity
from vita.core.errors import AggregationFailure, GenerationFailure, PersistenceFailure

TODAY = date(2026, 3, 14)
IDENTITY = Identity(id=1, display_name="Alex", email="alex@test.com")


def _seed_history(store: InMemoryEntityStore, turns: int) -> None:
    store.seed(
        "ai_conversation",
        user_id=IDENTITY.id,
        title="Chat Mar 13",
        messages=[
            {"role": "user" if idx % 2 == 0 else "assistant", "content": f"message {idx}", "timestamp": ""}
            for idx in range(turns)
        ],
        context_summary="",
        created_at=datetime(2026, 3, 13, tzinfo=timezone.utc),
    )


def _controller(store, llm, **kwargs) -> ChatSessionController:
    return ChatSessionController(IDENTITY, store, llm, today=TODAY, **kwargs)


def test_successful_exchange_returns_to_idle(memory_store: InMemoryEntityStore) -> None:
    llm = FakeTextGenerationClient(reply="  Go for a walk.  ")
    session = _controller(memory_store, llm)
    session.input_text = "What should I do today?"

    assert asyncio.run(session.submit()) is True
    assert session.state is SessionState.idle
    assert session.typing is False
    assert session.input_text == ""
    assert session.pending_message is None
    assert session.last_error is None
    assert [(turn.role, turn.content) for turn in session.conversation.messages] == [
        ("user", "What should I do today?"),
        ("assistant", "Go for a walk."),
    ]
    assert "- Name: Alex" in session.conversation.context_summary


def test_blank_submission_is_ignored(memory_store: InMemoryEntityStore) -> None:
    llm = FakeTextGenerationClient()
    session = _controller(memory_store, llm)
    assert asyncio.run(session.submit("   ")) is False
    assert session.state is SessionState.idle
    assert llm.prompts == []
    assert memory_store.calls == []


def test_submission_while_sending_is_a_no_op(memory_store: InMemoryEntityStore) -> None:
    async def scenario():
        llm = FakeTextGenerationClient(scenario=FakeScenario.SLOW)
        session = _controller(memory_store, llm)
        first = asyncio.create_task(session.submit("first"))
        while not llm.prompts:
            await asyncio.sleep(0)
        assert session.state is SessionState.sending
        assert session.typing is True
        assert session.pending_message == "first"
        accepted = await session.submit("second")
        llm.release.set()
        await first
        return session, llm, accepted

    session, llm, accepted = asyncio.run(scenario())
    assert accepted is False
    assert len(llm.prompts) == 1
    assert [turn.content for turn in session.conversation.messages] == ["first", "Try a 20 minute brisk walk today."]


def test_long_history_is_windowed_but_fully_persisted(memory_store: InMemoryEntityStore) -> None:
    _seed_history(memory_store, 10)
    llm = FakeTextGenerationClient(reply="Sure.")
    session = _controller(memory_store, llm)

    asyncio.run(session.submit("next question"))

    prompt = llm.prompts[0]
    for idx in range(4, 10):
        assert f"message {idx}" in prompt
    for idx in range(4):
        assert f"message {idx}\n" not in prompt
    assert prompt.endswith("User's message: next question")
    assert len(session.conversation.messages) == 12
    assert len(memory_store.records["ai_conversation"][0]["messages"]) == 12


@pytest.mark.parametrize(
    "scenario, expected",
    [
        (FakeScenario.FAIL, GenerationFailure),
        (FakeScenario.EMPTY, GenerationFailure),
    ],
)
def test_generation_failure_keeps_input_and_history(memory_store, scenario, expected) -> None:
    _seed_history(memory_store, 2)
    session = _controller(memory_store, FakeTextGenerationClient(scenario=scenario))

    assert asyncio.run(session.submit("help me")) is True
    assert session.state is SessionState.failed
    assert isinstance(session.last_error, expected)
    assert session.input_text == "help me"
    assert session.pending_message is None
    assert len(session.conversation.messages) == 2
    assert not any(operation in {"create", "update"} for operation, _ in memory_store.calls)


def test_generation_timeout(memory_store: InMemoryEntityStore) -> None:
    session = _controller(
        memory_store, FakeTextGenerationClient(scenario=FakeScenario.SLOW), generation_timeout=0.05
    )
    asyncio.run(session.submit("hello"))
    assert session.state is SessionState.failed
    assert isinstance(session.last_error, GenerationFailure)
    assert "too long" in str(session.last_error)


def test_aggregation_failure_skips_generation(memory_store: InMemoryEntityStore) -> None:
    memory_store.fail_on.add(("query", "mood_entry"))
    llm = FakeTextGenerationClient()
    session = _controller(memory_store, llm)

    asyncio.run(session.submit("hello"))
    assert isinstance(session.last_error, AggregationFailure)
    assert llm.prompts == []
    assert session.input_text == "hello"


def test_persistence_failure_discards_reply(memory_store: InMemoryEntityStore) -> None:
    memory_store.fail_on.add(("create", "ai_conversation"))
    session = _controller(memory_store, FakeTextGenerationClient())

    asyncio.run(session.submit("hello"))
    assert isinstance(session.last_error, PersistenceFailure)
    assert session.conversation is None
    assert "ai_conversation" not in memory_store.records


def test_failed_session_accepts_resubmission(memory_store: InMemoryEntityStore) -> None:
    llm = FakeTextGenerationClient(scenario=FakeScenario.FAIL)
    session = _controller(memory_store, llm)
    asyncio.run(session.submit("retry me"))
    assert session.state is SessionState.failed

    llm.scenario = FakeScenario.OK
    assert asyncio.run(session.submit()) is True
    assert session.state is SessionState.idle
    assert session.last_error is None
    assert session.conversation.messages[0].content == "retry me"


def test_quick_prompt_submits_fixed_text(memory_store: InMemoryEntityStore) -> None:
    llm = FakeTextGenerationClient()
    session = _controller(memory_store, llm)
    asyncio.run(session.submit_quick_prompt("sleep"))
    assert llm.prompts[0].endswith("User's message: Help me sleep better")

    with pytest.raises(KeyError):
        asyncio.run(session.submit_quick_prompt("unknown"))


def test_registry_reuses_session_within_a_day(memory_store: InMemoryEntityStore) -> None:
    registry = CoachSessionRegistry(memory_store, today_provider=lambda: TODAY)
    first_llm = FakeTextGenerationClient()
    second_llm = FakeTextGenerationClient()

    session = registry.get(IDENTITY, first_llm)
    again = registry.get(IDENTITY, second_llm)
    assert again is session
    assert again.llm is second_llm


def test_registry_rolls_over_on_new_day(memory_store: InMemoryEntityStore) -> None:
    days = iter([date(2026, 3, 14), date(2026, 3, 15)])
    registry = CoachSessionRegistry(memory_store, today_provider=lambda: next(days))

    session = registry.get(IDENTITY, FakeTextGenerationClient())
    session.input_text = "draft"
    rolled = registry.get(IDENTITY, FakeTextGenerationClient())

    assert rolled is not session
    assert rolled.today == date(2026, 3, 15)
    assert rolled.input_text == "draft"
    assert rolled.state is SessionState.idle


def test_registry_drops_previous_day_sessions(memory_store: InMemoryEntityStore) -> None:
    current = {"day": date(2026, 3, 14)}
    registry = CoachSessionRegistry(memory_store, today_provider=lambda: current["day"])
    other = Identity(id=2, display_name="Sam", email="sam@test.com")
    busy = Identity(id=3, display_name="Kim", email="kim@test.com")

    registry.get(IDENTITY, FakeTextGenerationClient())
    failed = registry.get(other, FakeTextGenerationClient())
    failed.state = SessionState.failed
    in_flight = registry.get(busy, FakeTextGenerationClient())
    in_flight.state = SessionState.sending
    assert len(registry) == 3

    current["day"] = date(2026, 3, 15)
    session = registry.get(IDENTITY, FakeTextGenerationClient())

    assert session.today == date(2026, 3, 15)
    assert len(registry) == 2
    assert registry.get(busy, FakeTextGenerationClient()) is in_flight
    assert registry.get(other, FakeTextGenerationClient()) is not failed
