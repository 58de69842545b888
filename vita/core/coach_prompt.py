from typing import Optional, Sequence

from vita.core.context_builder import HealthContextSnapshot
from vita.core.conversation_store import ConversationTurn

# Hard cap on replayed turns; older turns are dropped, not summarized.
HISTORY_WINDOW_TURNS = 6

NOT_TRACKED = "Not tracked"
NOT_LOGGED = "Not logged"
DEFAULT_GOAL = "General wellness"
NO_PREVIOUS_CONTEXT = "No previous context"

COACH_PERSONA = """
You are VITA AI, a warm, supportive, and knowledgeable personal health coach.
You provide personalized advice based on the user's health data.

Response style:
- Friendly, encouraging tone.
- Concise but helpful.
- Be specific when recommending workouts or meals.
- Reference the user's data when relevant to show personalization.
""".strip()


def _or_placeholder(value: Optional[object], placeholder: str) -> str:
    if value is None:
        return placeholder
    text = str(value).strip()
    return text or placeholder


def _format_goal(goal: Optional[str]) -> str:
    if not goal:
        return DEFAULT_GOAL
    return goal.replace("_", " ")


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def render_context_block(snapshot: HealthContextSnapshot) -> str:
    if snapshot.today_sleep_hours is None:
        sleep = NOT_TRACKED
    else:
        quality = _or_placeholder(snapshot.sleep_quality, "unknown")
        sleep = f"{_format_number(snapshot.today_sleep_hours)} hours ({quality} quality)"
    if snapshot.recent_stress_level is None:
        stress = NOT_LOGGED
    else:
        stress = f"{snapshot.recent_stress_level}/5"
    lines = [
        "User Health Context:",
        f"- Name: {_or_placeholder(snapshot.user_name, 'User')}",
        f"- Goal: {_format_goal(snapshot.goal)}",
        f"- Today's steps: {_or_placeholder(snapshot.today_steps, NOT_TRACKED)}",
        f"- Today's sleep: {sleep}",
        f"- Today's calories consumed: {_format_number(snapshot.today_calories_consumed or 0)}",
        f"- Recent mood: {_or_placeholder(snapshot.recent_mood, NOT_LOGGED)}",
        f"- Workouts this week: {snapshot.workouts_this_week_count}",
        f"- Stress level: {stress}",
    ]
    return "\n".join(lines)


def render_transcript(history: Sequence[ConversationTurn]) -> str:
    window = list(history)[-HISTORY_WINDOW_TURNS:]
    if not window:
        return NO_PREVIOUS_CONTEXT
    return "\n".join(f"{turn.role}: {turn.content}" for turn in window)


def build_coach_prompt(
    snapshot: HealthContextSnapshot, history: Sequence[ConversationTurn], message: str
) -> str:
    sections = [
        COACH_PERSONA,
        render_context_block(snapshot),
        f"Previous conversation context:\n{render_transcript(history)}",
        f"User's message: {message}",
    ]
    return "\n\n".join(sections)
