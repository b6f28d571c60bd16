"""
The AI mentor.

Each request to the chat-completion API is assembled from three parts: a
system prompt describing the user's goals, the last :data:`MAX_HISTORY`
messages of the conversation, and the new user message. Conversations are
stored as ``ChatMessage`` rows keyed by user and conversation id, so nothing
lives in process memory between requests.
"""

from __future__ import annotations

import datetime
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

import groq
import pydantic
from pydantic import BaseModel, field_validator

from errors import UpstreamServiceError, ValidationError
from models import db, ChatMessage, Goal, User

log = logging.getLogger(__name__)

MAX_HISTORY = 8
NO_GOALS = "No goals have been defined yet."

SYSTEM_PROMPT = """You are an AI Personal Mentor and Goal Planner.

USER GOALS:
{goals}

RESPONSE RULES:
- Always respond in valid Markdown
- Be concise and actionable
- Do not explain your role
- Ask at most ONE follow-up question
- Insert a blank line after every markdown heading

Use exactly these sections, in this order:

### Focus

One short paragraph.

### Action Plan

A numbered list (1., 2., 3.). Never use bullet points.

### Time Commitment

A single sentence estimate.

### Checkpoint

One measurable outcome.

Optionally finish with an ### Insight section, only when it adds value.
"""


class GoalView(BaseModel):
    """The parts of a goal the mentor gets to see."""

    title: str
    description: Optional[str] = None
    deadline: Optional[datetime.date] = None
    priority: Optional[int] = None
    progress: Optional[int] = None

    @field_validator("deadline", mode="before")
    @classmethod
    def _date_part(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return None
            # "2026-03-14T00:00:00.000Z" -> "2026-03-14"
            if len(value) > 10 and value[10] == "T":
                return value[:10]
        return value

    @classmethod
    def from_goal(cls, goal: Goal) -> "GoalView":
        return cls(
            title=goal.title,
            description=goal.description,
            deadline=goal.deadline,
            priority=goal.priority,
            progress=goal.progress,
        )

    def describe(self, number: int) -> str:
        parts = [f"{number}. {self.title}"]
        if self.description:
            parts.append(f"Description: {self.description}")
        if self.deadline:
            d = self.deadline
            parts.append(f"Deadline: {d.month}/{d.day}/{d.year}")
        if self.priority is not None:
            parts.append(f"Priority: {self.priority}")
        if self.progress is not None:
            parts.append(f"Progress: {self.progress}%")
        return ", ".join(parts)


def parse_goal_views(items: Any) -> List[GoalView]:
    """Validate goals sent by the client."""
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValidationError("goals must be a list")
    try:
        return [GoalView.model_validate(item) for item in items]
    except pydantic.ValidationError as exc:
        raise ValidationError("goals contains an invalid entry") from exc


def format_goals(goals: Sequence[GoalView]) -> str:
    if not goals:
        return NO_GOALS
    return "\n".join(goal.describe(i) for i, goal in enumerate(goals, start=1))


def build_system_prompt(goals: Sequence[GoalView]) -> str:
    return SYSTEM_PROMPT.format(goals=format_goals(goals))


def window_history(history: Sequence[Any], limit: int = MAX_HISTORY) -> List[Any]:
    """Return the most recent ``limit`` items, oldest first."""
    if limit <= 0:
        return []
    return list(history[-limit:])


def assemble_messages(
    history: Sequence[ChatMessage],
    message: str,
    goals: Sequence[GoalView],
) -> List[Dict[str, str]]:
    """Build the message list for one completion request."""
    messages = [{"role": "system", "content": build_system_prompt(goals)}]
    for item in window_history(history):
        messages.append({"role": item.role, "content": item.content})
    messages.append({"role": "user", "content": message})
    return messages


def _check_conversation_id(conversation_id: Any) -> str:
    if not isinstance(conversation_id, str) or not conversation_id.strip():
        raise ValidationError("conversationId is required")
    conversation_id = conversation_id.strip()
    if len(conversation_id) > 100:
        raise ValidationError("conversationId is too long")
    return conversation_id


def _conversation(user: User, conversation_id: str):
    return ChatMessage.query.filter_by(user_id=user.id, conversation_id=conversation_id)


class Mentor:
    """Answers chat messages through a Groq-compatible client.

    ``client`` may be ``None`` when no API key is configured; every reply then
    fails with an :class:`UpstreamServiceError`.
    """

    def __init__(self, client: Any, model: str = "groq/compound", max_tokens: int = 300):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens

    def history(self, user: User, conversation_id: Any) -> List[ChatMessage]:
        conversation_id = _check_conversation_id(conversation_id)
        return (
            _conversation(user, conversation_id)
            .order_by(ChatMessage.created_at, ChatMessage.id)
            .all()
        )

    def recent(self, user: User, conversation_id: str, limit: int = MAX_HISTORY) -> List[ChatMessage]:
        rows = (
            _conversation(user, conversation_id)
            .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
            .limit(limit)
            .all()
        )
        rows.reverse()
        return rows

    def clear(self, user: User, conversation_id: Any) -> int:
        conversation_id = _check_conversation_id(conversation_id)
        count = _conversation(user, conversation_id).delete(synchronize_session=False)
        db.session.commit()
        log.info("Cleared %d messages of conversation %s for user %s", count, conversation_id, user.id)
        return count

    def reply(
        self,
        user: User,
        conversation_id: Any,
        message: Any,
        goals: Optional[Iterable[GoalView]] = None,
    ) -> str:
        """Send ``message`` to the model and store both sides of the turn.

        When ``goals`` is ``None`` the user's stored goals are used. Nothing
        is stored if the provider call fails.
        """
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("Message and conversationId are required")
        conversation_id = _check_conversation_id(conversation_id)
        if goals is None:
            rows = (
                Goal.query.filter_by(user_id=user.id)
                .order_by(Goal.created_at.desc(), Goal.id.desc())
                .all()
            )
            goals = [GoalView.from_goal(goal) for goal in rows]
        messages = assemble_messages(self.recent(user, conversation_id), message, list(goals))

        reply = self._complete(messages)

        db.session.add(
            ChatMessage(user_id=user.id, conversation_id=conversation_id, role="user", content=message)
        )
        db.session.flush()
        db.session.add(
            ChatMessage(
                user_id=user.id, conversation_id=conversation_id, role="assistant", content=reply
            )
        )
        db.session.commit()
        return reply

    def _complete(self, messages: List[Dict[str, str]]) -> str:
        if self.client is None:
            raise UpstreamServiceError("AI service is not configured", 503)
        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=messages,
            )
        except groq.RateLimitError as exc:
            log.warning("Groq rate limit: %s", exc)
            raise UpstreamServiceError("AI service is busy. Please try again shortly.", 429) from exc
        except (groq.AuthenticationError, groq.PermissionDeniedError, groq.APIConnectionError) as exc:
            log.error("Groq unavailable: %s", exc)
            raise UpstreamServiceError("AI service is unavailable", 503) from exc
        except groq.APIError as exc:
            log.error("Groq error: %s", exc)
            raise UpstreamServiceError("AI request failed", 500) from exc

        reply = completion.choices[0].message.content if completion.choices else None
        if not reply or not reply.strip():
            log.error("Groq returned an empty completion")
            raise UpstreamServiceError("AI service returned an empty reply", 503)
        return reply
