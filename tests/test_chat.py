"""Unit tests for chat turn assembly and the Mentor service."""

import datetime
from types import SimpleNamespace

import groq
import httpx
import pytest

import goals
from chat import (
    MAX_HISTORY,
    NO_GOALS,
    GoalView,
    Mentor,
    assemble_messages,
    format_goals,
    parse_goal_views,
    window_history,
)
from errors import UpstreamServiceError, ValidationError
from models import db, ChatMessage

_REQUEST = httpx.Request("POST", "https://api.groq.com/openai/v1/chat/completions")


def _status_error(cls, status):
    return cls("provider said no", response=httpx.Response(status, request=_REQUEST), body=None)


def _turns(count):
    return [
        SimpleNamespace(role="user" if i % 2 == 0 else "assistant", content=f"message {i}")
        for i in range(count)
    ]


def _seed(user, conversation_id, count):
    base = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)
    for i in range(count):
        db.session.add(
            ChatMessage(
                user_id=user.id,
                conversation_id=conversation_id,
                role="user" if i % 2 == 0 else "assistant",
                content=f"message {i}",
                created_at=base + datetime.timedelta(minutes=i),
            )
        )
    db.session.commit()


class TestWindowHistory:
    def test_keeps_most_recent_in_order(self):
        window = window_history(_turns(20))

        assert len(window) == MAX_HISTORY == 8
        assert [m.content for m in window] == [f"message {i}" for i in range(12, 20)]

    def test_short_history_is_kept_whole(self):
        assert len(window_history(_turns(3))) == 3

    def test_zero_limit(self):
        assert window_history(_turns(5), limit=0) == []


class TestFormatGoals:
    def test_full_goal(self):
        view = GoalView(
            title="Run 5k",
            description="Before summer",
            deadline=datetime.date(2026, 3, 14),
            priority=3,
            progress=50,
        )

        assert format_goals([view]) == (
            "1. Run 5k, Description: Before summer, Deadline: 3/14/2026, Priority: 3, Progress: 50%"
        )

    def test_absent_fields_are_omitted(self):
        views = [GoalView(title="Read more"), GoalView(title="Sleep", priority=1)]

        assert format_goals(views) == "1. Read more\n2. Sleep, Priority: 1"

    def test_zero_progress_is_shown(self):
        assert format_goals([GoalView(title="Run", progress=0)]) == "1. Run, Progress: 0%"

    def test_no_goals(self):
        assert format_goals([]) == NO_GOALS


class TestParseGoalViews:
    def test_accepts_client_payload(self):
        views = parse_goal_views(
            [{"id": 7, "title": "Run 5k", "deadline": "2026-03-14T00:00:00.000Z", "progress": 20}]
        )

        assert views[0].deadline == datetime.date(2026, 3, 14)
        assert views[0].progress == 20

    def test_none_is_empty(self):
        assert parse_goal_views(None) == []

    @pytest.mark.parametrize("payload", ["Run 5k", [{"description": "no title"}]])
    def test_rejects_bad_shapes(self, payload):
        with pytest.raises(ValidationError):
            parse_goal_views(payload)


class TestAssembleMessages:
    def test_system_window_then_new_message(self):
        messages = assemble_messages(_turns(20), "What next?", [GoalView(title="Run 5k")])

        assert messages[0]["role"] == "system"
        assert "1. Run 5k" in messages[0]["content"]
        assert [m["content"] for m in messages[1:-1]] == [f"message {i}" for i in range(12, 20)]
        assert messages[-1] == {"role": "user", "content": "What next?"}
        assert len(messages) == MAX_HISTORY + 2

    def test_prompt_mentions_missing_goals(self):
        messages = assemble_messages([], "Hi", [])

        assert NO_GOALS in messages[0]["content"]


class TestMentor:
    @pytest.fixture
    def mentor(self, ai_client):
        return Mentor(ai_client, model="test-model", max_tokens=300)

    def test_reply_persists_both_messages(self, mentor, ai_client, user):
        reply = mentor.reply(user, "conv-1", "How do I start?")

        assert reply == ai_client.completions.reply
        rows = mentor.history(user, "conv-1")
        assert [(m.role, m.content) for m in rows] == [
            ("user", "How do I start?"),
            ("assistant", reply),
        ]
        call = ai_client.completions.calls[0]
        assert call["model"] == "test-model"
        assert call["max_tokens"] == 300

    def test_only_recent_history_is_sent(self, mentor, ai_client, user):
        _seed(user, "conv-1", 20)

        mentor.reply(user, "conv-1", "And now?")

        sent = ai_client.completions.calls[0]["messages"]
        assert [m["content"] for m in sent[1:-1]] == [f"message {i}" for i in range(12, 20)]
        assert sent[-1] == {"role": "user", "content": "And now?"}
        assert len(mentor.history(user, "conv-1")) == 22

    def test_history_is_scoped_to_user_and_conversation(self, mentor, ai_client, user, other_user):
        _seed(user, "conv-2", 4)
        _seed(other_user, "conv-1", 4)

        mentor.reply(user, "conv-1", "Fresh start")

        sent = ai_client.completions.calls[0]["messages"]
        assert len(sent) == 2

    def test_stored_goals_are_used_by_default(self, mentor, ai_client, user):
        goals.create_goal(user, "Run 5k", priority=4)

        mentor.reply(user, "conv-1", "Help")

        system = ai_client.completions.calls[0]["messages"][0]["content"]
        assert "1. Run 5k, Priority: 4, Progress: 0%" in system

    def test_client_goals_override_stored_ones(self, mentor, ai_client, user):
        goals.create_goal(user, "Run 5k")

        mentor.reply(user, "conv-1", "Help", [GoalView(title="Write a book")])

        system = ai_client.completions.calls[0]["messages"][0]["content"]
        assert "Write a book" in system
        assert "Run 5k" not in system

    @pytest.mark.parametrize(
        "error,status",
        [
            (_status_error(groq.RateLimitError, 429), 429),
            (_status_error(groq.AuthenticationError, 401), 503),
            (groq.APIConnectionError(request=_REQUEST), 503),
            (_status_error(groq.InternalServerError, 500), 500),
        ],
    )
    def test_provider_failure_stores_nothing(self, mentor, ai_client, user, error, status):
        ai_client.completions.error = error

        with pytest.raises(UpstreamServiceError) as info:
            mentor.reply(user, "conv-1", "Hello?")

        assert info.value.status_code == status
        assert ChatMessage.query.count() == 0

    def test_unconfigured_client(self, user):
        with pytest.raises(UpstreamServiceError) as info:
            Mentor(None).reply(user, "conv-1", "Hello?")

        assert info.value.status_code == 503

    @pytest.mark.parametrize("content", ["", "   ", None])
    def test_empty_completion_stores_nothing(self, mentor, ai_client, user, content):
        ai_client.completions.reply = content

        with pytest.raises(UpstreamServiceError) as info:
            mentor.reply(user, "conv-1", "Hello?")

        assert info.value.status_code == 503
        assert ChatMessage.query.count() == 0

    def test_missing_choices_stores_nothing(self, user):
        client = SimpleNamespace(
            chat=SimpleNamespace(
                completions=SimpleNamespace(create=lambda **kwargs: SimpleNamespace(choices=[]))
            )
        )

        with pytest.raises(UpstreamServiceError):
            Mentor(client).reply(user, "conv-1", "Hello?")
        assert ChatMessage.query.count() == 0

    @pytest.mark.parametrize("message,conversation_id", [("", "conv-1"), ("Hi", ""), ("Hi", None)])
    def test_requires_message_and_conversation(self, mentor, user, message, conversation_id):
        with pytest.raises(ValidationError):
            mentor.reply(user, conversation_id, message)

    def test_clear_removes_only_that_conversation(self, mentor, user, other_user):
        _seed(user, "conv-1", 4)
        _seed(user, "conv-2", 2)
        _seed(other_user, "conv-1", 3)

        assert mentor.clear(user, "conv-1") == 4

        assert mentor.history(user, "conv-1") == []
        assert len(mentor.history(user, "conv-2")) == 2
        assert len(mentor.history(other_user, "conv-1")) == 3
