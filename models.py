"""
Database models for the goal mentor application.

This module defines four SQLAlchemy models:

* ``User`` – a person who can log in. Users created through OAuth have no
  password hash until they set one at signup.
* ``Goal`` – an objective owned by a user, with a priority from 1 to 5, an
  optional deadline and a progress percentage from 0 to 100.
* ``Task`` – a step towards a goal. Tasks are displayed by their ``order``
  value and their ``done`` flags drive the goal's progress.
* ``ChatMessage`` – one turn of a conversation with the AI mentor, grouped
  by a client-generated conversation id.

Goals and chat messages are deleted together with their user, and tasks
together with their goal.
"""

from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

# create a SQLAlchemy object without an app – we'll initialize it in app.py
db = SQLAlchemy()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(db.Model):
    """Represents a user of the goal mentor app."""
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    name = db.Column(db.String(120), nullable=True)
    password_hash = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, nullable=False)

    goals = db.relationship(
        "Goal", backref="user", cascade="all, delete-orphan", lazy=True
    )
    messages = db.relationship(
        "ChatMessage", backref="user", cascade="all, delete-orphan", lazy=True
    )

    def to_dict(self) -> dict:
        return {"id": self.id, "email": self.email, "name": self.name}

    def __repr__(self) -> str:  # pragma: no cover
        return f"<User {self.email}>"


class Goal(db.Model):
    """A user-defined objective."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    priority = db.Column(db.Integer, nullable=False, default=3)
    deadline = db.Column(db.Date, nullable=True)
    progress = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, nullable=False)

    # Deleting a goal removes its tasks
    tasks = db.relationship(
        "Task",
        backref="goal",
        cascade="all, delete-orphan",
        order_by="Task.order",
        lazy=True,
    )

    def to_dict(self, with_tasks: bool = False) -> dict:
        data = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "progress": self.progress,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
        if with_tasks:
            data["tasks"] = [task.to_dict() for task in self.tasks]
        return data

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Goal {self.title} (progress={self.progress})>"


class Task(db.Model):
    """A sub-item of a goal.

    ``order`` values only need to be relatively ordered within a goal; gaps
    left by deleted tasks are never closed.
    """

    id = db.Column(db.Integer, primary_key=True)
    goal_id = db.Column(
        db.Integer, db.ForeignKey("goal.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title = db.Column(db.String(200), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    done = db.Column(db.Boolean, nullable=False, default=False)
    order = db.Column(db.Integer, nullable=False, default=0)
    estimate_mins = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "goalId": self.goal_id,
            "title": self.title,
            "notes": self.notes,
            "done": self.done,
            "order": self.order,
            "estimateMins": self.estimate_mins,
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Task {self.title} goal={self.goal_id} done={self.done}>"


class ChatMessage(db.Model):
    """One message in a mentor conversation."""

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True
    )
    conversation_id = db.Column(db.String(100), nullable=False, index=True)
    role = db.Column(db.String(16), nullable=False)  # "user" or "assistant"
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"<ChatMessage {self.role} conversation={self.conversation_id}>"
