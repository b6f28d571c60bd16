"""
Goal and task operations.

Every function takes the acting ``User`` first and only ever touches rows
that user owns; a goal or task belonging to somebody else is reported exactly
like a missing one.

A goal's ``progress`` follows its tasks: after a task is created, toggled or
deleted it becomes the rounded percentage of finished tasks. A manual value
set through :func:`update_goal` stays until the next task change.
"""

from __future__ import annotations

import datetime
import logging
from typing import Any, Iterable, List, Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from errors import NotFoundError, ValidationError
from models import db, Goal, Task, User

log = logging.getLogger(__name__)

GOAL_NOT_FOUND = "Goal not found or you don't have permission to change it"
TASK_NOT_FOUND = "Task not found or you don't have permission to change it"
TITLE_MAX_LENGTH = 200

_FIELD_MESSAGES = {
    "title": "Title is required",
    "priority": "Priority must be a whole number between 1 and 5",
    "deadline": "Deadline must be a valid date",
}


class GoalInput(BaseModel):
    """Validated goal fields, as submitted by the create and edit forms."""

    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(..., min_length=1, max_length=TITLE_MAX_LENGTH)
    description: Optional[str] = None
    priority: int = Field(3, ge=1, le=5)
    deadline: Optional[datetime.date] = None

    @field_validator("description", "deadline", mode="before")
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("priority", mode="before")
    @classmethod
    def _blank_priority(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return 3
        return value


def _parse_goal(**fields: Any) -> GoalInput:
    try:
        return GoalInput(**fields)
    except pydantic.ValidationError as exc:
        first = exc.errors()[0]
        field = str(first["loc"][0]) if first["loc"] else ""
        if first["type"] == "string_too_long":
            raise ValidationError(f"{field.capitalize()} is too long") from exc
        raise ValidationError(_FIELD_MESSAGES.get(field, first["msg"])) from exc


def clamp_progress(value: Any) -> int:
    """Clamp a manual progress value into ``[0, 100]``."""
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        raise ValidationError("Progress must be a number") from None
    return max(0, min(100, number))


def compute_progress(tasks: Iterable[Task]) -> int:
    """Percentage of finished tasks, rounded half up; 0 when there are none."""
    tasks = list(tasks)
    total = len(tasks)
    if not total:
        return 0
    done = sum(1 for task in tasks if task.done)
    # floor(100 * done / total + 0.5) without floats
    return (200 * done + total) // (2 * total)


def _parse_title(title: Optional[str]) -> str:
    title = (title or "").strip()
    if not title:
        raise ValidationError("Task title is required")
    if len(title) > TITLE_MAX_LENGTH:
        raise ValidationError("Task title is too long")
    return title


def _parse_notes(notes: Optional[str]) -> Optional[str]:
    notes = (notes or "").strip()
    return notes or None


def _parse_estimate(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        minutes = int(float(value))
    except (TypeError, ValueError):
        return None
    return max(0, minutes) or None


# ---------------------------------------------------------------------
# Goals
# ---------------------------------------------------------------------

def list_goals(user: User) -> List[Goal]:
    """Return the user's goals, newest first."""
    return (
        Goal.query.filter_by(user_id=user.id)
        .order_by(Goal.created_at.desc(), Goal.id.desc())
        .all()
    )


def get_goal(user: User, goal_id: int) -> Goal:
    goal = Goal.query.filter_by(id=goal_id, user_id=user.id).first()
    if goal is None:
        raise NotFoundError(GOAL_NOT_FOUND)
    return goal


def create_goal(
    user: User,
    title: Optional[str],
    description: Optional[str] = None,
    priority: Any = 3,
    deadline: Any = None,
) -> Goal:
    """Create a goal with progress 0.

    Raises
    ------
    ValidationError
        If the title is blank or the priority is outside 1..5.
    """
    data = _parse_goal(
        title=title or "", description=description, priority=priority, deadline=deadline
    )
    goal = Goal(
        user_id=user.id,
        title=data.title,
        description=data.description,
        priority=data.priority,
        deadline=data.deadline,
        progress=0,
    )
    db.session.add(goal)
    db.session.commit()
    log.info("User %s created goal %s", user.id, goal.id)
    return goal


def update_goal(
    user: User,
    goal_id: int,
    title: Optional[str],
    description: Optional[str] = None,
    priority: Any = 3,
    deadline: Any = None,
    progress: Any = None,
) -> Goal:
    """Replace a goal's fields. ``progress`` is clamped when given and kept otherwise."""
    goal = get_goal(user, goal_id)
    data = _parse_goal(
        title=title or "", description=description, priority=priority, deadline=deadline
    )
    goal.title = data.title
    goal.description = data.description
    goal.priority = data.priority
    goal.deadline = data.deadline
    if progress is not None and progress != "":
        goal.progress = clamp_progress(progress)
    db.session.commit()
    return goal


def delete_goal(user: User, goal_id: int) -> None:
    """Delete a goal together with all of its tasks."""
    goal = get_goal(user, goal_id)
    db.session.delete(goal)
    db.session.commit()
    log.info("User %s deleted goal %s", user.id, goal_id)


# ---------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------

def _lock_goal(user: User, goal_id: int) -> Goal:
    # Row lock on the parent goal serializes task changes that rewrite its
    # progress. SQLite ignores FOR UPDATE and already serializes writers.
    goal = (
        Goal.query.filter_by(id=goal_id, user_id=user.id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if goal is None:
        raise NotFoundError(GOAL_NOT_FOUND)
    return goal


def _lock_task(user: User, task_id: int) -> tuple:
    goal_id = (
        db.session.query(Task.goal_id)
        .join(Goal, Task.goal_id == Goal.id)
        .filter(Task.id == task_id, Goal.user_id == user.id)
        .scalar()
    )
    if goal_id is None:
        raise NotFoundError(TASK_NOT_FOUND)
    goal = _lock_goal(user, goal_id)
    for task in goal.tasks:
        if task.id == task_id:
            return goal, task
    # deleted between the lookup and the lock
    raise NotFoundError(TASK_NOT_FOUND)


def create_task(
    user: User,
    goal_id: int,
    title: Optional[str],
    notes: Optional[str] = None,
    estimate_mins: Any = None,
) -> Task:
    """Append a task to the end of a goal's task list."""
    goal = _lock_goal(user, goal_id)
    title = _parse_title(title)
    existing = list(goal.tasks)
    next_order = max(task.order for task in existing) + 1 if existing else 0
    task = Task(
        title=title,
        notes=_parse_notes(notes),
        estimate_mins=_parse_estimate(estimate_mins),
        order=next_order,
        done=False,
    )
    goal.tasks.append(task)
    goal.progress = compute_progress(existing + [task])
    db.session.commit()
    return task


def update_task(
    user: User,
    task_id: int,
    title: Optional[str],
    notes: Optional[str] = None,
    estimate_mins: Any = None,
) -> Task:
    """Edit a task's text fields. The goal's progress is not touched."""
    _, task = _lock_task(user, task_id)
    task.title = _parse_title(title)
    task.notes = _parse_notes(notes)
    task.estimate_mins = _parse_estimate(estimate_mins)
    db.session.commit()
    return task


def toggle_task(user: User, task_id: int) -> Task:
    """Flip a task's ``done`` flag and recompute the goal's progress."""
    goal, task = _lock_task(user, task_id)
    task.done = not task.done
    goal.progress = compute_progress(goal.tasks)
    db.session.commit()
    return task


def delete_task(user: User, task_id: int) -> Goal:
    """Delete a task and recompute progress over the tasks that remain."""
    goal, task = _lock_task(user, task_id)
    remaining = [t for t in goal.tasks if t.id != task_id]
    goal.tasks.remove(task)
    goal.progress = compute_progress(remaining)
    db.session.commit()
    return goal
