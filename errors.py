"""
Error types and helpers shared by the goal and chat modules.

Domain functions raise one of the :class:`AppError` subclasses. The HTTP layer
never lets them escape to the user as-is: form actions go through
:func:`run_action`, which turns every failure into an :class:`ActionResult`
carrying a message that is safe to show.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError, NoResultFound, SQLAlchemyError

from models import db

log = logging.getLogger(__name__)

GENERIC_MESSAGE = "An unexpected error occurred. Please try again."


class AppError(Exception):
    """Base class for errors whose message can be shown to the user."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(AppError):
    status_code = 400


class UnauthorizedError(AppError):
    status_code = 401


class NotFoundError(AppError):
    status_code = 404


class UpstreamServiceError(AppError):
    """The AI provider refused or failed the request."""

    status_code = 503


@dataclass
class ActionResult:
    """Outcome of a form action: ``error`` is ``None`` on success."""

    error: Optional[str] = None
    data: Any = None
    status_code: int = 200

    @property
    def ok(self) -> bool:
        return self.error is None

    def as_dict(self) -> dict:
        return {"error": self.error}


def describe_db_error(exc: SQLAlchemyError) -> str:
    """Translate a database exception into text fit for the user."""
    if isinstance(exc, NoResultFound):
        return "The record you're trying to access doesn't exist."
    if isinstance(exc, IntegrityError):
        code = getattr(exc.orig, "pgcode", None)
        text = str(exc.orig).lower()
        if code == "23505" or "unique" in text:
            return "This record already exists. Please use a different value."
        if code == "23503" or "foreign key" in text:
            return "Invalid reference. Please check your input."
    log.error("Database error: %s", exc)
    return "A database error occurred. Please try again."


def run_action(func: Callable[..., Any], *args: Any, **kwargs: Any) -> ActionResult:
    """Call a domain operation and capture its outcome as an ActionResult."""
    try:
        data = func(*args, **kwargs)
    except AppError as exc:
        db.session.rollback()
        return ActionResult(error=exc.message, status_code=exc.status_code)
    except SQLAlchemyError as exc:
        db.session.rollback()
        return ActionResult(error=describe_db_error(exc), status_code=500)
    except Exception:
        db.session.rollback()
        log.exception("Unexpected error in %s", getattr(func, "__name__", func))
        return ActionResult(error=GENERIC_MESSAGE, status_code=500)
    return ActionResult(data=data)
