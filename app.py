"""
Main Flask application for the goal mentor app.

This module creates a Flask application, configures the database and the AI
client, and defines routes for user authentication, goal and task management
and the chat mentor. The application uses session-based authentication with
a secret key.

Key routes:

* ``/register`` – create a new user account.
* ``/login`` – authenticate an existing user.
* ``/logout`` – clear the user's session.
* ``/goals`` – the dashboard: goals, their tasks and the forms to change them.
* ``/goals/...`` and ``/tasks/...`` – form actions for goals and tasks. They
  answer ``{"error": ...}`` to JSON clients and flash + redirect otherwise.
* ``/mentor`` – the chat page.
* ``/api/chat``, ``/api/chat/clear``, ``/api/chat/history`` and
  ``/api/goals/demo`` – the JSON endpoints used by the chat page.

To run the app locally, set the environment variables described in
``config.py`` and execute ``python app.py``. In production use a WSGI server
such as Gunicorn pointed at ``wsgi:app``.
"""

from __future__ import annotations

import logging
import os
from functools import wraps
from typing import Any, Optional

import groq
import pydantic
from flask import (
    Flask,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from pydantic import BaseModel, EmailStr, Field
from werkzeug.security import check_password_hash, generate_password_hash

import goals as goal_ops
from chat import Mentor, parse_goal_views
from config import Settings, configure, setup_logging
from errors import ActionResult, AppError, run_action
from models import db, User

log = logging.getLogger(__name__)


class SignupInput(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=8)


_SIGNUP_MESSAGES = {
    "name": "Name is required",
    "email": "Invalid email address",
    "password": "Password must be at least 8 characters",
}


def _signup_error(exc: pydantic.ValidationError) -> str:
    first = exc.errors()[0]
    field = str(first["loc"][0]) if first["loc"] else ""
    return _SIGNUP_MESSAGES.get(field, "Invalid input")


def _wants_json() -> bool:
    accept = request.accept_mimetypes
    return request.is_json or (accept.accept_json and not accept.accept_html)


def _form() -> Any:
    """Submitted fields, from a JSON body or a regular form post."""
    if request.is_json:
        body = request.get_json(silent=True)
        return body if isinstance(body, dict) else {}
    return request.form


def create_app(settings: Optional[Settings] = None, ai_client: Any = None) -> Flask:
    """Factory function for creating the Flask application.

    Parameters
    ----------
    settings
        Validated configuration. Read from the environment when omitted.
    ai_client
        Chat-completion client. A ``groq.Groq`` client is built from
        ``settings.groq_api_key`` when omitted.

    Returns
    -------
    Flask
        A configured Flask application.
    """
    if settings is None:
        settings = configure(os.environ)
    setup_logging(settings.log_level)

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = settings.database_url
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SECRET_KEY"] = settings.secret_key
    app.config["TESTING"] = settings.app_env == "test"
    app.config["SETTINGS"] = settings

    db.init_app(app)

    # Create tables if they don't exist
    with app.app_context():
        db.create_all()

    if ai_client is None and settings.groq_api_key:
        ai_client = groq.Groq(api_key=settings.groq_api_key)
    if ai_client is None:
        log.warning("GROQ_API_KEY is not set; the mentor will answer 503")
    mentor = Mentor(ai_client, model=settings.groq_model)
    app.extensions["mentor"] = mentor

    def _current_user() -> Optional[User]:
        user_id = session.get("user_id")
        if user_id is None:
            return None
        return db.session.get(User, user_id)

    def login_required(view_func):  # type: ignore[misc]
        """Decorator to require an authenticated user for a page or form action."""
        @wraps(view_func)
        def wrapped(*args, **kwargs):
            if "user_id" not in session:
                if _wants_json():
                    return jsonify({"error": "Unauthorized"}), 401
                return redirect(url_for("login"))
            user = _current_user()
            if user is None:
                session.clear()
                if _wants_json():
                    return jsonify({"error": "User not found"}), 404
                flash("User not found. Please log in again.")
                return redirect(url_for("login"))
            g.user = user
            return view_func(*args, **kwargs)

        return wrapped

    def api_login_required(view_func):  # type: ignore[misc]
        """Like ``login_required`` but always answers in JSON."""
        @wraps(view_func)
        def wrapped(*args, **kwargs):
            if "user_id" not in session:
                return jsonify({"error": "Unauthorized"}), 401
            user = _current_user()
            if user is None:
                return jsonify({"error": "User not found"}), 404
            g.user = user
            return view_func(*args, **kwargs)

        return wrapped

    def respond(result: ActionResult, success: str):
        """Send an action result as JSON or as a flash message and redirect."""
        if _wants_json():
            return jsonify(result.as_dict()), result.status_code
        flash(result.error or success)
        return redirect(url_for("goals_page"))

    @app.errorhandler(AppError)
    def handle_app_error(exc: AppError):
        return jsonify({"error": exc.message}), exc.status_code

    # -----------------------------------------------------------------
    # Authentication
    # -----------------------------------------------------------------

    @app.route("/register", methods=["GET", "POST"])
    def register():
        """Display the registration form and handle account creation."""
        if request.method == "POST":
            try:
                data = SignupInput(
                    name=request.form.get("name", "").strip(),
                    email=request.form.get("email", "").strip().lower(),
                    password=request.form.get("password", ""),
                )
            except pydantic.ValidationError as exc:
                flash(_signup_error(exc))
                return redirect(url_for("register"))

            email = str(data.email).lower()
            user = User.query.filter_by(email=email).first()
            if user is not None and user.password_hash:
                flash("User already exists with this email")
                return redirect(url_for("register"))

            if user is None:
                user = User(email=email, name=data.name)
                db.session.add(user)
            else:
                # account created through OAuth: attach a password to it
                user.name = data.name or user.name
            user.password_hash = generate_password_hash(data.password)
            result = run_action(db.session.commit)
            if not result.ok:
                flash(result.error)
                return redirect(url_for("register"))
            flash("Registration successful. Please log in.")
            return redirect(url_for("login"))
        return render_template("register.html")

    @app.route("/login", methods=["GET", "POST"])
    def login():
        """Show the login form and authenticate the user."""
        if request.method == "POST":
            email = request.form.get("email", "").strip().lower()
            password = request.form.get("password", "")
            user = User.query.filter_by(email=email).first()
            if user and user.password_hash and check_password_hash(user.password_hash, password):
                session.clear()
                session["user_id"] = user.id
                flash("Logged in successfully.")
                return redirect(url_for("goals_page"))
            flash("Invalid email or password.")
            return redirect(url_for("login"))
        return render_template("login.html")

    @app.route("/logout")
    def logout():
        """Log out the current user by clearing the session."""
        session.clear()
        flash("You have been logged out.")
        return redirect(url_for("login"))

    # -----------------------------------------------------------------
    # Pages
    # -----------------------------------------------------------------

    @app.route("/")
    def index():
        return redirect(url_for("goals_page"))

    @app.route("/goals", methods=["GET"])
    @login_required
    def goals_page():
        """Show the current user's goals with their tasks."""
        return render_template("goals.html", user=g.user, goals=goal_ops.list_goals(g.user))

    @app.route("/mentor")
    @login_required
    def mentor_page():
        return render_template("mentor.html", user=g.user)

    # -----------------------------------------------------------------
    # Goal and task form actions
    # -----------------------------------------------------------------

    @app.route("/goals", methods=["POST"])
    @login_required
    def create_goal():
        form = _form()
        result = run_action(
            goal_ops.create_goal,
            g.user,
            form.get("title"),
            description=form.get("description"),
            priority=form.get("priority"),
            deadline=form.get("deadline"),
        )
        return respond(result, "Goal created.")

    @app.route("/goals/<int:goal_id>/edit", methods=["POST"])
    @login_required
    def update_goal(goal_id: int):
        form = _form()
        result = run_action(
            goal_ops.update_goal,
            g.user,
            goal_id,
            form.get("title"),
            description=form.get("description"),
            priority=form.get("priority"),
            deadline=form.get("deadline"),
            progress=form.get("progress"),
        )
        return respond(result, "Goal updated.")

    @app.route("/goals/<int:goal_id>/delete", methods=["POST"])
    @login_required
    def delete_goal(goal_id: int):
        result = run_action(goal_ops.delete_goal, g.user, goal_id)
        return respond(result, "Goal deleted.")

    @app.route("/goals/<int:goal_id>/tasks", methods=["POST"])
    @login_required
    def create_task(goal_id: int):
        form = _form()
        result = run_action(
            goal_ops.create_task,
            g.user,
            goal_id,
            form.get("title"),
            notes=form.get("notes"),
            estimate_mins=form.get("estimateMins"),
        )
        return respond(result, "Task added.")

    @app.route("/tasks/<int:task_id>/edit", methods=["POST"])
    @login_required
    def update_task(task_id: int):
        form = _form()
        result = run_action(
            goal_ops.update_task,
            g.user,
            task_id,
            form.get("title"),
            notes=form.get("notes"),
            estimate_mins=form.get("estimateMins"),
        )
        return respond(result, "Task updated.")

    @app.route("/tasks/<int:task_id>/toggle", methods=["POST"])
    @login_required
    def toggle_task(task_id: int):
        result = run_action(goal_ops.toggle_task, g.user, task_id)
        return respond(result, "Task updated.")

    @app.route("/tasks/<int:task_id>/delete", methods=["POST"])
    @login_required
    def delete_task(task_id: int):
        result = run_action(goal_ops.delete_task, g.user, task_id)
        return respond(result, "Task deleted.")

    # -----------------------------------------------------------------
    # JSON API
    # -----------------------------------------------------------------

    @app.route("/api/goals/demo", methods=["GET"])
    @api_login_required
    def api_goals():
        goals = goal_ops.list_goals(g.user)
        return jsonify({"goals": [goal.to_dict() for goal in goals]})

    @app.route("/api/chat", methods=["POST"])
    @api_login_required
    def api_chat():
        body = request.get_json(silent=True)
        if not isinstance(body, dict) or not body.get("message") or not body.get("conversationId"):
            return jsonify({"error": "Message and conversationId are required"}), 400
        views = None
        if body.get("goals") is not None:
            views = parse_goal_views(body["goals"])
        try:
            reply = mentor.reply(g.user, body["conversationId"], body["message"], views)
        except AppError:
            db.session.rollback()
            raise
        except Exception:
            db.session.rollback()
            log.exception("Chat request failed")
            return jsonify({"error": "AI request failed"}), 500
        return jsonify({"reply": reply})

    @app.route("/api/chat/history", methods=["GET"])
    @api_login_required
    def api_chat_history():
        messages = mentor.history(g.user, request.args.get("conversationId"))
        return jsonify({"messages": [m.to_dict() for m in messages]})

    @app.route("/api/chat/clear", methods=["DELETE"])
    @api_login_required
    def api_chat_clear():
        try:
            mentor.clear(g.user, request.args.get("conversationId"))
        except AppError:
            raise
        except Exception:
            db.session.rollback()
            log.exception("Error clearing chat history")
            return jsonify({"error": "Failed to clear chat history"}), 500
        return jsonify({"success": True})

    return app


if __name__ == "__main__":  # pragma: no cover
    # When running locally with `python app.py`, use Flask's dev server
    create_app().run(host="0.0.0.0", port=5000, debug=True)
