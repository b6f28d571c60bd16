"""Shared fixtures: an app on in-memory SQLite and a fake chat-completion client."""

from types import SimpleNamespace

import pytest
from werkzeug.security import generate_password_hash

from app import create_app
from config import Settings
from models import db, User


class FakeCompletions:
    """Records requests and returns a canned reply, or raises ``error``."""

    def __init__(self):
        self.calls = []
        self.reply = "### Focus\n\nRun three times a week."
        self.error = None

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(role="assistant", content=self.reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeClient:
    def __init__(self):
        self.completions = FakeCompletions()
        self.chat = SimpleNamespace(completions=self.completions)


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", app_env="test", log_level="WARNING")


@pytest.fixture
def ai_client():
    return FakeClient()


@pytest.fixture
def app(settings, ai_client):
    app = create_app(settings, ai_client=ai_client)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    def _make(email="ana@example.com", password="correct-horse", name="Ana"):
        user = User(
            email=email,
            name=name,
            password_hash=generate_password_hash(password) if password else None,
        )
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def other_user(make_user):
    return make_user(email="bo@example.com", name="Bo")


@pytest.fixture
def login(client):
    def _login(user):
        with client.session_transaction() as sess:
            sess["user_id"] = user.id

    return _login
