"""
Configuration for the goal mentor app.

Settings are read from the environment exactly once, when the process starts,
by :func:`configure`. The result is a frozen :class:`Settings` object that is
handed to :func:`app.create_app` and from there to everything that needs it.

Required variables:

* ``DATABASE_URL`` – PostgreSQL (or SQLite) connection string.
* ``GITHUB_ID`` / ``GITHUB_SECRET`` – OAuth application credentials.
* ``GROQ_API_KEY`` – key for the chat-completion API used by the mentor.

Optional variables: ``EMAIL_SERVER``, ``EMAIL_FROM``, ``AUTH_URL``,
``AUTH_SECRET``, ``GROQ_MODEL``, ``APP_ENV`` and ``LOG_LEVEL``. ``AUTH_SECRET``
becomes required when ``APP_ENV`` is ``production``.

In production a failed validation stops the process. In development and test
the problems are logged and the app starts with whatever is valid.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Literal, Mapping, Optional, Tuple
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

log = logging.getLogger(__name__)

DEV_DATABASE_URL = "sqlite:///database.db"
DEV_SECRET_KEY = "change-me-secret-key"

REQUIRED_VARS = ["DATABASE_URL", "GITHUB_ID", "GITHUB_SECRET", "GROQ_API_KEY"]
OPTIONAL_VARS = [
    "EMAIL_SERVER",
    "EMAIL_FROM",
    "AUTH_URL",
    "AUTH_SECRET",
    "GROQ_MODEL",
    "APP_ENV",
    "LOG_LEVEL",
]

# environment variable -> Settings field
_FIELDS = {name: name.lower() for name in REQUIRED_VARS + OPTIONAL_VARS}
_ENV_NAMES = {field: name for name, field in _FIELDS.items()}


class EnvValidationError(Exception):
    """Raised when the environment is missing or has malformed variables."""

    def __init__(self, missing: List[str], invalid: List[Tuple[str, str]]):
        self.missing = missing
        self.invalid = invalid
        messages = []
        if missing:
            messages.append(
                "Missing required environment variables: " + ", ".join(missing)
            )
        if invalid:
            lines = [f"{name}: {reason}" for name, reason in invalid]
            messages.append("Invalid environment variables:\n" + "\n".join(lines))
        super().__init__("\n\n".join(messages))


class Settings(BaseModel):
    """Immutable application configuration."""

    model_config = ConfigDict(frozen=True)

    database_url: str = DEV_DATABASE_URL
    github_id: Optional[str] = Field(None, min_length=10)
    github_secret: Optional[str] = Field(None, min_length=10)
    groq_api_key: Optional[str] = Field(None, min_length=10)

    email_server: Optional[str] = None
    email_from: Optional[str] = None
    auth_url: Optional[str] = None
    auth_secret: Optional[str] = Field(None, min_length=32)

    groq_model: str = "groq/compound"
    app_env: Literal["development", "production", "test"] = "development"
    log_level: str = "INFO"

    @field_validator("database_url")
    @classmethod
    def _check_database_url(cls, value: str) -> str:
        if value.startswith("postgres://"):
            # SQLAlchemy only knows the long scheme name
            return "postgresql://" + value[len("postgres://"):]
        if not value.startswith(("postgresql://", "sqlite://")):
            raise ValueError(
                "Must be a valid PostgreSQL connection string "
                "(starts with postgresql:// or postgres://)"
            )
        return value

    @field_validator("email_from")
    @classmethod
    def _check_email_from(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and "@" not in value:
            raise ValueError("Should be a valid email address")
        return value

    @field_validator("auth_url")
    @classmethod
    def _check_auth_url(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            parsed = urlparse(value)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise ValueError("Must be a valid URL")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError("Must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL")
        return value

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def secret_key(self) -> str:
        return self.auth_secret or DEV_SECRET_KEY

    def summary(self) -> Dict[str, str]:
        """Return the configured variables with secrets masked, for logging."""
        result = {}
        for name, field in _FIELDS.items():
            value = getattr(self, field)
            if value is None:
                result[name] = "(not set)"
            elif "SECRET" in name or "KEY" in name:
                result[name] = _mask(value)
            elif name == "DATABASE_URL":
                parsed = urlparse(value)
                result[name] = f"{parsed.scheme}://{parsed.hostname or ''}..."
            else:
                result[name] = str(value)
        return result


def _mask(value: str) -> str:
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}...{value[-4:]}"


def _read(environ: Mapping[str, str]) -> Dict[str, str]:
    raw = {}
    for name, field in _FIELDS.items():
        value = (environ.get(name) or "").strip()
        if value:
            raw[field] = value
    return raw


def _check_production(raw: Dict[str, str]) -> List[Tuple[str, str]]:
    if raw.get("app_env") != "production":
        return []
    problems = []
    server = raw.get("email_server")
    if server and "://" not in server and ":" not in server:
        problems.append(("EMAIL_SERVER", "Should be a valid SMTP connection string or URL"))
    # production sessions are never signed with DEV_SECRET_KEY
    if "auth_secret" not in raw:
        problems.append(("AUTH_SECRET", "Required in production"))
    return problems


def _validate(raw: Dict[str, str]) -> Tuple[Optional[Settings], List[Tuple[str, str]]]:
    invalid = _check_production(raw)
    try:
        settings = Settings(**raw)
    except ValidationError as exc:
        for error in exc.errors():
            field = str(error["loc"][0])
            reason = error["msg"]
            if reason.startswith("Value error, "):
                reason = reason[len("Value error, "):]
            invalid.append((_ENV_NAMES.get(field, field.upper()), reason))
        return None, invalid
    return (None if invalid else settings), invalid


def load_settings(environ: Mapping[str, str]) -> Settings:
    """Validate ``environ`` strictly.

    Raises
    ------
    EnvValidationError
        Listing every missing required variable and every malformed one.
    """
    raw = _read(environ)
    missing = [name for name in REQUIRED_VARS if _FIELDS[name] not in raw]
    settings, invalid = _validate(raw)
    if missing or invalid:
        raise EnvValidationError(missing, invalid)
    return settings


def configure(environ: Mapping[str, str]) -> Settings:
    """Startup configuration step.

    Fatal in production; otherwise logs the problems and falls back to
    development defaults for the variables that failed.
    """
    try:
        settings = load_settings(environ)
    except EnvValidationError as exc:
        raw = _read(environ)
        if raw.get("app_env") == "production":
            log.critical("Environment validation failed:\n%s", exc)
            raise
        log.error("Environment validation failed:\n%s", exc)
        log.error(
            "Required variables: %s. Optional variables: %s.",
            ", ".join(REQUIRED_VARS),
            ", ".join(OPTIONAL_VARS),
        )
        bad = {_FIELDS[name] for name, _ in exc.invalid if name in _FIELDS}
        settings = Settings(**{k: v for k, v in raw.items() if k not in bad})
        return settings

    if settings.app_env == "development":
        log.info("Environment variables validated successfully")
        log.info("Environment summary: %s", settings.summary())
    return settings


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger with a console handler, once."""
    root = logging.getLogger()
    root.setLevel(level)
    if any(getattr(h, "_goal_mentor", False) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler._goal_mentor = True  # type: ignore[attr-defined]
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(handler)
