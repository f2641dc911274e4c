"""Centralised configuration helper.

Exposes a :class:`Settings` container populated from environment variables
(after ``python-dotenv`` has loaded the project ``.env``).  Call sites use
:func:`get_settings` instead of sprinkling ``os.getenv`` calls around.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# ``_REPO_ROOT`` points at the directory that holds ``pyproject.toml``; this
# file lives at ``conduit/config/__init__.py``.
_REPO_ROOT = Path(__file__).resolve().parents[2]


def _truthy(value: str | None) -> bool:  # noqa: D401 – small helper
    """Return *True* when *value* looks like an affirmative string."""

    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:  # noqa: D401 – simple data container
    """Lightweight settings container populated from environment variables."""

    # Runtime flags -----------------------------------------------------
    testing: bool
    log_level: str

    # Database ---------------------------------------------------------
    database_url: str

    # Cryptography -----------------------------------------------------
    fernet_secret: Any

    # Upstream language model ------------------------------------------
    openai_api_key: Any
    openai_base_url: str | None
    chat_model: str
    max_tool_rounds: int
    model_timeout: float
    model_max_retries: int

    # Tool servers -------------------------------------------------------
    tool_call_timeout: float

    # OAuth --------------------------------------------------------------
    oauth_http_timeout: float
    token_refresh_buffer_seconds: int
    oauth_state_ttl_seconds: int
    atlassian_client_id: str | None
    atlassian_client_secret: str | None
    ms_partner_client_id: str | None
    ms_partner_client_secret: str | None

    # Helper for tests to override values at runtime -------------------
    def override(self, **kwargs: Any) -> None:  # pragma: no cover – test util
        for key, value in kwargs.items():
            if not hasattr(self, key):  # pragma: no cover – safety
                raise AttributeError(f"Settings has no attribute '{key}'")
            setattr(self, key, value)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


def _load_settings() -> Settings:  # noqa: D401 – helper
    """Populate :class:`Settings` from environment variables."""

    env_path = _REPO_ROOT / ".env"
    if env_path.exists():
        # Explicit process env wins over the file so tests can pin values.
        load_dotenv(env_path, override=False)

    return Settings(
        testing=_truthy(os.getenv("TESTING")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        database_url=os.getenv("DATABASE_URL", ""),
        fernet_secret=os.getenv("FERNET_SECRET"),
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        openai_base_url=os.getenv("OPENAI_BASE_URL"),
        chat_model=os.getenv("CHAT_MODEL", "gpt-4o"),
        max_tool_rounds=int(os.getenv("MAX_TOOL_ROUNDS", "8")),
        model_timeout=float(os.getenv("MODEL_TIMEOUT", "60")),
        model_max_retries=int(os.getenv("MODEL_MAX_RETRIES", "2")),
        tool_call_timeout=float(os.getenv("TOOL_CALL_TIMEOUT", "30")),
        oauth_http_timeout=float(os.getenv("OAUTH_HTTP_TIMEOUT", "10")),
        token_refresh_buffer_seconds=int(os.getenv("TOKEN_REFRESH_BUFFER_SECONDS", "300")),
        oauth_state_ttl_seconds=int(os.getenv("OAUTH_STATE_TTL_SECONDS", "600")),
        atlassian_client_id=os.getenv("ATLASSIAN_CLIENT_ID"),
        atlassian_client_secret=os.getenv("ATLASSIAN_CLIENT_SECRET"),
        ms_partner_client_id=os.getenv("MS_PARTNER_CLIENT_ID"),
        ms_partner_client_secret=os.getenv("MS_PARTNER_CLIENT_SECRET"),
    )


# ------------------------------------------------------------------
# Runtime validation – fail fast when *required* secrets are missing.
# ------------------------------------------------------------------


def _validate_required(settings: Settings) -> None:  # noqa: D401 – helper
    """Abort startup when mandatory configuration is missing.

    Skipped under ``TESTING`` because the suite injects its own cipher key,
    database and model client.
    """

    if settings.testing:
        return

    missing_vars = []

    if not settings.openai_api_key:
        missing_vars.append("OPENAI_API_KEY")

    if not settings.fernet_secret:
        missing_vars.append("FERNET_SECRET")

    if settings.max_tool_rounds < 1:
        missing_vars.append("MAX_TOOL_ROUNDS (must be >= 1)")

    if missing_vars:
        raise RuntimeError(
            f"CRITICAL: Missing required environment variables: {', '.join(missing_vars)}\n"
            "Set these in your .env file or deployment environment."
        )


def get_settings() -> Settings:  # noqa: D401 – public accessor
    """Return :class:`Settings` instance loaded from environment."""

    settings = _load_settings()
    _validate_required(settings)
    return settings


__all__ = [
    "Settings",
    "get_settings",
]
