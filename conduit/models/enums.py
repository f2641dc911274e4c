"""Shared *Enum* definitions for SQLAlchemy & Pydantic models.

The Enums inherit from ``str`` so that:

* JSON serialisation remains unchanged (values render as plain strings).
* Equality checks against raw literals (``auth_type == "oauth"``) keep working.
"""

from __future__ import annotations

from enum import Enum


class OAuthProvider(str, Enum):
    ATLASSIAN = "atlassian"
    MICROSOFT_PARTNER_CENTER = "microsoft_partner_center"


class ToolServerAuthType(str, Enum):
    NONE = "none"
    # Forward the caller's own session bearer token verbatim
    BEARER_DELEGATED = "bearer_delegated"
    API_KEY = "api_key"
    OAUTH = "oauth"


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


__all__ = [
    "OAuthProvider",
    "ToolServerAuthType",
    "MessageRole",
]
