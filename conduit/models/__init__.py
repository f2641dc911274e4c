"""Database models for the application."""

from .models import Conversation
from .models import Message
from .models import OAuthConnection
from .models import ToolServer
from .models import User

__all__ = [
    "Conversation",
    "Message",
    "OAuthConnection",
    "ToolServer",
    "User",
]
