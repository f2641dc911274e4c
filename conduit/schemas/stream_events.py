"""Events yielded by :meth:`ChatOrchestrator.stream_turn`.

Each event carries a ``type`` discriminator; transports call
``model_dump()`` and frame the dict however they like (SSE, websocket …).
Exactly one terminal event (``complete``, ``error`` or ``auth_required``)
ends every turn.
"""

from enum import Enum
from typing import Literal
from typing import Optional
from typing import Union

from pydantic import BaseModel
from pydantic import Field


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    MAX_ITERATIONS_EXCEEDED = "max_iterations_exceeded"
    INTERNAL = "internal"


class TokenEvent(BaseModel):
    type: Literal["token"] = "token"
    content: str


class ToolCallEvent(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    tool_name: str
    server_id: Optional[int] = None


class CompleteEvent(BaseModel):
    type: Literal["complete"] = "complete"
    content: str
    tools_used: bool
    message_id: Optional[int] = None


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    kind: ErrorKind
    message: str


class AuthRequiredEvent(BaseModel):
    type: Literal["auth_required"] = "auth_required"
    provider: Optional[str] = None
    reason: str


StreamEvent = Union[TokenEvent, ToolCallEvent, CompleteEvent, ErrorEvent, AuthRequiredEvent]
TurnOutcome = Union[CompleteEvent, ErrorEvent, AuthRequiredEvent]

TERMINAL_EVENT_TYPES = ("complete", "error", "auth_required")


class StreamEnvelope(BaseModel):
    """Discriminated wrapper for parsing a framed event back into a model."""

    event: StreamEvent = Field(..., discriminator="type")


def is_terminal(event: BaseModel) -> bool:
    return getattr(event, "type", None) in TERMINAL_EVENT_TYPES


__all__ = [
    "AuthRequiredEvent",
    "CompleteEvent",
    "ErrorEvent",
    "ErrorKind",
    "StreamEnvelope",
    "StreamEvent",
    "TokenEvent",
    "ToolCallEvent",
    "TurnOutcome",
    "is_terminal",
]
