"""Exceptions used inside the chat orchestrator.

They never escape :meth:`ChatOrchestrator.stream_turn`; each is mapped to a
terminal :class:`conduit.schemas.stream_events.ErrorEvent`.
"""


class ChatServiceError(Exception):
    """Base exception for orchestrator failures."""

    pass


class ConversationNotFound(ChatServiceError):
    def __init__(self, conversation_id: int):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} not found")


class MaxIterationsExceeded(ChatServiceError):
    def __init__(self, max_rounds: int):
        self.max_rounds = max_rounds
        super().__init__(f"Model still requested tools after {max_rounds} round(s)")


class StreamInterrupted(ChatServiceError):
    """The model stream ended without a finish reason."""

    def __init__(self, message: str = "Model stream ended without a finish reason"):
        super().__init__(message)
