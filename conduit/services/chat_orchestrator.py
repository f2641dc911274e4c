"""Streaming conversation orchestrator.

One call to :meth:`ChatOrchestrator.stream_turn` runs a single user turn:

1. persist the user message,
2. discover the user's tools,
3. stream the model, forwarding text deltas and reassembling tool calls,
4. execute requested tools and feed their results back,
5. repeat (bounded by ``max_tool_rounds``) until the model stops.

The generator always ends with exactly one terminal event – ``complete``,
``error`` or ``auth_required``.  Only a completed turn persists an
assistant message; partial answers are never written to the transcript.
"""

import logging
from typing import Any
from typing import AsyncIterator
from typing import Dict
from typing import List
from typing import Optional

import httpx
import openai
from openai import AsyncOpenAI
from sqlalchemy.orm import Session

from conduit.config import Settings
from conduit.config import get_settings
from conduit.crud import crud
from conduit.models.enums import MessageRole
from conduit.oauth.exceptions import OAuthError
from conduit.schemas.stream_events import AuthRequiredEvent
from conduit.schemas.stream_events import CompleteEvent
from conduit.schemas.stream_events import ErrorEvent
from conduit.schemas.stream_events import ErrorKind
from conduit.schemas.stream_events import StreamEvent
from conduit.schemas.stream_events import TokenEvent
from conduit.schemas.stream_events import ToolCallEvent
from conduit.schemas.stream_events import TurnOutcome
from conduit.schemas.stream_events import is_terminal
from conduit.services.exceptions import ConversationNotFound
from conduit.services.exceptions import MaxIterationsExceeded
from conduit.services.exceptions import StreamInterrupted
from conduit.services.tool_call_accumulator import AccumulatedToolCall
from conduit.services.tool_call_accumulator import ToolCallAccumulator
from conduit.services.tool_call_accumulator import make_function_name
from conduit.services.tool_call_accumulator import split_function_name
from conduit.tools.exceptions import ToolGatewayError
from conduit.tools.gateway import ToolGateway
from conduit.tools.schemas import AuthRequired
from conduit.tools.schemas import ToolCatalog

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "The assistant is unavailable right now."

_HISTORY_ROLES = (MessageRole.SYSTEM, MessageRole.USER, MessageRole.ASSISTANT)

# APITimeoutError is a subclass of APIConnectionError
_TRANSPORT_ERRORS = (openai.APIConnectionError, httpx.TransportError)

_USER_MESSAGES = {
    ErrorKind.NOT_FOUND: "Conversation not found.",
    ErrorKind.TRANSPORT: UNAVAILABLE_MESSAGE,
    ErrorKind.PROTOCOL: UNAVAILABLE_MESSAGE,
    ErrorKind.MAX_ITERATIONS_EXCEEDED: "The assistant could not finish this request.",
    ErrorKind.INTERNAL: UNAVAILABLE_MESSAGE,
}


def _error(kind: ErrorKind) -> ErrorEvent:
    return ErrorEvent(kind=kind, message=_USER_MESSAGES[kind])


def build_llm_client(settings: Settings) -> AsyncOpenAI:
    client_kwargs: Dict[str, Any] = {
        "api_key": settings.openai_api_key,
        "timeout": settings.model_timeout,
        "max_retries": settings.model_max_retries,
    }
    if settings.openai_base_url:
        client_kwargs["base_url"] = settings.openai_base_url
    return AsyncOpenAI(**client_kwargs)


def build_tool_definitions(catalog: ToolCatalog) -> List[Dict[str, Any]]:
    """Flatten discovered tools into OpenAI function definitions."""

    definitions = []
    for server in catalog.servers:
        for tool in server.tools:
            definitions.append(
                {
                    "type": "function",
                    "function": {
                        "name": make_function_name(server.server_id, tool.name),
                        "description": f"[{server.server_name}] {tool.description}",
                        "parameters": tool.input_schema,
                    },
                }
            )
    return definitions


class ChatOrchestrator:
    def __init__(
        self,
        db: Session,
        gateway: ToolGateway,
        *,
        llm_client: Any = None,
        settings: Optional[Settings] = None,
        model: Optional[str] = None,
        max_tool_rounds: Optional[int] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.llm = llm_client if llm_client is not None else build_llm_client(self.settings)
        self.model = model or self.settings.chat_model
        self.max_tool_rounds = max_tool_rounds if max_tool_rounds is not None else self.settings.max_tool_rounds
        if self.max_tool_rounds < 1:
            raise ValueError("max_tool_rounds must be >= 1")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def stream_turn(self, user_id: int, conversation_id: int, user_message: str) -> AsyncIterator[StreamEvent]:
        """Run one turn, yielding events in emission order."""

        try:
            async for event in self._turn(user_id, conversation_id, user_message):
                yield event
        except ConversationNotFound as exc:
            logger.info("%s (user %s)", exc, user_id)
            yield _error(ErrorKind.NOT_FOUND)
        except Exception:  # noqa: BLE001 – becomes the terminal event
            logger.exception("Chat turn failed for conversation %s", conversation_id)
            self.db.rollback()
            yield _error(ErrorKind.INTERNAL)

    async def run_turn(self, user_id: int, conversation_id: int, user_message: str) -> TurnOutcome:
        """Drain :meth:`stream_turn` and return its terminal event."""

        outcome = None
        async for event in self.stream_turn(user_id, conversation_id, user_message):
            if is_terminal(event):
                outcome = event
        return outcome

    # ------------------------------------------------------------------
    # Turn state machine
    # ------------------------------------------------------------------

    async def _turn(self, user_id: int, conversation_id: int, user_message: str) -> AsyncIterator[StreamEvent]:
        conversation = crud.get_conversation(self.db, conversation_id, user_id=user_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)

        messages = self._history(conversation.id)
        crud.create_message(self.db, conversation.id, MessageRole.USER.value, user_message)
        messages.append({"role": MessageRole.USER.value, "content": user_message})

        catalog = await self.gateway.all_tools_for_user(user_id)
        needs_auth = catalog.first_auth_required
        if needs_auth is not None:
            logger.info("Turn on conversation %s needs %s authorization", conversation.id, needs_auth.provider)
            yield AuthRequiredEvent(provider=needs_auth.provider, reason=needs_auth.reason)
            return

        tools = build_tool_definitions(catalog)
        answer_parts: List[str] = []
        tools_used = False
        tool_rounds = 0
        accumulator = ToolCallAccumulator()

        for round_no in range(1, self.max_tool_rounds + 1):
            accumulator.reset()
            round_text: List[str] = []
            finish_reason = None

            request: Dict[str, Any] = {"model": self.model, "messages": messages, "stream": True}
            if tools:
                request["tools"] = tools

            try:
                stream = await self.llm.chat.completions.create(**request)
                async for chunk in stream:
                    if not chunk.choices:
                        continue
                    choice = chunk.choices[0]
                    delta = choice.delta
                    if delta is not None:
                        if delta.content:
                            round_text.append(delta.content)
                            yield TokenEvent(content=delta.content)
                        if delta.tool_calls:
                            for call in accumulator.extend(delta.tool_calls):
                                yield self._tool_call_event(call)
                    if choice.finish_reason:
                        finish_reason = choice.finish_reason
            except _TRANSPORT_ERRORS as exc:
                logger.warning("Model stream transport failure on conversation %s: %s", conversation.id, exc)
                yield _error(ErrorKind.TRANSPORT)
                return
            except openai.APIError as exc:
                logger.warning("Model API error on conversation %s: %s", conversation.id, exc)
                yield _error(ErrorKind.PROTOCOL)
                return

            answer_parts.extend(round_text)

            if finish_reason is None:
                logger.warning("%s (conversation %s, round %d)", StreamInterrupted(), conversation.id, round_no)
                yield _error(ErrorKind.TRANSPORT)
                return

            if finish_reason == "tool_calls" and accumulator:
                tools_used = True
                tool_rounds += 1
                calls = accumulator.calls()
                messages.append(
                    {
                        "role": MessageRole.ASSISTANT.value,
                        "content": "".join(round_text) or None,
                        "tool_calls": [call.as_message_entry() for call in calls],
                    }
                )
                for call in calls:
                    result = await self._execute(user_id, call, catalog)
                    if isinstance(result, AuthRequired):
                        logger.info("Tool %s needs %s authorization", call.name, result.provider)
                        yield AuthRequiredEvent(provider=result.provider, reason=result.reason)
                        return
                    messages.append({"role": MessageRole.TOOL.value, "tool_call_id": call.id, "content": result})
                continue

            content = "".join(answer_parts)
            message_id = None
            # An empty answer leaves no assistant row
            if content:
                message = crud.create_message(
                    self.db,
                    conversation.id,
                    MessageRole.ASSISTANT.value,
                    content,
                    metadata={"tools_used": tools_used, "finish_reason": finish_reason, "tool_rounds": tool_rounds},
                )
                message_id = message.id
            crud.touch_conversation(self.db, conversation.id)
            yield CompleteEvent(content=content, tools_used=tools_used, message_id=message_id)
            return

        logger.warning("%s (conversation %s)", MaxIterationsExceeded(self.max_tool_rounds), conversation.id)
        yield _error(ErrorKind.MAX_ITERATIONS_EXCEEDED)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _history(self, conversation_id: int) -> List[Dict[str, Any]]:
        rows = crud.get_messages(self.db, conversation_id, roles=_HISTORY_ROLES)
        return [{"role": row.role, "content": row.content} for row in rows]

    @staticmethod
    def _tool_call_event(call: AccumulatedToolCall) -> ToolCallEvent:
        parsed = split_function_name(call.name)
        if parsed is None:
            return ToolCallEvent(tool_name=call.name)
        server_id, tool_name = parsed
        return ToolCallEvent(tool_name=tool_name, server_id=server_id)

    async def _execute(self, user_id: int, call: AccumulatedToolCall, catalog: ToolCatalog):
        """Run one tool call; returns the tool message text or ``AuthRequired``."""

        parsed = split_function_name(call.name)
        server = catalog.find_server(parsed[0]) if parsed else None
        tool = None
        if server is not None:
            tool = next((t for t in server.tools if t.name == parsed[1]), None)
        if tool is None:
            logger.warning("Model requested unknown tool %r", call.name)
            return f"Error: Unknown tool '{call.name}'"

        server_id, tool_name = parsed
        try:
            arguments = call.parsed_arguments()
        except ValueError as exc:
            logger.warning("Invalid arguments for tool %s: %s", call.name, exc)
            return f"Error: Invalid arguments for tool '{tool_name}': {exc}"

        try:
            self.gateway.validate_arguments(tool_name, tool.input_schema, arguments)
            return await self.gateway.call_tool(user_id, server_id, tool_name, arguments)
        except (ToolGatewayError, OAuthError) as exc:
            logger.warning("Tool %s on server %s failed: %s", tool_name, server_id, exc)
            return f"Error: {exc}"


__all__ = [
    "ChatOrchestrator",
    "UNAVAILABLE_MESSAGE",
    "build_tool_definitions",
]
