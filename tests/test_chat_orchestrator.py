"""End-to-end tests for the streaming chat orchestrator.

The model is a scripted stand-in returning real ``ChatCompletionChunk``
objects; tool servers and OAuth endpoints run on ``httpx.MockTransport``.
"""

from datetime import datetime
from unittest.mock import AsyncMock

import httpx
import openai
import pytest

from conduit.crud import crud
from conduit.models.enums import OAuthProvider
from conduit.oauth.schemas import TokenSet
from conduit.schemas.stream_events import AuthRequiredEvent
from conduit.schemas.stream_events import CompleteEvent
from conduit.schemas.stream_events import ErrorEvent
from conduit.schemas.stream_events import StreamEnvelope
from conduit.schemas.stream_events import TokenEvent
from conduit.schemas.stream_events import ToolCallEvent
from conduit.services.chat_orchestrator import UNAVAILABLE_MESSAGE
from conduit.services.chat_orchestrator import ChatOrchestrator
from conduit.tools.schemas import AuthRequired

MODEL_URL = "https://api.openai.test/v1/chat/completions"

SEARCH_TOOL = {
    "name": "search",
    "description": "Search issues",
    "inputSchema": {"type": "object", "properties": {"q": {"type": "string"}}, "required": ["q"]},
}


@pytest.fixture
def conversation(db_session, user):
    return crud.create_conversation(db_session, user.id, title="Support")


@pytest.fixture
def search_server(gateway, user, mock_http, tool_server):
    server = gateway.add_server(user.id, "Jira", "https://jira.test/rpc")
    mock_http.add(
        "POST",
        "https://jira.test/rpc",
        tool_server(
            tools=[SEARCH_TOOL],
            call_results={"search": lambda args: [{"type": "text", "text": f"results for {args['q']}"}]},
        ),
    )
    return server


@pytest.fixture
def make_orchestrator(db_session, gateway, settings, scripted_llm):
    def _make(script, **kwargs):
        llm = scripted_llm(script)
        return ChatOrchestrator(db_session, gateway, llm_client=llm, settings=settings, **kwargs), llm

    return _make


async def _collect(orchestrator, user, conversation, text="hello"):
    return [event async for event in orchestrator.stream_turn(user.id, conversation.id, text)]


def _assistant_messages(db_session, conversation):
    return crud.get_messages(db_session, conversation.id, roles=["assistant"])


# ---------------------------------------------------------------------------
# Plain completion
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_immediate_stop_persists_one_assistant_message(make_orchestrator, user, conversation, chunks, db_session):
    orchestrator, llm = make_orchestrator([[chunks.text("Hel"), chunks.text("lo!"), chunks.finish("stop")]])

    events = await _collect(orchestrator, user, conversation)

    assert [e.type for e in events] == ["token", "token", "complete"]
    assert events[-1].content == "Hello!"
    assert events[-1].tools_used is False

    (message,) = _assistant_messages(db_session, conversation)
    assert message.content == "Hello!"
    assert message.message_metadata == {"tools_used": False, "finish_reason": "stop", "tool_rounds": 0}
    assert events[-1].message_id == message.id
    # no tools configured -> no tools parameter
    assert "tools" not in llm.requests[0]
    assert llm.requests[0]["stream"] is True
    assert llm.requests[0]["model"] == "test-model"


@pytest.mark.asyncio
async def test_empty_answer_completes_without_assistant_row(make_orchestrator, user, conversation, chunks, db_session):
    orchestrator, _ = make_orchestrator([[chunks.finish("stop")]])

    outcome = await orchestrator.run_turn(user.id, conversation.id, "hi")

    assert isinstance(outcome, CompleteEvent)
    assert outcome.content == ""
    assert outcome.message_id is None
    assert _assistant_messages(db_session, conversation) == []
    assert [m.role for m in crud.get_messages(db_session, conversation.id)] == ["user"]


@pytest.mark.asyncio
async def test_user_message_persisted_and_history_loaded(make_orchestrator, user, conversation, chunks, db_session):
    crud.create_message(db_session, conversation.id, "system", "Be brief.")
    crud.create_message(db_session, conversation.id, "user", "Hi")
    crud.create_message(db_session, conversation.id, "assistant", "Hello")
    crud.create_message(db_session, conversation.id, "tool", "raw tool output")
    orchestrator, llm = make_orchestrator([[chunks.text("Sure", finish_reason="stop")]])

    await _collect(orchestrator, user, conversation, "Next question")

    assert llm.requests[0]["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello"},
        {"role": "user", "content": "Next question"},
    ]
    roles = [m.role for m in crud.get_messages(db_session, conversation.id)]
    assert roles == ["system", "user", "assistant", "tool", "user", "assistant"]


@pytest.mark.asyncio
async def test_complete_bumps_conversation_activity(make_orchestrator, user, conversation, chunks, db_session):
    conversation.updated_at = datetime(2020, 1, 1)
    db_session.commit()
    orchestrator, _ = make_orchestrator([[chunks.text("ok", finish_reason="stop")]])

    await _collect(orchestrator, user, conversation)

    db_session.refresh(conversation)
    assert conversation.updated_at > datetime(2020, 1, 1)


@pytest.mark.asyncio
async def test_length_finish_is_complete(make_orchestrator, user, conversation, chunks, db_session):
    orchestrator, _ = make_orchestrator([[chunks.text("truncat"), chunks.finish("length")]])

    outcome = await orchestrator.run_turn(user.id, conversation.id, "hi")

    assert isinstance(outcome, CompleteEvent)
    assert _assistant_messages(db_session, conversation)[0].message_metadata["finish_reason"] == "length"


# ---------------------------------------------------------------------------
# Tool rounds
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_two_tool_calls_in_one_round(make_orchestrator, user, conversation, chunks, search_server, db_session):
    fn = f"{search_server.id}__search"
    orchestrator, llm = make_orchestrator(
        [
            [
                chunks.text("Let me look. "),
                chunks.tool(0, id="call_a", name=fn, arguments='{"q":'),
                chunks.tool(1, id="call_b", name=fn, arguments='{"q": "second"}'),
                chunks.tool(0, arguments='"sea'),
                chunks.tool(0, arguments='rch"}'),
                chunks.finish("tool_calls"),
            ],
            [chunks.text("Found it."), chunks.finish("stop")],
        ]
    )

    events = await _collect(orchestrator, user, conversation, "find things")

    tool_events = [e for e in events if isinstance(e, ToolCallEvent)]
    assert [(e.tool_name, e.server_id) for e in tool_events] == [
        ("search", search_server.id),
        ("search", search_server.id),
    ]

    tool_defs = llm.requests[0]["tools"]
    assert tool_defs[0]["function"]["name"] == fn
    assert tool_defs[0]["function"]["description"] == "[Jira] Search issues"
    assert tool_defs[0]["function"]["parameters"] == SEARCH_TOOL["inputSchema"]

    second_round = llm.requests[1]["messages"]
    assert [m["role"] for m in second_round] == ["user", "assistant", "tool", "tool"]
    assistant = second_round[1]
    assert assistant["content"] == "Let me look. "
    assert [c["id"] for c in assistant["tool_calls"]] == ["call_a", "call_b"]
    assert assistant["tool_calls"][0]["function"]["arguments"] == '{"q":"search"}'
    assert second_round[2] == {"role": "tool", "tool_call_id": "call_a", "content": "results for search"}
    assert second_round[3] == {"role": "tool", "tool_call_id": "call_b", "content": "results for second"}
    # tools are attached every round
    assert "tools" in llm.requests[1]

    complete = events[-1]
    assert isinstance(complete, CompleteEvent)
    assert complete.content == "Let me look. Found it."
    assert complete.tools_used is True

    (message,) = _assistant_messages(db_session, conversation)
    assert message.message_metadata == {"tools_used": True, "finish_reason": "stop", "tool_rounds": 1}
    # intermediate tool traffic is not persisted
    assert [m.role for m in crud.get_messages(db_session, conversation.id)] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_tool_failures_become_error_messages(
    make_orchestrator, user, conversation, chunks, search_server, mock_http, gateway
):
    down = gateway.add_server(user.id, "Down", "https://down.test/rpc")
    calls = {"n": 0}

    def flaky(request):
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"tools": [{"name": "ping"}]}})
        return httpx.Response(503)

    mock_http.add("POST", "https://down.test/rpc", flaky)
    fn = f"{search_server.id}__search"
    orchestrator, llm = make_orchestrator(
        [
            [
                chunks.tool(0, id="c1", name="nonsense", arguments="{}"),
                chunks.tool(1, id="c2", name=fn, arguments="{not json"),
                chunks.tool(2, id="c3", name=fn, arguments='{"q": 5}'),
                chunks.tool(3, id="c4", name=f"{down.id}__ping", arguments=""),
                chunks.tool(4, id="c5", name=f"{search_server.id}__missing", arguments="{}"),
                chunks.finish("tool_calls"),
            ],
            [chunks.text("Sorry."), chunks.finish("stop")],
        ]
    )

    events = await _collect(orchestrator, user, conversation)

    assert isinstance(events[-1], CompleteEvent)
    tool_messages = [m for m in llm.requests[1]["messages"] if m["role"] == "tool"]
    assert [m["tool_call_id"] for m in tool_messages] == ["c1", "c2", "c3", "c4", "c5"]
    assert all(m["content"].startswith("Error: ") for m in tool_messages)
    assert tool_messages[0]["content"] == "Error: Unknown tool 'nonsense'"
    assert "Invalid arguments" in tool_messages[1]["content"]
    assert "Validation failed" in tool_messages[2]["content"]
    assert "503" in tool_messages[3]["content"]
    assert "Unknown tool" in tool_messages[4]["content"]


@pytest.mark.asyncio
async def test_null_text_block_from_tool_still_completes(
    make_orchestrator, user, conversation, chunks, gateway, mock_http, tool_server
):
    server = gateway.add_server(user.id, "Wiki", "https://wiki.test/rpc")
    mock_http.add(
        "POST",
        "https://wiki.test/rpc",
        tool_server(tools=[{"name": "lookup"}], call_results={"lookup": [{"type": "text", "text": None}]}),
    )
    orchestrator, llm = make_orchestrator(
        [
            [chunks.tool(0, id="c1", name=f"{server.id}__lookup", arguments="{}"), chunks.finish("tool_calls")],
            [chunks.text("Nothing there."), chunks.finish("stop")],
        ]
    )

    events = await _collect(orchestrator, user, conversation)

    assert isinstance(events[-1], CompleteEvent)
    (tool_message,) = [m for m in llm.requests[1]["messages"] if m["role"] == "tool"]
    assert tool_message == {"role": "tool", "tool_call_id": "c1", "content": ""}


@pytest.mark.asyncio
async def test_max_rounds_exceeded(make_orchestrator, user, conversation, chunks, search_server, db_session):
    fn = f"{search_server.id}__search"

    def tool_round(call_id):
        return [chunks.text("thinking "), chunks.tool(0, id=call_id, name=fn, arguments='{"q": "x"}'), chunks.finish("tool_calls")]

    orchestrator, llm = make_orchestrator([tool_round("a"), tool_round("b")], max_tool_rounds=2)

    events = await _collect(orchestrator, user, conversation)

    terminal = events[-1]
    assert isinstance(terminal, ErrorEvent)
    assert terminal.kind == "max_iterations_exceeded"
    assert len(llm.requests) == 2
    assert _assistant_messages(db_session, conversation) == []


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_expired_oauth_without_refresh_needs_auth(
    make_orchestrator, user, conversation, gateway, token_manager, clock, db_session, search_server
):
    token_manager.persist_connection(user.id, OAuthProvider.ATLASSIAN, TokenSet(access_token="old"))
    gateway.add_server(user.id, "Confluence", "https://wiki.test/rpc", "oauth", oauth_provider="atlassian")
    clock.advance(7200)
    orchestrator, llm = make_orchestrator([])

    events = await _collect(orchestrator, user, conversation)

    assert events == [AuthRequiredEvent(provider="atlassian", reason="Token expired or revoked")]
    assert llm.requests == []
    assert _assistant_messages(db_session, conversation) == []
    # the user message is still recorded
    assert [m.role for m in crud.get_messages(db_session, conversation.id)] == ["user"]


@pytest.mark.asyncio
async def test_auth_required_during_tool_call(make_orchestrator, user, conversation, chunks, search_server, gateway, db_session):
    fn = f"{search_server.id}__search"
    orchestrator, _ = make_orchestrator(
        [[chunks.tool(0, id="c1", name=fn, arguments='{"q": "x"}'), chunks.finish("tool_calls")]]
    )
    gateway.call_tool = AsyncMock(return_value=AuthRequired("atlassian", "Token expired or revoked"))

    events = await _collect(orchestrator, user, conversation)

    assert isinstance(events[-1], AuthRequiredEvent)
    assert events[-1].provider == "atlassian"
    assert _assistant_messages(db_session, conversation) == []


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unknown_conversation(make_orchestrator, user, other_user, db_session):
    foreign = crud.create_conversation(db_session, other_user.id)
    orchestrator, llm = make_orchestrator([])

    events = [e async for e in orchestrator.stream_turn(user.id, foreign.id, "hi")]

    assert len(events) == 1
    assert events[0].kind == "not_found"
    assert llm.requests == []
    assert crud.get_messages(db_session, foreign.id) == []


@pytest.mark.asyncio
async def test_stream_without_finish_reason_is_transport_error(make_orchestrator, user, conversation, chunks, db_session):
    orchestrator, _ = make_orchestrator([[chunks.text("partial ")]])

    events = await _collect(orchestrator, user, conversation)

    assert isinstance(events[0], TokenEvent)
    assert events[-1].kind == "transport"
    assert events[-1].message == UNAVAILABLE_MESSAGE
    assert _assistant_messages(db_session, conversation) == []


@pytest.mark.asyncio
async def test_connection_error_opening_stream(make_orchestrator, user, conversation, db_session):
    error = openai.APIConnectionError(request=httpx.Request("POST", MODEL_URL))
    orchestrator, _ = make_orchestrator([error])

    outcome = await orchestrator.run_turn(user.id, conversation.id, "hi")

    assert outcome.kind == "transport"
    assert _assistant_messages(db_session, conversation) == []


@pytest.mark.asyncio
async def test_timeout_mid_stream(make_orchestrator, user, conversation, chunks):
    error = openai.APITimeoutError(request=httpx.Request("POST", MODEL_URL))
    orchestrator, _ = make_orchestrator([[chunks.text("par"), error]])

    outcome = await orchestrator.run_turn(user.id, conversation.id, "hi")

    assert outcome.kind == "transport"


@pytest.mark.asyncio
async def test_status_error_is_protocol(make_orchestrator, user, conversation):
    request = httpx.Request("POST", MODEL_URL)
    error = openai.InternalServerError("upstream failed", response=httpx.Response(500, request=request), body=None)
    orchestrator, _ = make_orchestrator([error])

    outcome = await orchestrator.run_turn(user.id, conversation.id, "hi")

    assert outcome.kind == "protocol"
    assert "upstream" not in outcome.message


@pytest.mark.asyncio
async def test_exactly_one_terminal_event(make_orchestrator, user, conversation, chunks, search_server):
    fn = f"{search_server.id}__search"
    orchestrator, _ = make_orchestrator(
        [
            [chunks.tool(0, id="c", name=fn, arguments='{"q": "a"}'), chunks.finish("tool_calls")],
            [chunks.text("done", finish_reason="stop")],
        ]
    )

    events = await _collect(orchestrator, user, conversation)

    terminal = [e for e in events if e.type in ("complete", "error", "auth_required")]
    assert terminal == [events[-1]]


def test_events_round_trip_through_envelope():
    dumped = ToolCallEvent(tool_name="search", server_id=3).model_dump()
    assert dumped == {"type": "tool_call", "tool_name": "search", "server_id": 3}
    parsed = StreamEnvelope.model_validate({"event": dumped}).event
    assert isinstance(parsed, ToolCallEvent)


def test_rejects_non_positive_round_limit(db_session, gateway, settings, scripted_llm):
    with pytest.raises(ValueError):
        ChatOrchestrator(db_session, gateway, llm_client=scripted_llm([]), settings=settings, max_tool_rounds=0)
