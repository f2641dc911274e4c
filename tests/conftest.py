import copy
import json
import os
from datetime import datetime
from datetime import timedelta
from types import SimpleNamespace

import httpx
import pytest
from cryptography.fernet import Fernet
from openai.types.chat import ChatCompletionChunk
from openai.types.chat.chat_completion_chunk import Choice
from openai.types.chat.chat_completion_chunk import ChoiceDelta
from openai.types.chat.chat_completion_chunk import ChoiceDeltaToolCall
from openai.types.chat.chat_completion_chunk import ChoiceDeltaToolCallFunction
from sqlalchemy.pool import StaticPool

# Must be set before conduit.config is consulted so required-secret checks
# are skipped.
os.environ["TESTING"] = "1"

from conduit.config import get_settings  # noqa: E402
from conduit.crud import crud  # noqa: E402
from conduit.database import Base  # noqa: E402
from conduit.database import initialize_database  # noqa: E402
from conduit.database import make_engine  # noqa: E402
from conduit.database import make_sessionmaker  # noqa: E402
from conduit.oauth.token_manager import OAuthTokenManager  # noqa: E402
from conduit.tools.gateway import ToolGateway  # noqa: E402
from conduit.utils.crypto import TokenCipher  # noqa: E402
from conduit.utils.time import utc_now_naive  # noqa: E402

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
def engine():
    test_engine = make_engine("sqlite:///:memory:", poolclass=StaticPool)
    initialize_database(test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def db_session(engine):
    session = make_sessionmaker(engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db_session):
    return crud.create_user(db_session, email="alice@example.com", display_name="Alice")


@pytest.fixture
def other_user(db_session):
    return crud.create_user(db_session, email="bob@example.com", display_name="Bob")


# ---------------------------------------------------------------------------
# Settings, crypto, clock
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    test_settings = get_settings()
    test_settings.override(
        testing=True,
        fernet_secret=Fernet.generate_key().decode(),
        openai_api_key="sk-test",
        chat_model="test-model",
        max_tool_rounds=8,
        token_refresh_buffer_seconds=300,
        oauth_state_ttl_seconds=600,
        atlassian_client_id="atl-client",
        atlassian_client_secret="atl-secret",
        ms_partner_client_id="ms-client",
        ms_partner_client_secret="ms-secret",
    )
    return test_settings


@pytest.fixture
def cipher(settings):
    return TokenCipher(settings.fernet_secret)


class FakeClock:
    """Callable returning a controllable naive-UTC *now*."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock():
    # Real "now" so ORM-side defaults (created_at/updated_at) stay comparable.
    return FakeClock(utc_now_naive())


# ---------------------------------------------------------------------------
# HTTP – one MockTransport shared by OAuth endpoints and tool servers
# ---------------------------------------------------------------------------


class MockHTTP:
    """Route table for :class:`httpx.MockTransport`.

    Handlers receive the ``httpx.Request`` and return an ``httpx.Response``
    or raise an ``httpx`` exception.  Every request is recorded.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []
        self.client = httpx.AsyncClient(transport=httpx.MockTransport(self._dispatch))

    def add(self, method: str, url: str, handler) -> None:
        self.routes[(method.upper(), url)] = handler

    def json(self, method: str, url: str, payload, status_code: int = 200) -> None:
        self.add(method, url, lambda request: httpx.Response(status_code, json=payload))

    def calls_to(self, url: str):
        return [r for r in self.requests if str(r.url).split("?")[0] == url]

    def _dispatch(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, str(request.url).split("?")[0])
        handler = self.routes.get(key)
        if handler is None:
            return httpx.Response(404, json={"error": f"no route for {key}"})
        return handler(request)


@pytest.fixture
def mock_http():
    return MockHTTP()


def jsonrpc_server(tools=None, call_results=None, errors=None):
    """Build a handler that behaves like a small JSON-RPC tool server.

    *call_results* maps tool name to either a ``content`` list or a callable
    taking the arguments dict.
    """

    tools = tools or []
    call_results = call_results or {}
    errors = errors or {}

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method = body["method"]
        if method in errors:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": errors[method]})
        if method == "tools/list":
            result = {"tools": tools}
        elif method == "tools/call":
            name = body["params"]["name"]
            produced = call_results.get(name, [])
            if callable(produced):
                produced = produced(body["params"]["arguments"])
            result = {"content": produced}
        else:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32601, "message": "Method not found"}})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    return handler


@pytest.fixture
def tool_server():
    return jsonrpc_server


@pytest.fixture
def token_manager(db_session, cipher, settings, mock_http, clock):
    return OAuthTokenManager(db_session, cipher, settings=settings, http_client=mock_http.client, clock=clock)


@pytest.fixture
def gateway(db_session, token_manager, cipher, settings, mock_http):
    return ToolGateway(
        db_session,
        token_manager,
        cipher,
        caller_token="caller-session-token",
        settings=settings,
        http_client=mock_http.client,
    )


# ---------------------------------------------------------------------------
# Scripted model
# ---------------------------------------------------------------------------


def _chunk(delta: ChoiceDelta, finish_reason=None) -> ChatCompletionChunk:
    return ChatCompletionChunk(
        id="chatcmpl-test",
        object="chat.completion.chunk",
        created=0,
        model="test-model",
        choices=[Choice(index=0, delta=delta, finish_reason=finish_reason)],
    )


class ChunkBuilder:
    """Factory for real ``ChatCompletionChunk`` objects."""

    def text(self, content: str, finish_reason=None) -> ChatCompletionChunk:
        return _chunk(ChoiceDelta(content=content), finish_reason)

    def finish(self, finish_reason: str) -> ChatCompletionChunk:
        return _chunk(ChoiceDelta(), finish_reason)

    def tool(self, index: int, *, id=None, name=None, arguments=None, finish_reason=None) -> ChatCompletionChunk:
        fragment = ChoiceDeltaToolCall(
            index=index,
            id=id,
            type="function" if id else None,
            function=ChoiceDeltaToolCallFunction(name=name, arguments=arguments),
        )
        return _chunk(ChoiceDelta(tool_calls=[fragment]), finish_reason)


@pytest.fixture
def chunks():
    return ChunkBuilder()


class _ChunkStream:
    def __init__(self, items):
        self._items = list(items)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._items:
            raise StopAsyncIteration
        item = self._items.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class ScriptedCompletions:
    """Stands in for ``AsyncOpenAI().chat.completions``.

    Each entry of *script* is one model round: a list of chunks (an
    exception inside the list is raised mid-stream) or an exception raised
    when the stream is opened.
    """

    def __init__(self, script):
        self.script = list(script)
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(copy.deepcopy(kwargs))
        if not self.script:
            raise AssertionError("model called more often than scripted")
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        return _ChunkStream(step)


class ScriptedLLM:
    def __init__(self, script):
        self.completions = ScriptedCompletions(script)
        self.chat = SimpleNamespace(completions=self.completions)

    @property
    def requests(self):
        return self.completions.requests


@pytest.fixture
def scripted_llm():
    return ScriptedLLM
