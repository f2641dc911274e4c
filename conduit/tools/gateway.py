"""Tool gateway – per-user tool-server registry, discovery and invocation.

The gateway resolves the right credentials for each server's auth strategy,
speaks JSON-RPC through :class:`conduit.tools.mcp_client.MCPClient` and
reports a missing credential as an :class:`AuthRequired` *value*.  Transport
and protocol failures are raised as :class:`ToolGatewayError` subclasses.
Nothing here retries.
"""

import logging
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Union
from urllib.parse import urlparse

import httpx
import jsonschema
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from conduit.config import Settings
from conduit.config import get_settings
from conduit.crud import crud
from conduit.models.enums import OAuthProvider
from conduit.models.enums import ToolServerAuthType
from conduit.models.models import ToolServer
from conduit.oauth.token_manager import OAuthTokenManager
from conduit.tools.exceptions import ToolArgumentError
from conduit.tools.exceptions import ToolGatewayError
from conduit.tools.exceptions import ToolServerConfigError
from conduit.tools.exceptions import ToolServerNotFound
from conduit.tools.mcp_client import MCPClient
from conduit.tools.schemas import AuthRequired
from conduit.tools.schemas import ServerSummary
from conduit.tools.schemas import ServerTools
from conduit.tools.schemas import ToolCatalog
from conduit.tools.schemas import ToolSpec
from conduit.utils.crypto import TokenCipher

logger = logging.getLogger(__name__)

TOKEN_EXPIRED_REASON = "Token expired or revoked"
NO_PROVIDER_REASON = "No OAuth provider configured"


def _enum_value(value) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "value", value)


class ToolGateway:
    def __init__(
        self,
        db: Session,
        token_manager: OAuthTokenManager,
        cipher: TokenCipher,
        *,
        caller_token: Optional[str] = None,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.db = db
        self.token_manager = token_manager
        self.cipher = cipher
        # The caller's own session token, forwarded to ``bearer_delegated`` servers
        self.caller_token = caller_token
        self.settings = settings or get_settings()
        self._http = http_client

    # ------------------------------------------------------------------
    # Server configuration
    # ------------------------------------------------------------------

    def add_server(
        self,
        user_id: int,
        name: str,
        url: str,
        auth_type: Union[ToolServerAuthType, str] = ToolServerAuthType.NONE,
        oauth_provider: Union[OAuthProvider, str, None] = None,
        api_key: Optional[str] = None,
    ) -> ToolServer:
        """Register a tool server for *user_id*.  The API key is encrypted."""

        name = (name or "").strip()
        if not name:
            raise ToolServerConfigError("name is required")

        parsed = urlparse(url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ToolServerConfigError(f"url must be an absolute http(s) URL, got {url!r}")

        try:
            auth_type = ToolServerAuthType(auth_type)
        except ValueError:
            raise ToolServerConfigError(f"unknown auth type {auth_type!r}") from None

        provider = None
        if oauth_provider is not None:
            try:
                provider = OAuthProvider(oauth_provider)
            except ValueError:
                raise ToolServerConfigError(f"unknown OAuth provider {oauth_provider!r}") from None
        if auth_type == ToolServerAuthType.OAUTH and provider is None:
            raise ToolServerConfigError("oauth servers need an oauth_provider")
        if auth_type == ToolServerAuthType.API_KEY and not api_key:
            raise ToolServerConfigError("api_key servers need an api_key")

        if crud.get_tool_server_by_name(self.db, user_id, name) is not None:
            raise ToolServerConfigError(f"a server named '{name}' already exists")

        try:
            server = crud.create_tool_server(
                self.db,
                user_id=user_id,
                name=name,
                url=url,
                auth_type=auth_type,
                oauth_provider=provider,
                encrypted_api_key=self.cipher.encrypt(api_key) if api_key else None,
            )
        except IntegrityError:
            self.db.rollback()
            raise ToolServerConfigError(f"a server named '{name}' already exists") from None

        logger.info("Tool server %s (%s) added for user %s", server.id, name, user_id)
        return server

    def list_servers(self, user_id: int) -> List[ServerSummary]:
        return [self._summary(server) for server in crud.list_tool_servers(self.db, user_id)]

    def get_server(self, user_id: int, server_id: int) -> ServerSummary:
        server = crud.get_tool_server(self.db, server_id, user_id=user_id)
        if server is None:
            raise ToolServerNotFound(server_id)
        return self._summary(server)

    def delete_server(self, user_id: int, server_id: int) -> bool:
        return crud.delete_tool_server(self.db, server_id, user_id)

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    async def auth_headers(self, user_id: int, server: ToolServer) -> Union[Dict[str, str], AuthRequired]:
        """Headers for *server* according to its auth strategy."""

        auth_type = ToolServerAuthType(server.auth_type)

        if auth_type == ToolServerAuthType.NONE:
            return {}

        if auth_type == ToolServerAuthType.BEARER_DELEGATED:
            if not self.caller_token:
                logger.warning("Tool server %s expects a delegated bearer token but none was supplied", server.id)
                return {}
            return {"Authorization": f"Bearer {self.caller_token}"}

        if auth_type == ToolServerAuthType.API_KEY:
            if not server.encrypted_api_key:
                return {}
            try:
                return {"X-API-Key": self.cipher.decrypt(server.encrypted_api_key)}
            except ValueError:
                raise ToolServerConfigError(f"stored API key for server {server.id} cannot be decrypted") from None

        # OAUTH
        provider = _enum_value(server.oauth_provider)
        if provider is None:
            return AuthRequired(None, NO_PROVIDER_REASON)

        token = await self.token_manager.valid_access_token(user_id, provider)
        if token is None:
            return AuthRequired(provider, TOKEN_EXPIRED_REASON)
        return {"Authorization": f"Bearer {token.access_token}"}

    # ------------------------------------------------------------------
    # Discovery & invocation
    # ------------------------------------------------------------------

    async def list_tools(self, user_id: int, server_id: int) -> Union[List[ToolSpec], AuthRequired]:
        server = self._require_server(user_id, server_id)
        client = await self._client_for(user_id, server)
        if isinstance(client, AuthRequired):
            return client
        return await client.list_tools()

    async def call_tool(
        self,
        user_id: int,
        server_id: int,
        tool_name: str,
        arguments: Dict[str, Any],
    ) -> Union[str, AuthRequired]:
        server = self._require_server(user_id, server_id)
        client = await self._client_for(user_id, server)
        if isinstance(client, AuthRequired):
            return client
        logger.debug("Calling tool %s on server %s", tool_name, server_id)
        return await client.call_tool(tool_name, arguments)

    async def all_tools_for_user(self, user_id: int) -> ToolCatalog:
        """Discover tools on every enabled server, in server id order.

        Servers needing auth are collected in ``auth_required``; servers that
        fail with a transport or protocol error are logged and recorded in
        ``errors``.  Neither stops discovery on the remaining servers.
        """

        catalog = ToolCatalog()
        for server in crud.list_tool_servers(self.db, user_id, enabled_only=True):
            try:
                client = await self._client_for(user_id, server)
                if isinstance(client, AuthRequired):
                    catalog.auth_required.append(client)
                    continue
                tools = await client.list_tools()
            except ToolGatewayError as exc:
                logger.warning("Skipping tool server %s (%s): %s", server.id, server.name, exc)
                catalog.errors[server.id] = str(exc)
                continue
            catalog.servers.append(ServerTools(server_id=server.id, server_name=server.name, tools=tools))
        return catalog

    @staticmethod
    def validate_arguments(tool_name: str, input_schema: Optional[Dict[str, Any]], arguments: Dict[str, Any]) -> None:
        """Validate *arguments* against the tool's JSON Schema."""

        if not input_schema:
            return

        try:
            jsonschema.validate(instance=arguments, schema=input_schema)
        except jsonschema.ValidationError as e:
            errors = {
                "message": str(e.message),
                "path": list(e.path),
            }
            raise ToolArgumentError(tool_name, errors) from e
        except jsonschema.SchemaError:
            # A broken schema is the server's problem; let the call through.
            logger.warning("Tool %s advertises an invalid input schema; skipping validation", tool_name)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_server(self, user_id: int, server_id: int) -> ToolServer:
        server = crud.get_tool_server(self.db, server_id, user_id=user_id)
        if server is None or not server.is_enabled:
            raise ToolServerNotFound(server_id)
        return server

    async def _client_for(self, user_id: int, server: ToolServer) -> Union[MCPClient, AuthRequired]:
        headers = await self.auth_headers(user_id, server)
        if isinstance(headers, AuthRequired):
            return headers
        return MCPClient(
            server.name,
            server.url,
            headers,
            timeout=self.settings.tool_call_timeout,
            http_client=self._http,
        )

    @staticmethod
    def _summary(server: ToolServer) -> ServerSummary:
        return ServerSummary(
            id=server.id,
            name=server.name,
            url=server.url,
            auth_type=_enum_value(server.auth_type),
            oauth_provider=_enum_value(server.oauth_provider),
            is_enabled=server.is_enabled,
            has_api_key=bool(server.encrypted_api_key),
        )
