"""JSON-RPC 2.0 over HTTP POST client for MCP-style tool servers."""

import itertools
import logging
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

import httpx
from pydantic import ValidationError

from conduit.tools.exceptions import ToolProtocolError
from conduit.tools.exceptions import ToolTransportError
from conduit.tools.schemas import ToolSpec

logger = logging.getLogger(__name__)

_request_ids = itertools.count(1)


class MCPClient:
    """One client per (server, request).  Auth headers are resolved upstream."""

    def __init__(
        self,
        server_name: str,
        server_url: str,
        headers: Optional[Dict[str, str]] = None,
        *,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.server_name = server_name
        self.server_url = server_url
        self.headers = dict(headers or {})
        self.timeout = httpx.Timeout(timeout)
        self._http = http_client

    async def rpc(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Send one JSON-RPC request and return its ``result`` member."""

        body: Dict[str, Any] = {"jsonrpc": "2.0", "id": next(_request_ids), "method": method}
        if params is not None:
            body["params"] = params

        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        headers.update(self.headers)

        try:
            response = await self._post(body, headers)
        except httpx.HTTPError as exc:
            logger.warning("Tool server %s: %s failed: %s", self.server_name, method, type(exc).__name__)
            raise ToolTransportError(self.server_name, self.server_url, cause=exc) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise ToolTransportError(self.server_name, self.server_url, status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError as exc:
            raise ToolTransportError(self.server_name, self.server_url, cause=exc) from exc

        if not isinstance(payload, dict):
            raise ToolTransportError(self.server_name, self.server_url, cause=ValueError("response is not an object"))

        error = payload.get("error")
        if error is not None:
            if isinstance(error, dict):
                raise ToolProtocolError(self.server_name, error.get("code"), error.get("message", "Unknown error"))
            raise ToolProtocolError(self.server_name, None, str(error))

        return payload.get("result")

    async def list_tools(self) -> List[ToolSpec]:
        """List available tools (``tools/list``)."""

        result = await self.rpc("tools/list")
        if result is None:
            return []
        if not isinstance(result, dict):
            raise ToolProtocolError(self.server_name, message="tools/list result is not an object")
        raw_tools = result.get("tools") or []
        if not isinstance(raw_tools, list):
            raise ToolProtocolError(self.server_name, message="tools/list result has no tool array")

        tools = []
        for raw in raw_tools:
            if isinstance(raw, dict) and raw.get("inputSchema") is None:
                raw = {k: v for k, v in raw.items() if k != "inputSchema"}
            try:
                tools.append(ToolSpec.model_validate(raw))
            except ValidationError:
                logger.warning("Tool server %s advertised a malformed tool; skipping", self.server_name)
        return tools

    async def call_tool(self, tool_name: str, arguments: Dict[str, Any]) -> str:
        """Call a tool (``tools/call``) and return its text content.

        Text content blocks are joined with newlines; other block types
        (images, resources) are dropped.
        """

        result = await self.rpc("tools/call", {"name": tool_name, "arguments": arguments})
        if not isinstance(result, dict):
            return "" if result is None else str(result)

        text_parts = []
        skipped = 0
        content = result.get("content") or []
        if not isinstance(content, list):
            raise ToolProtocolError(self.server_name, message="tools/call content is not an array")
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                text_parts.append(str(block.get("text") or ""))
            else:
                skipped += 1

        if skipped:
            logger.debug("Tool %s on %s: ignored %d non-text block(s)", tool_name, self.server_name, skipped)
        return "\n".join(text_parts)

    async def _post(self, body: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        if self._http is not None:
            return await self._http.post(self.server_url, json=body, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.server_url, json=body, headers=headers)
