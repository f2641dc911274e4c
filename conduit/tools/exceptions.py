"""Custom exceptions for tool-server integration.

Every failure the gateway raises derives from :class:`ToolGatewayError` so
the orchestrator can turn *any* of them into an ``Error:`` tool message with
a single ``except`` clause.  A missing credential is not an error and is
returned as :class:`conduit.tools.schemas.AuthRequired` instead.
"""


class ToolGatewayError(Exception):
    """Base exception for all tool-gateway errors."""

    pass


class ToolTransportError(ToolGatewayError):
    """Raised on connect errors, timeouts, non-2xx responses or non-JSON bodies."""

    def __init__(self, server_name: str, url: str, status_code: int = None, cause: Exception = None):
        self.server_name = server_name
        self.url = url
        self.status_code = status_code
        self.cause = cause
        message = f"Tool server '{server_name}' at {url} unreachable"
        if status_code is not None:
            message = f"Tool server '{server_name}' returned HTTP {status_code}"
        if cause:
            message += f": {cause}"
        super().__init__(message)


class ToolProtocolError(ToolGatewayError):
    """Raised on a JSON-RPC ``error`` object or a result of the wrong shape."""

    def __init__(self, server_name: str, code: int = None, message: str = "Unknown error"):
        self.server_name = server_name
        self.code = code
        self.message = message
        super().__init__(f"Tool server '{server_name}' error {code}: {message}")


class ToolServerNotFound(ToolGatewayError):
    """Raised when a server is missing, disabled or owned by someone else."""

    def __init__(self, server_id: int):
        self.server_id = server_id
        super().__init__(f"Tool server {server_id} not found")


class ToolServerConfigError(ToolGatewayError):
    def __init__(self, message: str):
        super().__init__(f"Invalid tool server configuration: {message}")


class ToolArgumentError(ToolGatewayError):
    """Raised when tool arguments do not satisfy the tool's input schema."""

    def __init__(self, tool_name: str, errors):
        self.tool_name = tool_name
        self.errors = errors
        super().__init__(f"Validation failed for tool '{tool_name}': {errors}")
