"""Tool-server discovery and invocation."""

from .gateway import ToolGateway
from .schemas import AuthRequired
from .schemas import ToolCatalog

__all__ = [
    "AuthRequired",
    "ToolCatalog",
    "ToolGateway",
]
