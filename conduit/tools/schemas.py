"""Value types returned by the tool gateway."""

from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field


@dataclass(frozen=True)
class AuthRequired:
    """Signal that the user must (re-)authorize *provider* before continuing.

    Returned, never raised – it is an expected outcome, not a failure.
    """

    provider: Optional[str]
    reason: str


class ToolSpec(BaseModel):
    """One tool as advertised by ``tools/list``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}}, alias="inputSchema")


class ServerTools(BaseModel):
    server_id: int
    server_name: str
    tools: List[ToolSpec] = Field(default_factory=list)


@dataclass
class ToolCatalog:
    """Result of discovering tools across every enabled server of a user."""

    servers: List[ServerTools] = field(default_factory=list)
    auth_required: List[AuthRequired] = field(default_factory=list)
    # server id -> error message for servers skipped this time
    errors: Dict[int, str] = field(default_factory=dict)

    @property
    def first_auth_required(self) -> Optional[AuthRequired]:
        return self.auth_required[0] if self.auth_required else None

    def find_server(self, server_id: int) -> Optional[ServerTools]:
        for server in self.servers:
            if server.server_id == server_id:
                return server
        return None


class ServerSummary(BaseModel):
    """Tool server as shown to its owner (never includes the API key)."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    url: str
    auth_type: str
    oauth_provider: Optional[str] = None
    is_enabled: bool
    has_api_key: bool = False
