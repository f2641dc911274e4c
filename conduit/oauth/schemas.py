"""Pydantic models exchanged with OAuth providers and returned to callers."""

from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator

from conduit.models.enums import OAuthProvider


class TokenSet(BaseModel):
    """Token endpoint response (RFC 6749 §5.1), unknown keys ignored."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    expires_in: int = 3600
    token_type: Optional[str] = None
    scope: Optional[str] = None

    @field_validator("refresh_token")
    @classmethod
    def _blank_refresh_is_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None

    @property
    def scope_list(self) -> List[str]:
        if not self.scope:
            return []
        return self.scope.split()


class ValidToken(BaseModel):
    """A decrypted access token that is safe to use right now."""

    access_token: str
    expires_at: datetime
    connection_id: int
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AccessibleResource(BaseModel):
    """One Atlassian cloud site reachable with a token."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    url: str = ""
    scopes: List[str] = Field(default_factory=list)


class ConnectionSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    provider: OAuthProvider
    provider_user_id: Optional[str] = None
    is_enabled: bool
    expires_at: datetime
    scopes: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    needs_reauth: bool
    created_at: datetime
    updated_at: datetime


class ProviderStatus(BaseModel):
    provider: OAuthProvider
    connected: bool
    needs_reauth: bool
    connections: List[ConnectionSummary] = Field(default_factory=list)
