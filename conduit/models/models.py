from sqlalchemy import JSON
from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy import UniqueConstraint
from sqlalchemy.ext.mutable import MutableDict
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.orm import relationship

from conduit.database import Base
from conduit.models.enums import OAuthProvider
from conduit.models.enums import ToolServerAuthType
from conduit.utils.time import utc_now_naive


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# ---------------------------------------------------------------------------
# Users – mirror of the external identity provider
# ---------------------------------------------------------------------------


class User(Base):
    """Application user.

    Identity is owned by an external provider; this row exists so that
    credentials, tool servers and conversations have an owner to hang off.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=True)
    created_at = Column(DateTime, default=utc_now_naive, nullable=False)


# ---------------------------------------------------------------------------
# OAuth connections – encrypted third-party credentials
# ---------------------------------------------------------------------------


class OAuthConnection(Base):
    """Encrypted OAuth token set for one (user, provider, provider account).

    Rows are disabled in place (``is_enabled=False``) when a refresh fails or
    no refresh token exists; only a fresh authorization flow re-enables
    them.  Hard deletion happens only on explicit user request.
    """

    __tablename__ = "oauth_connections"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", "provider_user_id", name="uix_oauth_user_provider_account"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(
        SAEnum(OAuthProvider, native_enum=False, name="oauth_provider_enum", values_callable=_enum_values),
        nullable=False,
    )
    # Provider-side account id, e.g. the Atlassian cloud site id.
    provider_user_id = Column(String(255), nullable=True)

    # Fernet ciphertext – never store plaintext tokens.
    encrypted_access_token = Column(Text, nullable=False)
    encrypted_refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=False)

    scopes = Column(MutableList.as_mutable(JSON), nullable=False, default=list)
    # Opaque, non-secret provider metadata (cloud id, site name, tenant …).
    connection_metadata = Column(MutableDict.as_mutable(JSON), nullable=False, default=dict)
    is_enabled = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utc_now_naive, nullable=False)
    updated_at = Column(DateTime, default=utc_now_naive, onupdate=utc_now_naive, nullable=False)

    owner = relationship("User", backref="oauth_connections")


# ---------------------------------------------------------------------------
# Tool servers – per-user JSON-RPC endpoints
# ---------------------------------------------------------------------------


class ToolServer(Base):
    __tablename__ = "tool_servers"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uix_tool_server_user_name"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    url = Column(Text, nullable=False)
    auth_type = Column(
        SAEnum(ToolServerAuthType, native_enum=False, name="tool_server_auth_enum", values_callable=_enum_values),
        nullable=False,
        default=ToolServerAuthType.NONE.value,
    )
    # Links to OAuthConnection.provider for ``oauth`` servers
    oauth_provider = Column(
        SAEnum(OAuthProvider, native_enum=False, name="oauth_provider_enum", values_callable=_enum_values),
        nullable=True,
    )
    # For ``api_key`` servers
    encrypted_api_key = Column(Text, nullable=True)
    is_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utc_now_naive, nullable=False)

    owner = relationship("User", backref="tool_servers")


# ---------------------------------------------------------------------------
# Transcript – conversations and their append-only message log
# ---------------------------------------------------------------------------


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(500), nullable=False)
    created_at = Column(DateTime, default=utc_now_naive, nullable=False)
    # Last activity; bumped whenever a turn completes.
    updated_at = Column(DateTime, default=utc_now_naive, nullable=False)

    owner = relationship("User", backref="conversations")
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.created_at",
    )


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(20), nullable=False)  # "system", "user", "assistant", "tool"
    content = Column(Text, nullable=False)
    # tools_used, finish_reason, tool_rounds …
    message_metadata = Column(MutableDict.as_mutable(JSON), nullable=True)
    created_at = Column(DateTime, default=utc_now_naive, nullable=False)

    conversation = relationship("Conversation", back_populates="messages")
