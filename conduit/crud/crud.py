from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Sequence

from sqlalchemy.orm import Session

from conduit.models.enums import OAuthProvider
from conduit.models.enums import ToolServerAuthType
from conduit.models.models import Conversation
from conduit.models.models import Message
from conduit.models.models import OAuthConnection
from conduit.models.models import ToolServer
from conduit.models.models import User
from conduit.utils.time import utc_now_naive


# User CRUD operations
def create_user(db: Session, email: str, display_name: Optional[str] = None):
    """Create a user mirror row"""
    db_user = User(email=email, display_name=display_name)
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user


def get_user(db: Session, user_id: int):
    return db.query(User).filter(User.id == user_id).first()


# ------------------------------------------------------------
# OAuth connection operations
# ------------------------------------------------------------


def get_connection(db: Session, connection_id: int, user_id: Optional[int] = None):
    """Get a single connection by ID, optionally scoped to its owner"""
    query = db.query(OAuthConnection).filter(OAuthConnection.id == connection_id)
    if user_id is not None:
        query = query.filter(OAuthConnection.user_id == user_id)
    return query.first()


def get_connection_for_update(db: Session, connection_id: int):
    """Re-read a connection from the database, holding a row lock until the next commit.

    Already-loaded attributes are overwritten so writes committed by other
    sessions are visible.

    SQLite ignores ``FOR UPDATE``; there the single-writer lock gives the
    same whole-row guarantee.
    """
    return (
        db.query(OAuthConnection)
        .filter(OAuthConnection.id == connection_id)
        .populate_existing()
        .with_for_update()
        .first()
    )


def get_active_connection(db: Session, user_id: int, provider: OAuthProvider):
    """Most recently updated *enabled* connection for (user, provider)"""
    return (
        db.query(OAuthConnection)
        .filter(
            OAuthConnection.user_id == user_id,
            OAuthConnection.provider == provider,
            OAuthConnection.is_enabled.is_(True),
        )
        .order_by(OAuthConnection.updated_at.desc(), OAuthConnection.id.desc())
        .first()
    )


def list_connections(db: Session, user_id: int, provider: Optional[OAuthProvider] = None) -> List[OAuthConnection]:
    query = db.query(OAuthConnection).filter(OAuthConnection.user_id == user_id)
    if provider is not None:
        query = query.filter(OAuthConnection.provider == provider)
    return query.order_by(OAuthConnection.id).all()


def upsert_connection(
    db: Session,
    *,
    user_id: int,
    provider: OAuthProvider,
    provider_user_id: Optional[str],
    encrypted_access_token: str,
    encrypted_refresh_token: Optional[str],
    expires_at: datetime,
    scopes: Sequence[str],
    metadata: Optional[Dict[str, Any]] = None,
) -> OAuthConnection:
    """Insert or overwrite the connection keyed by (user, provider, account).

    The existing row is locked for the duration of the write.  A missing
    *encrypted_refresh_token* keeps whatever refresh token the row already
    holds.  The row is always (re-)enabled.
    """
    query = db.query(OAuthConnection).filter(
        OAuthConnection.user_id == user_id,
        OAuthConnection.provider == provider,
    )
    if provider_user_id is None:
        query = query.filter(OAuthConnection.provider_user_id.is_(None))
    else:
        query = query.filter(OAuthConnection.provider_user_id == provider_user_id)
    row = query.with_for_update().first()

    if row is None:
        row = OAuthConnection(
            user_id=user_id,
            provider=provider,
            provider_user_id=provider_user_id,
        )
        db.add(row)

    row.encrypted_access_token = encrypted_access_token
    if encrypted_refresh_token is not None:
        row.encrypted_refresh_token = encrypted_refresh_token
    row.expires_at = expires_at
    row.scopes = list(scopes)
    if metadata is not None:
        row.connection_metadata = dict(metadata)
    elif row.connection_metadata is None:
        row.connection_metadata = {}
    row.is_enabled = True
    row.updated_at = utc_now_naive()

    db.commit()
    db.refresh(row)
    return row


def update_connection_tokens(
    db: Session,
    connection_id: int,
    *,
    encrypted_access_token: str,
    encrypted_refresh_token: Optional[str],
    expires_at: datetime,
    scopes: Optional[Sequence[str]] = None,
):
    """Write a refreshed token set in one transaction (last writer wins)"""
    row = get_connection_for_update(db, connection_id)
    if row is None:
        db.rollback()
        return None

    row.encrypted_access_token = encrypted_access_token
    if encrypted_refresh_token is not None:
        row.encrypted_refresh_token = encrypted_refresh_token
    row.expires_at = expires_at
    if scopes:
        row.scopes = list(scopes)
    row.updated_at = utc_now_naive()

    db.commit()
    db.refresh(row)
    return row


def set_connection_enabled(db: Session, connection_id: int, enabled: bool):
    row = get_connection_for_update(db, connection_id)
    if row is None:
        db.rollback()
        return None
    row.is_enabled = enabled
    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    return row


def delete_connection(db: Session, connection_id: int, user_id: int) -> bool:
    """Hard-delete a connection owned by *user_id*"""
    row = get_connection(db, connection_id, user_id=user_id)
    if row is None:
        return False
    db.delete(row)
    db.commit()
    return True


# ------------------------------------------------------------
# Tool server operations
# ------------------------------------------------------------


def create_tool_server(
    db: Session,
    *,
    user_id: int,
    name: str,
    url: str,
    auth_type: ToolServerAuthType = ToolServerAuthType.NONE,
    oauth_provider: Optional[OAuthProvider] = None,
    encrypted_api_key: Optional[str] = None,
):
    db_server = ToolServer(
        user_id=user_id,
        name=name,
        url=url,
        auth_type=auth_type,
        oauth_provider=oauth_provider,
        encrypted_api_key=encrypted_api_key,
        is_enabled=True,
    )
    db.add(db_server)
    db.commit()
    db.refresh(db_server)
    return db_server


def get_tool_server(db: Session, server_id: int, user_id: Optional[int] = None):
    query = db.query(ToolServer).filter(ToolServer.id == server_id)
    if user_id is not None:
        query = query.filter(ToolServer.user_id == user_id)
    return query.first()


def get_tool_server_by_name(db: Session, user_id: int, name: str):
    return db.query(ToolServer).filter(ToolServer.user_id == user_id, ToolServer.name == name).first()


def list_tool_servers(db: Session, user_id: int, enabled_only: bool = False) -> List[ToolServer]:
    """All servers for a user in id order"""
    query = db.query(ToolServer).filter(ToolServer.user_id == user_id)
    if enabled_only:
        query = query.filter(ToolServer.is_enabled.is_(True))
    return query.order_by(ToolServer.id).all()


def delete_tool_server(db: Session, server_id: int, user_id: int) -> bool:
    db_server = get_tool_server(db, server_id, user_id=user_id)
    if db_server is None:
        return False
    db.delete(db_server)
    db.commit()
    return True


# ------------------------------------------------------------
# Conversation / message operations
# ------------------------------------------------------------


def create_conversation(db: Session, user_id: int, title: str = "New conversation"):
    """Create a new conversation"""
    db_conversation = Conversation(user_id=user_id, title=title)
    db.add(db_conversation)
    db.commit()
    db.refresh(db_conversation)
    return db_conversation


def get_conversation(db: Session, conversation_id: int, user_id: Optional[int] = None):
    """Get a conversation by ID, scoped to its owner when *user_id* is given"""
    query = db.query(Conversation).filter(Conversation.id == conversation_id)
    if user_id is not None:
        query = query.filter(Conversation.user_id == user_id)
    return query.first()


def touch_conversation(db: Session, conversation_id: int, when: Optional[datetime] = None):
    """Bump the last-activity timestamp"""
    db_conversation = get_conversation(db, conversation_id)
    if db_conversation is None:
        return None
    db_conversation.updated_at = when or utc_now_naive()
    db.commit()
    db.refresh(db_conversation)
    return db_conversation


def create_message(
    db: Session,
    conversation_id: int,
    role: str,
    content: str,
    metadata: Optional[Dict[str, Any]] = None,
):
    """Append a message to a conversation"""
    db_message = Message(
        conversation_id=conversation_id,
        role=role,
        content=content,
        message_metadata=metadata,
    )
    db.add(db_message)
    db.commit()
    db.refresh(db_message)
    return db_message


def get_messages(
    db: Session,
    conversation_id: int,
    roles: Optional[Sequence[str]] = None,
) -> List[Message]:
    """Messages for a conversation ordered by (created_at, id)"""
    query = db.query(Message).filter(Message.conversation_id == conversation_id)
    if roles:
        query = query.filter(Message.role.in_([str(getattr(r, "value", r)) for r in roles]))
    return query.order_by(Message.created_at, Message.id).all()
