"""Per-provider OAuth credential management."""

from .exceptions import InvalidOAuthState
from .exceptions import OAuthError
from .state import OAuthStateSigner
from .token_manager import OAuthTokenManager

__all__ = [
    "InvalidOAuthState",
    "OAuthError",
    "OAuthStateSigner",
    "OAuthTokenManager",
]
