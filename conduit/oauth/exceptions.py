"""Exceptions raised by the OAuth credential layer.

``AuthRequired`` is deliberately *not* here: a missing or revoked credential
is an expected outcome and travels as a value (see
:mod:`conduit.tools.schemas`).
"""


class OAuthError(Exception):
    """Base exception for all OAuth-related errors."""

    pass


class OAuthConfigurationError(OAuthError):
    """Raised when a provider is unknown or its client credentials are unset."""

    def __init__(self, provider: str, message: str = "client credentials are not configured"):
        self.provider = provider
        super().__init__(f"OAuth provider '{provider}': {message}")


class ExchangeFailed(OAuthError):
    """Raised when the authorization-code exchange does not yield a token set."""

    def __init__(self, provider: str, status_code: int = None, cause: Exception = None):
        self.provider = provider
        self.status_code = status_code
        self.cause = cause
        message = f"Token exchange with '{provider}' failed"
        if status_code is not None:
            message += f" (HTTP {status_code})"
        if cause:
            message += f": {cause}"
        super().__init__(message)


class RefreshFailed(OAuthError):
    """Raised internally when a refresh-token grant fails."""

    def __init__(self, provider: str, status_code: int = None, cause: Exception = None):
        self.provider = provider
        self.status_code = status_code
        self.cause = cause
        message = f"Token refresh with '{provider}' failed"
        if status_code is not None:
            message += f" (HTTP {status_code})"
        if cause:
            message += f": {cause}"
        super().__init__(message)


class InvalidOAuthState(OAuthError):
    """Raised when the redirect ``state`` is tampered, expired or mismatched."""

    def __init__(self, reason: str = "invalid state"):
        self.reason = reason
        super().__init__(f"Invalid OAuth state: {reason}")


class ConnectionNotFound(OAuthError):
    def __init__(self, connection_id: int):
        self.connection_id = connection_id
        super().__init__(f"OAuth connection {connection_id} not found")
