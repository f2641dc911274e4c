"""*Fernet* (AES-CBC + HMAC) encryption helper for tokens and API keys.

Every OAuth access/refresh token and every tool-server API key is encrypted
with :class:`TokenCipher` before it touches the database and decrypted only
for the request that needs it.  The cipher is constructed explicitly and
passed to the services that need it; there is no process-wide instance.
"""

from __future__ import annotations

from cryptography.fernet import Fernet
from cryptography.fernet import InvalidToken

from conduit.config import Settings
from conduit.config import get_settings


class TokenCipher:
    """Keyed reversible cipher with an ``encrypt`` / ``decrypt`` contract."""

    def __init__(self, secret: str | bytes):
        if not secret:
            raise ValueError("FERNET_SECRET must be set")
        key = secret.encode() if isinstance(secret, str) else secret
        try:
            self._fernet = Fernet(key)
        except ValueError as exc:
            raise ValueError("FERNET_SECRET is not a valid url-safe base64 32-byte key") from exc

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "TokenCipher":
        settings = settings or get_settings()
        return cls(settings.fernet_secret)

    def encrypt(self, text: str, *, at_time: int | None = None) -> str:  # noqa: D401 – thin wrapper
        """Encrypt *text* and return url-safe base64 ciphertext."""

        if at_time is not None:
            return self._fernet.encrypt_at_time(text.encode(), at_time).decode()
        return self._fernet.encrypt(text.encode()).decode()

    def decrypt(self, token: str, *, ttl: int | None = None, at_time: int | None = None) -> str:  # noqa: D401
        """Decrypt *token* back to a UTF-8 string.

        With *ttl* (seconds) tokens older than that are rejected as well;
        *at_time* pins "now" for that age check.
        """

        try:
            if ttl is not None and at_time is not None:
                return self._fernet.decrypt_at_time(token.encode(), ttl, at_time).decode()
            return self._fernet.decrypt(token.encode(), ttl=ttl).decode()
        except (InvalidToken, UnicodeDecodeError) as exc:
            raise ValueError("decryption failed – invalid key, ciphertext or expired token") from exc


def generate_key() -> str:
    """Return a fresh Fernet key suitable for ``FERNET_SECRET``."""

    return Fernet.generate_key().decode()


__all__ = [
    "TokenCipher",
    "generate_key",
]
