"""Tamper-proof OAuth ``state`` parameter.

The state round-trips the initiating user's id through the provider
redirect.  It is a Fernet token (encrypted + HMAC-authenticated) over a
small JSON payload, so it can be neither read nor forged without the
server key, and it expires after ``oauth_state_ttl_seconds``.
"""

from __future__ import annotations

import hmac
import json
import logging
import secrets
import time
from typing import Callable

from conduit.config import Settings
from conduit.config import get_settings
from conduit.oauth.exceptions import InvalidOAuthState
from conduit.utils.crypto import TokenCipher

logger = logging.getLogger(__name__)


class OAuthStateSigner:
    def __init__(
        self,
        cipher: TokenCipher,
        *,
        settings: Settings | None = None,
        time_source: Callable[[], float] = time.time,
    ):
        self._cipher = cipher
        self._settings = settings or get_settings()
        self._time = time_source

    @property
    def ttl_seconds(self) -> int:
        return self._settings.oauth_state_ttl_seconds

    def issue(self, user_id: int) -> str:
        """Return an opaque state string bound to *user_id*."""

        payload = json.dumps({"uid": int(user_id), "nonce": secrets.token_urlsafe(16)})
        return self._cipher.encrypt(payload, at_time=int(self._time()))

    def verify(self, state: str, expected: str | None = None) -> int:
        """Validate *state* and return the user id it carries.

        *expected* is an optional second copy (e.g. from a cookie) that must
        match *state* exactly.
        """

        if not state:
            raise InvalidOAuthState("missing state")

        if expected is not None and not hmac.compare_digest(state.encode(), expected.encode()):
            raise InvalidOAuthState("state mismatch")

        try:
            raw = self._cipher.decrypt(state, ttl=self.ttl_seconds, at_time=int(self._time()))
        except ValueError:
            logger.warning("Rejected OAuth state: undecryptable or expired")
            raise InvalidOAuthState("tampered or expired") from None

        try:
            payload = json.loads(raw)
            user_id = int(payload["uid"])
            nonce = payload["nonce"]
        except (ValueError, TypeError, KeyError):
            raise InvalidOAuthState("malformed payload") from None

        if not isinstance(nonce, str) or not nonce:
            raise InvalidOAuthState("malformed payload")

        return user_id


__all__ = ["OAuthStateSigner"]
