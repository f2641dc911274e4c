"""OAuth token lifecycle – authorize, exchange, persist, refresh, disable.

One :class:`OAuthTokenManager` is built per request around the caller's DB
session.  Tokens are Fernet-encrypted before they are written and decrypted
only when a fresh access token is handed out.

Refresh state machine for :meth:`OAuthTokenManager.valid_access_token`::

    Fresh ──(expires_at - now <= buffer)──► ExpiringOrExpired
    ExpiringOrExpired ──refresh ok──► Fresh
    ExpiringOrExpired ──refresh fails / no refresh token──► Disabled
    Disabled ──complete_authorization / persist_connection──► Fresh

A disabled row is never retried automatically; callers get ``None`` and are
expected to send the user through the authorization flow again.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime
from datetime import timedelta
from typing import Any
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError
from sqlalchemy.orm import Session

from conduit.config import Settings
from conduit.config import get_settings
from conduit.crud import crud
from conduit.models.enums import OAuthProvider
from conduit.models.models import OAuthConnection
from conduit.oauth.exceptions import ConnectionNotFound
from conduit.oauth.exceptions import ExchangeFailed
from conduit.oauth.exceptions import RefreshFailed
from conduit.oauth.providers import OAuthProviderConfig
from conduit.oauth.providers import get_provider_config
from conduit.oauth.schemas import AccessibleResource
from conduit.oauth.schemas import ConnectionSummary
from conduit.oauth.schemas import ProviderStatus
from conduit.oauth.schemas import TokenSet
from conduit.oauth.schemas import ValidToken
from conduit.oauth.state import OAuthStateSigner
from conduit.utils.crypto import TokenCipher
from conduit.utils.time import utc_now_naive

logger = logging.getLogger(__name__)

# event loop -> {connection id -> lock}
_refresh_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[int, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


def _refresh_lock(connection_id: int) -> asyncio.Lock:
    """Lock serialising refreshes of one connection on the running loop."""

    locks = _refresh_locks.setdefault(asyncio.get_running_loop(), {})
    lock = locks.get(connection_id)
    if lock is None:
        lock = locks[connection_id] = asyncio.Lock()
    return lock


class OAuthTokenManager:
    def __init__(
        self,
        db: Session,
        cipher: TokenCipher,
        *,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utc_now_naive,
    ):
        self.db = db
        self.cipher = cipher
        self.settings = settings or get_settings()
        self._http = http_client
        self._now = clock

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def authorization_url(self, provider, state: str, redirect_uri: str) -> str:
        """Build the provider consent URL.  Pure – no I/O, no persistence."""

        config = get_provider_config(provider)
        params = {
            "client_id": config.client_id(self.settings),
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(config.scopes),
            "state": state,
            "prompt": "consent",
        }
        if config.audience:
            params["audience"] = config.audience
        return f"{config.auth_url}?{urlencode(params)}"

    async def exchange_code(self, provider, code: str, redirect_uri: str) -> TokenSet:
        """Trade an authorization *code* for a token set.  Never retried."""

        config = get_provider_config(provider)
        form = {
            "grant_type": "authorization_code",
            "client_id": config.client_id(self.settings),
            "client_secret": config.client_secret(self.settings),
            "code": code,
            "redirect_uri": redirect_uri,
        }
        return await self._token_request(config, form, ExchangeFailed)

    async def fetch_accessible_resources(self, provider, access_token: str) -> List[AccessibleResource]:
        """List the sites an access token can reach (Atlassian cloud ids)."""

        config = get_provider_config(provider)
        if not config.accessible_resources_url:
            return []

        try:
            response = await self._send(
                "GET",
                config.accessible_resources_url,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise ExchangeFailed(config.provider.value, cause=exc) from exc

        if response.status_code >= 400:
            raise ExchangeFailed(config.provider.value, status_code=response.status_code)

        try:
            body = response.json()
            if not isinstance(body, list):
                raise ValueError("expected a JSON array")
            return [AccessibleResource.model_validate(item) for item in body]
        except (ValueError, ValidationError) as exc:
            raise ExchangeFailed(config.provider.value, cause=exc) from exc

    async def complete_authorization(
        self,
        provider,
        code: str,
        state: str,
        redirect_uri: str,
        *,
        expected_state: str | None = None,
    ) -> List[int]:
        """Finish the redirect flow and return the persisted connection ids.

        Providers with an accessible-resources endpoint get one connection
        per site; everyone else gets a single connection.
        """

        config = get_provider_config(provider)
        user_id = OAuthStateSigner(self.cipher, settings=self.settings).verify(state, expected=expected_state)

        token_set = await self.exchange_code(config.provider, code, redirect_uri)

        if not config.accessible_resources_url:
            return [self.persist_connection(user_id, config.provider, token_set)]

        sites = await self.fetch_accessible_resources(config.provider, token_set.access_token)
        if not sites:
            logger.warning("OAuth %s: token grants access to no sites (user %s)", config.provider.value, user_id)

        connection_ids = []
        for site in sites:
            metadata = {"cloud_id": site.id, "site_name": site.name, "site_url": site.url}
            connection_ids.append(
                self.persist_connection(
                    user_id,
                    config.provider,
                    token_set,
                    metadata=metadata,
                    provider_user_id=site.id,
                )
            )
        logger.info("OAuth %s connected for user %s (%d site(s))", config.provider.value, user_id, len(sites))
        return connection_ids

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def persist_connection(
        self,
        user_id: int,
        provider,
        token_set: TokenSet,
        metadata: Optional[Dict[str, Any]] = None,
        provider_user_id: Optional[str] = None,
    ) -> int:
        """Upsert the encrypted token set and (re-)enable the connection."""

        config = get_provider_config(provider)
        scopes = token_set.scope_list or list(config.scopes)
        row = crud.upsert_connection(
            self.db,
            user_id=user_id,
            provider=config.provider,
            provider_user_id=provider_user_id,
            encrypted_access_token=self.cipher.encrypt(token_set.access_token),
            encrypted_refresh_token=(
                self.cipher.encrypt(token_set.refresh_token) if token_set.refresh_token else None
            ),
            expires_at=self._now() + timedelta(seconds=token_set.expires_in),
            scopes=scopes,
            metadata=metadata,
        )
        return row.id

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    async def valid_access_token(self, user_id: int, provider) -> ValidToken | None:
        """Return a usable access token or ``None`` when re-auth is needed.

        The returned token is always valid for longer than the refresh
        buffer.  Refreshes of one connection are serialised, and a failed
        refresh disables the connection only when no concurrent refresh has
        rotated its token set in the meantime.
        """

        config = get_provider_config(provider)
        row = crud.get_active_connection(self.db, user_id, config.provider)
        if row is None:
            return None

        if self._is_fresh(row):
            return self._stored_token(row)

        async with _refresh_lock(row.id):
            # Another turn may have refreshed or disabled the row while we waited
            connection_id = row.id
            row = crud.get_connection_for_update(self.db, connection_id)
            if row is None or not row.is_enabled:
                self.db.commit()
                return None
            if self._is_fresh(row):
                self.db.commit()
                return self._stored_token(row)
            return await self._refresh_connection(config, row)

    async def _refresh_connection(self, config: OAuthProviderConfig, row: OAuthConnection) -> ValidToken | None:
        if not row.encrypted_refresh_token:
            logger.info("OAuth connection %s expired with no refresh token; disabling", row.id)
            self._disable(row.id)
            return None

        connection_id = row.id
        seen_refresh_token = row.encrypted_refresh_token
        seen_expires_at = row.expires_at
        try:
            refresh_token = self.cipher.decrypt(seen_refresh_token)
            token_set = await self._refresh(config, refresh_token)
        except (RefreshFailed, ValueError) as exc:
            current = crud.get_connection_for_update(self.db, connection_id)
            if current is None:
                self.db.commit()
                return None
            if current.encrypted_refresh_token != seen_refresh_token or current.expires_at != seen_expires_at:
                # Lost a race against a refresh in another process; the rotated set stands
                self.db.commit()
                logger.info("OAuth connection %s: refresh failed but the token set was already rotated", connection_id)
                if current.is_enabled and self._is_fresh(current):
                    return self._stored_token(current)
                return None
            logger.warning("OAuth connection %s: refresh failed (%s); disabling", connection_id, exc)
            self._disable(connection_id)
            return None

        refreshed = crud.update_connection_tokens(
            self.db,
            row.id,
            encrypted_access_token=self.cipher.encrypt(token_set.access_token),
            encrypted_refresh_token=(
                self.cipher.encrypt(token_set.refresh_token) if token_set.refresh_token else None
            ),
            expires_at=self._now() + timedelta(seconds=token_set.expires_in),
            scopes=token_set.scope_list,
        )
        if refreshed is None:
            # Deleted by the user while the refresh was in flight
            return None

        if not self._is_fresh(refreshed):
            logger.warning("OAuth connection %s: provider issued a token inside the refresh buffer", row.id)
            return None

        logger.debug("OAuth connection %s refreshed", row.id)
        return self._valid_token(refreshed, token_set.access_token)

    def connections_for_user(self, user_id: int) -> List[ConnectionSummary]:
        return [self._summary(row) for row in crud.list_connections(self.db, user_id)]

    def connection_status(self, user_id: int, provider) -> ProviderStatus:
        config = get_provider_config(provider)
        summaries = [self._summary(row) for row in crud.list_connections(self.db, user_id, config.provider)]
        usable = [s for s in summaries if not s.needs_reauth]
        return ProviderStatus(
            provider=config.provider,
            connected=bool(usable),
            needs_reauth=bool(summaries) and not usable,
            connections=summaries,
        )

    def disable_connection(self, user_id: int, connection_id: int) -> None:
        """Disconnect in place.  Raises :class:`ConnectionNotFound` for rows the user does not own."""

        row = crud.get_connection(self.db, connection_id, user_id=user_id)
        if row is None:
            raise ConnectionNotFound(connection_id)
        self._disable(row.id)

    def delete_connection(self, user_id: int, connection_id: int) -> None:
        if not crud.delete_connection(self.db, connection_id, user_id):
            raise ConnectionNotFound(connection_id)
        logger.info("OAuth connection %s deleted by user %s", connection_id, user_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _refresh(self, config: OAuthProviderConfig, refresh_token: str) -> TokenSet:
        form = {
            "grant_type": "refresh_token",
            "client_id": config.client_id(self.settings),
            "client_secret": config.client_secret(self.settings),
            "refresh_token": refresh_token,
        }
        return await self._token_request(config, form, RefreshFailed)

    async def _token_request(self, config: OAuthProviderConfig, form: Dict[str, str], error_cls) -> TokenSet:
        provider = config.provider.value
        try:
            response = await self._send(
                "POST",
                config.token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise error_cls(provider, cause=exc) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise error_cls(provider, status_code=response.status_code)

        try:
            return TokenSet.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise error_cls(provider, cause=exc) from exc

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        timeout = httpx.Timeout(self.settings.oauth_http_timeout)
        if self._http is not None:
            return await self._http.request(method, url, timeout=timeout, **kwargs)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.request(method, url, **kwargs)

    def _disable(self, connection_id: int) -> None:
        crud.set_connection_enabled(self.db, connection_id, False)

    def _is_fresh(self, row: OAuthConnection) -> bool:
        buffer = timedelta(seconds=self.settings.token_refresh_buffer_seconds)
        return row.expires_at - self._now() > buffer

    def _stored_token(self, row: OAuthConnection) -> ValidToken | None:
        try:
            access_token = self.cipher.decrypt(row.encrypted_access_token)
        except ValueError:
            logger.warning("OAuth connection %s: stored access token is undecryptable", row.id)
            self._disable(row.id)
            return None
        return self._valid_token(row, access_token)

    def _valid_token(self, row: OAuthConnection, access_token: str) -> ValidToken:
        return ValidToken(
            access_token=access_token,
            expires_at=row.expires_at,
            connection_id=row.id,
            metadata=dict(row.connection_metadata or {}),
        )

    def _summary(self, row: OAuthConnection) -> ConnectionSummary:
        return ConnectionSummary(
            id=row.id,
            provider=OAuthProvider(row.provider),
            provider_user_id=row.provider_user_id,
            is_enabled=row.is_enabled,
            expires_at=row.expires_at,
            scopes=list(row.scopes or []),
            metadata=dict(row.connection_metadata or {}),
            needs_reauth=(not row.is_enabled) or row.expires_at <= self._now(),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


__all__ = ["OAuthTokenManager"]
