"""OAuth2 password / client-credentials token exchange with a cached, single-flight refresh."""
from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Callable, Optional

import httpx

from src.guard.errors import AuthError
from src.guard.types import AuthToken

logger = logging.getLogger(__name__)


class Authenticator:
    """
    Exchanges credentials for a bearer token and hands out a valid one.

    The cached token is reused until it is within ``refresh_margin`` seconds of
    expiry. A token issued without ``expires_in`` is single-use. While a refresh
    is in flight every caller awaits that same refresh instead of starting its own.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        token_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        grant_type: str = "password",
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        refresh_margin: float = 30.0,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.token_url = token_url
        self.username = username
        self.password = password
        self.grant_type = grant_type
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_margin = refresh_margin
        self.timeout = timeout
        self.clock = clock
        self.refresh_count = 0
        self._token: Optional[AuthToken] = None
        self._inflight: Optional[asyncio.Future] = None

    @property
    def token(self) -> Optional[AuthToken]:
        return self._token

    def _form(self, username: Optional[str], password: Optional[str]) -> dict:
        form = {"grant_type": self.grant_type}
        if self.grant_type == "password":
            form["username"] = username or ""
            form["password"] = password or ""
        if self.client_id:
            form["client_id"] = self.client_id
        if self.client_secret:
            form["client_secret"] = self.client_secret
        return form

    async def authenticate(
        self,
        token_url: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> AuthToken:
        """
        One network call: POST the form to the token endpoint.

        Arguments override the credentials bound at construction for this call
        only; the resulting token still becomes the cached one.
        """
        token_url = token_url or self.token_url
        username = self.username if username is None else username
        password = self.password if password is None else password
        self.refresh_count += 1
        try:
            response = await self.client.post(
                token_url,
                data=self._form(username, password),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise AuthError(f"token request to {token_url} failed: {e}") from e

        if not response.is_success:
            raise AuthError(
                f"token endpoint returned {response.status_code} {response.reason_phrase}".strip(),
                status=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise AuthError("token endpoint returned a non-JSON body", status=response.status_code) from e

        bearer = payload.get("access_token") if isinstance(payload, dict) else None
        if not bearer or not isinstance(bearer, str):
            raise AuthError("token payload has no access_token", status=response.status_code)

        expires_at = None
        expires_in = payload.get("expires_in")
        if expires_in is not None:
            try:
                expires_at = self.clock() + float(expires_in)
            except (TypeError, ValueError) as e:
                raise AuthError(f"malformed expires_in: {expires_in!r}", status=response.status_code) from e

        token = AuthToken(bearer=bearer, expires_at=expires_at)
        self._token = token
        logger.debug("Obtained bearer token (expires_in=%s)", expires_in)
        return token

    async def get_valid_token(self) -> AuthToken:
        token = self._token
        if token is not None and not token.needs_refresh(self.clock(), self.refresh_margin):
            return token

        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._refresh())
        return await asyncio.shield(self._inflight)

    async def _refresh(self) -> AuthToken:
        try:
            return await self.authenticate()
        finally:
            self._inflight = None


class StaticAuthenticator:
    """Pre-issued bearer token (SUT_AUTH_TOKEN); never refreshed."""

    def __init__(self, bearer: str, token_url: str = "") -> None:
        self.token_url = token_url
        self.refresh_count = 0
        self._token = AuthToken(bearer=bearer, expires_at=math.inf)

    @property
    def token(self) -> AuthToken:
        return self._token

    async def authenticate(self, token_url: Optional[str] = None, username: Optional[str] = None,
                           password: Optional[str] = None) -> AuthToken:
        return self._token

    async def get_valid_token(self) -> AuthToken:
        return self._token
