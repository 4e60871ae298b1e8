"""Token lifecycle: exchange, refresh, profile fetch and persistence.

The TokenLifecycleManager owns the in-memory token/user state and is
the single path through which authenticated operations obtain tokens
(get_valid_tokens). All server responses follow the envelope
``{"status": 200, "message": ..., "data": {...}}``; a call succeeds only
when the HTTP status is 2xx AND the envelope status is 200.
"""

import asyncio
import logging
from typing import Any

import httpx

from .config import ClientConfig
from .errors import (
    ExchangeError,
    MirimOAuthError,
    NotAuthenticatedError,
    ProfileFetchError,
    RefreshError,
    RequestFailedError,
)
from .store import TokenStore
from .tokens import TokenPair
from .user import UserProfile

logger = logging.getLogger(__name__)

TOKEN_PATH = "/api/v1/oauth/token"
REFRESH_PATH = "/api/v1/auth/refresh"
USER_PATH = "/api/v1/user"

BODY_METHODS = ("POST", "PUT")


def _unwrap_envelope(
    response: httpx.Response,
    error_cls: type[MirimOAuthError],
    failure_message: str,
) -> dict[str, Any]:
    """Apply the HTTP + application status check and return ``data``.

    Raises:
        error_cls: With the HTTP status and raw text for HTTP failures,
            or the envelope status and parsed body for application failures
    """
    if not response.is_success:
        raise error_cls(failure_message, code=response.status_code, payload=response.text)

    try:
        body = response.json()
    except ValueError as e:
        raise error_cls(
            f"{failure_message}: response is not JSON",
            code=response.status_code,
            payload=response.text,
        ) from e

    if not isinstance(body, dict) or body.get("status") != 200:
        status = body.get("status") if isinstance(body, dict) else None
        message = (body.get("message") if isinstance(body, dict) else None) or failure_message
        raise error_cls(message, code=status if isinstance(status, int) else None, payload=body)

    data = body.get("data")
    if not isinstance(data, dict):
        raise error_cls(f"{failure_message}: response has no data", code=200, payload=body)
    return data


class TokenLifecycleManager:
    """Owns token/user state and the HTTP calls that change it.

    Usage:
        manager = TokenLifecycleManager(config, TokenStore(storage))
        tokens = await manager.exchange(code, state, verifier)
        user = await manager.fetch_profile(tokens.access_token)
        manager.commit(tokens, user)
    """

    def __init__(
        self,
        config: ClientConfig,
        store: TokenStore,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.store = store
        self._http = http_client
        self._owns_http = http_client is None

        self.tokens: TokenPair | None = None
        self.user: UserProfile | None = None

        # refresh token value -> in-flight refresh
        self._refreshes: dict[str, asyncio.Task[TokenPair]] = {}
        # Bumped by clear(); results of calls started before it are discarded
        self._generation = 0

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.config.http_timeout)
        return self._http

    def _url(self, path: str) -> str:
        return f"{self.config.server_url.rstrip('/')}{path}"

    async def aclose(self) -> None:
        """Close the HTTP client if this manager created it."""
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    # State

    def commit(self, tokens: TokenPair | None, user: UserProfile | None) -> None:
        """Replace the in-memory token and user state in one step."""
        self.tokens = tokens
        self.user = user

    def clear(self) -> None:
        """Drop in-memory state and both persisted records.

        In-flight refreshes still complete for their callers but no
        longer write their result back.
        """
        self._generation += 1
        self._refreshes.clear()
        self.commit(None, None)
        self.store.clear()

    def load_stored_tokens(self) -> TokenPair | None:
        return self.store.load_tokens()

    def load_stored_user(self) -> UserProfile | None:
        return self.store.load_user()

    # Server calls

    async def exchange(self, code: str, state: str | None, verifier: str) -> TokenPair:
        """Exchange an authorization code for tokens.

        The new pair is persisted but not committed to memory; the caller
        commits it together with the user profile.

        Raises:
            ExchangeError: If the exchange fails at any level
        """
        payload = {
            "code": code,
            "state": state,
            "clientId": self.config.client_id,
            "clientSecret": self.config.client_secret,
            "redirectUri": self.config.redirect_uri,
            "scopes": self.config.scopes,
            "codeVerifier": verifier,
        }

        try:
            response = await self.http.post(self._url(TOKEN_PATH), json=payload)
        except httpx.HTTPError as e:
            raise ExchangeError(f"Network error during token exchange: {e}") from e

        data = _unwrap_envelope(response, ExchangeError, "Failed to exchange code for tokens")
        try:
            tokens = TokenPair.from_token_response(data)
        except (KeyError, TypeError, ValueError) as e:
            raise ExchangeError(f"Malformed token response: {e}", payload=data) from e

        self.store.save_tokens(tokens)
        logger.info("Authorization code exchanged for tokens")
        return tokens

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Refresh tokens, sharing one call among concurrent callers.

        Concurrent refreshes of the same refresh token value await the same
        in-flight request and receive the same TokenPair.

        Raises:
            RefreshError: If the refresh fails at any level
        """
        task = self._refreshes.get(refresh_token)
        if task is None:
            task = asyncio.create_task(self._perform_refresh(refresh_token, self._generation))
            self._refreshes[refresh_token] = task
            task.add_done_callback(lambda done: self._forget_refresh(refresh_token, done))
        else:
            logger.debug("Joining in-flight token refresh")

        # shield: one caller being cancelled must not cancel the shared refresh
        return await asyncio.shield(task)

    def _forget_refresh(self, refresh_token: str, task: asyncio.Task[TokenPair]) -> None:
        if self._refreshes.get(refresh_token) is task:
            del self._refreshes[refresh_token]

    async def _perform_refresh(self, refresh_token: str, generation: int) -> TokenPair:
        try:
            response = await self.http.post(
                self._url(REFRESH_PATH),
                json={"refreshToken": refresh_token},
            )
        except httpx.HTTPError as e:
            raise RefreshError(f"Network error during token refresh: {e}") from e

        data = _unwrap_envelope(response, RefreshError, "Token refresh failed")
        try:
            tokens = TokenPair.from_token_response(data, previous_refresh_token=refresh_token)
        except (KeyError, TypeError, ValueError) as e:
            raise RefreshError(f"Malformed refresh response: {e}", payload=data) from e

        if generation != self._generation:
            logger.info("Session was cleared during token refresh; discarding refreshed tokens")
            return tokens

        self.store.save_tokens(tokens)
        self.tokens = tokens
        logger.info("Tokens refreshed")
        return tokens

    async def fetch_profile(self, access_token: str) -> UserProfile:
        """Fetch, normalize and persist the user profile.

        Raises:
            ProfileFetchError: If the fetch fails at any level
        """
        try:
            response = await self.http.get(
                self._url(USER_PATH),
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {access_token}",
                },
            )
        except httpx.HTTPError as e:
            raise ProfileFetchError(f"Network error fetching user info: {e}") from e

        data = _unwrap_envelope(response, ProfileFetchError, "Failed to fetch user info")
        user = UserProfile.from_response(data)

        self.store.save_user(user)
        logger.debug("Fetched user profile")
        return user

    async def get_valid_tokens(self) -> TokenPair:
        """Return unexpired tokens, refreshing stored ones if needed.

        Raises:
            NotAuthenticatedError: If nothing is stored
            RefreshError: If the stored tokens are expired and refresh fails
            StorageCorruptError: If the stored record is malformed
        """
        if self.tokens is not None and not self.tokens.is_expired():
            return self.tokens

        stored = self.store.load_tokens()
        if stored is None:
            raise NotAuthenticatedError()

        if stored.is_expired():
            if not stored.has_refresh_token():
                raise NotAuthenticatedError("Session expired and no refresh token is available")
            logger.debug("Stored tokens expired, refreshing")
            return await self.refresh(stored.refresh_token)

        self.tokens = stored
        return stored

    async def request(
        self,
        path: str,
        method: str = "GET",
        body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Perform an authenticated call against the server.

        Returns:
            Parsed JSON response body (None for an empty body)

        Raises:
            RequestFailedError: For non-2xx responses or transport errors
            NotAuthenticatedError, RefreshError: From get_valid_tokens
        """
        method = method.upper()
        tokens = await self.get_valid_tokens()

        request_headers = {
            "Content-Type": "application/json",
            "Authorization": tokens.get_auth_header(),
            **(headers or {}),
        }

        kwargs: dict[str, Any] = {"headers": request_headers}
        if body is not None and method in BODY_METHODS:
            kwargs["json"] = body

        try:
            response = await self.http.request(method, self._url(path), **kwargs)
        except httpx.HTTPError as e:
            raise RequestFailedError(None, "", message=f"Request failed: {e}") from e

        if not response.is_success:
            raise RequestFailedError(response.status_code, response.text)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise RequestFailedError(
                response.status_code,
                response.text,
                message="Request failed: response is not JSON",
            ) from e
