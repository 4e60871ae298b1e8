"""High-level Mirim OAuth client.

MirimOAuth orchestrates login, logout, session checks, refreshes and
authenticated requests on top of the CallbackListener and the
TokenLifecycleManager, and exposes an immutable FlowState to any number
of subscribers (UI bindings, CLIs).

Usage:
    config = ClientConfig(client_id="...", client_secret="...",
                          redirect_uri="http://127.0.0.1:8765/callback")

    async with MirimOAuth(config) as auth:
        if not await auth.check_logged_in():
            user = await auth.login()
        data = await auth.make_authenticated_request("/api/v1/user")
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from .callback import CallbackListener, PendingAuthorization, build_authorization_url
from .config import ClientConfig
from .errors import (
    ExchangeError,
    LoginInProgressError,
    MirimOAuthError,
    NotAuthenticatedError,
    ProfileFetchError,
    StorageCorruptError,
)
from .lifecycle import TokenLifecycleManager
from .pkce import CodeChallengeGenerator
from .storage import EncryptedFileStorage, KeyValueStorage
from .store import TokenStore
from .surface import AuthorizationSurface, BrowserSurface
from .tokens import TokenPair
from .user import UserProfile

logger = logging.getLogger(__name__)

# Login failures worth another attempt; everything else ends the login
RETRYABLE_ERRORS = (ExchangeError, ProfileFetchError)


@dataclass(frozen=True)
class FlowState:
    """Immutable snapshot of the client's authentication state."""

    user: UserProfile | None = None
    tokens: TokenPair | None = None
    loading: bool = False

    @property
    def is_logged_in(self) -> bool:
        return self.user is not None and self.tokens is not None and not self.tokens.is_expired()


Observer = Callable[[], None]


class Subscription:
    """Handle returned by subscribe(); calling it unsubscribes."""

    def __init__(self, registry: "ObserverRegistry", key: int):
        self._registry = registry
        self._key = key

    @property
    def active(self) -> bool:
        return self._key in self._registry

    def unsubscribe(self) -> None:
        self._registry.remove(self._key)

    def __call__(self) -> None:
        self.unsubscribe()


class ObserverRegistry:
    """Ordered observers with stable unsubscribe keys.

    notify() iterates a snapshot, so observers may subscribe or
    unsubscribe while being notified.
    """

    def __init__(self) -> None:
        self._observers: dict[int, Observer] = {}
        self._keys = itertools.count()

    def __contains__(self, key: int) -> bool:
        return key in self._observers

    def __len__(self) -> int:
        return len(self._observers)

    def add(self, observer: Observer) -> Subscription:
        key = next(self._keys)
        self._observers[key] = observer
        return Subscription(self, key)

    def remove(self, key: int) -> None:
        self._observers.pop(key, None)

    def notify(self) -> None:
        for observer in list(self._observers.values()):
            try:
                observer()
            except Exception:
                logger.exception("State observer raised")


class MirimOAuth:
    """OAuth2 authorization-code + PKCE client for the Mirim auth server."""

    def __init__(
        self,
        config: ClientConfig,
        storage: KeyValueStorage | None = None,
        surface: AuthorizationSurface | None = None,
        http_client: httpx.AsyncClient | None = None,
        generator: CodeChallengeGenerator | None = None,
    ):
        self.config = config
        self.store = TokenStore(storage if storage is not None else EncryptedFileStorage())
        self.surface = surface or BrowserSurface(config.redirect_uri)
        self.generator = generator or CodeChallengeGenerator()

        self._manager = TokenLifecycleManager(config, self.store, http_client)
        self._listener = CallbackListener(
            self.surface,
            config.redirect_uri,
            timeout=config.callback_timeout,
        )
        self._observers = ObserverRegistry()
        self._loading = False
        self._logging_in = False
        self._pending: PendingAuthorization | None = None

    async def __aenter__(self) -> "MirimOAuth":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._manager.aclose()

    # State

    @property
    def state(self) -> FlowState:
        return FlowState(user=self._manager.user, tokens=self._manager.tokens, loading=self._loading)

    @property
    def current_user(self) -> UserProfile | None:
        return self._manager.user

    @property
    def is_logged_in(self) -> bool:
        return self.state.is_logged_in

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def access_token(self) -> str | None:
        return self._manager.tokens.access_token if self._manager.tokens else None

    @property
    def refresh_token(self) -> str | None:
        return self._manager.tokens.refresh_token if self._manager.tokens else None

    @property
    def pending_authorization(self) -> PendingAuthorization | None:
        return self._pending

    def subscribe(self, observer: Observer) -> Subscription:
        """Register a zero-argument callback invoked on every state change."""
        return self._observers.add(observer)

    def _notify(self) -> None:
        self._observers.notify()

    def _set_loading(self, loading: bool) -> None:
        self._loading = loading
        self._notify()

    def _commit(self, tokens: TokenPair | None, user: UserProfile | None) -> None:
        self._manager.commit(tokens, user)
        self._notify()

    # Operations

    async def login(self) -> UserProfile:
        """Run the browser login and return the signed-in user.

        Prior state is left untouched if any stage fails.

        Raises:
            LoginInProgressError: If another login is waiting for its callback
            MirimOAuthError: The classified failure of the last attempt
        """
        if self._logging_in:
            raise LoginInProgressError()

        self._logging_in = True
        self._set_loading(True)
        try:
            attempt = 1
            while True:
                try:
                    user = await self._login_once()
                    logger.info("Login completed")
                    return user
                except RETRYABLE_ERRORS as e:
                    if attempt >= self.config.login_attempts:
                        raise
                    logger.warning(f"Login attempt {attempt} failed: {e}; retrying")
                    attempt += 1
                    await asyncio.sleep(self.config.retry_delay)
        finally:
            self._logging_in = False
            self._set_loading(False)

    async def _login_once(self) -> UserProfile:
        pending = PendingAuthorization.create(self.generator, self.config.callback_timeout)
        url = build_authorization_url(
            self.config.server_url,
            self.config.client_id,
            self.config.redirect_uri,
            self.config.scopes,
            pending.state,
            pending.code_challenge,
        )

        self._pending = pending
        try:
            result = await self._listener.wait(url, expected_state=pending.state)
        finally:
            self._pending = None

        assert result.code is not None
        snapshot = self.store.snapshot()
        try:
            tokens = await self._manager.exchange(result.code, result.state, pending.code_verifier)
            user = await self._manager.fetch_profile(tokens.access_token)
        except Exception:
            self.store.restore(snapshot)
            raise

        self._commit(tokens, user)
        return user

    async def logout(self) -> None:
        """Forget the session. Logging out twice is a no-op success."""
        self._set_loading(True)
        try:
            try:
                self._manager.clear()
            except (OSError, StorageCorruptError) as e:
                logger.warning(f"Could not clear stored session: {e}")
            self._notify()
            logger.info("Logged out")
        finally:
            self._set_loading(False)

    async def check_logged_in(self) -> bool:
        """Restore a session from storage, refreshing it once if expired.

        Any failure logs out and returns False, so stale tokens never
        stay loaded.
        """
        if self.is_logged_in:
            return True

        try:
            tokens = self._manager.load_stored_tokens()
            if tokens is None:
                if self._manager.tokens is not None or self._manager.user is not None:
                    await self.logout()
                return False

            if tokens.is_expired():
                if not tokens.has_refresh_token():
                    raise NotAuthenticatedError("Stored session expired")
                tokens = await self._manager.refresh(tokens.refresh_token)

            user = self._manager.load_stored_user()
            if user is None:
                user = await self._manager.fetch_profile(tokens.access_token)

        except (MirimOAuthError, OSError) as e:
            # OSError: the storage backend itself failed
            logger.warning(f"Session check failed: {e}")
            await self.logout()
            return False

        self._commit(tokens, user)
        return self.is_logged_in

    async def get_valid_tokens(self) -> TokenPair:
        """Return unexpired tokens, refreshing them if needed."""
        before = self._manager.tokens
        tokens = await self._manager.get_valid_tokens()
        if tokens is not before:
            self._notify()
        return tokens

    async def refresh_user_info(self) -> UserProfile:
        """Re-fetch the profile of the signed-in user."""
        self._set_loading(True)
        try:
            tokens = await self._manager.get_valid_tokens()
            user = await self._manager.fetch_profile(tokens.access_token)
            self._commit(tokens, user)
            return user
        finally:
            self._set_loading(False)

    async def refresh_tokens(self, refresh_token: str | None = None) -> TokenPair:
        """Refresh using the given refresh token or the current one.

        Raises:
            NotAuthenticatedError: If no refresh token is available
            RefreshError: If the refresh fails
        """
        token = refresh_token or self.refresh_token
        if not token:
            raise NotAuthenticatedError()

        self._set_loading(True)
        try:
            tokens = await self._manager.refresh(token)
            self._commit(tokens, self._manager.user)
            return tokens
        finally:
            self._set_loading(False)

    async def make_authenticated_request(
        self,
        path: str,
        method: str = "GET",
        body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Call a server endpoint with the current bearer token.

        Raises:
            RequestFailedError: For non-2xx responses, with status and raw body
            NotAuthenticatedError, RefreshError: If no valid token is available
        """
        before = self._manager.tokens
        try:
            return await self._manager.request(path, method=method, body=body, headers=headers)
        finally:
            if self._manager.tokens is not before:
                self._notify()
