"""Authorization callback listener.

Opens the authorization endpoint on an AuthorizationSurface and waits
for exactly one outcome. Three watchers run concurrently against the
surface handle:
- a message listener for a same-origin delivery of the result
- a poll of the surface's location for the redirect URI (or code=/error=)
- a poll detecting that the user closed the surface
The first watcher to settle the shared future wins; settling tears down
the others (tasks cancelled, listener removed, surface closed).
"""

import asyncio
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from urllib.parse import parse_qs, urlencode, urlparse

from .errors import (
    AuthorizationError,
    CallbackTimeoutError,
    LoginInProgressError,
    MirimOAuthError,
    PopupBlockedError,
    StateMismatchError,
    UserCancelledError,
)
from .pkce import CHALLENGE_METHOD, CodeChallengeGenerator
from .surface import AuthorizationSurface, SurfaceError, SurfaceHandle, SurfaceMessage, origin_of

logger = logging.getLogger(__name__)

AUTHORIZE_PATH = "/api/v1/oauth/authorize"

# Default timeout for waiting for callback
DEFAULT_TIMEOUT = 120  # seconds

LOCATION_POLL_INTERVAL = 0.2
CLOSED_POLL_INTERVAL = 0.5


@dataclass
class CallbackResult:
    """Result from OAuth callback.

    Attributes:
        code: The authorization code from the callback
        state: The state parameter from the callback
        error: Error code if authorization failed
        error_description: Human-readable error description
    """

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None

    def is_success(self) -> bool:
        """Check if callback was successful."""
        return self.code is not None and self.error is None


@dataclass
class PendingAuthorization:
    """The in-flight half of a login: what the callback must match."""

    state: str
    code_verifier: str
    code_challenge: str
    expires_at: datetime

    @classmethod
    def create(
        cls,
        generator: CodeChallengeGenerator,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> "PendingAuthorization":
        pair = generator.new_pair()
        return cls(
            state=generator.new_state(),
            code_verifier=pair.verifier,
            code_challenge=pair.challenge,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=timeout),
        )

    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) > self.expires_at


def build_authorization_url(
    server_url: str,
    client_id: str,
    redirect_uri: str,
    scopes: str,
    state: str,
    code_challenge: str,
) -> str:
    """Build the authorization URL for the surface.

    Args:
        server_url: Authorization server base URL
        client_id: The client ID
        redirect_uri: The callback URI
        scopes: Space-separated scopes
        state: State parameter for CSRF protection
        code_challenge: PKCE code challenge

    Returns:
        Complete authorization URL
    """
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": scopes,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": CHALLENGE_METHOD,
    }
    return f"{server_url.rstrip('/')}{AUTHORIZE_PATH}?{urlencode(params)}"


def parse_callback_url(url: str) -> CallbackResult:
    """Parse OAuth callback parameters from a URL or bare query string."""
    parsed = urlparse(url)
    query = parsed.query
    if not query and "?" not in url and "=" in url:
        query = url
    params = parse_qs(query)

    # Get first value of each parameter (or None if not present)
    def get_param(name: str) -> str | None:
        values = params.get(name, [])
        return values[0] if values else None

    return CallbackResult(
        code=get_param("code"),
        state=get_param("state"),
        error=get_param("error"),
        error_description=get_param("error_description"),
    )


def _text(value: Any) -> str | None:
    return None if value is None else str(value)


def parse_callback_message(data: Any) -> CallbackResult | None:
    """Extract a callback result from a surface message.

    Accepts a mapping (``type == "oauth_callback"`` or carrying code/error,
    optionally with a ``url``), JSON text of such a mapping, or a callback
    URL / query string. Anything else returns None and is ignored.
    """
    if isinstance(data, str):
        try:
            decoded = json.loads(data)
        except ValueError:
            if "code=" in data or "error=" in data:
                return parse_callback_url(data)
            return None
        return parse_callback_message(decoded) if isinstance(decoded, dict) else None

    if not isinstance(data, dict):
        return None

    if data.get("type") != "oauth_callback" and not data.get("code") and not data.get("error"):
        return None

    if data.get("url"):
        return parse_callback_url(str(data["url"]))

    return CallbackResult(
        code=_text(data.get("code")),
        state=_text(data.get("state")),
        error=_text(data.get("error")),
        error_description=_text(data.get("error_description")),
    )


def validate_callback(result: CallbackResult, expected_state: str) -> CallbackResult:
    """Check a callback result against the issued state nonce.

    Raises:
        AuthorizationError: If the server reported an error or sent no code
        StateMismatchError: If the state does not match the issued nonce
    """
    if result.error:
        raise AuthorizationError(result.error, result.error_description)

    if not result.code:
        raise AuthorizationError("missing_code", "Authorization code not received")

    # Use constant-time comparison to prevent timing attacks
    if not hmac.compare_digest(result.state or "", expected_state):
        raise StateMismatchError("Invalid state parameter - possible CSRF attack")

    return result


class CallbackListener:
    """Waits for one authorization result from a surface.

    A listener runs one attempt at a time; starting a second wait while
    one is outstanding raises LoginInProgressError.

    Usage:
        listener = CallbackListener(surface, redirect_uri)
        result = await listener.wait(auth_url, expected_state=state)
    """

    def __init__(
        self,
        surface: AuthorizationSurface,
        redirect_uri: str,
        timeout: float = DEFAULT_TIMEOUT,
        location_poll_interval: float = LOCATION_POLL_INTERVAL,
        closed_poll_interval: float = CLOSED_POLL_INTERVAL,
    ):
        self.surface = surface
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self.location_poll_interval = location_poll_interval
        self.closed_poll_interval = closed_poll_interval
        self._active = False

    @property
    def in_progress(self) -> bool:
        return self._active

    async def wait(self, authorization_url: str, expected_state: str) -> CallbackResult:
        """Open the surface and wait for the validated callback.

        Returns:
            CallbackResult with code and state

        Raises:
            LoginInProgressError: If another wait is outstanding
            PopupBlockedError: If the surface cannot be opened
            UserCancelledError: If the user closed the surface
            CallbackTimeoutError: If no result arrived in time
            AuthorizationError: If the server reported an error
            StateMismatchError: If the state does not match
        """
        if self._active:
            raise LoginInProgressError()
        self._active = True

        try:
            handle = await self._open(authorization_url)
            result = await self._race(handle)
            return validate_callback(result, expected_state)
        finally:
            self._active = False

    async def _open(self, url: str) -> SurfaceHandle:
        try:
            handle = await self.surface.open(url)
        except SurfaceError as e:
            raise PopupBlockedError(f"Failed to open authentication surface: {e}") from e

        if handle is None:
            raise PopupBlockedError("Failed to open authentication popup")
        return handle

    async def _race(self, handle: SurfaceHandle) -> CallbackResult:
        loop = asyncio.get_running_loop()
        outcome: asyncio.Future[CallbackResult] = loop.create_future()
        tasks: list[asyncio.Task[None]] = []
        unsubscribe: Callable[[], None] = lambda: None
        torn_down = False

        def teardown() -> None:
            nonlocal torn_down
            if torn_down:
                return
            torn_down = True
            for task in tasks:
                task.cancel()
            unsubscribe()
            if not handle.closed():
                handle.close()

        def settle(result: CallbackResult | None = None, error: MirimOAuthError | None = None) -> None:
            # One-shot: only the first watcher to get here counts
            if outcome.done():
                return
            if error is not None:
                outcome.set_exception(error)
            else:
                outcome.set_result(result)  # type: ignore[arg-type]
            teardown()

        expected_origin = origin_of(self.redirect_uri)

        def on_message(message: SurfaceMessage) -> None:
            if outcome.done():
                return
            if message.origin is not None and message.origin != expected_origin:
                logger.debug(f"Ignoring message from unexpected origin {message.origin}")
                return
            result = parse_callback_message(message.data)
            if result is not None:
                logger.debug("Callback received via message")
                settle(result=result)

        unsubscribe = handle.subscribe(on_message)
        tasks.append(asyncio.create_task(self._watch_location(handle, settle)))
        tasks.append(asyncio.create_task(self._watch_closed(handle, settle)))

        try:
            return await asyncio.wait_for(outcome, timeout=self.timeout)
        except TimeoutError:
            raise CallbackTimeoutError(
                f"Authentication timeout after {self.timeout} seconds"
            ) from None
        finally:
            teardown()

    async def _watch_location(
        self,
        handle: SurfaceHandle,
        settle: Callable[..., None],
    ) -> None:
        while True:
            await asyncio.sleep(self.location_poll_interval)
            if handle.closed():
                continue

            location = handle.current_location()
            if location and (
                location.startswith(self.redirect_uri)
                or "code=" in location
                or "error=" in location
            ):
                logger.debug("Callback detected on surface location")
                settle(result=parse_callback_url(location))
                return

    async def _watch_closed(
        self,
        handle: SurfaceHandle,
        settle: Callable[..., None],
    ) -> None:
        while True:
            await asyncio.sleep(self.closed_poll_interval)
            if handle.closed():
                settle(error=UserCancelledError("Authentication was cancelled by user"))
                return
