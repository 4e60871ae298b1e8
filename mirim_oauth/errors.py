"""Classified errors raised by the Mirim OAuth client.

Every failure surfaced by a top-level operation is a MirimOAuthError.
The concrete subclass (and its ``kind``) tells the caller which stage
failed; ``code`` mirrors the server's status where one exists and
``payload`` keeps the raw response for diagnostics.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Classification of a MirimOAuthError."""

    POPUP_BLOCKED = "PopupBlocked"
    USER_CANCELLED = "UserCancelled"
    TIMEOUT = "Timeout"
    STATE_MISMATCH = "StateMismatch"
    CALLBACK_ERROR = "CallbackError"
    EXCHANGE_FAILED = "ExchangeFailed"
    REFRESH_FAILED = "RefreshFailed"
    PROFILE_FETCH_FAILED = "ProfileFetchFailed"
    REQUEST_FAILED = "RequestFailed"
    NOT_AUTHENTICATED = "NotAuthenticated"
    STORAGE_CORRUPT = "StorageCorrupt"
    LOGIN_IN_PROGRESS = "LoginInProgress"


class MirimOAuthError(Exception):
    """Base error for all client failures.

    Attributes:
        message: Human-readable description
        code: Optional numeric code (HTTP or application status)
        payload: Optional raw server response (text or parsed body)
    """

    kind: ErrorKind = ErrorKind.CALLBACK_ERROR

    def __init__(self, message: str, code: int | None = None, payload: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.payload = payload

    def __str__(self) -> str:
        if self.code is not None:
            return f"{self.message} (Code: {self.code})"
        return self.message

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r}, code={self.code!r})"


class PopupBlockedError(MirimOAuthError):
    """The authorization surface could not be opened."""

    kind = ErrorKind.POPUP_BLOCKED


class UserCancelledError(MirimOAuthError):
    """The user closed the authorization surface before completing."""

    kind = ErrorKind.USER_CANCELLED


class CallbackTimeoutError(MirimOAuthError):
    """No authorization result arrived before the timeout."""

    kind = ErrorKind.TIMEOUT


class StateMismatchError(MirimOAuthError):
    """The callback's state did not match the nonce issued for this attempt."""

    kind = ErrorKind.STATE_MISMATCH


class AuthorizationError(MirimOAuthError):
    """The authorization server reported an error on the redirect."""

    kind = ErrorKind.CALLBACK_ERROR

    def __init__(self, error: str, description: str | None = None):
        message = f"{error}: {description}" if description else error
        super().__init__(f"Authentication failed: {message}")
        self.error = error
        self.error_description = description


class ExchangeError(MirimOAuthError):
    """Authorization code could not be exchanged for tokens."""

    kind = ErrorKind.EXCHANGE_FAILED


class RefreshError(MirimOAuthError):
    """Refresh token was rejected or the refresh call failed."""

    kind = ErrorKind.REFRESH_FAILED


class ProfileFetchError(MirimOAuthError):
    """User profile could not be fetched."""

    kind = ErrorKind.PROFILE_FETCH_FAILED


class RequestFailedError(MirimOAuthError):
    """An authenticated API call returned a non-success HTTP status."""

    kind = ErrorKind.REQUEST_FAILED

    def __init__(self, status: int | None, body: str, message: str | None = None):
        super().__init__(
            message or f"Request failed with status {status}: {body}",
            code=status,
            payload=body,
        )

    @property
    def status(self) -> int | None:
        return self.code

    @property
    def body(self) -> str:
        return self.payload


class NotAuthenticatedError(MirimOAuthError):
    """No usable tokens are available."""

    kind = ErrorKind.NOT_AUTHENTICATED

    def __init__(self, message: str = "Not logged in"):
        super().__init__(message)


class StorageCorruptError(MirimOAuthError):
    """A persisted record exists but cannot be decoded."""

    kind = ErrorKind.STORAGE_CORRUPT


class LoginInProgressError(MirimOAuthError):
    """Another login attempt is already waiting for its callback."""

    kind = ErrorKind.LOGIN_IN_PROGRESS

    def __init__(self, message: str = "A login attempt is already in progress"):
        super().__init__(message)
