"""Mirim OAuth - OAuth2 authorization code + PKCE client for the Mirim auth server.

Main Components:
    MirimOAuth: High-level client (login, logout, session checks, requests)
    TokenLifecycleManager: Token exchange, refresh and profile fetch
    CallbackListener: Waits for the authorization callback on a surface
    TokenStore: Persisted token and user records

Quick Start:
    from mirim_oauth import ClientConfig, MirimOAuth

    config = ClientConfig(client_id, client_secret, "http://127.0.0.1:8765/callback")
    async with MirimOAuth(config) as auth:
        if not await auth.check_logged_in():
            await auth.login()
        me = await auth.make_authenticated_request("/api/v1/user")
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("mirim-oauth")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

from .callback import CallbackListener, CallbackResult, PendingAuthorization, build_authorization_url
from .client import FlowState, MirimOAuth, Subscription
from .config import ClientConfig, ConfigError, load_config
from .errors import (
    AuthorizationError,
    CallbackTimeoutError,
    ErrorKind,
    ExchangeError,
    LoginInProgressError,
    MirimOAuthError,
    NotAuthenticatedError,
    PopupBlockedError,
    ProfileFetchError,
    RefreshError,
    RequestFailedError,
    StateMismatchError,
    StorageCorruptError,
    UserCancelledError,
)
from .lifecycle import TokenLifecycleManager
from .pkce import (
    CodeChallengeGenerator,
    PKCEPair,
    generate_code_challenge,
    generate_code_verifier,
    generate_pkce_pair,
    generate_state,
)
from .storage import EncryptedFileStorage, KeyValueStorage, MemoryStorage
from .store import TokenStore
from .surface import AuthorizationSurface, BrowserSurface, SurfaceError, SurfaceHandle, SurfaceMessage
from .tokens import TokenPair
from .user import UserProfile

__all__ = [
    "__version__",
    # Client (main entry point)
    "MirimOAuth",
    "FlowState",
    "Subscription",
    "ClientConfig",
    "ConfigError",
    "load_config",
    # Lifecycle
    "TokenLifecycleManager",
    "TokenPair",
    "UserProfile",
    # Callback
    "CallbackListener",
    "CallbackResult",
    "PendingAuthorization",
    "build_authorization_url",
    # Surfaces
    "AuthorizationSurface",
    "BrowserSurface",
    "SurfaceHandle",
    "SurfaceMessage",
    "SurfaceError",
    # Storage
    "TokenStore",
    "KeyValueStorage",
    "MemoryStorage",
    "EncryptedFileStorage",
    # PKCE
    "CodeChallengeGenerator",
    "PKCEPair",
    "generate_pkce_pair",
    "generate_code_verifier",
    "generate_code_challenge",
    "generate_state",
    # Errors
    "MirimOAuthError",
    "ErrorKind",
    "PopupBlockedError",
    "UserCancelledError",
    "CallbackTimeoutError",
    "StateMismatchError",
    "AuthorizationError",
    "ExchangeError",
    "RefreshError",
    "ProfileFetchError",
    "RequestFailedError",
    "NotAuthenticatedError",
    "StorageCorruptError",
    "LoginInProgressError",
]
