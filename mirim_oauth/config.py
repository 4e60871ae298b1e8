"""Client configuration for Mirim OAuth.

Configuration can be built directly or loaded from the environment
(optionally seeded from a .env file):

    MIRIM_OAUTH_CLIENT_ID       required
    MIRIM_OAUTH_CLIENT_SECRET   required
    MIRIM_OAUTH_REDIRECT_URI    required
    MIRIM_OAUTH_SCOPES          space-separated, default "openid profile email"
    MIRIM_OAUTH_SERVER_URL      default https://api-auth.mmhs.app
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_SERVER_URL = "https://api-auth.mmhs.app"
DEFAULT_SCOPES = "openid profile email"

# Env file search paths in priority order
ENV_SEARCH_PATHS = [
    Path(".env"),
    Path.home() / ".config" / "mirim-oauth" / ".env",
]

ENV_PREFIX = "MIRIM_OAUTH_"


class ConfigError(Exception):
    """Configuration is missing or invalid."""

    pass


@dataclass
class ClientConfig:
    """Settings for one OAuth client registration.

    Attributes:
        client_id: Registered client ID
        client_secret: Registered client secret
        redirect_uri: Redirect URI registered for this client
        scopes: Space-separated scopes to request
        server_url: Authorization server base URL
        callback_timeout: Seconds to wait for the authorization callback
        http_timeout: Timeout for each HTTP call in seconds
        login_attempts: Attempts per login() for retryable failures
        retry_delay: Pause between login attempts in seconds
    """

    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: str = DEFAULT_SCOPES
    server_url: str = DEFAULT_SERVER_URL
    callback_timeout: float = 120
    http_timeout: float = 30.0
    login_attempts: int = 3
    retry_delay: float = 1.0

    def __post_init__(self) -> None:
        if isinstance(self.scopes, (list, tuple)):
            self.scopes = " ".join(self.scopes)
        if self.login_attempts < 1:
            raise ConfigError("login_attempts must be at least 1")


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file, checking project then user level."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def load_config(env_path: Path | None = None, **overrides: object) -> ClientConfig:
    """Load client configuration from the environment.

    Args:
        env_path: Explicit path to a .env file (optional)
        **overrides: Values taking precedence over the environment

    Returns:
        ClientConfig

    Raises:
        ConfigError: If a required value is missing
    """
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)

    values: dict[str, object] = {
        "client_id": os.environ.get(f"{ENV_PREFIX}CLIENT_ID"),
        "client_secret": os.environ.get(f"{ENV_PREFIX}CLIENT_SECRET"),
        "redirect_uri": os.environ.get(f"{ENV_PREFIX}REDIRECT_URI"),
        "scopes": os.environ.get(f"{ENV_PREFIX}SCOPES") or DEFAULT_SCOPES,
        "server_url": os.environ.get(f"{ENV_PREFIX}SERVER_URL") or DEFAULT_SERVER_URL,
    }
    values.update({key: value for key, value in overrides.items() if value is not None})

    missing = [
        f"{ENV_PREFIX}{key.upper()}"
        for key in ("client_id", "client_secret", "redirect_uri")
        if not values.get(key)
    ]
    if missing:
        raise ConfigError(
            f"Missing required configuration: {', '.join(missing)}.\n\n"
            f"Set them in the environment or in a .env file, for example:\n\n"
            f"  {ENV_PREFIX}CLIENT_ID=your-client-id\n"
            f"  {ENV_PREFIX}CLIENT_SECRET=your-client-secret\n"
            f"  {ENV_PREFIX}REDIRECT_URI=http://127.0.0.1:8765/callback"
        )

    return ClientConfig(**values)  # type: ignore[arg-type]
