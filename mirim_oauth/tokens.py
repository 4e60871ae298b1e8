"""OAuth token data structures and utilities.

This module provides the TokenPair dataclass for the access/refresh token
pair with its issuance time, including expiry handling and conversion
to and from the persisted (snake_case) record.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

logger = logging.getLogger(__name__)

# Used when the server omits expires_in
DEFAULT_EXPIRES_IN = 3600


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class TokenPair:
    """Access/refresh token pair.

    Attributes:
        access_token: The access token string
        refresh_token: The refresh token string
        expires_in: Lifetime of the access token in seconds
        issued_at: When the pair was issued (UTC datetime)
        issued_at_text: The issued_at string as read from a persisted record,
            written back unchanged so stored records keep their format
    """

    access_token: str
    refresh_token: str
    expires_in: int = DEFAULT_EXPIRES_IN
    issued_at: datetime = field(default_factory=_utcnow)
    issued_at_text: str | None = field(default=None, compare=False, repr=False)

    @property
    def expires_at(self) -> datetime:
        return _as_aware(self.issued_at) + timedelta(seconds=self.expires_in)

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check whether the access token has expired.

        A token is expired strictly after issued_at + expires_in.

        Args:
            now: Reference time (defaults to the current UTC time)
        """
        now = _as_aware(now) if now is not None else _utcnow()
        return now > self.expires_at

    def has_refresh_token(self) -> bool:
        """Check if this pair has a usable refresh token."""
        return bool(self.refresh_token)

    def get_auth_header(self) -> str:
        """Get the Authorization header value for this token."""
        return f"Bearer {self.access_token}"

    def to_persisted(self) -> dict[str, Any]:
        """Serialize to the persisted record shape."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "issued_at": self.issued_at_text or self.issued_at.isoformat(),
        }

    @classmethod
    def from_persisted(cls, data: dict[str, Any]) -> "TokenPair":
        """Deserialize from the persisted record shape.

        Raises:
            KeyError: If access_token is missing
            ValueError: If issued_at or expires_in cannot be parsed
        """
        issued_at = _utcnow()
        issued_at_text = data.get("issued_at") or None
        if issued_at_text:
            # Accepts the trailing "Z" of JavaScript toISOString() as well
            issued_at = datetime.fromisoformat(issued_at_text)

        return cls(
            access_token=str(data["access_token"]),
            refresh_token=str(data.get("refresh_token") or ""),
            expires_in=int(data.get("expires_in", DEFAULT_EXPIRES_IN)),
            issued_at=issued_at,
            issued_at_text=issued_at_text,
        )

    @classmethod
    def from_token_response(
        cls,
        data: dict[str, Any],
        previous_refresh_token: str | None = None,
    ) -> "TokenPair":
        """Create a TokenPair from the ``data`` object of a token response.

        The previous refresh token is kept when the server does not rotate it.

        Args:
            data: Token fields (access_token, refresh_token?, expires_in?)
            previous_refresh_token: Refresh token to reuse if none returned

        Raises:
            KeyError: If access_token is missing
        """
        refresh_token = data.get("refresh_token") or previous_refresh_token or ""
        expires_in = data.get("expires_in") or DEFAULT_EXPIRES_IN

        return cls(
            access_token=str(data["access_token"]),
            refresh_token=str(refresh_token),
            expires_in=int(expires_in),
            issued_at=_utcnow(),
        )
