"""Persisted token and user-profile records.

Tokens and the user profile live in two independent key-value entries,
each a JSON object in the snake_case record shape. A missing entry is a
normal "not authenticated" state; an entry that cannot be decoded raises
StorageCorruptError.
"""

import json
import logging
from typing import Any

from .errors import StorageCorruptError
from .storage import KeyValueStorage
from .tokens import TokenPair
from .user import UserProfile

logger = logging.getLogger(__name__)

TOKEN_KEY = "mirim_oauth_tokens"
USER_KEY = "mirim_oauth_user"


class TokenStore:
    """Reads and writes the token and user records on a KeyValueStorage."""

    def __init__(self, storage: KeyValueStorage):
        self.storage = storage

    def _load_record(self, key: str) -> dict[str, Any] | None:
        raw = self.storage.get_item(key)
        if not raw:
            return None

        try:
            record = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageCorruptError(f"Stored record {key} is not valid JSON") from e

        if not isinstance(record, dict):
            raise StorageCorruptError(f"Stored record {key} is not a JSON object")
        return record

    def load_tokens(self) -> TokenPair | None:
        """Load the persisted token pair.

        Returns:
            TokenPair if a record exists, None otherwise

        Raises:
            StorageCorruptError: If the record exists but is malformed
        """
        record = self._load_record(TOKEN_KEY)
        if record is None:
            return None

        try:
            return TokenPair.from_persisted(record)
        except (KeyError, TypeError, ValueError) as e:
            raise StorageCorruptError(f"Invalid token record: {e}") from e

    def save_tokens(self, tokens: TokenPair) -> None:
        self.storage.set_item(TOKEN_KEY, json.dumps(tokens.to_persisted()))
        logger.debug("Persisted token record")

    def load_user(self) -> UserProfile | None:
        """Load the persisted user profile, or None if absent."""
        record = self._load_record(USER_KEY)
        if record is None:
            return None
        return UserProfile.from_persisted(record)

    def save_user(self, user: UserProfile) -> None:
        self.storage.set_item(USER_KEY, json.dumps(user.to_persisted()))
        logger.debug("Persisted user record")

    def clear(self) -> None:
        """Remove both records. Absent records are ignored."""
        self.storage.remove_item(TOKEN_KEY)
        self.storage.remove_item(USER_KEY)

    def snapshot(self) -> dict[str, str | None]:
        """Capture both raw records so a failed login can be rolled back."""
        return {key: self.storage.get_item(key) for key in (TOKEN_KEY, USER_KEY)}

    def restore(self, snapshot: dict[str, str | None]) -> None:
        for key, raw in snapshot.items():
            if raw is None:
                self.storage.remove_item(key)
            else:
                self.storage.set_item(key, raw)
