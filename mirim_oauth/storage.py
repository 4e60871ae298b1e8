"""Key-value storage backends for persisted auth state.

The client only needs three operations (get, set, remove) over string
values. Two backends are provided:
- MemoryStorage, for tests and short-lived processes
- EncryptedFileStorage, which keeps the values in a Fernet-encrypted
  file whose key lives in the OS keyring (Keychain, libsecret, DPAPI)
"""

import base64
import hashlib
import json
import logging
import os
import stat
import sys
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

import keyring
from cryptography.fernet import Fernet, InvalidToken

from .errors import StorageCorruptError

logger = logging.getLogger(__name__)

# File locking support
if sys.platform != "win32":
    import fcntl

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Unix implementation using fcntl)."""
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r") as lock_file:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
else:
    import msvcrt

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Windows implementation using msvcrt).

        msvcrt has no shared locks, so readers lock exclusively too.
        """
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r+") as lock_file:
            try:
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
                yield
            finally:
                try:
                    msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
                except OSError:
                    pass


KEYRING_SERVICE = "mirim-oauth"
KEYRING_USERNAME = "storage-encryption-key"

DEFAULT_STORE_DIR = Path.home() / ".cache" / "mirim-oauth"

STORAGE_FILE = "storage.json"


class KeyValueStorage(ABC):
    """Minimal string key-value store used for persisted auth records."""

    @abstractmethod
    def get_item(self, key: str) -> str | None:
        """Return the stored value, or None if absent."""

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""

    @abstractmethod
    def remove_item(self, key: str) -> None:
        """Remove a value. Removing an absent key is not an error."""


class MemoryStorage(KeyValueStorage):
    """Process-local storage backed by a dict."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._items: dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._items)


def _derive_fallback_key() -> bytes:
    """Derive a fallback encryption key from machine-specific data.

    Used when keyring is not available. Less secure than keyring but
    still provides encryption at rest.

    Returns:
        32-byte key suitable for Fernet
    """
    components = []

    machine_id_path = Path("/etc/machine-id")
    if machine_id_path.exists():
        components.append(machine_id_path.read_text().strip())

    components.append(str(Path.home()))
    components.append(os.environ.get("USER", os.environ.get("USERNAME", "mirim")))

    key_bytes = hashlib.sha256(":".join(components).encode()).digest()

    # Fernet requires base64-encoded 32-byte key
    return base64.urlsafe_b64encode(key_bytes)


class EncryptedFileStorage(KeyValueStorage):
    """Encrypted on-disk key-value storage.

    Values are kept in a single JSON object encrypted with Fernet
    (AES-128-CBC + HMAC). The encryption key is stored in the OS keyring;
    if no keyring backend is available a machine-derived key is used.
    The file lives in ~/.cache/mirim-oauth/ with 0600 permissions.
    """

    def __init__(self, store_dir: Path | None = None, filename: str = STORAGE_FILE):
        self.store_dir = store_dir or DEFAULT_STORE_DIR
        self.filename = filename
        self._cipher: Fernet | None = None
        self._using_keyring = False

        self._init_storage()
        self._init_encryption()

    @property
    def path(self) -> Path:
        return self.store_dir / self.filename

    def _init_storage(self) -> None:
        """Initialize storage directory with secure permissions."""
        self.store_dir.mkdir(parents=True, exist_ok=True)

        try:
            self.store_dir.chmod(stat.S_IRWXU)
        except OSError as e:
            logger.warning(f"Could not set directory permissions: {e}")

    def _init_encryption(self) -> None:
        """Initialize encryption using keyring or fallback."""
        try:
            key = keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)

            if key is None:
                key = Fernet.generate_key().decode("ascii")
                keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, key)
                logger.debug("Generated new encryption key in keyring")

            self._cipher = Fernet(key.encode("ascii"))
            self._using_keyring = True
            logger.debug("Using keyring for encryption key storage")

        except Exception as e:
            logger.warning(
                f"Keyring not available: {type(e).__name__}: {e}. "
                f"Using fallback encryption (machine-derived key)."
            )
            self._cipher = Fernet(_derive_fallback_key())
            self._using_keyring = False

    def _read(self) -> dict[str, str]:
        """Read and decrypt the storage file.

        Raises:
            StorageCorruptError: If decryption fails or the content is not a JSON object
        """
        if not self.path.exists():
            return {}

        assert self._cipher is not None
        with _file_lock(self.path, exclusive=False):
            encrypted = self.path.read_text()

        try:
            data = json.loads(self._cipher.decrypt(encrypted.encode("ascii")).decode("utf-8"))
        except InvalidToken as e:
            raise StorageCorruptError(
                f"Cannot decrypt {self.path}. The encryption key may have changed. "
                f"Run 'mirim-oauth logout' to clear stored state."
            ) from e
        except (ValueError, UnicodeError) as e:
            raise StorageCorruptError(f"Storage file {self.path} is corrupted") from e

        if not isinstance(data, dict):
            raise StorageCorruptError(f"Storage file {self.path} is corrupted")
        return data

    def _write(self, data: dict[str, str]) -> None:
        assert self._cipher is not None
        encrypted = self._cipher.encrypt(json.dumps(data).encode("utf-8")).decode("ascii")

        with _file_lock(self.path, exclusive=True):
            self.path.write_text(encrypted)
            try:
                self.path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0600
            except OSError as e:
                logger.warning(f"Could not set file permissions: {e}")

    def get_item(self, key: str) -> str | None:
        value = self._read().get(key)
        return value if isinstance(value, str) else None

    def set_item(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)
        logger.debug(f"Stored {key}")

    def remove_item(self, key: str) -> None:
        try:
            data = self._read()
        except StorageCorruptError:
            # Unreadable content cannot be partially cleared
            logger.warning(f"Discarding unreadable storage file {self.path}")
            self.clear()
            return

        if key in data:
            del data[key]
            self._write(data)
            logger.debug(f"Removed {key}")

    def clear(self) -> None:
        """Delete the storage file."""
        if self.path.exists():
            self.path.unlink()

    def is_using_keyring(self) -> bool:
        """Check if keyring is being used for encryption key storage."""
        return self._using_keyring
