"""PKCE (Proof Key for Code Exchange) implementation per RFC 7636.

The code verifier binds the authorization code to this client: the
challenge (a SHA256 hash of the verifier) travels with the authorization
request and the verifier itself with the token exchange.
"""

import base64
import hashlib
import secrets
from dataclasses import dataclass
from typing import Callable

# Bytes of entropy behind each verifier and state nonce
VERIFIER_BYTES = 32

CHALLENGE_METHOD = "S256"


@dataclass
class PKCEPair:
    """PKCE code verifier and challenge pair.

    The verifier is a cryptographically random string sent in the token request.
    The challenge is a SHA256 hash of the verifier sent in the authorization request.
    """

    verifier: str
    challenge: str
    method: str = CHALLENGE_METHOD


def _b64url(data: bytes) -> str:
    # Base64URL encode without padding (per RFC 7636)
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


class CodeChallengeGenerator:
    """Produces verifiers, challenges and state nonces.

    The random source and hash are injectable so alternative hosts (and
    tests) can substitute their own. The random source MUST be
    cryptographically secure: a predictable verifier or state defeats
    PKCE and the CSRF check.
    """

    def __init__(
        self,
        random_bytes: Callable[[int], bytes] = secrets.token_bytes,
        hash_function: Callable[[bytes], bytes] = _sha256,
    ):
        self._random_bytes = random_bytes
        self._hash = hash_function

    def new_verifier(self) -> str:
        """Return 32 random bytes, base64url-encoded without padding."""
        return _b64url(self._random_bytes(VERIFIER_BYTES))

    def challenge(self, verifier: str) -> str:
        """Return the S256 challenge for a verifier.

        code_challenge = BASE64URL(SHA256(ASCII(code_verifier)))
        """
        return _b64url(self._hash(verifier.encode("ascii")))

    def new_state(self) -> str:
        """Return a fresh anti-CSRF state nonce."""
        return _b64url(self._random_bytes(VERIFIER_BYTES))

    def new_pair(self) -> PKCEPair:
        verifier = self.new_verifier()
        return PKCEPair(verifier=verifier, challenge=self.challenge(verifier))


_default_generator = CodeChallengeGenerator()


def generate_code_verifier() -> str:
    """Generate a cryptographically random code verifier (43 characters)."""
    return _default_generator.new_verifier()


def generate_code_challenge(verifier: str) -> str:
    """Generate S256 code challenge from verifier."""
    return _default_generator.challenge(verifier)


def generate_pkce_pair() -> PKCEPair:
    """Generate a complete PKCE pair (verifier + challenge)."""
    return _default_generator.new_pair()


def generate_state() -> str:
    """Generate a cryptographically random state parameter."""
    return _default_generator.new_state()
