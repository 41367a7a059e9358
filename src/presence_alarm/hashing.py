"""One-way secret hashing with scrypt and constant-time verification."""

from __future__ import annotations

import base64
import os

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

SCHEME = "scrypt"


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class SecretHasher:
    """Derives and verifies scrypt hashes of plaintext secrets.

    Encoded form: ``scrypt$<n>$<r>$<p>$<salt>$<key>`` with url-safe base64
    salt and key, so cost parameters travel with each stored hash.
    """

    def __init__(
        self,
        n: int = 2**14,
        r: int = 8,
        p: int = 1,
        salt_bytes: int = 16,
        key_length: int = 32,
    ) -> None:
        self._n = n
        self._r = r
        self._p = p
        self._salt_bytes = salt_bytes
        self._key_length = key_length

    def hash(self, secret: str) -> str:
        """Return the encoded hash of *secret* under a fresh random salt."""
        salt = os.urandom(self._salt_bytes)
        kdf = Scrypt(salt=salt, length=self._key_length, n=self._n, r=self._r, p=self._p)
        key = kdf.derive(secret.encode())
        return "$".join(
            [SCHEME, str(self._n), str(self._r), str(self._p), _b64encode(salt), _b64encode(key)]
        )

    def verify(self, secret: str, encoded: str) -> bool:
        """Return True if *secret* matches *encoded*.

        Malformed encodings and unencodable secrets verify as False
        rather than raising.
        """
        try:
            raw = secret.encode()
            scheme, n, r, p, salt_b64, key_b64 = encoded.split("$")
            if scheme != SCHEME:
                return False
            salt = _b64decode(salt_b64)
            key = _b64decode(key_b64)
            if not salt or not key:
                return False
            kdf = Scrypt(salt=salt, length=len(key), n=int(n), r=int(r), p=int(p))
        except ValueError:
            return False

        try:
            # Scrypt.verify compares in constant time
            kdf.verify(raw, key)
        except InvalidKey:
            return False
        return True
