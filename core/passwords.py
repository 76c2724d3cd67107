# core/passwords.py
"""
PBKDF2 password hashing with constant-time verification.

Encoded form: pbkdf2_sha256$<iterations>$<salt>$<base64 digest>
"""

import base64
import hmac
import secrets
from typing import Optional

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

ALGORITHM = 'pbkdf2_sha256'


class PasswordHasher:

    def __init__(self, iterations: int = 200000):
        self.iterations = iterations
        # verified against when the account does not exist, so the miss path
        # costs the same as a wrong password
        self.dummy_hash = self.hash(secrets.token_urlsafe(24))

    def _derive(self, password: str, salt: str, iterations: int) -> str:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode(),
            iterations=iterations,
            backend=default_backend()
        )
        return base64.b64encode(kdf.derive(password.encode())).decode()

    def hash(self, password: str, salt: Optional[str] = None) -> str:
        """
        Hash password with a fresh salt

        Args:
            password: Plain text password
            salt: Optional salt (generates new if not provided)

        Returns:
            Encoded hash string
        """
        if salt is None:
            salt = secrets.token_hex(16)
        digest = self._derive(password, salt, self.iterations)
        return f"{ALGORITHM}${self.iterations}${salt}${digest}"

    def verify(self, password: str, encoded: str) -> bool:
        """
        Verify password against an encoded hash

        Malformed hashes verify as False rather than raising.
        """
        try:
            algorithm, iterations, salt, expected = encoded.split('$', 3)
            if algorithm != ALGORITHM:
                return False
            computed = self._derive(password, salt, int(iterations))
        except (AttributeError, ValueError):
            return False
        return hmac.compare_digest(expected, computed)
