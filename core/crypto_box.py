# core/crypto_box.py
"""
Authenticated encryption of session identities.

Tokens are AES-256-GCM ciphertexts of the subject identity. The key is derived
once from the long-term SESSION_SECRET with PBKDF2 and cached for the lifetime
of the CryptoBox (one per process). Token layout, URL-safe base64 without
padding:

    nonce (12 bytes) || ciphertext || tag (16 bytes)
"""

import base64
import binascii
import logging
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from core.errors import DecryptFailure

logger = logging.getLogger(__name__)

KDF_SALT = b'botnev_session_salt'
NONCE_SIZE = 12
TAG_SIZE = 16


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b'=').decode('ascii')


def _b64decode(token: str) -> bytes:
    padded = token + '=' * (-len(token) % 4)
    raw = base64.urlsafe_b64decode(padded.encode('ascii'))
    # reject non-canonical encodings (stray padding bits, '=' inside the token)
    if _b64encode(raw) != token:
        raise ValueError("non-canonical token encoding")
    return raw


class CryptoBox:
    """
    Encrypts and decrypts opaque session identifiers
    """

    def __init__(self, secret: str, iterations: int = 100000):
        """
        Derive and cache the symmetric key

        Args:
            secret: Long-term secret (SESSION_SECRET)
            iterations: PBKDF2 iteration count
        """
        if not secret:
            raise ValueError("CryptoBox requires a non-empty secret")

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=KDF_SALT,
            iterations=iterations,
            backend=default_backend()
        )
        self._aead = AESGCM(kdf.derive(secret.encode('utf-8')))
        logger.info("Session encryption key derived")

    def encrypt_identity(self, identity: str) -> str:
        """
        Encrypt an identity into an opaque token

        Args:
            identity: Plain text subject identity

        Returns:
            URL-safe token carrying nonce, ciphertext and tag
        """
        nonce = secrets.token_bytes(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, identity.encode('utf-8'), None)
        return _b64encode(nonce + sealed)

    def decrypt_identity(self, token: str) -> str:
        """
        Decrypt a token produced by encrypt_identity

        Raises:
            DecryptFailure: for any tampered, foreign or malformed token
        """
        try:
            raw = _b64decode(token)
            if len(raw) < NONCE_SIZE + TAG_SIZE:
                raise ValueError("token too short")
            plaintext = self._aead.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], None)
            return plaintext.decode('utf-8')
        except (InvalidTag, ValueError, TypeError, binascii.Error, UnicodeError):
            raise DecryptFailure() from None
