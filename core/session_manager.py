# core/session_manager.py
"""
Session issuing and verification.

Lifecycle: Issued -> Active -> (Expired | Invalidated). A session is valid
while now < expires_at and, when it was bound to a fingerprint, only for
requests presenting exactly that fingerprint. A mismatch is rejected; the
binding is never updated.
"""

import logging
import time
from enum import Enum
from typing import Callable, Optional

from core.crypto_box import CryptoBox
from core.errors import DecryptFailure, Unauthenticated
from core.stores import Session, SessionStore

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = 8 * 3600


class VerifyFailure(Enum):
    """Internal reasons for rejecting a session (logged, never returned)"""
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    FINGERPRINT_MISMATCH = "fingerprint_mismatch"


class SessionManager:

    def __init__(self, store: SessionStore, crypto_box: CryptoBox,
                 default_ttl: float = DEFAULT_SESSION_TTL,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.crypto_box = crypto_box
        self.default_ttl = default_ttl
        self.clock = clock

    def issue(self, identity: str, ttl: Optional[float] = None,
              fingerprint: Optional[str] = None) -> Session:
        """
        Issue a session for an authenticated identity

        Args:
            identity: Subject identity
            ttl: Lifetime in seconds (default_ttl when omitted)
            fingerprint: Device fingerprint to bind, or None for an unbound session

        Returns:
            The persisted Session; its token goes back to the client
        """
        now = self.clock()
        token = self.crypto_box.encrypt_identity(identity)
        session = self.store.create(
            identity,
            token,
            now + (ttl if ttl is not None else self.default_ttl),
            fingerprint=fingerprint,
            issued_at=now
        )
        logger.info(f"Session issued for {identity} (bound={fingerprint is not None})")
        return session

    def verify(self, token: Optional[str], fingerprint: Optional[str]) -> str:
        """
        Resolve a session token to its identity

        Raises:
            Unauthenticated: with a VerifyFailure value as the internal reason
        """
        if not token:
            self._reject(VerifyFailure.NOT_FOUND, "empty token")

        try:
            claimed = self.crypto_box.decrypt_identity(token)
        except DecryptFailure:
            self._reject(VerifyFailure.NOT_FOUND, "undecryptable token")

        session = self.store.find(token)
        if session is None or session.identity != claimed:
            self._reject(VerifyFailure.NOT_FOUND, "no session record")

        if session.is_expired(self.clock()):
            self._reject(VerifyFailure.EXPIRED, f"session for {session.identity} expired")

        if session.fingerprint is not None and session.fingerprint != fingerprint:
            self._reject(VerifyFailure.FINGERPRINT_MISMATCH,
                         f"fingerprint mismatch for {session.identity}")

        return session.identity

    def sweep_expired(self) -> int:
        removed = self.store.delete_expired(self.clock())
        if removed:
            logger.info(f"Removed {removed} expired sessions")
        return removed

    def _reject(self, failure: VerifyFailure, detail: str):
        logger.warning(f"Session rejected ({failure.value}): {detail}")
        raise Unauthenticated(failure.value)
