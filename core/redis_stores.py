# core/redis_stores.py
"""
Redis session backing for multi-instance deployments.

Records live under session:<token> as JSON with a TTL matching expires_at,
so redis performs the expiry sweep itself.
"""

import json
import logging
import math
import time

import redis

from core.errors import DependencyUnavailable
from core.stores import Session, SessionStore

logger = logging.getLogger(__name__)


class RedisSessionStore(SessionStore):

    def __init__(self, redis_client: redis.Redis, prefix: str = 'session'):
        self.redis_client = redis_client
        self.prefix = prefix

    def _key(self, token: str) -> str:
        return f"{self.prefix}:{token}"

    def create(self, identity, token, expires_at, fingerprint=None, issued_at=None):
        issued_at = issued_at if issued_at is not None else time.time()
        record = Session(token=token, identity=identity, issued_at=issued_at,
                         expires_at=expires_at, fingerprint=fingerprint)
        ttl = max(1, math.ceil(expires_at - issued_at))
        try:
            self.redis_client.setex(self._key(token), ttl, json.dumps({
                'identity': identity,
                'issued_at': issued_at,
                'expires_at': expires_at,
                'fingerprint': fingerprint
            }))
        except redis.RedisError as e:
            logger.error(f"Session create failed: {str(e)}")
            raise DependencyUnavailable("session_store") from e
        return record

    def find(self, token):
        try:
            raw = self.redis_client.get(self._key(token))
        except redis.RedisError as e:
            logger.error(f"Session lookup failed: {str(e)}")
            raise DependencyUnavailable("session_store") from e
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return Session(
                token=token,
                identity=data['identity'],
                issued_at=float(data['issued_at']),
                expires_at=float(data['expires_at']),
                fingerprint=data.get('fingerprint')
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            # unreadable record: treated as no session
            logger.warning(f"Discarding malformed session record: {type(e).__name__}")
            return None

    def delete_expired(self, before):
        # key TTLs already remove expired sessions
        return 0
