# core/audit.py
"""
Security audit trail for the login and messaging guards.

Events are always written to the `audit` logger as JSON. When a redis client
is configured they are also kept in redis for the retention period, the same
way the dashboard reads them back. Alerts (honeytoken hits) go to a separate
key space and are logged at CRITICAL.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger('audit')


@dataclass
class SecurityAuditLog:
    """Security audit log entry"""
    timestamp: str
    event_type: str
    outcome: str
    user_id: Optional[str] = None
    source_ip: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class AuditTrail:

    def __init__(self, redis_client: Optional[redis.Redis] = None, retention_days: int = 90):
        self.redis_client = redis_client
        self.retention_days = retention_days

    def record(self, event_type: str, outcome: str = 'logged', user_id: Optional[str] = None,
               source_ip: Optional[str] = None, **details: Any) -> SecurityAuditLog:
        """
        Log security event for audit trail

        Args:
            event_type: Type of security event
            outcome: Result of the audited operation
            user_id: Subject identity, when known
            source_ip: Client address, when known
            details: Additional event details
        """
        entry = self._entry(event_type, outcome, user_id, source_ip, details)
        audit_logger.info(json.dumps(asdict(entry)))
        self._store('audit_log', entry)
        return entry

    def alert(self, event_type: str, user_id: Optional[str] = None,
              source_ip: Optional[str] = None, **details: Any) -> SecurityAuditLog:
        """Raise a security alert (side-channel signal, never shown to the client)"""
        entry = self._entry(event_type, 'alert', user_id, source_ip, details)
        audit_logger.critical(json.dumps(asdict(entry)))
        self._store('security_alert', entry)
        return entry

    def _entry(self, event_type, outcome, user_id, source_ip, details) -> SecurityAuditLog:
        return SecurityAuditLog(
            timestamp=datetime.now(timezone.utc).isoformat(),
            event_type=event_type,
            outcome=outcome,
            user_id=user_id,
            source_ip=source_ip,
            details=details
        )

    def _store(self, prefix: str, entry: SecurityAuditLog) -> None:
        if self.redis_client is None:
            return
        try:
            self.redis_client.setex(
                f"{prefix}:{entry.timestamp}:{entry.event_type}",
                86400 * self.retention_days,
                json.dumps(asdict(entry))
            )
        except redis.RedisError as e:
            # the log line above is the record of last resort
            logger.error(f"Failed to store audit entry {entry.event_type}: {str(e)}")
