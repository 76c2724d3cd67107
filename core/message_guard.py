# core/message_guard.py
"""
Send-message policy chain.

Order (first failure wins):
 1. sender session            -> Unauthenticated
 2. sender account verified   -> PolicyRejected(sender_unverified)
 3. structural input          -> ValidationFailed
 4. recipient known, verified -> ValidationFailed(recipient)
 5. blocked by recipient      -> PolicyRejected(blocked)
 6. spam score                -> PolicyRejected(spam)
 7. duplicate body            -> PolicyRejected(duplicate)
 8. short / long / ip windows -> RateLimited
 9. sanitize, store, deliver

Steps 7 and 8 reserve their quota with atomic hits, so parallel sends of one
body or past one window are decided one at a time. When any window is
exhausted the reservations already taken for that request are released.

Spam scoring sees the original text; escaping happens afterwards, right
before storage and delivery. A delivery failure after the message is stored
is a degraded success, never a rejection.
"""

import hashlib
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from email_validator import EmailNotValidError, validate_email

from core.audit import AuditTrail
from core.errors import DependencyUnavailable, PolicyRejected, RateLimited, ValidationFailed
from core.fingerprint import ClientContext, FingerprintDeriver
from core.login_guard import normalize_identity
from core.rate_limiter import SlidingWindowCounter
from core.sanitizer import ContentSanitizer
from core.session_manager import SessionManager
from core.spam_scorer import SpamScorer
from core.stores import AccountStore, BlockStore, MessageStore
from services.mail_transport import SMTPMailTransport

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r'\s+')


@dataclass(frozen=True)
class MessagePolicy:
    max_body_length: int = 5000
    max_subject_length: int = 200

    short_window: int = 1800
    short_limit: int = 30
    long_window: int = 86400
    long_limit: int = 100
    ip_window: int = 1800
    ip_limit: int = 60

    # duplicate suppression shares the short window unless set
    duplicate_window: Optional[int] = None

    @property
    def dedupe_window(self) -> int:
        return self.duplicate_window or self.short_window

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'MessagePolicy':
        duplicate_window = config.get('MESSAGE_DUPLICATE_WINDOW')
        return cls(
            max_body_length=int(config.get('MESSAGE_MAX_BODY_LENGTH', cls.max_body_length)),
            max_subject_length=int(config.get('MESSAGE_MAX_SUBJECT_LENGTH', cls.max_subject_length)),
            short_window=int(config.get('MESSAGE_SHORT_WINDOW', cls.short_window)),
            short_limit=int(config.get('MESSAGE_SHORT_LIMIT', cls.short_limit)),
            long_window=int(config.get('MESSAGE_LONG_WINDOW', cls.long_window)),
            long_limit=int(config.get('MESSAGE_LONG_LIMIT', cls.long_limit)),
            ip_window=int(config.get('MESSAGE_IP_WINDOW', cls.ip_window)),
            ip_limit=int(config.get('MESSAGE_IP_LIMIT', cls.ip_limit)),
            duplicate_window=int(duplicate_window) if duplicate_window else None,
        )


@dataclass(frozen=True)
class MessageAttempt:
    """Transient view of one send attempt"""
    sender: str
    recipient: str
    body_digest: str
    timestamp: float
    spam_score: float


@dataclass(frozen=True)
class SendResult:
    accepted: bool
    delivered: bool
    delivery_status: str
    message_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.accepted,
            'accepted': self.accepted,
            'delivered': self.delivered,
            'delivery_status': self.delivery_status,
        }


def body_digest(body: str) -> str:
    """Digest of the normalised body: case-folded, whitespace collapsed"""
    normalized = _WHITESPACE.sub(' ', (body or '').lower()).strip()
    return hashlib.sha256(normalized.encode('utf-8')).hexdigest()


class MessageGuard:

    def __init__(self, sessions: SessionManager, accounts: AccountStore, blocks: BlockStore,
                 messages: MessageStore, counter: SlidingWindowCounter,
                 fingerprints: FingerprintDeriver, audit: AuditTrail,
                 scorer: Optional[SpamScorer] = None,
                 sanitizer: Optional[ContentSanitizer] = None,
                 transport: Optional[SMTPMailTransport] = None,
                 policy: MessagePolicy = MessagePolicy(),
                 clock: Callable[[], float] = time.time):
        self.sessions = sessions
        self.accounts = accounts
        self.blocks = blocks
        self.messages = messages
        self.counter = counter
        self.fingerprints = fingerprints
        self.audit = audit
        self.scorer = scorer or SpamScorer()
        self.sanitizer = sanitizer or ContentSanitizer()
        self.transport = transport
        self.policy = policy
        self.clock = clock

    def send(self, session_token: Optional[str], client: ClientContext, recipient: str,
             subject: Optional[str], body: str) -> SendResult:
        """
        Run the policy chain and, if every check passes, store and deliver

        Args:
            session_token: Sender's session token
            client: Request attributes for fingerprint and per-ip limits
            recipient: Recipient e-mail address
            subject: Optional subject line
            body: Message body (plain text)

        Returns:
            SendResult; delivered=False with status "pending" when the message
            was stored but the transport failed
        """
        subject = subject or ''
        body = body or ''

        # 1. session
        sender = self.sessions.verify(session_token, self.fingerprints.for_client(client))

        # 2. sender state
        sender_account = self.accounts.find_by_identity(sender)
        if sender_account is None or not sender_account.verified:
            raise PolicyRejected('sender_unverified')

        # 3. structure
        recipient = self._validate(recipient, subject, body)

        # 4. recipient
        recipient_account = self.accounts.find_by_identity(recipient)
        if recipient_account is None or not recipient_account.verified:
            raise ValidationFailed('recipient', "Recipient not found")

        # 5. block list
        if self.blocks.is_blocked(recipient, sender):
            self.audit.record('message_blocked', outcome='rejected', user_id=sender,
                              source_ip=client.ip, recipient=recipient)
            raise PolicyRejected('blocked')

        # 6. spam, on the original text
        report = self.scorer.report(subject, body)
        if self.scorer.is_spam(report.score):
            self.audit.record('message_spam', outcome='rejected', user_id=sender,
                              source_ip=client.ip, score=report.score, reasons=report.reasons)
            raise PolicyRejected('spam', score=report.score)

        attempt = MessageAttempt(
            sender=sender,
            recipient=recipient,
            body_digest=body_digest(body),
            timestamp=self.clock(),
            spam_score=report.score
        )

        # 7. duplicate suppression
        dup_scope = f"dup:{sender}:{attempt.body_digest}"
        if not self.counter.hit(dup_scope, 1, self.policy.dedupe_window).allowed:
            raise PolicyRejected('duplicate')
        reserved = [(dup_scope, self.policy.dedupe_window)]

        # 8. send windows
        exceeded = []
        for scope, limit, window in self._rate_scopes(sender, client.ip):
            status = self.counter.hit(scope, limit, window)
            if status.allowed:
                reserved.append((scope, window))
            else:
                exceeded.append((scope, status.retry_after))
        if exceeded:
            for scope, window in reserved:
                self.counter.release(scope, window)
            retry_after = max(r for _, r in exceeded)
            logger.info(f"Send rate limit for {sender}: {[s for s, _ in exceeded]}")
            raise RateLimited('message_rate', retry_after=retry_after)

        # 9. store and deliver; the quota taken above stays counted
        return self._accept(attempt, subject, body, client)

    def _validate(self, recipient: str, subject: str, body: str) -> str:
        try:
            recipient = validate_email((recipient or '').strip(), check_deliverability=False).normalized
        except EmailNotValidError as e:
            raise ValidationFailed('recipient', str(e)) from None

        if not body.strip():
            raise ValidationFailed('body', "Message body is required")
        if len(body) > self.policy.max_body_length:
            raise ValidationFailed('body', f"Message body exceeds {self.policy.max_body_length} characters")
        if len(subject) > self.policy.max_subject_length:
            raise ValidationFailed('subject', f"Subject exceeds {self.policy.max_subject_length} characters")
        return normalize_identity(recipient)

    def _rate_scopes(self, sender: str, client_ip: Optional[str]) -> List[Tuple[str, int, int]]:
        policy = self.policy
        scopes = [
            (f"msg:short:{sender}", policy.short_limit, policy.short_window),
            (f"msg:long:{sender}", policy.long_limit, policy.long_window),
        ]
        if client_ip:
            scopes.append((f"msg:ip:{client_ip}", policy.ip_limit, policy.ip_window))
        return scopes

    def _accept(self, attempt: MessageAttempt, subject: str, body: str,
                client: ClientContext) -> SendResult:
        clean_subject = self.sanitizer.clean(subject)
        clean_body = self.sanitizer.clean(body)

        message_id = self.messages.insert(
            attempt.sender,
            attempt.recipient,
            clean_subject,
            clean_body,
            attempt.body_digest,
            attempt.spam_score,
            client.ip or None,
            attempt.timestamp
        )
        self.audit.record('message_accepted', outcome='success', user_id=attempt.sender,
                          source_ip=client.ip, recipient=attempt.recipient, message_id=message_id)

        delivered = self._deliver(attempt, clean_subject, clean_body)
        status = 'sent' if delivered else 'pending'
        try:
            self.messages.mark_delivery(message_id, status)
        except DependencyUnavailable:
            logger.warning(f"Could not record delivery status for message {message_id}")
        return SendResult(accepted=True, delivered=delivered, delivery_status=status,
                          message_id=message_id)

    def _deliver(self, attempt: MessageAttempt, subject: str, body: str) -> bool:
        if self.transport is None:
            return False
        try:
            delivered = self.transport.deliver(
                attempt.recipient,
                subject or 'New message',
                body,
                html=self.sanitizer.to_html(body),
                reply_to=attempt.sender
            )
        except DependencyUnavailable as e:
            logger.warning(f"Delivery to {attempt.recipient} deferred: {e.reason}")
            delivered = False
        if not delivered:
            self.audit.record('delivery_failed', outcome='pending', user_id=attempt.sender,
                              recipient=attempt.recipient)
        return delivered
