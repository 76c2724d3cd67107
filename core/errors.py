# core/errors.py
"""
Error kinds raised by the session and messaging guards.

Every guard failure is a GuardError subclass. The HTTP layer turns them into
JSON bodies with to_dict(); the internal `reason` is only ever logged.
"""

from typing import Any, Dict, Optional


class GuardError(Exception):
    """Base exception for guard operations"""

    kind = "error"
    status_code = 500
    public_message = "Request failed"
    expose_reason = False

    def __init__(self, reason: Optional[str] = None, **details: Any):
        self.reason = reason
        self.details = details
        super().__init__(reason or self.public_message)

    def to_dict(self) -> Dict[str, Any]:
        body = {
            'success': False,
            'kind': self.kind,
            'error': self.public_message,
        }
        if self.expose_reason and self.reason:
            body['reason'] = self.reason
        return body


class Unauthenticated(GuardError):
    """No session, or an invalid, expired or mismatched one"""

    kind = "unauthenticated"
    status_code = 401
    public_message = "Not authenticated"


class InvalidCredentials(GuardError):
    """Login failure; deliberately undifferentiated"""

    kind = "invalid_credentials"
    status_code = 401
    public_message = "Invalid credentials"


class RateLimited(GuardError):
    """A login-attempt or message-send window is exhausted"""

    kind = "rate_limited"
    status_code = 429
    public_message = "Rate limit exceeded"
    expose_reason = True

    def __init__(self, reason: Optional[str] = None, retry_after: int = 0, **details: Any):
        super().__init__(reason, **details)
        self.retry_after = max(0, int(retry_after))

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body['retry_after'] = self.retry_after
        return body


class ValidationFailed(GuardError):
    """Malformed input"""

    kind = "validation_failed"
    status_code = 400
    public_message = "Invalid input"

    def __init__(self, field: str, message: str, **details: Any):
        super().__init__(f"{field}: {message}", **details)
        self.field = field
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body['field'] = self.field
        body['error'] = self.message
        return body


class PolicyRejected(GuardError):
    """Spam score, duplicate, blocked-by-recipient or unverified sender"""

    kind = "policy_rejected"
    status_code = 403
    public_message = "Message rejected"
    expose_reason = True

    MESSAGES = {
        'spam': "Message flagged as spam",
        'duplicate': "Duplicate message",
        'blocked': "Recipient is not accepting messages from you",
        'sender_unverified': "Account not verified",
    }

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body['error'] = self.MESSAGES.get(self.reason, self.public_message)
        return body


class DependencyUnavailable(GuardError):
    """External store, CAPTCHA verifier or mail transport failed or timed out"""

    kind = "dependency_unavailable"
    status_code = 503
    public_message = "Service temporarily unavailable"


class DecryptFailure(Exception):
    """Token could not be decrypted. Carries no detail about why."""

    def __init__(self):
        super().__init__("token could not be decrypted")
