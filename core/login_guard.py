# core/login_guard.py
"""
Login policy chain.

Checks run in a fixed order and stop at the first failure:

1. reserve an attempt in the (client ip, identity) window
2. CAPTCHA, when the policy or the earlier attempts require one
3. account lookup (a missing account is verified against a dummy hash)
4. password verification
5. honeytoken, unverified account, device binding
6. issue the session and record the fingerprint

Every failure sleeps for a uniform random delay before raising, so response
timing does not tell the caller which step rejected it. The client only ever
sees "Invalid credentials"; the audit trail records the real reason.

The attempt is counted before any credential work runs, so parallel guesses
against one scope are throttled and see the CAPTCHA requirement in order.
Only a successful login clears the scope.
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from config.security import as_bool
from core.audit import AuditTrail
from core.errors import DependencyUnavailable, GuardError, InvalidCredentials, RateLimited
from core.fingerprint import ClientContext, FingerprintDeriver
from core.passwords import PasswordHasher
from core.rate_limiter import SlidingWindowCounter
from core.session_manager import SessionManager
from core.stores import AccountStore
from services.captcha import CaptchaVerifier

logger = logging.getLogger(__name__)

_random = secrets.SystemRandom()


@dataclass(frozen=True)
class LoginPolicy:
    # Attempt window (by failed attempts per client ip + identity)
    max_attempts: int = 5
    attempt_window: int = 600
    captcha_after_failures: int = 3     # CAPTCHA required from this many earlier attempts on
    captcha_always: bool = False

    # Failure delay bounds, seconds
    min_delay: float = 0.5
    max_delay: float = 1.5

    # Session lifetimes, seconds
    session_ttl: int = 8 * 3600
    remember_me_ttl: int = 90 * 86400
    bind_session_fingerprint: bool = True
    enforce_device_binding: bool = True

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'LoginPolicy':
        return cls(
            max_attempts=int(config.get('LOGIN_MAX_ATTEMPTS', cls.max_attempts)),
            attempt_window=int(config.get('LOGIN_ATTEMPT_WINDOW', cls.attempt_window)),
            captcha_after_failures=int(config.get('LOGIN_CAPTCHA_AFTER_FAILURES', cls.captcha_after_failures)),
            captcha_always=as_bool(config.get('LOGIN_CAPTCHA_ALWAYS', cls.captcha_always)),
            min_delay=float(config.get('LOGIN_MIN_DELAY', cls.min_delay)),
            max_delay=float(config.get('LOGIN_MAX_DELAY', cls.max_delay)),
            session_ttl=int(config.get('SESSION_LIFETIME', cls.session_ttl)),
            remember_me_ttl=int(config.get('REMEMBER_ME_LIFETIME', cls.remember_me_ttl)),
            bind_session_fingerprint=as_bool(config.get('SESSION_BIND_FINGERPRINT', cls.bind_session_fingerprint)),
            enforce_device_binding=as_bool(config.get('LOGIN_ENFORCE_DEVICE_BINDING', cls.enforce_device_binding)),
        )


@dataclass(frozen=True)
class LoginAttempt:
    identity_claim: str
    secret: str
    captcha_assertion: Optional[str] = None
    client: ClientContext = field(default_factory=ClientContext)
    remember_me: bool = False


@dataclass(frozen=True)
class LoginResult:
    session_token: str
    identity: str
    expires_at: float


def normalize_identity(identity: Optional[str]) -> str:
    return (identity or '').strip().lower()


class LoginGuard:

    def __init__(self, accounts: AccountStore, sessions: SessionManager,
                 counter: SlidingWindowCounter, hasher: PasswordHasher,
                 fingerprints: FingerprintDeriver, audit: AuditTrail,
                 captcha: Optional[CaptchaVerifier] = None,
                 policy: LoginPolicy = LoginPolicy(),
                 sleep: Callable[[float], None] = time.sleep):
        self.accounts = accounts
        self.sessions = sessions
        self.counter = counter
        self.hasher = hasher
        self.fingerprints = fingerprints
        self.audit = audit
        self.captcha = captcha
        self.policy = policy
        self.sleep = sleep

    @staticmethod
    def scope_key(client_ip: str, identity: str) -> str:
        return f"login:{client_ip or 'unknown'}:{identity}"

    def login(self, attempt: LoginAttempt) -> LoginResult:
        """
        Authenticate a login attempt and issue a session

        Args:
            attempt: Credentials, optional CAPTCHA token and client context

        Returns:
            LoginResult with the new session token

        Raises:
            RateLimited: attempt window exhausted
            InvalidCredentials: any credential, CAPTCHA or account-state failure
            DependencyUnavailable: CAPTCHA verifier or account store unavailable
        """
        identity = normalize_identity(attempt.identity_claim)
        client = attempt.client
        scope = self.scope_key(client.ip, identity)
        fingerprint = self.fingerprints.for_client(client)

        try:
            return self._run_chain(attempt, identity, scope, fingerprint)
        except GuardError as e:
            self.audit.record('login_failed', outcome=e.kind, user_id=identity,
                              source_ip=client.ip, reason=e.reason)
            self._delay()
            raise

    def _run_chain(self, attempt: LoginAttempt, identity: str, scope: str,
                   fingerprint: str) -> LoginResult:
        policy = self.policy
        client = attempt.client

        # 1. attempt window, counted whatever the outcome
        status = self.counter.hit(scope, policy.max_attempts, policy.attempt_window)
        if not status.allowed:
            raise RateLimited('login_attempts', retry_after=status.retry_after)
        earlier_attempts = status.count - 1

        # 2. CAPTCHA
        if policy.captcha_always or earlier_attempts >= policy.captcha_after_failures:
            if not attempt.captcha_assertion:
                self._fail('captcha_missing')
            if self.captcha is None:
                raise DependencyUnavailable('captcha_not_configured')
            if not self.captcha.verify(attempt.captcha_assertion, client.ip):
                self._fail('captcha_invalid')

        # 3. account lookup
        account = self.accounts.find_by_identity(identity) if identity else None
        if account is None:
            self.hasher.verify(attempt.secret or '', self.hasher.dummy_hash)
            self._fail('unknown_account')

        # 4. password
        password_ok = self.hasher.verify(attempt.secret or '', account.password_hash)

        # 5. account state
        if account.honeytoken:
            self.audit.alert('honeytoken_login', user_id=identity, source_ip=client.ip,
                             password_matched=password_ok, fingerprint=fingerprint,
                             user_agent=client.user_agent)
            self._fail('honeytoken')
        if not password_ok:
            self._fail('wrong_password')
        if not account.verified:
            self._fail('unverified')
        if (policy.enforce_device_binding and account.fingerprint
                and account.fingerprint != fingerprint):
            self._fail('device_mismatch')

        # 6. success
        ttl = policy.remember_me_ttl if attempt.remember_me else policy.session_ttl
        session = self.sessions.issue(
            identity,
            ttl=ttl,
            fingerprint=fingerprint if policy.bind_session_fingerprint else None
        )
        self.accounts.update_fingerprint(identity, fingerprint)
        self.counter.reset(scope)

        self.audit.record('login_success', outcome='success', user_id=identity,
                          source_ip=client.ip, remember_me=attempt.remember_me)
        return LoginResult(session_token=session.token, identity=identity,
                           expires_at=session.expires_at)

    def _fail(self, reason: str):
        # the attempt was already counted in step 1
        raise InvalidCredentials(reason)

    def _delay(self) -> None:
        self.sleep(_random.uniform(self.policy.min_delay, self.policy.max_delay))
