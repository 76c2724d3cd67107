import time

import pytest

from core.audit import AuditTrail
from core.crypto_box import CryptoBox
from core.fingerprint import ClientContext, FingerprintDeriver
from core.login_guard import LoginGuard, LoginPolicy
from core.message_guard import MessageGuard, MessagePolicy
from core.passwords import PasswordHasher
from core.rate_limiter import MemoryCounterStore, SlidingWindowCounter
from core.session_manager import SessionManager
from core.stores import (
    Account, MemoryAccountStore, MemoryBlockStore, MemoryMessageStore, MemorySessionStore
)

PASSWORD = "Correct-Horse-Battery-Staple-2024!!9"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class LaggyCounterStore(MemoryCounterStore):
    """Memory counters with a store round trip's worth of latency per call"""

    def __init__(self, latency=0.05):
        super().__init__()
        self.latency = latency

    def current(self, scope_key, duration, now):
        time.sleep(self.latency)
        return super().current(scope_key, duration, now)

    def hit(self, scope_key, limit, duration, now):
        time.sleep(self.latency)
        return super().hit(scope_key, limit, duration, now)


class FakeCaptcha:
    def __init__(self, valid_token="good-token"):
        self.valid_token = valid_token
        self.calls = []

    def verify(self, assertion, client_ip=None):
        self.calls.append((assertion, client_ip))
        return assertion == self.valid_token


class FakeTransport:
    def __init__(self, result=True, exc=None):
        self.result = result
        self.exc = exc
        self.sent = []

    def deliver(self, to, subject, text, html=None, reply_to=None):
        self.sent.append({'to': to, 'subject': subject, 'text': text, 'html': html,
                          'reply_to': reply_to})
        if self.exc is not None:
            raise self.exc
        return self.result


class RecordingAudit(AuditTrail):
    def __init__(self):
        super().__init__(redis_client=None)
        self.events = []
        self.alerts = []

    def record(self, event_type, outcome='logged', user_id=None, source_ip=None, **details):
        entry = super().record(event_type, outcome, user_id, source_ip, **details)
        self.events.append(entry)
        return entry

    def alert(self, event_type, user_id=None, source_ip=None, **details):
        entry = super().alert(event_type, user_id, source_ip, **details)
        self.alerts.append(entry)
        return entry


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture(scope="session")
def hasher():
    return PasswordHasher(iterations=1000)


@pytest.fixture(scope="session")
def crypto_box():
    return CryptoBox("test-session-secret", iterations=1000)


@pytest.fixture()
def fingerprints():
    return FingerprintDeriver()


@pytest.fixture()
def client():
    return ClientContext(ip="203.0.113.7", user_agent="Mozilla/5.0 (X11; Linux)",
                         accept_language="en-US,en;q=0.9")


@pytest.fixture()
def counter(clock):
    return SlidingWindowCounter(MemoryCounterStore(), clock=clock)


@pytest.fixture()
def session_store():
    return MemorySessionStore()


@pytest.fixture()
def sessions(session_store, crypto_box, clock):
    return SessionManager(session_store, crypto_box, clock=clock)


@pytest.fixture()
def audit():
    return RecordingAudit()


@pytest.fixture()
def accounts(hasher):
    store = MemoryAccountStore()
    password_hash = hasher.hash(PASSWORD)
    store.add(Account(identity="alice@botnev.io", password_hash=password_hash, verified=True))
    store.add(Account(identity="bob@botnev.io", password_hash=password_hash, verified=True))
    store.add(Account(identity="carol@botnev.io", password_hash=password_hash, verified=False))
    store.add(Account(identity="decoy@botnev.io", password_hash=password_hash, verified=True,
                      honeytoken=True))
    return store


@pytest.fixture()
def captcha():
    return FakeCaptcha()


@pytest.fixture()
def sleeps():
    return []


@pytest.fixture()
def login_guard(accounts, sessions, counter, hasher, fingerprints, audit, captcha, sleeps):
    return LoginGuard(accounts, sessions, counter, hasher, fingerprints, audit,
                      captcha=captcha, policy=LoginPolicy(), sleep=sleeps.append)


@pytest.fixture()
def blocks():
    return MemoryBlockStore()


@pytest.fixture()
def message_store():
    return MemoryMessageStore()


@pytest.fixture()
def transport():
    return FakeTransport()


@pytest.fixture()
def message_guard(sessions, accounts, blocks, message_store, counter, fingerprints, audit,
                  transport, clock):
    return MessageGuard(sessions, accounts, blocks, message_store, counter, fingerprints, audit,
                        transport=transport, policy=MessagePolicy(), clock=clock)
