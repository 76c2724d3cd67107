import threading

import pytest

from core.errors import DependencyUnavailable, InvalidCredentials, RateLimited
from core.fingerprint import ClientContext
from core.login_guard import LoginAttempt, LoginGuard, LoginPolicy
from core.rate_limiter import SlidingWindowCounter
from core.stores import Account

from conftest import PASSWORD, LaggyCounterStore


def attempt(client, identity="alice@botnev.io", secret=PASSWORD, **kwargs):
    return LoginAttempt(identity_claim=identity, secret=secret, client=client, **kwargs)


def test_successful_login_issues_bound_session(login_guard, sessions, accounts, fingerprints,
                                               client, clock, audit, sleeps):
    result = login_guard.login(attempt(client, identity="  Alice@Botnev.IO "))

    fingerprint = fingerprints.for_client(client)
    assert result.identity == "alice@botnev.io"
    assert result.expires_at == clock.now + 8 * 3600
    assert sessions.verify(result.session_token, fingerprint) == "alice@botnev.io"
    assert accounts.find_by_identity("alice@botnev.io").fingerprint == fingerprint
    assert audit.events[-1].event_type == "login_success"
    assert sleeps == []


def test_remember_me_extends_session(login_guard, client, clock):
    result = login_guard.login(attempt(client, remember_me=True))
    assert result.expires_at == clock.now + 90 * 86400


def test_wrong_password_is_generic_and_delayed(login_guard, client, audit, sleeps):
    with pytest.raises(InvalidCredentials) as excinfo:
        login_guard.login(attempt(client, secret="wrong"))
    assert excinfo.value.reason == "wrong_password"
    assert excinfo.value.to_dict()['error'] == "Invalid credentials"
    assert len(sleeps) == 1
    assert 0.5 <= sleeps[0] <= 1.5
    assert audit.events[-1].event_type == "login_failed"


def test_unknown_account_verifies_dummy_hash(login_guard, hasher, client, monkeypatch):
    seen = []
    original = hasher.verify
    monkeypatch.setattr(hasher, "verify", lambda pw, enc: seen.append(enc) or original(pw, enc))

    with pytest.raises(InvalidCredentials) as excinfo:
        login_guard.login(attempt(client, identity="nobody@botnev.io"))
    assert excinfo.value.reason == "unknown_account"
    assert seen == [hasher.dummy_hash]


def test_unknown_and_wrong_password_look_identical(login_guard, client):
    with pytest.raises(InvalidCredentials) as unknown:
        login_guard.login(attempt(client, identity="nobody@botnev.io"))
    with pytest.raises(InvalidCredentials) as wrong:
        login_guard.login(attempt(client, secret="wrong"))
    assert unknown.value.to_dict() == wrong.value.to_dict()
    assert unknown.value.status_code == wrong.value.status_code


@pytest.mark.parametrize("secret", [PASSWORD, "wrong"])
def test_honeytoken_alerts_regardless_of_password(login_guard, client, audit, secret):
    with pytest.raises(InvalidCredentials) as excinfo:
        login_guard.login(attempt(client, identity="decoy@botnev.io", secret=secret))
    assert excinfo.value.reason == "honeytoken"
    assert len(audit.alerts) == 1
    alert = audit.alerts[0]
    assert alert.event_type == "honeytoken_login"
    assert alert.source_ip == client.ip
    assert alert.details['password_matched'] is (secret == PASSWORD)


def test_unverified_account_cannot_log_in(login_guard, client):
    with pytest.raises(InvalidCredentials) as excinfo:
        login_guard.login(attempt(client, identity="carol@botnev.io"))
    assert excinfo.value.reason == "unverified"


def test_device_mismatch(login_guard, accounts, client):
    login_guard.login(attempt(client))
    other = ClientContext(ip=client.ip, user_agent="curl/8.0", accept_language="en")
    with pytest.raises(InvalidCredentials) as excinfo:
        login_guard.login(attempt(other))
    assert excinfo.value.reason == "device_mismatch"


def test_device_binding_can_be_disabled(accounts, sessions, counter, hasher, fingerprints,
                                        audit, client):
    guard = LoginGuard(accounts, sessions, counter, hasher, fingerprints, audit,
                       policy=LoginPolicy(enforce_device_binding=False), sleep=lambda s: None)
    guard.login(attempt(client))
    other = ClientContext(ip=client.ip, user_agent="curl/8.0", accept_language="en")
    assert guard.login(attempt(other)).identity == "alice@botnev.io"


def test_attempt_window_exhausts_after_five_failures(login_guard, client, captcha, clock):
    for i in range(5):
        with pytest.raises(InvalidCredentials):
            login_guard.login(attempt(client, secret="wrong", captcha_assertion="good-token"))

    with pytest.raises(RateLimited) as excinfo:
        login_guard.login(attempt(client, captcha_assertion="good-token"))
    assert excinfo.value.retry_after == 600
    assert excinfo.value.to_dict()['retry_after'] == 600

    clock.advance(600)
    assert login_guard.login(attempt(client)).identity == "alice@botnev.io"


def test_attempt_window_is_per_ip_and_identity(login_guard, client):
    for _ in range(3):
        with pytest.raises(InvalidCredentials):
            login_guard.login(attempt(client, secret="wrong"))
    other_ip = ClientContext(ip="198.51.100.1", user_agent=client.user_agent,
                             accept_language=client.accept_language)
    # fresh scope: no CAPTCHA demanded
    with pytest.raises(InvalidCredentials) as excinfo:
        login_guard.login(attempt(other_ip, identity="bob@botnev.io", secret="wrong"))
    assert excinfo.value.reason == "wrong_password"


def test_captcha_required_after_three_failures(login_guard, client, captcha):
    for _ in range(3):
        with pytest.raises(InvalidCredentials):
            login_guard.login(attempt(client, secret="wrong"))
    assert captcha.calls == []

    with pytest.raises(InvalidCredentials) as excinfo:
        login_guard.login(attempt(client))
    assert excinfo.value.reason == "captcha_missing"


def test_captcha_invalid_then_valid(login_guard, client, captcha):
    for _ in range(3):
        with pytest.raises(InvalidCredentials):
            login_guard.login(attempt(client, secret="wrong"))

    with pytest.raises(InvalidCredentials) as excinfo:
        login_guard.login(attempt(client, captcha_assertion="forged"))
    assert excinfo.value.reason == "captcha_invalid"

    result = login_guard.login(attempt(client, captcha_assertion="good-token"))
    assert result.identity == "alice@botnev.io"
    assert captcha.calls[-1] == ("good-token", client.ip)


def test_success_resets_attempt_scope(login_guard, client, captcha):
    for _ in range(2):
        with pytest.raises(InvalidCredentials):
            login_guard.login(attempt(client, secret="wrong"))
    login_guard.login(attempt(client))
    for _ in range(2):
        with pytest.raises(InvalidCredentials):
            login_guard.login(attempt(client, secret="wrong"))
    assert captcha.calls == []


def test_captcha_always(accounts, sessions, counter, hasher, fingerprints, audit, captcha, client):
    guard = LoginGuard(accounts, sessions, counter, hasher, fingerprints, audit, captcha=captcha,
                       policy=LoginPolicy(captcha_always=True), sleep=lambda s: None)
    with pytest.raises(InvalidCredentials) as excinfo:
        guard.login(attempt(client))
    assert excinfo.value.reason == "captcha_missing"
    assert guard.login(attempt(client, captcha_assertion="good-token")).identity == "alice@botnev.io"


def test_captcha_required_without_verifier_fails_closed(accounts, sessions, counter, hasher,
                                                        fingerprints, audit, client):
    guard = LoginGuard(accounts, sessions, counter, hasher, fingerprints, audit, captcha=None,
                       policy=LoginPolicy(captcha_always=True), sleep=lambda s: None)
    with pytest.raises(DependencyUnavailable):
        guard.login(attempt(client, captcha_assertion="good-token"))


def test_captcha_outage_fails_closed(accounts, sessions, counter, hasher, fingerprints, audit,
                                     client):
    class DownCaptcha:
        def verify(self, assertion, client_ip=None):
            raise DependencyUnavailable("captcha")

    guard = LoginGuard(accounts, sessions, counter, hasher, fingerprints, audit,
                       captcha=DownCaptcha(), policy=LoginPolicy(captcha_always=True),
                       sleep=lambda s: None)
    with pytest.raises(DependencyUnavailable):
        guard.login(attempt(client, captcha_assertion="good-token"))


def test_policy_from_config():
    policy = LoginPolicy.from_config({
        'LOGIN_MAX_ATTEMPTS': '3',
        'LOGIN_ATTEMPT_WINDOW': 60,
        'SESSION_LIFETIME': 100,
        'LOGIN_ENFORCE_DEVICE_BINDING': False,
    })
    assert policy.max_attempts == 3
    assert policy.attempt_window == 60
    assert policy.session_ttl == 100
    assert policy.enforce_device_binding is False
    assert policy.captcha_after_failures == 3


def test_new_account_has_no_device_to_mismatch(login_guard, accounts, hasher, client):
    accounts.add(Account(identity="dave@botnev.io", password_hash=hasher.hash("pw-dave-123"),
                         verified=True))
    assert login_guard.login(attempt(client, identity="dave@botnev.io",
                                     secret="pw-dave-123")).identity == "dave@botnev.io"


def test_policy_flags_parse_strings():
    policy = LoginPolicy.from_config({
        'LOGIN_ENFORCE_DEVICE_BINDING': 'false',
        'SESSION_BIND_FINGERPRINT': '0',
        'LOGIN_CAPTCHA_ALWAYS': 'yes',
    })
    assert policy.enforce_device_binding is False
    assert policy.bind_session_fingerprint is False
    assert policy.captcha_always is True


def test_parallel_guesses_are_throttled(accounts, sessions, hasher, fingerprints, audit, captcha,
                                        client, clock):
    counter = SlidingWindowCounter(LaggyCounterStore(), clock=clock)
    guard = LoginGuard(accounts, sessions, counter, hasher, fingerprints, audit, captcha=captcha,
                       sleep=lambda seconds: None)
    barrier = threading.Barrier(20)
    reasons = []

    def guess():
        barrier.wait()
        try:
            guard.login(attempt(client, secret="wrong"))
        except (InvalidCredentials, RateLimited) as e:
            reasons.append(e.reason)

    threads = [threading.Thread(target=guess) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(reasons) == 20
    assert reasons.count("wrong_password") == 3
    assert reasons.count("captcha_missing") == 2
    assert reasons.count("login_attempts") == 15
    assert captcha.calls == []


def test_rate_limited_attempt_is_not_counted_again(login_guard, client, clock):
    for _ in range(5):
        with pytest.raises(InvalidCredentials):
            login_guard.login(attempt(client, secret="wrong", captcha_assertion="good-token"))
    clock.advance(300)
    with pytest.raises(RateLimited) as excinfo:
        login_guard.login(attempt(client))
    assert excinfo.value.retry_after == 300
