import json
from unittest.mock import MagicMock

import pytest
import redis

from core.audit import AuditTrail
from core.errors import DependencyUnavailable, Unauthenticated
from core.redis_stores import RedisSessionStore
from core.session_manager import SessionManager


def test_session_create_sets_ttl_to_lifetime():
    client = MagicMock()
    RedisSessionStore(client).create("alice@botnev.io", "tok", 1000.5, fingerprint="fp",
                                     issued_at=100.0)
    key, ttl, value = client.setex.call_args[0]
    assert key == "session:tok"
    assert ttl == 901
    assert json.loads(value)['identity'] == "alice@botnev.io"


def test_session_find():
    client = MagicMock()
    client.get.return_value = json.dumps({
        'identity': 'alice@botnev.io', 'issued_at': 1.0, 'expires_at': 2.0, 'fingerprint': None
    })
    session = RedisSessionStore(client).find("tok")
    assert session.token == "tok"
    assert session.identity == "alice@botnev.io"
    assert session.fingerprint is None

    client.get.return_value = None
    assert RedisSessionStore(client).find("tok") is None


@pytest.mark.parametrize("raw", [
    "not json",
    json.dumps(["alice@botnev.io"]),
    json.dumps({"identity": "alice@botnev.io"}),
    json.dumps({"identity": "alice@botnev.io", "issued_at": "soon", "expires_at": 2.0}),
])
def test_malformed_session_record_is_no_session(raw, crypto_box):
    client = MagicMock()
    client.get.return_value = raw
    assert RedisSessionStore(client).find("tok") is None

    token = crypto_box.encrypt_identity("alice@botnev.io")
    manager = SessionManager(RedisSessionStore(client), crypto_box)
    with pytest.raises(Unauthenticated) as excinfo:
        manager.verify(token, None)
    assert excinfo.value.reason == "not_found"


def test_session_store_outage():
    client = MagicMock()
    client.get.side_effect = redis.ConnectionError("down")
    with pytest.raises(DependencyUnavailable):
        RedisSessionStore(client).find("tok")


def test_audit_entries_kept_for_retention_period():
    client = MagicMock()
    trail = AuditTrail(client, retention_days=30)
    trail.record("login_failed", outcome="invalid_credentials", user_id="alice@botnev.io")
    trail.alert("honeytoken_login", user_id="decoy@botnev.io")

    (record_key, record_ttl, _), (alert_key, _, alert_value) = [
        c[0] for c in client.setex.call_args_list
    ]
    assert record_key.startswith("audit_log:") and record_key.endswith(":login_failed")
    assert record_ttl == 30 * 86400
    assert alert_key.startswith("security_alert:")
    assert json.loads(alert_value)['outcome'] == "alert"


def test_audit_survives_redis_outage():
    client = MagicMock()
    client.setex.side_effect = redis.ConnectionError("down")
    entry = AuditTrail(client).record("login_success", user_id="alice@botnev.io")
    assert entry.event_type == "login_success"
