import threading
from unittest.mock import MagicMock

import pytest
import redis

from core.errors import DependencyUnavailable
from core.rate_limiter import MemoryCounterStore, RedisCounterStore, SlidingWindowCounter

from conftest import LaggyCounterStore


def test_allows_until_limit_then_blocks(counter):
    for _ in range(5):
        assert counter.check("login:1.2.3.4:alice", 5, 600).allowed
        counter.increment("login:1.2.3.4:alice", 600)

    status = counter.check("login:1.2.3.4:alice", 5, 600)
    assert not status.allowed
    assert status.count == 5
    assert status.remaining == 0
    assert status.retry_after == 600


def test_check_does_not_consume(counter):
    for _ in range(10):
        status = counter.check("scope", 1, 60)
    assert status.allowed
    assert status.count == 0


def test_retry_after_counts_down(counter, clock):
    counter.increment("scope", 600)
    clock.advance(200)
    status = counter.check("scope", 1, 600)
    assert not status.allowed
    assert status.retry_after == 400


def test_window_resets_exactly_at_duration(counter, clock):
    counter.increment("scope", 600)
    clock.advance(599.9)
    assert not counter.check("scope", 1, 600).allowed
    clock.advance(0.1)
    status = counter.check("scope", 1, 600)
    assert status.allowed
    assert status.count == 0


def test_reset_clears_scope(counter):
    counter.increment("scope", 600)
    counter.reset("scope")
    assert counter.check("scope", 1, 600).allowed


def test_scopes_are_independent(counter):
    counter.increment("login:1.1.1.1:alice", 600)
    assert counter.check("login:1.1.1.1:bob", 1, 600).allowed
    assert counter.check("login:2.2.2.2:alice", 1, 600).allowed


def test_sweep_removes_only_expired(counter, clock):
    counter.increment("old", 60)
    clock.advance(30)
    counter.increment("fresh", 60)
    clock.advance(31)
    assert counter.sweep() == 1
    assert counter.check("fresh", 1, 60).count == 1


def test_hit_reserves_until_limit(counter):
    first = counter.hit("scope", 2, 600)
    assert first.allowed and first.count == 1
    assert counter.hit("scope", 2, 600).count == 2

    refused = counter.hit("scope", 2, 600)
    assert not refused.allowed
    assert refused.count == 2
    assert refused.retry_after == 600
    assert counter.check("scope", 2, 600).count == 2


def test_release_hands_back_one_event(counter):
    counter.hit("scope", 1, 600)
    counter.release("scope", 600)
    assert counter.hit("scope", 1, 600).allowed


def test_release_never_goes_negative(counter):
    counter.release("never-hit", 600)
    counter.hit("scope", 1, 600)
    counter.release("scope", 600)
    counter.release("scope", 600)
    assert counter.check("scope", 1, 600).count == 0


def test_checking_unknown_scopes_leaves_no_windows(counter, clock):
    for i in range(100):
        assert counter.check(f"login:10.0.0.1:user{i}@botnev.io", 5, 600).allowed
    clock.advance(601)
    assert counter.sweep() == 0


def test_parallel_hits_never_exceed_limit():
    counter = SlidingWindowCounter(LaggyCounterStore(latency=0.01), clock=lambda: 1000.0)
    barrier = threading.Barrier(16)
    granted = []

    def reserve():
        barrier.wait()
        granted.append(counter.hit("shared", 5, 60).allowed)

    threads = [threading.Thread(target=reserve) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert granted.count(True) == 5
    assert counter.check("shared", 5, 60).count == 5


def test_concurrent_increments_are_not_lost():
    store = MemoryCounterStore(stripes=4)
    counter = SlidingWindowCounter(store, clock=lambda: 1000.0)
    threads = [
        threading.Thread(target=lambda: [counter.increment("shared", 60) for _ in range(200)])
        for _ in range(8)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert counter.check("shared", 10000, 60).count == 1600


class TestRedisCounterStore:

    def _client(self, results):
        client = MagicMock()
        pipe = MagicMock()
        pipe.execute.return_value = results
        client.pipeline.return_value = pipe
        return client, pipe

    def test_incr_sets_expiry_once_and_increments(self):
        client, pipe = self._client([True, 3])
        store = RedisCounterStore(client)

        assert store.incr("msg:short:alice", 1800, 1000.0) == 3
        client.pipeline.assert_called_with(transaction=True)
        pipe.set.assert_called_once_with("rate_limit:msg:short:alice", 0, px=1800000, nx=True)
        pipe.incr.assert_called_once_with("rate_limit:msg:short:alice")

    def test_current_derives_window_start_from_ttl(self):
        client, _ = self._client(["4", 600000])
        store = RedisCounterStore(client)
        count, window_start = store.current("scope", 1800, 10000.0)
        assert count == 4
        assert window_start == pytest.approx(10000.0 - 1200)

    def test_current_missing_key_is_empty_window(self):
        client, _ = self._client([None, -2])
        count, window_start = RedisCounterStore(client).current("scope", 60, 5.0)
        assert (count, window_start) == (0, 5.0)

    def _scripted(self, hit_result):
        client = MagicMock()
        hit_script, release_script = MagicMock(), MagicMock()
        hit_script.return_value = hit_result
        client.register_script.side_effect = [hit_script, release_script]
        return client, hit_script, release_script

    def test_hit_runs_one_script_call(self):
        client, hit_script, _ = self._scripted([1, 1, 1800000])
        counter = SlidingWindowCounter(RedisCounterStore(client), clock=lambda: 5000.0)

        status = counter.hit("msg:short:alice", 30, 1800)
        assert status.allowed and status.count == 1
        hit_script.assert_called_once_with(keys=["rate_limit:msg:short:alice"], args=[30, 1800000])
        client.pipeline.assert_not_called()

    def test_hit_refused_reports_window_end(self):
        client, _, _ = self._scripted([0, 5, 600000])
        counter = SlidingWindowCounter(RedisCounterStore(client), clock=lambda: 5000.0)
        status = counter.hit("login:1.2.3.4:alice", 5, 600)
        assert not status.allowed
        assert status.count == 5
        assert status.retry_after == 600

    def test_release_runs_script(self):
        client, _, release_script = self._scripted([1, 1, 1000])
        RedisCounterStore(client).release("dup:alice:abc", 1800, 5000.0)
        release_script.assert_called_once_with(keys=["rate_limit:dup:alice:abc"])

    def test_hit_outage_fails_closed(self):
        client, hit_script, _ = self._scripted(None)
        hit_script.side_effect = redis.TimeoutError("slow")
        with pytest.raises(DependencyUnavailable):
            SlidingWindowCounter(RedisCounterStore(client)).hit("scope", 5, 60)

    def test_redis_errors_fail_closed(self):
        client = MagicMock()
        client.pipeline.return_value.execute.side_effect = redis.ConnectionError("down")
        counter = SlidingWindowCounter(RedisCounterStore(client))
        with pytest.raises(DependencyUnavailable):
            counter.check("scope", 5, 60)
        with pytest.raises(DependencyUnavailable):
            counter.increment("scope", 60)
