import threading

import pytest

from hrms_qr.modules.errors import UpstreamFailureError
from hrms_qr.modules.replay_cache import (
    STATE_CONSUMED,
    STATE_PENDING,
    InMemoryReplayCache,
    ReplaySweeper,
    SqliteReplayCache,
)

HOUR_MS = 60 * 60 * 1000


@pytest.fixture(params=['memory', 'sqlite'])
def cache(request, database):
    if request.param == 'memory':
        return InMemoryReplayCache(retention_ms=HOUR_MS)
    return SqliteReplayCache(database, retention_ms=HOUR_MS)


def test_reserve_is_test_and_set(cache):
    assert cache.reserve('abc', 1000)
    assert not cache.reserve('abc', 1001)
    assert cache.contains('abc', 1001)


def test_release_drops_pending_reservation(cache):
    cache.reserve('abc', 1000)
    cache.release('abc')

    assert not cache.contains('abc', 1001)
    assert cache.reserve('abc', 1002)


def test_release_keeps_consumed_record(cache):
    cache.reserve('abc', 1000)
    cache.commit('abc', 1000)
    cache.release('abc')

    assert cache.contains('abc', 1001)


def test_commit_marks_record_consumed(cache):
    cache.reserve('abc', 1000)
    assert cache.get('abc').state == STATE_PENDING

    cache.commit('abc', 2000)

    record = cache.get('abc')
    assert record.state == STATE_CONSUMED
    assert record.recorded_at == 2000


def test_record_expires_after_retention(cache):
    cache.reserve('abc', 0)
    cache.commit('abc', 0)

    assert cache.contains('abc', HOUR_MS)
    assert not cache.contains('abc', HOUR_MS + 1)
    assert cache.reserve('abc', HOUR_MS + 1)


def test_record_outlives_retention_until_payload_expiry(cache):
    keep_until = 5 * HOUR_MS
    cache.reserve('abc', 0, keep_until=keep_until)
    cache.commit('abc', 0)

    assert cache.contains('abc', 2 * HOUR_MS)
    assert not cache.contains('abc', keep_until + 1)


def test_purge_expired_counts_removed_records(cache):
    cache.reserve('old', 0)
    cache.reserve('new', 2 * HOUR_MS)

    assert cache.purge_expired(2 * HOUR_MS) == 1
    assert cache.get('old') is None
    assert cache.get('new') is not None


def test_memory_cache_refuses_reservation_when_full_of_live_entries():
    cache = InMemoryReplayCache(retention_ms=HOUR_MS, max_entries=2)
    cache.reserve('a', 1)
    cache.reserve('b', 2)

    with pytest.raises(UpstreamFailureError) as excinfo:
        cache.reserve('c', 3)

    assert excinfo.value.retryable
    assert len(cache) == 2
    assert cache.contains('a', 3)
    assert not cache.contains('c', 3)


def test_memory_cache_purges_expired_entries_to_make_room():
    cache = InMemoryReplayCache(retention_ms=10, max_entries=2)
    cache.reserve('a', 0)
    cache.reserve('b', 100)
    cache.reserve('c', 101)

    assert cache.get('a') is None
    assert cache.get('b') is not None


def test_concurrent_reserve_has_single_winner(cache):
    barrier = threading.Barrier(8)
    results = []
    lock = threading.Lock()

    def claim():
        barrier.wait()
        won = cache.reserve('same-code', 1000)
        with lock:
            results.append(won)

    threads = [threading.Thread(target=claim) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
    assert results.count(False) == 7


def test_sweeper_purges_with_its_clock(cache, clock):
    cache.reserve('abc', clock.now)
    sweeper = ReplaySweeper(cache, interval_seconds=60, clock=clock)

    assert sweeper.sweep_once() == 0
    clock.advance(HOUR_MS + 1)
    assert sweeper.sweep_once() == 1


def test_sweeper_thread_starts_and_stops(cache):
    sweeper = ReplaySweeper(cache, interval_seconds=0.01)
    sweeper.start()
    sweeper.stop()

    assert sweeper._thread is None
