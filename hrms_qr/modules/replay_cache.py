"""
Replay Cache Module - HRMS QR Check-in Service

Records the content hash of every dispatched payload so a resubmitted code is
rejected. Entries move through two states: ``pending`` while a dispatch is in
flight and ``consumed`` once the downstream write succeeded. ``reserve`` is an
atomic test-and-set; two concurrent scans of the same code can never both
reserve it.

An entry is kept for the retention window after it was recorded, or until the
payload itself expires if that is later, so a code cannot be replayed while it
would still pass the expiry check.

Features:
- In-process cache guarded by a lock, bounded by refusing new reservations when full
- SQLite cache relying on a primary-key insert, shared across processes
- Background sweeper thread purging expired entries
"""

import logging
import sqlite3
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from .errors import UpstreamFailureError
from .payload import now_ms

STATE_PENDING = 'pending'
STATE_CONSUMED = 'consumed'

DEFAULT_RETENTION_MS = 60 * 60 * 1000


@dataclass
class ProcessedPayloadRecord:
    """Replay cache entry."""
    content_hash: str
    recorded_at: int
    purge_after: int
    state: str = STATE_PENDING


class ReplayCache(Protocol):
    def contains(self, content_hash: str, now: int) -> bool:
        raise NotImplementedError

    def reserve(self, content_hash: str, now: int, keep_until: Optional[int] = None) -> bool:
        """Atomically claim a hash. Returns False if it is already present."""
        raise NotImplementedError

    def commit(self, content_hash: str, now: int) -> None:
        raise NotImplementedError

    def release(self, content_hash: str) -> None:
        """Drop a pending reservation after a failed downstream write."""
        raise NotImplementedError

    def purge_expired(self, now: int) -> int:
        raise NotImplementedError


class InMemoryReplayCache:
    """
    Lock-guarded replay cache for a single process.
    Live entries are never evicted: when ``max_entries`` is still reached after
    purging expired ones, new reservations fail with a retryable
    UpstreamFailureError. Entries are lost on restart, so use the SQLite
    backend when several processes serve scans.
    """

    def __init__(self, retention_ms: int = DEFAULT_RETENTION_MS, max_entries: int = 10000):
        self.logger = logging.getLogger(__name__)
        self.retention_ms = retention_ms
        self.max_entries = max_entries
        self._records = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._records)

    def get(self, content_hash: str) -> Optional[ProcessedPayloadRecord]:
        with self._lock:
            return self._records.get(content_hash)

    def contains(self, content_hash: str, now: int) -> bool:
        with self._lock:
            record = self._records.get(content_hash)
            if record is None:
                return False
            if record.purge_after < now:
                del self._records[content_hash]
                return False
            return True

    def reserve(self, content_hash: str, now: int, keep_until: Optional[int] = None) -> bool:
        with self._lock:
            record = self._records.get(content_hash)
            if record is not None and record.purge_after >= now:
                return False
            if record is not None:
                del self._records[content_hash]

            if len(self._records) >= self.max_entries:
                self._purge_locked(now)
            if len(self._records) >= self.max_entries:
                self.logger.warning(f"Replay cache full, refusing {content_hash[:12]}")
                raise UpstreamFailureError("Replay cache is full")

            self._records[content_hash] = ProcessedPayloadRecord(
                content_hash=content_hash,
                recorded_at=now,
                purge_after=max(now + self.retention_ms, keep_until or 0),
            )
            return True

    def commit(self, content_hash: str, now: int) -> None:
        with self._lock:
            record = self._records.get(content_hash)
            if record is None:
                # Purged while the dispatch was in flight
                record = ProcessedPayloadRecord(content_hash, now, now + self.retention_ms)
                self._records[content_hash] = record
            record.state = STATE_CONSUMED
            record.recorded_at = now
            record.purge_after = max(record.purge_after, now + self.retention_ms)
            self._records.move_to_end(content_hash)

    def release(self, content_hash: str) -> None:
        with self._lock:
            record = self._records.get(content_hash)
            if record is not None and record.state == STATE_PENDING:
                del self._records[content_hash]

    def purge_expired(self, now: int) -> int:
        with self._lock:
            return self._purge_locked(now)

    def _purge_locked(self, now: int) -> int:
        expired = [h for h, r in self._records.items() if r.purge_after < now]
        for content_hash in expired:
            del self._records[content_hash]
        return len(expired)


class SqliteReplayCache:
    """
    Replay cache stored in the ``processed_payloads`` table.
    The primary key on ``content_hash`` makes ``reserve`` atomic across
    connections and processes sharing the database file.
    """

    def __init__(self, database_manager, retention_ms: int = DEFAULT_RETENTION_MS):
        self.db = database_manager
        self.retention_ms = retention_ms
        self.logger = logging.getLogger(__name__)

    def get(self, content_hash: str) -> Optional[ProcessedPayloadRecord]:
        row = self.db.execute_query(
            "SELECT content_hash, recorded_at, purge_after, state FROM processed_payloads WHERE content_hash = ?",
            (content_hash,),
            fetch_all=False
        )
        return ProcessedPayloadRecord(**row) if row else None

    def contains(self, content_hash: str, now: int) -> bool:
        row = self.db.execute_query(
            "SELECT 1 FROM processed_payloads WHERE content_hash = ? AND purge_after >= ?",
            (content_hash, now),
            fetch_all=False
        )
        return row is not None

    def reserve(self, content_hash: str, now: int, keep_until: Optional[int] = None) -> bool:
        purge_after = max(now + self.retention_ms, keep_until or 0)
        with self.db.transaction() as conn:
            conn.execute(
                "DELETE FROM processed_payloads WHERE content_hash = ? AND purge_after < ?",
                (content_hash, now)
            )
            try:
                conn.execute(
                    "INSERT INTO processed_payloads (content_hash, state, recorded_at, purge_after) "
                    "VALUES (?, ?, ?, ?)",
                    (content_hash, STATE_PENDING, now, purge_after)
                )
            except sqlite3.IntegrityError:
                return False
        return True

    def commit(self, content_hash: str, now: int) -> None:
        self.db.execute_update(
            "INSERT INTO processed_payloads (content_hash, state, recorded_at, purge_after) "
            "VALUES (?, ?, ?, ?) "
            "ON CONFLICT(content_hash) DO UPDATE SET state = excluded.state, "
            "recorded_at = excluded.recorded_at, "
            "purge_after = MAX(processed_payloads.purge_after, excluded.purge_after)",
            (content_hash, STATE_CONSUMED, now, now + self.retention_ms)
        )

    def release(self, content_hash: str) -> None:
        self.db.execute_update(
            "DELETE FROM processed_payloads WHERE content_hash = ? AND state = ?",
            (content_hash, STATE_PENDING)
        )

    def purge_expired(self, now: int) -> int:
        return self.db.execute_update(
            "DELETE FROM processed_payloads WHERE purge_after < ?",
            (now,)
        )


class ReplaySweeper:
    """
    Daemon thread that purges expired replay records on a fixed interval.
    """

    def __init__(self, cache: ReplayCache, interval_seconds: float = 300,
                 clock: Callable[[], int] = now_ms):
        self.cache = cache
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._stop_event = threading.Event()
        self._thread = None

    def sweep_once(self) -> int:
        purged = self.cache.purge_expired(self.clock())
        if purged:
            self.logger.info(f"Purged {purged} expired replay record(s)")
        return purged

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name='replay-sweeper', daemon=True)
        self._thread.start()
        self.logger.info(f"Replay sweeper started (every {self.interval_seconds}s)")

    def stop(self, timeout: float = 5.0):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self):
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.sweep_once()
            except Exception as e:
                self.logger.error(f"Replay sweep failed: {str(e)}")
