import sqlite3
import threading
import time

import pytest

from hrms_qr.modules.attendance_store import StoredRecord
from hrms_qr.modules.dispatcher import UseCaseDispatcher
from hrms_qr.modules.errors import ReplayDetectedError, SubjectMismatchError, UpstreamFailureError
from hrms_qr.modules.payload import QRCodeType
from hrms_qr.modules.replay_cache import STATE_CONSUMED, STATE_PENDING, InMemoryReplayCache


class RecordingStore:
    """In-memory AttendanceStore that can be told to fail or to stall."""

    def __init__(self, failures=0, delay=0.0):
        self.calls = []
        self.failures = failures
        self.delay = delay
        self._lock = threading.Lock()

    def _record(self, table, **kwargs):
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            if self.failures:
                self.failures -= 1
                raise UpstreamFailureError('datastore unavailable')
            self.calls.append((table, kwargs))
            return StoredRecord(table=table, record_id=len(self.calls), recorded_at=kwargs['at'], details={})

    def record_checkin(self, *, employee_id, at):
        return self._record('attendance', employee_id=employee_id, at=at)

    def record_location_checkin(self, *, employee_id, location_id, at):
        return self._record('location_checkins', employee_id=employee_id, location_id=location_id, at=at)

    def grant_document_access(self, *, document_id, grantee_id, access_level, at):
        return self._record('access_grants', document_id=document_id, grantee_id=grantee_id,
                            access_level=access_level, at=at)


def test_location_checkin_needs_no_subject_match(generator, validator, dispatcher, database):
    payload = validator.validate(generator.build_payload(QRCodeType.LOCATION_CHECKIN, 'loc-9').to_wire())

    outcome = dispatcher.dispatch(payload, acting_subject_id='emp-5')

    assert outcome.operation == 'location_checkin'
    assert outcome.subject_id == 'loc-9'
    assert outcome.acting_subject_id == 'emp-5'
    assert outcome.details['locationName'] == 'Warehouse 9'
    rows = database.execute_query("SELECT employee_id, location_id FROM location_checkins")
    assert rows == [{'employee_id': 'emp-5', 'location_id': 'loc-9'}]


def test_employee_checkin_by_someone_else_is_refused(generator, validator, dispatcher, replay_cache):
    payload = validator.validate(generator.build_payload(QRCodeType.EMPLOYEE_CHECKIN, 'emp-1').to_wire())

    with pytest.raises(SubjectMismatchError):
        dispatcher.dispatch(payload, acting_subject_id='emp-2')

    # The rightful owner can still use the code
    assert len(replay_cache) == 0
    assert dispatcher.dispatch(payload, acting_subject_id='emp-1').operation == 'attendance_checkin'


def test_employee_checkin_records_attendance(generator, validator, dispatcher, store, clock):
    payload = validator.validate(generator.build_payload(QRCodeType.EMPLOYEE_CHECKIN, 'emp-1').to_wire())

    outcome = dispatcher.dispatch(payload, acting_subject_id='emp-1')

    row = store.get_attendance('emp-1', outcome.details['date'])
    assert row['id'] == outcome.record_id
    assert row['check_in'] == clock.now
    assert row['status'] in ('present', 'late')
    assert outcome.details['alreadyRecorded'] is False


def test_document_access_grant_carries_access_level(generator, validator, dispatcher, database):
    raw = generator.build_payload(QRCodeType.DOCUMENT_ACCESS, 'doc-2', {'access_level': 'write'}).to_wire()

    outcome = dispatcher.dispatch(validator.validate(raw), acting_subject_id='emp-3')

    assert outcome.operation == 'document_access'
    grant = database.execute_query("SELECT * FROM access_grants", fetch_all=False)
    assert grant['document_id'] == 'doc-2'
    assert grant['grantee_id'] == 'emp-3'
    assert grant['access_level'] == 'write'


def test_resubmitted_code_is_a_replay(generator, validator, dispatcher, replay_cache):
    raw = generator.build_payload(QRCodeType.LOCATION_CHECKIN, 'loc-9').to_wire()
    payload = validator.validate(raw)
    dispatcher.dispatch(payload, acting_subject_id='emp-5')

    assert replay_cache.get(payload.content_hash()).state == STATE_CONSUMED
    with pytest.raises(ReplayDetectedError):
        validator.validate(raw)
    with pytest.raises(ReplayDetectedError):
        dispatcher.dispatch(payload, acting_subject_id='emp-5')


def test_failed_write_releases_the_code_for_retry(generator, replay_cache, clock):
    store = RecordingStore(failures=1)
    dispatcher = UseCaseDispatcher(store, replay_cache, clock=clock)
    payload = generator.build_payload(QRCodeType.LOCATION_CHECKIN, 'loc-9')

    with pytest.raises(UpstreamFailureError) as excinfo:
        dispatcher.dispatch(payload, acting_subject_id='emp-5')
    assert excinfo.value.retryable
    assert not replay_cache.contains(payload.content_hash(), clock.now)

    assert dispatcher.dispatch(payload, acting_subject_id='emp-5').record_id == 1
    assert len(store.calls) == 1


def test_unexpected_store_error_becomes_upstream_failure(generator, replay_cache, clock):
    class BrokenStore(RecordingStore):
        def record_checkin(self, *, employee_id, at):
            raise RuntimeError('connection reset')

    dispatcher = UseCaseDispatcher(BrokenStore(), replay_cache, clock=clock)
    payload = generator.build_payload(QRCodeType.EMPLOYEE_CHECKIN, 'emp-1')

    with pytest.raises(UpstreamFailureError):
        dispatcher.dispatch(payload, acting_subject_id='emp-1')
    assert len(replay_cache) == 0


def test_unknown_location_is_not_retryable(generator, dispatcher):
    payload = generator.build_payload(QRCodeType.LOCATION_CHECKIN, 'loc-404')

    with pytest.raises(UpstreamFailureError) as excinfo:
        dispatcher.dispatch(payload, acting_subject_id='emp-5')
    assert not excinfo.value.retryable


def test_inactive_employee_is_refused_by_the_store(generator, dispatcher, database):
    database.execute_update("UPDATE employees SET is_active = 0 WHERE id = ?", ('emp-4',))
    payload = generator.build_payload(QRCodeType.EMPLOYEE_CHECKIN, 'emp-4')

    with pytest.raises(UpstreamFailureError):
        dispatcher.dispatch(payload, acting_subject_id='emp-4')


def test_second_checkin_same_day_returns_existing_row(generator, dispatcher, clock):
    first = dispatcher.dispatch(
        generator.build_payload(QRCodeType.EMPLOYEE_CHECKIN, 'emp-1'), acting_subject_id='emp-1')
    clock.advance(1000)
    second = dispatcher.dispatch(
        generator.build_payload(QRCodeType.EMPLOYEE_CHECKIN, 'emp-1'), acting_subject_id='emp-1')

    assert second.record_id == first.record_id
    assert second.details['alreadyRecorded'] is True


def test_concurrent_dispatch_succeeds_once(generator, clock):
    store = RecordingStore(delay=0.05)
    dispatcher = UseCaseDispatcher(store, InMemoryReplayCache(), clock=clock)
    payload = generator.build_payload(QRCodeType.LOCATION_CHECKIN, 'loc-9')
    barrier = threading.Barrier(2)
    results = []

    def scan():
        barrier.wait()
        try:
            dispatcher.dispatch(payload, acting_subject_id='emp-5')
            results.append('ok')
        except ReplayDetectedError:
            results.append('replay')

    threads = [threading.Thread(target=scan) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(results) == ['ok', 'replay']
    assert len(store.calls) == 1


def test_every_code_type_has_a_handler(store, replay_cache):
    dispatcher = UseCaseDispatcher(store, replay_cache)
    assert set(dispatcher._handlers) == set(QRCodeType)


def test_failed_replay_commit_is_upstream_failure_and_blocks_replay(generator, clock):
    class UncommittableCache(InMemoryReplayCache):
        def commit(self, content_hash, now):
            raise sqlite3.OperationalError('database is locked')

    replay_cache = UncommittableCache()
    store = RecordingStore()
    dispatcher = UseCaseDispatcher(store, replay_cache, clock=clock)
    payload = generator.build_payload(QRCodeType.LOCATION_CHECKIN, 'loc-9')

    with pytest.raises(UpstreamFailureError) as excinfo:
        dispatcher.dispatch(payload, acting_subject_id='emp-5')
    assert not excinfo.value.retryable
    assert len(store.calls) == 1
    assert replay_cache.get(payload.content_hash()).state == STATE_PENDING

    with pytest.raises(ReplayDetectedError):
        dispatcher.dispatch(payload, acting_subject_id='emp-5')


def test_full_replay_cache_is_retryable_upstream_failure(generator, clock):
    replay_cache = InMemoryReplayCache(max_entries=1)
    store = RecordingStore()
    dispatcher = UseCaseDispatcher(store, replay_cache, clock=clock)
    dispatcher.dispatch(generator.build_payload(QRCodeType.LOCATION_CHECKIN, 'loc-9'),
                        acting_subject_id='emp-5')

    with pytest.raises(UpstreamFailureError) as excinfo:
        dispatcher.dispatch(generator.build_payload(QRCodeType.LOCATION_CHECKIN, 'loc-1'),
                            acting_subject_id='emp-5')
    assert excinfo.value.retryable
    assert len(store.calls) == 1
