"""
Use-Case Dispatcher Module - HRMS QR Check-in Service

Applies a validated payload to the datastore according to its type. The
payload's content hash is reserved before the downstream write, committed
after it succeeds and released if it fails, so every code takes effect at
most once and a failed write can be retried with the same code.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict

from .attendance_store import AttendanceStore, StoredRecord
from .errors import ReplayDetectedError, SubjectMismatchError, UpstreamFailureError
from .payload import QRCodeType, QRPayload, now_ms
from .replay_cache import ReplayCache

OPERATION_NAMES = {
    QRCodeType.EMPLOYEE_CHECKIN: 'attendance_checkin',
    QRCodeType.LOCATION_CHECKIN: 'location_checkin',
    QRCodeType.DOCUMENT_ACCESS: 'document_access',
}


@dataclass(frozen=True)
class OperationOutcome:
    """Result of a successful dispatch."""
    operation: str
    subject_id: str
    acting_subject_id: str
    record_id: int
    recorded_at: int
    details: Dict[str, Any] = field(default_factory=dict)
    table: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation,
            'subjectId': self.subject_id,
            'actingSubjectId': self.acting_subject_id,
            'recordId': self.record_id,
            'recordedAt': self.recorded_at,
            **self.details,
        }


class UseCaseDispatcher:
    """Routes validated payloads to the attendance store."""

    def __init__(self, store: AttendanceStore, replay_cache: ReplayCache,
                 clock: Callable[[], int] = now_ms,
                 default_access_level: str = 'read'):
        self.store = store
        self.replay_cache = replay_cache
        self.clock = clock
        self.default_access_level = default_access_level
        self.logger = logging.getLogger(__name__)

        self._handlers = {
            QRCodeType.EMPLOYEE_CHECKIN: self._employee_checkin,
            QRCodeType.LOCATION_CHECKIN: self._location_checkin,
            QRCodeType.DOCUMENT_ACCESS: self._document_access,
        }
        missing = set(QRCodeType) - set(self._handlers)
        if missing:
            raise TypeError(f"No dispatch handler for: {', '.join(sorted(t.value for t in missing))}")

    def dispatch(self, payload: QRPayload, acting_subject_id: str) -> OperationOutcome:
        """
        Apply a payload that already passed PayloadValidator.

        Args:
            payload (QRPayload): Validated payload
            acting_subject_id (str): Employee redeeming the code

        Returns:
            OperationOutcome: What was recorded

        Raises:
            SubjectMismatchError: Employee check-in code redeemed by someone else
            ReplayDetectedError: The code was consumed, or is being consumed concurrently
            UpstreamFailureError: The datastore write failed
        """
        handler = self._handlers[payload.type]

        if payload.type is QRCodeType.EMPLOYEE_CHECKIN and acting_subject_id != payload.subject_id:
            raise SubjectMismatchError()

        now = self.clock()
        content_hash = payload.content_hash()
        try:
            reserved = self.replay_cache.reserve(content_hash, now, keep_until=payload.expires_at)
        except UpstreamFailureError:
            raise
        except Exception as e:
            self.logger.error(f"Replay reservation failed: {str(e)}")
            raise UpstreamFailureError(f"Replay cache unavailable: {str(e)}")
        if not reserved:
            raise ReplayDetectedError()

        try:
            record = handler(payload, acting_subject_id, now)
        except UpstreamFailureError:
            self.replay_cache.release(content_hash)
            raise
        except Exception as e:
            self.replay_cache.release(content_hash)
            self.logger.error(f"Dispatch of {payload.type.value} failed: {str(e)}")
            raise UpstreamFailureError(str(e))

        try:
            self.replay_cache.commit(content_hash, self.clock())
        except Exception as e:
            # The write landed and the pending entry still blocks replays
            self.logger.error(f"Replay commit failed after {payload.type.value} write: {str(e)}")
            raise UpstreamFailureError(f"Replay cache unavailable: {str(e)}", retryable=False)

        outcome = OperationOutcome(
            operation=OPERATION_NAMES[payload.type],
            subject_id=payload.subject_id,
            acting_subject_id=acting_subject_id,
            record_id=record.record_id,
            recorded_at=record.recorded_at,
            details={**record.details, 'alreadyRecorded': record.already_recorded},
            table=record.table,
        )
        self.logger.info(
            f"Dispatched {outcome.operation} for {payload.subject_id} by {acting_subject_id}"
        )
        return outcome

    def _employee_checkin(self, payload: QRPayload, acting_subject_id: str, now: int) -> StoredRecord:
        return self.store.record_checkin(employee_id=payload.subject_id, at=now)

    def _location_checkin(self, payload: QRPayload, acting_subject_id: str, now: int) -> StoredRecord:
        return self.store.record_location_checkin(
            employee_id=acting_subject_id,
            location_id=payload.subject_id,
            at=now,
        )

    def _document_access(self, payload: QRPayload, acting_subject_id: str, now: int) -> StoredRecord:
        return self.store.grant_document_access(
            document_id=payload.subject_id,
            grantee_id=acting_subject_id,
            access_level=payload.access_level or self.default_access_level,
            at=now,
        )
