"""
Attendance Store Module - HRMS QR Check-in Service

Datastore collaborator the dispatcher writes through. It records attendance
check-ins, location check-ins and document access grants, and enforces its
own row predicates (the employee, location or document must exist and be
active) regardless of what the caller already checked.

Check-in status follows the usual HRMS rule: 'present' up to the late
threshold after the work day starts, 'late' afterwards. One attendance row is
kept per employee per day; a second check-in the same day returns the
existing row flagged as already recorded.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Any, Dict, Optional, Protocol

from .errors import UpstreamFailureError

STATUS_PRESENT = 'present'
STATUS_LATE = 'late'


@dataclass(frozen=True)
class StoredRecord:
    """Row written (or found) by the datastore."""
    table: str
    record_id: int
    recorded_at: int
    details: Dict[str, Any]
    already_recorded: bool = False


class AttendanceStore(Protocol):
    def record_checkin(self, *, employee_id: str, at: int) -> StoredRecord:
        raise NotImplementedError

    def record_location_checkin(self, *, employee_id: str, location_id: str, at: int) -> StoredRecord:
        raise NotImplementedError

    def grant_document_access(self, *, document_id: str, grantee_id: str,
                              access_level: str, at: int) -> StoredRecord:
        raise NotImplementedError


def _local_datetime(at_ms: int) -> datetime:
    return datetime.fromtimestamp(at_ms / 1000)


class SqliteAttendanceStore:
    """AttendanceStore backed by the service's SQLite database."""

    def __init__(self, database_manager, work_start: time = time(9, 0),
                 late_threshold_minutes: int = 15):
        """
        Args:
            database_manager: DatabaseManager instance
            work_start (time): Local time the work day starts
            late_threshold_minutes (int): Grace period before a check-in is late
        """
        self.db = database_manager
        self.work_start = work_start
        self.late_threshold_minutes = late_threshold_minutes
        self.logger = logging.getLogger(__name__)

    def determine_status(self, at_ms: int) -> str:
        checked_in = _local_datetime(at_ms)
        cutoff = datetime.combine(checked_in.date(), self.work_start) + \
            timedelta(minutes=self.late_threshold_minutes)
        return STATUS_LATE if checked_in > cutoff else STATUS_PRESENT

    def record_checkin(self, *, employee_id: str, at: int) -> StoredRecord:
        self._require_active('employees', employee_id, 'Employee')

        work_date = _local_datetime(at).strftime('%Y-%m-%d')
        status = self.determine_status(at)
        try:
            with self.db.transaction() as conn:
                existing = conn.execute(
                    "SELECT id, check_in, status FROM attendance WHERE employee_id = ? AND date = ?",
                    (employee_id, work_date)
                ).fetchone()
                if existing:
                    return StoredRecord(
                        table='attendance',
                        record_id=existing['id'],
                        recorded_at=existing['check_in'],
                        details={'date': work_date, 'status': existing['status']},
                        already_recorded=True,
                    )

                cursor = conn.execute(
                    "INSERT INTO attendance (employee_id, date, check_in, status) VALUES (?, ?, ?, ?)",
                    (employee_id, work_date, at, status)
                )
                record_id = cursor.lastrowid
        except sqlite3.Error as e:
            raise UpstreamFailureError(f"Attendance check-in failed: {e}")

        self.logger.info(f"Attendance check-in recorded for {employee_id} on {work_date} ({status})")
        return StoredRecord(
            table='attendance',
            record_id=record_id,
            recorded_at=at,
            details={'date': work_date, 'status': status},
        )

    def record_location_checkin(self, *, employee_id: str, location_id: str, at: int) -> StoredRecord:
        self._require_active('employees', employee_id, 'Employee')
        location = self._require_active('locations', location_id, 'Location')

        try:
            record_id = self.db.execute_update(
                "INSERT INTO location_checkins (employee_id, location_id, checked_in_at) VALUES (?, ?, ?)",
                (employee_id, location_id, at)
            )
        except sqlite3.Error as e:
            raise UpstreamFailureError(f"Location check-in failed: {e}")

        self.logger.info(f"Location check-in recorded for {employee_id} at {location_id}")
        return StoredRecord(
            table='location_checkins',
            record_id=record_id,
            recorded_at=at,
            details={'locationName': location['name']},
        )

    def grant_document_access(self, *, document_id: str, grantee_id: str,
                              access_level: str, at: int) -> StoredRecord:
        self._require_active('employees', grantee_id, 'Employee')
        document = self._require_row('documents', document_id, 'Document')

        try:
            record_id = self.db.execute_update(
                "INSERT INTO access_grants (document_id, grantee_id, access_level, granted_at) "
                "VALUES (?, ?, ?, ?)",
                (document_id, grantee_id, access_level, at)
            )
        except sqlite3.Error as e:
            raise UpstreamFailureError(f"Access grant failed: {e}")

        self.logger.info(f"Granted {access_level} access on {document_id} to {grantee_id}")
        return StoredRecord(
            table='access_grants',
            record_id=record_id,
            recorded_at=at,
            details={'documentTitle': document['title']},
        )

    def get_attendance(self, employee_id: str, work_date: str) -> Optional[Dict[str, Any]]:
        return self.db.execute_query(
            "SELECT * FROM attendance WHERE employee_id = ? AND date = ?",
            (employee_id, work_date),
            fetch_all=False
        )

    def _require_row(self, table: str, row_id: str, label: str) -> Dict[str, Any]:
        try:
            row = self.db.execute_query(
                f"SELECT * FROM {table} WHERE id = ?",
                (row_id,),
                fetch_all=False
            )
        except sqlite3.Error as e:
            raise UpstreamFailureError(f"{label} lookup failed: {e}")
        if row is None:
            raise UpstreamFailureError(f"{label} {row_id} not found", retryable=False)
        return row

    def _require_active(self, table: str, row_id: str, label: str) -> Dict[str, Any]:
        row = self._require_row(table, row_id, label)
        if not row['is_active']:
            raise UpstreamFailureError(f"{label} {row_id} is inactive", retryable=False)
        return row
