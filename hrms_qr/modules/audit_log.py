"""
Audit Log Module - HRMS QR Check-in Service

Writes one row to ``audit_logs`` for every generated, processed or rejected
QR code so rejections can be traced back to a user and a reason.
"""

import json
import logging
from typing import Any, Dict, List, Optional

ACTION_GENERATED = 'qr_generated'
ACTION_PROCESSED = 'qr_processed'
ACTION_REJECTED = 'qr_rejected'


class AuditLog:
    """Append-only audit trail stored in the service database."""

    def __init__(self, database_manager):
        self.db = database_manager
        self.logger = logging.getLogger(__name__)

    def record(self, action: str, user_id: Optional[str] = None,
               table_name: Optional[str] = None, record_id: Any = None,
               values: Optional[Dict[str, Any]] = None) -> Optional[int]:
        """
        Append an audit entry.

        Returns:
            int: The audit row id, or None if the write failed. A failed audit
            write is logged and never turns a completed operation into an error.
        """
        try:
            return self.db.execute_update("""
                INSERT INTO audit_logs (user_id, action, table_name, record_id, new_values)
                VALUES (?, ?, ?, ?, ?)
            """, (
                user_id,
                action,
                table_name,
                str(record_id) if record_id is not None else None,
                json.dumps(values, sort_keys=True) if values is not None else None,
            ))
        except Exception as e:
            self.logger.error(f"Failed to write audit entry {action} for {user_id}: {str(e)}")
            return None

    def recent(self, limit: int = 50, action: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM audit_logs"
        params = []
        if action:
            query += " WHERE action = ?"
            params.append(action)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        rows = self.db.execute_query(query, tuple(params))
        for row in rows:
            row['new_values'] = json.loads(row['new_values']) if row['new_values'] else None
        return rows
