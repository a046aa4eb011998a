"""
QR Code Service Module - HRMS QR Check-in Service

Entry point the web layer talks to. Generation goes through the encoder;
processing runs the validator and then the dispatcher, and every outcome
(success or a specific rejection) is logged and written to the audit trail.
"""

import logging
from typing import Any, Dict, Optional

from .audit_log import ACTION_GENERATED, ACTION_PROCESSED, ACTION_REJECTED, AuditLog
from .dispatcher import OperationOutcome, UseCaseDispatcher
from .errors import QRCodeError
from .payload_validator import PayloadValidator
from .qr_generator import QRGenerator


class QRCodeService:
    """Generates QR codes and processes scanned ones."""

    def __init__(self, generator: QRGenerator, validator: PayloadValidator,
                 dispatcher: UseCaseDispatcher, audit_log: Optional[AuditLog] = None):
        self.generator = generator
        self.validator = validator
        self.dispatcher = dispatcher
        self.audit_log = audit_log
        self.logger = logging.getLogger(__name__)

    def generate(self, qr_type: Any, subject_id: Any,
                 options: Optional[Dict[str, Any]] = None,
                 requested_by: Optional[str] = None) -> Dict[str, Any]:
        """
        Generate a QR code.

        Returns:
            Dict[str, Any]: qrCode (base64 PNG), qrData (wire string),
            generatedAt, expiresAt and the payload fields
        """
        payload, image_base64 = self.generator.encode(qr_type, subject_id, options)

        self._audit(ACTION_GENERATED, requested_by, values={
            'type': payload.type.value,
            'subjectId': payload.subject_id,
            'expiresAt': payload.expires_at,
        })

        return {
            'qrCode': image_base64,
            'qrData': payload.to_wire(),
            'generatedAt': payload.issued_at,
            'expiresAt': payload.expires_at,
            'payload': payload.to_dict(),
        }

    def process(self, qr_data: Any, acting_subject_id: str) -> OperationOutcome:
        """
        Validate scanned QR data and apply it for the acting employee.

        Raises:
            QRCodeError: The specific reason the code was rejected
        """
        try:
            payload = self.validator.validate(qr_data)
            outcome = self.dispatcher.dispatch(payload, acting_subject_id)
        except QRCodeError as e:
            self.logger.warning(f"QR code rejected for {acting_subject_id}: {e.code} - {e.message}")
            self._audit(ACTION_REJECTED, acting_subject_id, values={
                'code': e.code,
                'message': e.message,
            })
            raise

        self._audit(
            ACTION_PROCESSED,
            acting_subject_id,
            table_name=outcome.table,
            record_id=outcome.record_id,
            values=outcome.to_dict(),
        )
        return outcome

    def _audit(self, action, user_id, table_name=None, record_id=None, values=None):
        if self.audit_log is not None:
            self.audit_log.record(action, user_id, table_name=table_name,
                                  record_id=record_id, values=values)
