"""
Error Taxonomy Module - HRMS QR Check-in Service

Every rejected QR payload surfaces one of these exceptions. Each carries a
stable machine-readable code and the HTTP status the web layer answers with,
so callers can show a specific message ("QR code expired" vs "QR code invalid")
and audit entries stay distinguishable.
"""

from typing import Any, Dict


class QRCodeError(Exception):
    """Base class for all QR payload lifecycle errors."""

    code = 'QR_ERROR'
    http_status = 400
    default_message = 'QR code error'

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {'error': {'code': self.code, 'message': self.message}}


class InvalidArgumentError(QRCodeError):
    """Raised by the encoder when it is asked to build an impossible payload."""

    code = 'INVALID_ARGUMENT'
    default_message = 'Invalid argument'


class PayloadValidationError(QRCodeError):
    """Base class for errors raised while validating a scanned payload."""


class MalformedPayloadError(PayloadValidationError):
    code = 'MALFORMED_PAYLOAD'
    default_message = 'QR code invalid'


class ExpiredPayloadError(PayloadValidationError):
    code = 'EXPIRED'
    default_message = 'QR code expired'


class SignatureInvalidError(PayloadValidationError):
    code = 'SIGNATURE_INVALID'
    default_message = 'QR code signature invalid'


class ReplayDetectedError(PayloadValidationError):
    code = 'REPLAY_DETECTED'
    http_status = 409
    default_message = 'QR code already used'


class DispatchError(QRCodeError):
    """Base class for errors raised while applying a validated payload."""


class SubjectMismatchError(DispatchError):
    code = 'SUBJECT_MISMATCH'
    http_status = 409
    default_message = 'QR code belongs to another employee'


class UpstreamFailureError(DispatchError):
    """
    The datastore rejected or failed the downstream write.

    ``retryable`` is only true for operational failures; a rejected row
    (unknown location, inactive employee) will fail again on retry.
    """

    code = 'UPSTREAM_FAILURE'
    http_status = 502
    default_message = 'Could not record the QR code operation'

    def __init__(self, message: str = None, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable
