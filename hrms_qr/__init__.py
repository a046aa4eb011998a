# HRMS QR Check-in Service - Package
"""
QR code lifecycle for HRMS attendance: generating signed, expiring codes for
employee check-in, location check-in and document access, validating scanned
codes and applying them exactly once.
"""

__version__ = "1.0.0"
__description__ = "QR code check-in and access service for an HRMS"

from .modules.dispatcher import OperationOutcome, UseCaseDispatcher
from .modules.payload import QRCodeType, QRPayload
from .modules.payload_validator import PayloadValidator
from .modules.qr_generator import QRGenerator
from .modules.qr_service import QRCodeService

__all__ = [
    'OperationOutcome',
    'PayloadValidator',
    'QRCodeService',
    'QRCodeType',
    'QRGenerator',
    'QRPayload',
    'UseCaseDispatcher',
]
