"""
QR Payload Module - HRMS QR Check-in Service

Value types shared by the encoder, validator and dispatcher: the closed set of
QR code types, the payload envelope itself and its canonical serialization.

The canonical form is a compact JSON array with a fixed field order
(type, subjectId, issuedAt, expiresAt, accessLevel). It is the only input to
both the HMAC signature and the replay content hash, so any change to its
layout invalidates every code already printed.
"""

import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union


class QRCodeType(str, Enum):
    """Use cases a QR code can be issued for."""

    EMPLOYEE_CHECKIN = 'employee_checkin'
    LOCATION_CHECKIN = 'location_checkin'
    DOCUMENT_ACCESS = 'document_access'

    @classmethod
    def parse(cls, value: Any) -> Optional['QRCodeType']:
        """Return the matching member, or None for anything unknown."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value)
        except ValueError:
            return None


# Wire key a legacy payload uses for its subject id, per type
LEGACY_SUBJECT_KEYS = {
    QRCodeType.EMPLOYEE_CHECKIN: 'employeeId',
    QRCodeType.LOCATION_CHECKIN: 'locationId',
    QRCodeType.DOCUMENT_ACCESS: 'documentId',
}


def now_ms() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def _key_bytes(key: Union[str, bytes]) -> bytes:
    return key.encode('utf-8') if isinstance(key, str) else key


@dataclass(frozen=True)
class QRPayload:
    """Typed, timestamped envelope embedded in a QR code."""

    type: QRCodeType
    subject_id: str
    issued_at: int
    expires_at: Optional[int] = None
    access_level: Optional[str] = None
    signature: Optional[str] = None

    def canonical_bytes(self) -> bytes:
        fields = [
            self.type.value,
            self.subject_id,
            self.issued_at,
            self.expires_at,
            self.access_level,
        ]
        return json.dumps(fields, separators=(',', ':'), ensure_ascii=False).encode('utf-8')

    def content_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()

    def compute_signature(self, key: Union[str, bytes]) -> str:
        return hmac.new(_key_bytes(key), self.canonical_bytes(), hashlib.sha256).hexdigest()

    def has_valid_signature(self, key: Union[str, bytes]) -> bool:
        if not self.signature:
            return False
        # compare_digest refuses non-ASCII str, so compare the encoded bytes
        return hmac.compare_digest(
            self.signature.encode('utf-8'),
            self.compute_signature(key).encode('ascii'),
        )

    def is_expired(self, at_ms: int) -> bool:
        return self.expires_at is not None and at_ms > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation; optional fields are omitted when unset."""
        data = {
            'type': self.type.value,
            'subjectId': self.subject_id,
            'issuedAt': self.issued_at,
        }
        if self.expires_at is not None:
            data['expiresAt'] = self.expires_at
        if self.access_level is not None:
            data['accessLevel'] = self.access_level
        if self.signature is not None:
            data['signature'] = self.signature
        return data

    def to_wire(self) -> str:
        """Compact JSON string that goes into the QR code image."""
        return json.dumps(self.to_dict(), separators=(',', ':'), sort_keys=True)
