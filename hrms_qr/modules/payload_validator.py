"""
Payload Validator Module - HRMS QR Check-in Service

Turns a scanned QR string into a trusted QRPayload. Checks run in a fixed
order and stop at the first failure:

1. parse        - JSON decode                      -> MalformedPayloadError
2. shape-check  - required fields, types, known type -> MalformedPayloadError
3. expiry       - now > expiresAt                   -> ExpiredPayloadError
4. signature    - HMAC over the canonical form      -> SignatureInvalidError
5. replay       - content hash already consumed     -> ReplayDetectedError
"""

import json
import logging
from typing import Any, Callable, Dict, Optional, Union

from .errors import (
    ExpiredPayloadError,
    MalformedPayloadError,
    ReplayDetectedError,
    SignatureInvalidError,
)
from .payload import LEGACY_SUBJECT_KEYS, QRCodeType, QRPayload, now_ms
from .replay_cache import ReplayCache


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class PayloadValidator:
    """Validates raw QR data against structure, expiry, signature and replay rules."""

    def __init__(self, replay_cache: ReplayCache,
                 signing_key: Union[str, bytes, None] = None,
                 require_signature: bool = True,
                 clock: Callable[[], int] = now_ms):
        self.replay_cache = replay_cache
        self.signing_key = signing_key
        self.require_signature = require_signature
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def validate(self, raw_payload: Any, context: Optional[Dict[str, Any]] = None) -> QRPayload:
        """
        Validate scanned QR data.

        Args:
            raw_payload: JSON string, bytes, or an already decoded dict
            context (dict): Optional ``now`` (ms) and ``require_signature`` overrides

        Returns:
            QRPayload: The validated payload

        Raises:
            PayloadValidationError: The specific reason the payload was rejected
        """
        context = context or {}
        now = context.get('now')
        if now is None:
            now = self.clock()
        require_signature = context.get('require_signature', self.require_signature)

        fields = self._parse(raw_payload)
        payload = self._shape_check(fields)

        if payload.is_expired(now):
            raise ExpiredPayloadError()

        if require_signature or payload.signature is not None:
            self._check_signature(payload)

        if self.replay_cache.contains(payload.content_hash(), now):
            raise ReplayDetectedError()

        return payload

    def _parse(self, raw_payload: Any) -> Dict[str, Any]:
        if isinstance(raw_payload, dict):
            return raw_payload

        if isinstance(raw_payload, bytes):
            try:
                raw_payload = raw_payload.decode('utf-8')
            except UnicodeDecodeError:
                raise MalformedPayloadError('QR code is not valid UTF-8')

        if not isinstance(raw_payload, str):
            raise MalformedPayloadError('QR code data must be a string')

        try:
            fields = json.loads(raw_payload)
        except (ValueError, RecursionError):
            # ValueError also covers integer literals past the int digit limit
            raise MalformedPayloadError('Invalid QR code format')

        if not isinstance(fields, dict):
            raise MalformedPayloadError('Invalid QR code format')
        return fields

    def _shape_check(self, fields: Dict[str, Any]) -> QRPayload:
        if 'type' not in fields:
            raise MalformedPayloadError('Missing required field: type')
        payload_type = QRCodeType.parse(fields['type'])
        if payload_type is None:
            raise MalformedPayloadError('Invalid QR code type')

        legacy_key = LEGACY_SUBJECT_KEYS[payload_type]
        for other_type, key in LEGACY_SUBJECT_KEYS.items():
            if other_type is not payload_type and key in fields:
                raise MalformedPayloadError(f'Field {key} does not match QR code type')

        subject_id = fields.get('subjectId', fields.get(legacy_key))
        if not isinstance(subject_id, str) or not subject_id.strip():
            raise MalformedPayloadError('Missing required field: subjectId')
        if 'subjectId' in fields and legacy_key in fields and fields[legacy_key] != subject_id:
            raise MalformedPayloadError(f'Fields subjectId and {legacy_key} disagree')

        issued_at = fields.get('issuedAt', fields.get('timestamp'))
        if not _is_int(issued_at):
            raise MalformedPayloadError('Missing required field: issuedAt')

        expires_at = fields.get('expiresAt')
        if expires_at is not None:
            if not _is_int(expires_at):
                raise MalformedPayloadError('expiresAt must be an integer timestamp')
            if expires_at < issued_at:
                raise MalformedPayloadError('expiresAt is earlier than issuedAt')

        access_level = fields.get('accessLevel')
        if access_level is not None:
            if payload_type is not QRCodeType.DOCUMENT_ACCESS:
                raise MalformedPayloadError('accessLevel is only valid for document access codes')
            if not isinstance(access_level, str):
                raise MalformedPayloadError('accessLevel must be a string')

        signature = fields.get('signature')
        if signature is not None and not isinstance(signature, str):
            raise MalformedPayloadError('signature must be a string')

        return QRPayload(
            type=payload_type,
            subject_id=subject_id,
            issued_at=issued_at,
            expires_at=expires_at,
            access_level=access_level,
            signature=signature,
        )

    def _check_signature(self, payload: QRPayload):
        if payload.signature is None:
            raise SignatureInvalidError('QR code is not signed')
        if not self.signing_key:
            # A signature we cannot verify is never trusted
            raise SignatureInvalidError('No key configured to verify QR code signatures')
        if not payload.has_valid_signature(self.signing_key):
            raise SignatureInvalidError()
