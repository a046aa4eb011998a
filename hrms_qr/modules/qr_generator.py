"""
QR Code Generator Module - HRMS QR Check-in Service

This module builds QR payloads and renders them as scannable images.
It stamps the issue time, computes the expiry from per-type defaults, signs
the canonical serialization when a key is available and hands the compact
wire string to the qrcode library for rendering.

Features:
- Employee check-in, location check-in and document access codes
- Per-type default expiry, or never-expiring codes
- HMAC signing of the canonical payload
- PNG rendering returned as a base64 string
"""

import base64
import io
import logging
from typing import Any, Callable, Dict, Optional, Tuple, Union

import qrcode

from .errors import InvalidArgumentError
from .payload import QRCodeType, QRPayload, now_ms

DAY_MS = 24 * 60 * 60 * 1000

DEFAULT_EXPIRY_MS = {
    QRCodeType.EMPLOYEE_CHECKIN: DAY_MS,
    QRCodeType.LOCATION_CHECKIN: DAY_MS,
    QRCodeType.DOCUMENT_ACCESS: 7 * DAY_MS,
}

RECOGNIZED_OPTIONS = {'expires_in_ms', 'access_level', 'signing_key'}


class QRGenerator:
    """
    Payload encoder for the QR check-in service.
    Construction is pure; the only side effect is rendering the image.
    """

    def __init__(self, signing_key: Union[str, bytes, None] = None,
                 image_settings: Optional[Dict[str, Any]] = None,
                 expiry_defaults: Optional[Dict[QRCodeType, int]] = None,
                 default_access_level: str = 'read',
                 clock: Callable[[], int] = now_ms):
        """
        Initialize the QR code generator.

        Args:
            signing_key: Default key used when the caller does not pass one
            image_settings (dict): Overrides for the qrcode rendering settings
            expiry_defaults (dict): Default lifetime in ms per QR code type
            default_access_level (str): Access level for document codes
            clock: Callable returning the current time in ms
        """
        self.logger = logging.getLogger(__name__)
        self.signing_key = signing_key
        self.default_access_level = default_access_level
        self.clock = clock

        self.expiry_defaults = dict(DEFAULT_EXPIRY_MS)
        if expiry_defaults:
            self.expiry_defaults.update(expiry_defaults)

        # Default QR code settings
        self.image_settings = {
            'version': None,  # Let qrcode pick the smallest fitting version
            'error_correction': qrcode.constants.ERROR_CORRECT_M,
            'box_size': 10,
            'border': 4,
            'fill_color': 'black',
            'back_color': 'white'
        }
        if image_settings:
            self.image_settings.update(image_settings)

    def build_payload(self, qr_type: Any, subject_id: Any,
                      options: Optional[Dict[str, Any]] = None) -> QRPayload:
        """
        Build (and optionally sign) a payload without rendering it.

        Args:
            qr_type: QRCodeType member or its string value
            subject_id (str): Employee, location or document id
            options (dict): expires_in_ms, access_level, signing_key

        Returns:
            QRPayload: The constructed payload

        Raises:
            InvalidArgumentError: On unknown type, empty subject or bad options
        """
        options = dict(options or {})
        unknown = set(options) - RECOGNIZED_OPTIONS
        if unknown:
            raise InvalidArgumentError(f"Unknown option(s): {', '.join(sorted(unknown))}")

        payload_type = QRCodeType.parse(qr_type)
        if payload_type is None:
            raise InvalidArgumentError(f"Unknown QR code type: {qr_type!r}")

        if not isinstance(subject_id, str) or not subject_id.strip():
            raise InvalidArgumentError('Subject id must be a non-empty string')

        expires_in_ms = options.get('expires_in_ms')
        if expires_in_ms is None:
            expires_in_ms = self.expiry_defaults[payload_type]
        if isinstance(expires_in_ms, bool) or not isinstance(expires_in_ms, int) or expires_in_ms < 0:
            raise InvalidArgumentError('expires_in_ms must be a non-negative integer')

        access_level = options.get('access_level')
        if payload_type is QRCodeType.DOCUMENT_ACCESS:
            access_level = access_level or self.default_access_level
            if not isinstance(access_level, str):
                raise InvalidArgumentError('access_level must be a string')
        elif access_level is not None:
            raise InvalidArgumentError('access_level is only valid for document access codes')

        issued_at = self.clock()
        payload = QRPayload(
            type=payload_type,
            subject_id=subject_id,
            issued_at=issued_at,
            expires_at=issued_at + expires_in_ms if expires_in_ms > 0 else None,
            access_level=access_level,
        )

        signing_key = options.get('signing_key') or self.signing_key
        if signing_key:
            payload = QRPayload(
                type=payload.type,
                subject_id=payload.subject_id,
                issued_at=payload.issued_at,
                expires_at=payload.expires_at,
                access_level=payload.access_level,
                signature=payload.compute_signature(signing_key),
            )
        return payload

    def encode(self, qr_type: Any, subject_id: Any,
               options: Optional[Dict[str, Any]] = None) -> Tuple[QRPayload, str]:
        """
        Build a payload and render it as a QR code image.

        Returns:
            Tuple[QRPayload, str]: The payload and a base64-encoded PNG
        """
        payload = self.build_payload(qr_type, subject_id, options)
        image_base64 = self.render_image(payload.to_wire())

        self.logger.info(
            f"QR code generated: type={payload.type.value} subject={payload.subject_id} "
            f"signed={payload.signature is not None} expires_at={payload.expires_at}"
        )
        return payload, image_base64

    def render_image(self, data: str) -> str:
        """
        Render a string as a QR code PNG.

        Args:
            data (str): Text to embed

        Returns:
            str: Base64-encoded PNG image
        """
        settings = self.image_settings
        qr = qrcode.QRCode(
            version=settings['version'],
            error_correction=settings['error_correction'],
            box_size=settings['box_size'],
            border=settings['border']
        )
        qr.add_data(data)
        qr.make(fit=True)

        img = qr.make_image(
            fill_color=settings['fill_color'],
            back_color=settings['back_color']
        )

        buffer = io.BytesIO()
        img.save(buffer, format='PNG')
        return base64.b64encode(buffer.getvalue()).decode('utf-8')
