"""
Flask HTTP boundary for the HRMS QR check-in service.

Routes:
- POST /qr/generate  {type, data, options} -> {qrCode, qrData, generatedAt, expiresAt, payload}
- POST /qr/process   {qrData}              -> operation outcome

Errors are returned as {"error": {"code", "message"}} with the status carried
by the exception. The acting employee is taken from the session.
"""

import logging
from functools import wraps

from flask import Flask, current_app, jsonify, request, session
from werkzeug.exceptions import HTTPException

from config import QRCodeConfig, init_config

from .modules.attendance_store import SqliteAttendanceStore
from .modules.audit_log import AuditLog
from .modules.database_manager import DatabaseManager
from .modules.dispatcher import UseCaseDispatcher
from .modules.errors import InvalidArgumentError, MalformedPayloadError, QRCodeError
from .modules.payload import QRCodeType, now_ms
from .modules.payload_validator import PayloadValidator
from .modules.qr_generator import QRGenerator
from .modules.qr_service import QRCodeService
from .modules.replay_cache import InMemoryReplayCache, ReplaySweeper, SqliteReplayCache

EXTENSION_KEY = 'hrms_qr'

logger = logging.getLogger(__name__)


def _ms(delta):
    return int(delta.total_seconds() * 1000)


def build_components(settings, clock=now_ms):
    """
    Wire the database, replay cache, encoder, validator and dispatcher from settings.

    Returns:
        dict: database, replay_cache, store, audit_log, service, sweeper
    """
    database = DatabaseManager(
        settings['DATABASE_PATH'],
        seed_sample_data=settings.get('SEED_SAMPLE_DATA', False)
    )

    retention_ms = _ms(settings['REPLAY_RETENTION'])
    if settings['REPLAY_BACKEND'] == 'sqlite':
        replay_cache = SqliteReplayCache(database, retention_ms=retention_ms)
    else:
        replay_cache = InMemoryReplayCache(
            retention_ms=retention_ms,
            max_entries=settings.get('REPLAY_MAX_ENTRIES', 10000)
        )

    signing_key = settings.get('QR_SIGNING_KEY')
    access_level = settings.get('QR_DEFAULT_ACCESS_LEVEL', 'read')

    generator = QRGenerator(
        signing_key=signing_key,
        image_settings=QRCodeConfig.image_settings(),
        expiry_defaults={
            QRCodeType.EMPLOYEE_CHECKIN: _ms(settings['QR_CHECKIN_EXPIRY']),
            QRCodeType.LOCATION_CHECKIN: _ms(settings['QR_CHECKIN_EXPIRY']),
            QRCodeType.DOCUMENT_ACCESS: _ms(settings['QR_DOCUMENT_EXPIRY']),
        },
        default_access_level=access_level,
        clock=clock
    )
    validator = PayloadValidator(
        replay_cache,
        signing_key=signing_key,
        require_signature=settings['QR_REQUIRE_SIGNATURE'],
        clock=clock
    )
    store = SqliteAttendanceStore(
        database,
        work_start=settings['ATTENDANCE_WORK_START'],
        late_threshold_minutes=settings['ATTENDANCE_LATE_THRESHOLD_MINUTES']
    )
    dispatcher = UseCaseDispatcher(store, replay_cache, clock=clock, default_access_level=access_level)
    audit_log = AuditLog(database)

    return {
        'database': database,
        'replay_cache': replay_cache,
        'store': store,
        'audit_log': audit_log,
        'service': QRCodeService(generator, validator, dispatcher, audit_log),
        'sweeper': ReplaySweeper(
            replay_cache,
            interval_seconds=settings['REPLAY_SWEEP_INTERVAL_SECONDS'],
            clock=clock
        ),
    }


def create_app(config_name=None, clock=now_ms, **overrides):
    """
    Application factory.

    Args:
        config_name (str): Key of the config map ('development', 'testing', 'production')
        clock: Callable returning the current time in ms
        **overrides: Settings applied on top of the config class
    """
    app = Flask(__name__)
    config_class = init_config(app, config_name, overrides)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
    )

    components = build_components(app.config, clock=clock)
    app.extensions[EXTENSION_KEY] = components

    if app.config['REPLAY_SWEEP_ENABLED']:
        components['sweeper'].start()

    register_error_handlers(app)
    register_routes(app)

    logger.info(f"HRMS QR service created with {config_class.__name__}")
    return app


def get_service():
    return current_app.extensions[EXTENSION_KEY]['service']


def login_required(f):
    """Require a logged-in employee; API callers get a JSON 401."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not session.get('user_id'):
            return jsonify({'error': {
                'code': 'UNAUTHENTICATED',
                'message': 'Please log in to use QR codes.'
            }}), 401
        return f(*args, **kwargs)
    return decorated_function


def register_error_handlers(app):
    @app.errorhandler(QRCodeError)
    def handle_qr_error(error):
        return jsonify(error.to_dict()), error.http_status

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        code = (error.name or 'HTTP_ERROR').upper().replace(' ', '_')
        return jsonify({'error': {'code': code, 'message': error.description}}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        logger.exception(f"Unhandled error on {request.path}: {str(error)}")
        return jsonify({'error': {
            'code': 'INTERNAL_ERROR',
            'message': 'Internal server error'
        }}), 500


def register_routes(app):
    @app.route('/qr/generate', methods=['POST'])
    @login_required
    def generate_qr():
        """Generate a QR code for one of the supported use cases."""
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            raise InvalidArgumentError('Request body must be a JSON object')

        qr_type = body.get('type')
        subject_id = _subject_from_data(body.get('data'))
        options = _options_from_body(body.get('options'))

        result = get_service().generate(qr_type, subject_id, options, requested_by=session['user_id'])
        return jsonify(result), 201

    @app.route('/qr/process', methods=['POST'])
    @login_required
    def process_qr():
        """Validate a scanned QR code and apply it for the logged-in employee."""
        body = request.get_json(silent=True)
        if not isinstance(body, dict) or body.get('qrData') in (None, ''):
            raise MalformedPayloadError('No QR code data provided')

        outcome = get_service().process(body['qrData'], session['user_id'])
        return jsonify(outcome.to_dict())


def _subject_from_data(data):
    if isinstance(data, str):
        return data
    if isinstance(data, dict):
        for key in ('subjectId', 'employeeId', 'locationId', 'documentId'):
            if data.get(key):
                return data[key]
    raise InvalidArgumentError('data must be a subject id or an object carrying one')


def _options_from_body(options):
    if options is None:
        return {}
    if not isinstance(options, dict):
        raise InvalidArgumentError('options must be an object')

    mapped = {}
    for key, value in options.items():
        if key == 'expiresInMs':
            mapped['expires_in_ms'] = value
        elif key == 'accessLevel':
            mapped['access_level'] = value
        else:
            # Signing keys are server-side only
            raise InvalidArgumentError(f"Unknown option: {key}")
    return mapped
