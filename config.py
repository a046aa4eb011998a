# HRMS QR Check-in Service Configuration

import os
from datetime import time, timedelta
from pathlib import Path

import qrcode

# Base directory
BASE_DIR = Path(__file__).parent.absolute()


def _env_flag(name, default):
    return os.environ.get(name, default).lower() in ['true', 'on', '1']


class Config:
    """Base configuration class"""

    # Flask Configuration
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'hrms-qr-secret-key-2025'

    # Database Configuration
    DATABASE_PATH = BASE_DIR / 'database' / 'hrms_qr.db'
    SEED_SAMPLE_DATA = False

    # QR Code Configuration
    QR_SIGNING_KEY = os.environ.get('QR_SIGNING_KEY')
    QR_REQUIRE_SIGNATURE = True
    QR_CHECKIN_EXPIRY = timedelta(hours=24)
    QR_DOCUMENT_EXPIRY = timedelta(days=7)
    QR_DEFAULT_ACCESS_LEVEL = 'read'

    # Replay protection
    REPLAY_BACKEND = os.environ.get('REPLAY_BACKEND') or 'sqlite'  # 'memory' or 'sqlite'
    REPLAY_RETENTION = timedelta(hours=1)
    REPLAY_MAX_ENTRIES = 10000  # memory backend only
    REPLAY_SWEEP_ENABLED = True
    REPLAY_SWEEP_INTERVAL_SECONDS = 300

    # Attendance Configuration
    ATTENDANCE_WORK_START = time(9, 0)
    ATTENDANCE_LATE_THRESHOLD_MINUTES = 15

    # Session Configuration
    PERMANENT_SESSION_LIFETIME = timedelta(hours=8)
    SESSION_COOKIE_SECURE = False  # Set to True in production with HTTPS
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    MAX_CONTENT_LENGTH = 64 * 1024

    # Logging Configuration
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'
    LOG_FILE = BASE_DIR / 'logs' / 'hrms_qr.log'
    LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB
    LOG_BACKUP_COUNT = 5

    DEBUG = _env_flag('DEBUG', 'False')
    TESTING = False

    @classmethod
    def init_app(cls, app):
        """Initialize application configuration"""
        for directory in [Path(cls.DATABASE_PATH).parent, Path(cls.LOG_FILE).parent]:
            directory.mkdir(parents=True, exist_ok=True)

        app.config.update({
            key: getattr(cls, key) for key in dir(cls) if key.isupper()
        })


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    DATABASE_PATH = BASE_DIR / 'database' / 'hrms_qr_dev.db'
    SEED_SAMPLE_DATA = True

    # Unsigned codes are accepted so they can be produced by hand
    QR_SIGNING_KEY = os.environ.get('QR_SIGNING_KEY') or 'dev-qr-signing-key'
    QR_REQUIRE_SIGNATURE = False

    LOG_LEVEL = 'DEBUG'


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = True

    QR_SIGNING_KEY = 'test-qr-signing-key'
    QR_REQUIRE_SIGNATURE = True

    REPLAY_BACKEND = 'memory'
    REPLAY_SWEEP_ENABLED = False


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    TESTING = False

    SESSION_COOKIE_SECURE = True  # Requires HTTPS
    QR_REQUIRE_SIGNATURE = True

    DATABASE_PATH = BASE_DIR / 'database' / 'hrms_qr_prod.db'

    LOG_LEVEL = 'WARNING'

    @classmethod
    def init_app(cls, app):
        super().init_app(app)

        import logging
        from logging.handlers import RotatingFileHandler

        if not app.debug:
            file_handler = RotatingFileHandler(
                cls.LOG_FILE,
                maxBytes=cls.LOG_MAX_BYTES,
                backupCount=cls.LOG_BACKUP_COUNT
            )
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
            ))
            file_handler.setLevel(logging.INFO)
            app.logger.addHandler(file_handler)

            app.logger.setLevel(logging.INFO)
            app.logger.info('HRMS QR check-in service startup')


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}


class QRCodeConfig:
    """QR code image settings"""

    ERROR_CORRECT = {
        'L': qrcode.constants.ERROR_CORRECT_L,  # ~7% error correction
        'M': qrcode.constants.ERROR_CORRECT_M,  # ~15% error correction (default)
        'Q': qrcode.constants.ERROR_CORRECT_Q,  # ~25% error correction
        'H': qrcode.constants.ERROR_CORRECT_H   # ~30% error correction
    }

    ERROR_CORRECTION_LEVEL = os.environ.get('QR_ERROR_CORRECTION') or 'M'
    BOX_SIZE = 10
    BORDER = 4
    FILL_COLOR = "black"
    BACK_COLOR = "white"

    @classmethod
    def image_settings(cls):
        return {
            'error_correction': cls.ERROR_CORRECT.get(cls.ERROR_CORRECTION_LEVEL, qrcode.constants.ERROR_CORRECT_M),
            'box_size': cls.BOX_SIZE,
            'border': cls.BORDER,
            'fill_color': cls.FILL_COLOR,
            'back_color': cls.BACK_COLOR,
        }


def get_config(config_name=None):
    """Get configuration based on environment variable"""
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'default')
    return config.get(config_name, DevelopmentConfig)


def validate_config(settings):
    """
    Validate configuration settings.

    Args:
        settings (dict): Flask app.config or any mapping of settings

    Returns:
        list: Error messages, empty when the configuration is usable
    """
    errors = []

    if settings.get('QR_REQUIRE_SIGNATURE') and not settings.get('QR_SIGNING_KEY'):
        errors.append("QR_SIGNING_KEY is required when QR_REQUIRE_SIGNATURE is enabled")

    if settings.get('REPLAY_BACKEND') not in ('memory', 'sqlite'):
        errors.append(f"Unknown REPLAY_BACKEND: {settings.get('REPLAY_BACKEND')}")

    if settings.get('REPLAY_RETENTION', timedelta(0)) <= timedelta(0):
        errors.append("REPLAY_RETENTION must be positive")

    for key in ('QR_CHECKIN_EXPIRY', 'QR_DOCUMENT_EXPIRY'):
        if settings.get(key, timedelta(0)) < timedelta(0):
            errors.append(f"{key} must not be negative")

    return errors


def init_config(app, config_name=None, overrides=None):
    """Initialize application with configuration"""
    config_class = get_config(config_name)
    config_class.init_app(app)
    if overrides:
        app.config.update(overrides)

    errors = validate_config(app.config)
    if errors:
        for error in errors:
            app.logger.error(f"Configuration error: {error}")
        raise RuntimeError("Configuration validation failed")

    return config_class
