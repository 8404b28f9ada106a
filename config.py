# QR Check-in Attendance Service Configuration

import os
from datetime import timedelta
from pathlib import Path

# Base directory
BASE_DIR = Path(__file__).parent.absolute()

# Development-only fallbacks, rejected by validate_config in production
DEFAULT_SECRET_KEY = 'attendqr-secret-key-2025'
DEFAULT_QR_SIGNING_SECRET = 'attendqr-signing-secret-change-me'
MIN_SIGNING_SECRET_LENGTH = 32


class Config:
    """Base configuration class"""

    # Flask Configuration
    SECRET_KEY = os.environ.get('SECRET_KEY') or DEFAULT_SECRET_KEY

    # Database Configuration
    DATABASE_PATH = BASE_DIR / 'database' / 'attendance.db'

    # Export Configuration
    REPORTS_FOLDER = BASE_DIR / 'reports'
    QR_CODES_FOLDER = BASE_DIR / 'static' / 'qr_codes'
    MAX_CONTENT_LENGTH = 1 * 1024 * 1024  # 1MB, scan payloads are small

    # QR Token Configuration
    QR_SIGNING_SECRET = os.environ.get('QR_SIGNING_SECRET') or DEFAULT_QR_SIGNING_SECRET
    QR_TOKEN_VALIDITY_MINUTES = int(os.environ.get('QR_TOKEN_VALIDITY_MINUTES') or 5)
    QR_CODE_SIZE = 10
    QR_CODE_BORDER = 4

    # Geofence Configuration
    GEOFENCE_RADIUS_METERS = float(os.environ.get('GEOFENCE_RADIUS_METERS') or 100)

    # Scanner Configuration
    LOCATION_MAX_RETRIES = 3
    LOCATION_RETRY_DELAY_SECONDS = 2.0
    SUCCESS_NAVIGATION_DELAY_SECONDS = 2.5

    # Session Configuration
    PERMANENT_SESSION_LIFETIME = timedelta(hours=8)
    SESSION_COOKIE_SECURE = False  # Set to True in production with HTTPS
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # Logging Configuration
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'
    LOG_FILE = BASE_DIR / 'logs' / 'attendance.log'
    LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB
    LOG_BACKUP_COUNT = 5

    # Development Configuration
    DEBUG = os.environ.get('DEBUG', 'False').lower() in ['true', 'on', '1']
    TESTING = False
    SEED_DEMO_DATA = True
    REQUIRE_CONFIGURED_SECRETS = False

    @classmethod
    def init_app(cls, app):
        """Initialize application configuration"""
        # Create necessary directories
        directories = [
            cls.REPORTS_FOLDER,
            cls.QR_CODES_FOLDER,
            cls.LOG_FILE.parent
        ]
        if str(cls.DATABASE_PATH) != ':memory:':
            directories.append(Path(cls.DATABASE_PATH).parent)

        for directory in directories:
            Path(directory).mkdir(parents=True, exist_ok=True)

        # Set Flask configuration
        app.config.update({
            'SECRET_KEY': cls.SECRET_KEY,
            'PERMANENT_SESSION_LIFETIME': cls.PERMANENT_SESSION_LIFETIME,
            'SESSION_COOKIE_SECURE': cls.SESSION_COOKIE_SECURE,
            'SESSION_COOKIE_HTTPONLY': cls.SESSION_COOKIE_HTTPONLY,
            'SESSION_COOKIE_SAMESITE': cls.SESSION_COOKIE_SAMESITE,
            'MAX_CONTENT_LENGTH': cls.MAX_CONTENT_LENGTH,
            'TESTING': cls.TESTING,
            'DATABASE_PATH': str(cls.DATABASE_PATH),
            'REPORTS_FOLDER': str(cls.REPORTS_FOLDER),
            'QR_CODES_FOLDER': str(cls.QR_CODES_FOLDER),
            'QR_SIGNING_SECRET': cls.QR_SIGNING_SECRET,
            'QR_TOKEN_VALIDITY_MINUTES': cls.QR_TOKEN_VALIDITY_MINUTES,
            'QR_CODE_SIZE': cls.QR_CODE_SIZE,
            'QR_CODE_BORDER': cls.QR_CODE_BORDER,
            'GEOFENCE_RADIUS_METERS': cls.GEOFENCE_RADIUS_METERS,
            'LOCATION_MAX_RETRIES': cls.LOCATION_MAX_RETRIES,
            'LOCATION_RETRY_DELAY_SECONDS': cls.LOCATION_RETRY_DELAY_SECONDS,
            'SUCCESS_NAVIGATION_DELAY_SECONDS': cls.SUCCESS_NAVIGATION_DELAY_SECONDS,
            'SEED_DEMO_DATA': cls.SEED_DEMO_DATA,
        })


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    TESTING = False

    DATABASE_PATH = BASE_DIR / 'database' / 'attendance_dev.db'
    SESSION_COOKIE_SECURE = False

    # More verbose logging
    LOG_LEVEL = 'DEBUG'


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = True

    DATABASE_PATH = BASE_DIR / 'database' / 'attendance_test.db'
    QR_SIGNING_SECRET = 'testing-signing-secret'
    SEED_DEMO_DATA = False

    # No waiting in scanner flows under test
    LOCATION_RETRY_DELAY_SECONDS = 0
    SUCCESS_NAVIGATION_DELAY_SECONDS = 0


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    TESTING = False

    # Enhanced security for production
    SESSION_COOKIE_SECURE = True  # Requires HTTPS
    SEED_DEMO_DATA = False
    REQUIRE_CONFIGURED_SECRETS = True

    DATABASE_PATH = BASE_DIR / 'database' / 'attendance_prod.db'

    # Production logging
    LOG_LEVEL = 'WARNING'

    @classmethod
    def init_app(cls, app):
        super().init_app(app)

        # Production-specific initialization
        import logging
        from logging.handlers import RotatingFileHandler

        # Setup file logging
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
            app.logger.info('QR check-in service startup')


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}


# Environment-specific configurations
def get_config(config_name=None):
    """Get configuration based on environment variable"""
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'default')
    return config.get(config_name, DevelopmentConfig)


# Validation functions
def validate_config(config_class=Config):
    """Validate configuration settings"""
    errors = []

    if not config_class.QR_SIGNING_SECRET:
        errors.append("QR_SIGNING_SECRET must not be empty")
    elif config_class.REQUIRE_CONFIGURED_SECRETS:
        if config_class.QR_SIGNING_SECRET == DEFAULT_QR_SIGNING_SECRET:
            errors.append("QR_SIGNING_SECRET must be set in the environment")
        elif len(config_class.QR_SIGNING_SECRET) < MIN_SIGNING_SECRET_LENGTH:
            errors.append(
                f"QR_SIGNING_SECRET must be at least {MIN_SIGNING_SECRET_LENGTH} characters"
            )

    if config_class.REQUIRE_CONFIGURED_SECRETS and config_class.SECRET_KEY == DEFAULT_SECRET_KEY:
        errors.append("SECRET_KEY must be set in the environment")

    if config_class.QR_TOKEN_VALIDITY_MINUTES <= 0:
        errors.append("QR_TOKEN_VALIDITY_MINUTES must be positive")

    if config_class.GEOFENCE_RADIUS_METERS <= 0:
        errors.append("GEOFENCE_RADIUS_METERS must be positive")

    if config_class.LOCATION_MAX_RETRIES < 0:
        errors.append("LOCATION_MAX_RETRIES cannot be negative")

    return errors


# Initialize configuration
def init_config(app, config_name=None):
    """Initialize application with configuration"""
    config_class = get_config(config_name)

    # Validate configuration
    errors = validate_config(config_class)
    if errors:
        for error in errors:
            app.logger.error(f"Configuration error: {error}")
        raise RuntimeError("Configuration validation failed")

    config_class.init_app(app)
    return config_class
