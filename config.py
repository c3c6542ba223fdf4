# QR Classroom Attendance Tracker Configuration

import os
from pathlib import Path

# Base directory
BASE_DIR = Path(__file__).parent.absolute()


def _env_int(name, default):
    return int(os.environ.get(name) or default)


class Config:
    """Base configuration class"""

    # Flask Configuration
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'qr-attendance-secret-key-2025'

    # Database Configuration
    DATABASE_PATH = Path(os.environ.get('DATABASE_PATH') or BASE_DIR / 'database' / 'attendance.db')
    DATABASE_TIMEOUT = 30.0
    DATABASE_READ_RETRIES = 3
    DATABASE_RETRY_BACKOFF_SECONDS = 0.1

    # Export Configuration
    EXPORTS_FOLDER = BASE_DIR / 'exports'
    QR_CODES_FOLDER = EXPORTS_FOLDER / 'qr_codes'

    # QR Code Configuration
    QR_CODE_SIZE = 200  # pixels
    QR_CODE_MARGIN = 2  # modules
    QR_CODE_DARK_COLOR = '#1e293b'
    QR_CODE_LIGHT_COLOR = '#ffffff'

    # Student Configuration
    STUDENT_CODE_PREFIX = 'STU'

    # Attendance Configuration
    ATTENDANCE_LATE_THRESHOLD_MINUTES = _env_int('ATTENDANCE_LATE_THRESHOLD_MINUTES', 15)
    CLASS_DEFAULT_CAPACITY = 50

    # Security Configuration
    # werkzeug password hash of the operator key; writes are open when unset
    OPERATOR_KEY_HASH = os.environ.get('OPERATOR_KEY_HASH')

    # Logging Configuration
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'
    LOG_FILE = BASE_DIR / 'logs' / 'attendance.log'
    LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB
    LOG_BACKUP_COUNT = 5

    # Development Configuration
    DEBUG = os.environ.get('DEBUG', 'False').lower() in ['true', 'on', '1']
    TESTING = False

    @classmethod
    def init_app(cls, app):
        """Initialize application configuration"""
        # Create necessary directories
        directories = [
            Path(app.config['EXPORTS_FOLDER']),
            Path(app.config['QR_CODES_FOLDER']),
        ]
        if str(app.config['DATABASE_PATH']) != ':memory:':
            directories.append(Path(app.config['DATABASE_PATH']).parent)

        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    TESTING = False

    DATABASE_PATH = BASE_DIR / 'database' / 'attendance_dev.db'

    # More verbose logging
    LOG_LEVEL = 'DEBUG'


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = True

    # Tests point this at a temporary file
    DATABASE_PATH = BASE_DIR / 'database' / 'attendance_test.db'

    # No waiting between retries in tests
    DATABASE_READ_RETRIES = 1
    DATABASE_RETRY_BACKOFF_SECONDS = 0


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    TESTING = False

    DATABASE_PATH = Path(os.environ.get('DATABASE_PATH') or BASE_DIR / 'database' / 'attendance_prod.db')

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
            Path(app.config['LOG_FILE']).parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                app.config['LOG_FILE'],
                maxBytes=app.config['LOG_MAX_BYTES'],
                backupCount=app.config['LOG_BACKUP_COUNT']
            )
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
            ))
            file_handler.setLevel(logging.INFO)
            app.logger.addHandler(file_handler)

            app.logger.setLevel(logging.INFO)
            app.logger.info('QR Attendance Tracker startup')


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
def validate_config(settings):
    """Validate configuration settings"""
    errors = []

    if settings['ATTENDANCE_LATE_THRESHOLD_MINUTES'] < 0:
        errors.append("ATTENDANCE_LATE_THRESHOLD_MINUTES must not be negative")

    if settings['CLASS_DEFAULT_CAPACITY'] <= 0:
        errors.append("CLASS_DEFAULT_CAPACITY must be positive")

    if settings['DATABASE_READ_RETRIES'] < 0:
        errors.append("DATABASE_READ_RETRIES must not be negative")

    prefix = settings['STUDENT_CODE_PREFIX']
    if not prefix or ':' in prefix:
        errors.append("STUDENT_CODE_PREFIX must be non-empty and may not contain ':'")

    return errors
