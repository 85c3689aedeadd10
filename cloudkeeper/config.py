import json
import os


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_list(name, default=''):
    value = os.environ.get(name, default)
    return [item.strip() for item in value.split(',') if item.strip()]


def _env_int(name, default=None):
    value = os.environ.get(name)
    if value is None or value.strip() == '':
        return default
    return int(value)


def _env_json(name, default):
    value = os.environ.get(name)
    if not value:
        return default
    return json.loads(value)


class Config:
    """Base configuration"""

    # Directories
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Destination
    STORAGE_BACKEND = os.environ.get('STORAGE_BACKEND', 'drive').lower()
    DRIVE_FOLDER_ID = os.environ.get('DRIVE_FOLDER_ID')
    DRIVE_TOKEN_FILE = os.environ.get('DRIVE_TOKEN_FILE') or '/data/token.json'
    GOOGLE_OAUTH_CLIENT_ID = os.environ.get('GOOGLE_OAUTH_CLIENT_ID')
    GOOGLE_OAUTH_CLIENT_SECRET = os.environ.get('GOOGLE_OAUTH_CLIENT_SECRET')
    S3_BUCKET = os.environ.get('S3_BUCKET')
    S3_PREFIX = os.environ.get('S3_PREFIX') or 'backups'
    S3_ENDPOINT_URL = os.environ.get('S3_ENDPOINT_URL')
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')
    AWS_SESSION_TOKEN = os.environ.get('AWS_SESSION_TOKEN')
    AWS_REGION = os.environ.get('AWS_REGION') or 'us-east-1'

    # Database
    DB_BACKUP_ENABLED = _env_bool('DB_BACKUP_ENABLED', True)
    DB_HOST = os.environ.get('DB_HOST') or 'localhost'
    DB_PORT = _env_int('DB_PORT', 3306)
    DB_USER = os.environ.get('DB_USER') or 'root'
    DB_PASSWORD = os.environ.get('DB_PASSWORD', '')
    DB_BACKUP_STRATEGY = os.environ.get('DB_BACKUP_STRATEGY', 'all')
    DB_INDIVIDUAL = _env_list('DB_INDIVIDUAL')
    DB_EXCLUDED = _env_list('DB_EXCLUDED', 'information_schema,performance_schema,mysql,sys')
    MYSQLDUMP_BIN = os.environ.get('MYSQLDUMP_BIN') or 'mysqldump'
    MYSQL_BIN = os.environ.get('MYSQL_BIN') or 'mysql'

    # File groups: {"name": ["/path", ...]}
    BACKUP_GROUPS = _env_json('BACKUP_GROUPS', {})

    # Retention
    CLEANUP_ENABLED = _env_bool('CLEANUP_ENABLED', True)
    CLEANUP_STRATEGY = os.environ.get('CLEANUP_STRATEGY', 'count')
    CLEANUP_KEEP_LAST = _env_int('CLEANUP_KEEP_LAST', 5)
    CLEANUP_MAX_AGE_DAYS = _env_int('CLEANUP_MAX_AGE_DAYS')
    CLEANUP_FILE_PATTERNS = _env_list('CLEANUP_FILE_PATTERNS', 'all-databases-*.sql,db-*.sql,*.tar.gz')

    # Scheduler
    BACKUP_SCHEDULE = _env_list('BACKUP_SCHEDULE', '03:00,06:00,09:00,12:00,15:00,18:00,21:00,00:00')
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or 'UTC'

    # Progress bars on stdout in addition to log lines
    TERMINAL_PROGRESS = _env_bool('TERMINAL_PROGRESS', False)

    # Notifications
    NOTIFY_WEBHOOK_URL = os.environ.get('NOTIFY_WEBHOOK_URL')
    NOTIFY_USERNAME = os.environ.get('NOTIFY_USERNAME') or 'Cloudkeeper'

    # HTTP surface
    API_TOKEN = os.environ.get('API_TOKEN')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    TERMINAL_PROGRESS = _env_bool('TERMINAL_PROGRESS', True)

    # Use local data directory for development
    DATA_DIR = os.path.join(Config.BASE_DIR, 'data')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    DRIVE_TOKEN_FILE = os.environ.get('DRIVE_TOKEN_FILE') or os.path.join(DATA_DIR, 'token.json')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    SCHEDULER_ENABLED = False
    API_TOKEN = None
    NOTIFY_WEBHOOK_URL = None


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
