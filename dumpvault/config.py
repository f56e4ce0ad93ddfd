import os


def _database_environments(environ=os.environ):
    """Collect DATABASE_URL_<NAME> variables as {name: url}."""
    prefix = 'DATABASE_URL_'
    return {
        key[len(prefix):].lower(): value
        for key, value in environ.items()
        if key.startswith(prefix) and value
    }


def _database_options(environ=os.environ):
    options = {}
    if environ.get('PG_VERSION'):
        options['pg_version'] = environ['PG_VERSION']
    return options


class Config:
    """Base configuration"""

    # Database to back up
    DATABASE_URL = os.environ.get('DATABASE_URL')
    DATABASES = _database_environments()
    DATABASE_OPTIONS = _database_options()

    # Remote storage
    STORAGE_BACKEND = os.environ.get('STORAGE_BACKEND', 's3')
    STORAGE_DIRECTORY = os.environ.get('STORAGE_DIRECTORY')
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')
    AWS_REGION = os.environ.get('AWS_REGION', 'us-east-1')
    S3_ENDPOINT_URL = os.environ.get('S3_ENDPOINT_URL')
    S3_OBJECT_ACL = os.environ.get('S3_OBJECT_ACL', 'private')

    # Temp files for dumps and downloads
    DUMP_LOCAL_DIR = os.environ.get('DUMP_LOCAL_DIR') or '/data/temp'

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL')
    LOG_DIR = os.environ.get('LOG_DIR')

    # Scheduler
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'false').lower() == 'true'
    SCHEDULER_TIMEZONE = 'UTC'
    BACKUP_SCHEDULE_CRON = os.environ.get('BACKUP_SCHEDULE_CRON', '0 * * * *')
    CLEAN_SCHEDULE_CRON = os.environ.get('CLEAN_SCHEDULE_CRON', '30 2 * * *')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    DUMP_LOCAL_DIR = os.environ.get('DUMP_LOCAL_DIR') or os.path.join(DATA_DIR, 'temp')


class TestingConfig(DevelopmentConfig):
    """Testing configuration"""
    TESTING = True
    SCHEDULER_ENABLED = False


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}
