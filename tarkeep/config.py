import os


def _env_flag(name, default):
    return os.environ.get(name, default).lower() == 'true'


class Config:
    """Base configuration"""

    # Data locations
    DATA_DIR = os.environ.get('DATA_DIR') or '/data'
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(DATA_DIR, 'logs')

    # Database (job configuration and run history)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/tarkeep.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Storage
    LOCAL_BACKUP_DIR = os.environ.get('LOCAL_BACKUP_DIR') or '/data/local_backups'
    REMOTE_MOUNT_DIR = os.environ.get('REMOTE_MOUNT_DIR') or '/mnt/s3backup'

    # Scheduler
    SCHEDULER_ENABLED = _env_flag('SCHEDULER_ENABLED', 'false')
    SCHEDULER_TICK_SECONDS = int(os.environ.get('SCHEDULER_TICK_SECONDS', 60))
    SCHEDULER_MAX_WORKERS = int(os.environ.get('SCHEDULER_MAX_WORKERS', 4))
    DEFAULT_SCHEDULE_INTERVAL = '24h'

    # Quiesce/resume around the archive window ('none' or 'docker')
    QUIESCE_BACKEND = os.environ.get('QUIESCE_BACKEND') or 'none'
    DOCKER_STATE_FILE = os.environ.get('DOCKER_STATE_FILE') or os.path.join(DATA_DIR, 'containers.json')

    # Restore
    VERIFY_CHECKSUM_ON_RESTORE = True


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "tarkeep.db")}'
    LOCAL_BACKUP_DIR = os.path.join(DATA_DIR, 'local_backups')
    REMOTE_MOUNT_DIR = os.path.join(DATA_DIR, 'remote_mount')
    DOCKER_STATE_FILE = os.path.join(DATA_DIR, 'containers.json')


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SCHEDULER_ENABLED = False
    QUIESCE_BACKEND = 'none'
    LOG_DIR = None


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}
