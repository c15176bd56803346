import os


class Config:
    """Base configuration"""

    # Backup layout
    # One directory per host is created below BACKUP_ROOT
    BACKUP_ROOT = os.environ.get('BACKUP_ROOT') or '/backup/auto'
    CURRENT_DIR_NAME = 'current'
    LIMITED_ROLLBACK_DIR_NAME = 'rollback-limited'
    UNLIMITED_ROLLBACK_DIR_NAME = 'rollback-unlimited'

    # Exclude/incremental lists (rsync exclude format)
    LOCAL_EXCLUDE_LIST_FILE = os.environ.get('LOCAL_EXCLUDE_LIST_FILE') or '/etc/backupexcludelist'
    REMOTE_EXCLUDE_LIST_FILE = os.environ.get('REMOTE_EXCLUDE_LIST_FILE') or '/root/.backup/excludelist'
    REMOTE_INCREMENTAL_LIST_FILE = os.environ.get('REMOTE_INCREMENTAL_LIST_FILE') or '/root/.backup/incrementallist'
    REMOTE_REPORT_FILE = os.environ.get('REMOTE_REPORT_FILE') or '/root/.backup/backupreport.txt'

    # Rotating rollback policy
    ROLLBACK_MIN_ENTRIES = 10
    ROLLBACK_MAX_AGE_DAYS = 14

    # Transfer
    BWLIMIT = int(os.environ.get('BWLIMIT', 3000))  # KBytes per second
    RSYNC_BINARY = os.environ.get('RSYNC_BINARY') or 'rsync'

    # SSH
    SSH_USERNAME = os.environ.get('SSH_USERNAME') or 'root'
    SSH_KEY_FILE = os.environ.get('SSH_KEY_FILE')
    SSH_TIMEOUT = int(os.environ.get('SSH_TIMEOUT', 30))

    # Scratch files and locks
    SCRATCH_DIR = os.environ.get('SCRATCH_DIR') or '/tmp'
    LOCK_DIR = os.environ.get('LOCK_DIR') or '/var/run/backup'
    LOCK_STRATEGY = os.environ.get('LOCK_STRATEGY') or 'existence'  # existence or pid

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR')

    # Scheduler
    SCHEDULER_MAX_WORKERS = int(os.environ.get('SCHEDULER_MAX_WORKERS', 3))
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Keep everything under a local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    BACKUP_ROOT = os.path.join(DATA_DIR, 'backups')
    SCRATCH_DIR = os.path.join(DATA_DIR, 'temp')
    LOCK_DIR = os.path.join(DATA_DIR, 'locks')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class TestingConfig(Config):
    """Testing configuration"""
    DEBUG = True
    TESTING = True
    LOG_DIR = None


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


def load_config(config_name=None) -> dict:
    """
    Build a plain settings dict from one of the configuration classes.

    Only upper-case attributes are copied, so callers can ``update()`` the
    result freely without touching the class.

    Args:
        config_name: Key into ``config``; defaults to $REMOTEBACKUP_ENV or 'production'

    Returns:
        Dict of settings
    """
    if config_name is None:
        config_name = os.environ.get('REMOTEBACKUP_ENV', 'production')

    if config_name not in config:
        raise ValueError(f"Unknown configuration: {config_name}")

    config_class = config[config_name]
    settings = {'DEBUG': False, 'TESTING': False}
    for key in dir(config_class):
        if key.isupper():
            settings[key] = getattr(config_class, key)
    return settings
