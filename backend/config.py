"""
Runtime settings for the Launchpad control plane
Values come from the environment (optionally a .env file)
"""
import os
import logging
import sys

from dotenv import load_dotenv

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _int(name, default):
    return int(os.getenv(name, default))


def _float(name, default):
    return float(os.getenv(name, default))


class Settings:
    """All tunables, read once at start-up"""

    def __init__(self, **overrides):
        self.host = os.getenv('LAUNCHPAD_HOST', '0.0.0.0')
        self.port = _int('LAUNCHPAD_PORT', 5000)
        self.public_host = os.getenv('PUBLIC_HOST', 'localhost')
        self.cors_origins = os.getenv('CORS_ORIGINS', 'http://localhost:5173').split(',')

        self.database_type = os.getenv('DATABASE_TYPE', 'sqlite').lower()
        self.database_path = os.getenv('DATABASE_PATH', './db/launchpad.db')
        self.database_url = os.getenv('DATABASE_URL')
        self.db_pool_min = _int('DB_POOL_MIN', 2)
        self.db_pool_max = _int('DB_POOL_MAX', 10)

        self.encryption_key = os.getenv('LAUNCHPAD_ENCRYPTION_KEY', 'change_this_encryption_key_in_production')

        self.image_prefix = os.getenv('IMAGE_PREFIX', 'launchpad')
        self.image_retention = _int('IMAGE_RETENTION', 3)
        self.tag_lookup_attempts = _int('TAG_LOOKUP_ATTEMPTS', 5)
        self.tag_lookup_delay = _float('TAG_LOOKUP_DELAY', 1.0)

        self.lxc_start_timeout = _float('LXC_START_TIMEOUT', 30)
        self.lxc_poll_interval = _float('LXC_POLL_INTERVAL', 1)

        self.log_queue_size = _int('LOG_QUEUE_SIZE', 100)
        self.sse_keepalive = _float('SSE_KEEPALIVE', 15)

        self.app_port_min = _int('APP_PORT_MIN', 3000)
        self.app_port_max = _int('APP_PORT_MAX', 9999)

        self.deploy_rate_limit = _int('DEPLOY_RATE_LIMIT', 30)       # per hour
        self.api_rate_limit = _int('API_RATE_LIMIT', 300)            # per minute

        self.log_file = os.getenv('LOG_FILE', 'launchpad.log')
        self.log_level = os.getenv('LOG_LEVEL', 'INFO').upper()

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)


def load_settings(**overrides):
    load_dotenv()
    return Settings(**overrides)


def configure_logging(settings):
    handlers = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file))
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers
    )
