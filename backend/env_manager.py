"""
Per-application environment variables
Secret values are stored as Fernet ciphertext and only decrypted for injection
"""
import re
import logging

from errors import ValidationError, NotFoundError, ConflictError
from secrets_manager import MASK, looks_secret

logger = logging.getLogger(__name__)

KEY_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
MAX_KEY_LENGTH = 100
MAX_VALUE_LENGTH = 1000
MAX_VARS_PER_APP = 50

RESERVED_KEYS = frozenset({
    # system
    'PATH', 'HOME', 'USER', 'SHELL', 'TERM', 'PWD', 'OLDPWD', 'LANG', 'LC_ALL',
    'LD_LIBRARY_PATH', 'LD_PRELOAD', 'TMPDIR', 'HOSTNAME',
    # container / runtime
    'DOCKER_HOST', 'CONTAINER_ID', 'NODE_OPTIONS', 'PYTHONPATH', 'GOPATH',
    # platform
    'PORT', 'LAUNCHPAD_APP_ID', 'LAUNCHPAD_APP_NAME',
})


def validate_key(key):
    if not key or not isinstance(key, str):
        raise ValidationError("Environment variable key is required")
    if len(key) > MAX_KEY_LENGTH:
        raise ValidationError(f"Environment variable key exceeds {MAX_KEY_LENGTH} characters")
    if not KEY_PATTERN.match(key):
        raise ValidationError(f"Invalid environment variable key: {key}")
    if key.upper() in RESERVED_KEYS:
        raise ValidationError(f"Environment variable {key} is reserved")
    return key


def validate_value(value):
    if value is None or not isinstance(value, str) or value == '':
        raise ValidationError("Environment variable value is required")
    if len(value) > MAX_VALUE_LENGTH:
        raise ValidationError(f"Environment variable value exceeds {MAX_VALUE_LENGTH} characters")
    if '\x00' in value or '\n' in value or '\r' in value:
        raise ValidationError("Environment variable value contains invalid characters")
    return value


def normalize_items(items):
    """Validate a request's env_vars list into [{key, value, is_secret}]"""
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValidationError("env_vars must be a list")
    if len(items) > MAX_VARS_PER_APP:
        raise ValidationError(f"At most {MAX_VARS_PER_APP} environment variables per application")

    normalized = []
    seen = set()
    for item in items:
        if not isinstance(item, dict):
            raise ValidationError("Each env var must be an object with key and value")
        key = validate_key(item.get('key') or item.get('name'))
        value = validate_value(item.get('value'))
        if key in seen:
            raise ValidationError(f"Duplicate environment variable {key}")
        seen.add(key)
        secret = item.get('secret', item.get('is_secret'))
        if secret is None:
            secret = looks_secret(key, value)
        normalized.append({'key': key, 'value': value, 'is_secret': bool(secret)})
    return normalized


class EnvVarManager:
    def __init__(self, db, secret_box):
        self.db = db
        self.secret_box = secret_box

    def _stored_value(self, value, is_secret):
        return self.secret_box.encrypt(value) if is_secret else value

    @staticmethod
    def present(env):
        """Read-path view; secrets are always masked"""
        return {
            'key': env['key'],
            'value': MASK if env['is_secret'] else env['value'],
            'is_secret': env['is_secret'],
            'created_at': env.get('created_at'),
            'updated_at': env.get('updated_at'),
        }

    def _require_app(self, app_id):
        if not self.db.get_app(app_id):
            raise NotFoundError(f"Application {app_id} not found")

    def list(self, app_id):
        self._require_app(app_id)
        return [self.present(env) for env in self.db.list_env_vars(app_id)]

    def get(self, app_id, key):
        self._require_app(app_id)
        env = self.db.get_env_var(app_id, key)
        if env is None:
            raise NotFoundError(f"Environment variable {key} not found")
        return self.present(env)

    def create(self, app_id, key, value, is_secret=None):
        self._require_app(app_id)
        validate_key(key)
        validate_value(value)
        if self.db.get_env_var(app_id, key) is not None:
            raise ConflictError(f"Environment variable {key} already exists")
        if self.db.count_env_vars(app_id) >= MAX_VARS_PER_APP:
            raise ValidationError(f"At most {MAX_VARS_PER_APP} environment variables per application")
        if is_secret is None:
            is_secret = looks_secret(key, value)
        env = self.db.create_env_var(app_id, key, self._stored_value(value, is_secret), is_secret)
        logger.info(f"🔑 Env var {key} added to {app_id}{' (secret)' if is_secret else ''}")
        return self.present(env)

    def update(self, app_id, key, value, is_secret=None):
        self._require_app(app_id)
        validate_value(value)
        current = self.db.get_env_var(app_id, key)
        if current is None:
            raise NotFoundError(f"Environment variable {key} not found")
        secret = current['is_secret'] if is_secret is None else bool(is_secret)
        env = self.db.update_env_var(app_id, key, self._stored_value(value, secret), secret)
        return self.present(env)

    def delete(self, app_id, key):
        self._require_app(app_id)
        if not self.db.delete_env_var(app_id, key):
            raise NotFoundError(f"Environment variable {key} not found")

    def replace(self, app_id, items):
        """items are already normalized"""
        self.db.replace_env_vars(app_id, [
            {'key': item['key'], 'value': self._stored_value(item['value'], item['is_secret']),
             'is_secret': item['is_secret']}
            for item in items
        ])

    def resolve(self, app_id):
        """Plaintext environment for container injection"""
        resolved = {}
        for env in self.db.list_env_vars(app_id):
            value = env['value']
            if env['is_secret']:
                value = self.secret_box.decrypt(value)
            resolved[env['key']] = value
        return resolved

    def plain(self, app_id):
        """Non-secret values only, safe to render into a build descriptor"""
        return {env['key']: env['value'] for env in self.db.list_env_vars(app_id) if not env['is_secret']}
