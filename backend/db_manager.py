"""
Database Manager with PostgreSQL support and connection pooling
Supports both PostgreSQL (production) and SQLite (development)
"""
import os
import sqlite3
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

# Try to import PostgreSQL
try:
    import psycopg2
    from psycopg2 import pool
    from psycopg2.extras import RealDictCursor
    POSTGRES_AVAILABLE = True
except ImportError:
    POSTGRES_AVAILABLE = False
    logger.warning("PostgreSQL driver not installed, using SQLite")

APP_COLUMNS = ('id', 'name', 'repo_url', 'language', 'port', 'container_id', 'image_id',
               'runtime_type', 'status', 'error_msg', 'created_at', 'updated_at')
UPDATABLE_APP_COLUMNS = set(APP_COLUMNS) - {'id', 'repo_url', 'created_at'}


def _now():
    return datetime.now(timezone.utc).isoformat()


class DatabaseManager:
    """Application and env var rows on PostgreSQL or SQLite"""

    def __init__(self, settings=None, db_type=None, db_path=None, database_url=None):
        self.db_type = (db_type or (settings.database_type if settings else 'sqlite')).lower()
        self.db_path = db_path or (settings.database_path if settings else './db/launchpad.db')
        self.database_url = database_url or (settings.database_url if settings else None)
        self.pool_min = settings.db_pool_min if settings else 2
        self.pool_max = settings.db_pool_max if settings else 10
        self.connection_pool = None
        self._lock = threading.Lock()

        if self.db_type == 'postgresql' and POSTGRES_AVAILABLE:
            self._init_postgresql()
        else:
            self._init_sqlite()

        self.init_tables()

    def _init_postgresql(self):
        """Initialize PostgreSQL connection pool"""
        if not self.database_url:
            logger.warning("DATABASE_URL not set, falling back to SQLite")
            self._init_sqlite()
            return
        try:
            self.connection_pool = pool.ThreadedConnectionPool(
                self.pool_min,
                self.pool_max,
                self.database_url,
                cursor_factory=RealDictCursor
            )
            logger.info(f"✅ PostgreSQL connection pool initialized ({self.pool_min}-{self.pool_max} connections)")
        except psycopg2.Error as e:
            logger.error(f"❌ PostgreSQL initialization failed: {str(e)}, falling back to SQLite")
            self._init_sqlite()

    def _init_sqlite(self):
        """Initialize SQLite database"""
        self.db_type = 'sqlite'
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        logger.info(f"✅ SQLite database initialized: {self.db_path}")

    @property
    def _integrity_errors(self):
        if self.db_type == 'postgresql':
            return (psycopg2.IntegrityError,)
        return (sqlite3.IntegrityError,)

    def _q(self, query):
        return query.replace('?', '%s') if self.db_type == 'postgresql' else query

    @contextmanager
    def get_connection(self):
        """Get database connection (context manager)"""
        if self.db_type == 'postgresql' and self.connection_pool:
            conn = self.connection_pool.getconn()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                self.connection_pool.putconn(conn)
        else:
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute('PRAGMA foreign_keys = ON')
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def _row(self, row):
        if row is None:
            return None
        if self.db_type == 'postgresql':
            return dict(row)
        return {key: row[key] for key in row.keys()}

    def init_tables(self):
        """Initialize database tables"""
        secret_type = 'BOOLEAN' if self.db_type == 'postgresql' else 'INTEGER'
        env_id = 'SERIAL PRIMARY KEY' if self.db_type == 'postgresql' else 'INTEGER PRIMARY KEY AUTOINCREMENT'
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS apps (
                    id VARCHAR(255) PRIMARY KEY,
                    name TEXT NOT NULL,
                    repo_url TEXT NOT NULL UNIQUE,
                    language TEXT,
                    port INTEGER,
                    container_id TEXT,
                    image_id TEXT,
                    runtime_type TEXT,
                    status TEXT NOT NULL,
                    error_msg TEXT,
                    created_at TEXT,
                    updated_at TEXT
                )
            ''')
            cursor.execute(f'''
                CREATE TABLE IF NOT EXISTS env_vars (
                    id {env_id},
                    app_id VARCHAR(255) NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    is_secret {secret_type} NOT NULL DEFAULT {'FALSE' if self.db_type == 'postgresql' else 0},
                    created_at TEXT,
                    updated_at TEXT,
                    UNIQUE (app_id, key),
                    FOREIGN KEY(app_id) REFERENCES apps(id) ON DELETE CASCADE
                )
            ''')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_apps_status ON apps(status)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_env_vars_app ON env_vars(app_id)')
        logger.info("✅ Database tables initialized")

    def ping(self):
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute('SELECT 1')
                cursor.fetchone()
            return True
        except Exception as e:
            logger.error(f"❌ Database ping failed: {str(e)}")
            return False

    ###############################################
    # Applications
    ###############################################

    def create_app(self, app: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a new application row; duplicate repo_url raises ConflictError"""
        now = _now()
        record = {column: app.get(column) for column in APP_COLUMNS}
        record['created_at'] = record['created_at'] or now
        record['updated_at'] = record['updated_at'] or now
        placeholders = ', '.join(['?'] * len(APP_COLUMNS))
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    self._q(f"INSERT INTO apps ({', '.join(APP_COLUMNS)}) VALUES ({placeholders})"),
                    tuple(record[column] for column in APP_COLUMNS)
                )
        except self._integrity_errors as e:
            raise ConflictError(f"Application for {record['repo_url']} already exists: {str(e)}")
        return record

    def get_app(self, app_id: str) -> Optional[Dict[str, Any]]:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(self._q('SELECT * FROM apps WHERE id = ?'), (app_id,))
            return self._row(cursor.fetchone())

    def get_app_by_repo_url(self, repo_url: str) -> Optional[Dict[str, Any]]:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(self._q('SELECT * FROM apps WHERE repo_url = ?'), (repo_url,))
            return self._row(cursor.fetchone())

    def list_apps(self) -> List[Dict[str, Any]]:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('SELECT * FROM apps ORDER BY created_at DESC')
            return [self._row(row) for row in cursor.fetchall()]

    def update_app(self, app_id: str, **fields) -> Dict[str, Any]:
        unknown = set(fields) - UPDATABLE_APP_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update columns: {', '.join(sorted(unknown))}")
        fields['updated_at'] = _now()
        assignments = ', '.join(f"{column} = ?" for column in fields)
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                self._q(f"UPDATE apps SET {assignments} WHERE id = ?"),
                tuple(fields.values()) + (app_id,)
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Application {app_id} not found")
        return self.get_app(app_id)

    def delete_app(self, app_id: str) -> bool:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(self._q('DELETE FROM env_vars WHERE app_id = ?'), (app_id,))
            cursor.execute(self._q('DELETE FROM apps WHERE id = ?'), (app_id,))
            return cursor.rowcount > 0

    ###############################################
    # Environment variables
    ###############################################

    def _env_row(self, row):
        env = self._row(row)
        if env is not None:
            env['is_secret'] = bool(env.get('is_secret'))
        return env

    def create_env_var(self, app_id: str, key: str, value: str, is_secret: bool = False) -> Dict[str, Any]:
        now = _now()
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    self._q('INSERT INTO env_vars (app_id, key, value, is_secret, created_at, updated_at) '
                            'VALUES (?, ?, ?, ?, ?, ?)'),
                    (app_id, key, value, bool(is_secret), now, now)
                )
        except self._integrity_errors:
            raise ConflictError(f"Environment variable {key} already exists")
        return self.get_env_var(app_id, key)

    def get_env_var(self, app_id: str, key: str) -> Optional[Dict[str, Any]]:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(self._q('SELECT * FROM env_vars WHERE app_id = ? AND key = ?'), (app_id, key))
            return self._env_row(cursor.fetchone())

    def list_env_vars(self, app_id: str) -> List[Dict[str, Any]]:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(self._q('SELECT * FROM env_vars WHERE app_id = ? ORDER BY key'), (app_id,))
            return [self._env_row(row) for row in cursor.fetchall()]

    def count_env_vars(self, app_id: str) -> int:
        return len(self.list_env_vars(app_id))

    def update_env_var(self, app_id: str, key: str, value: str, is_secret: Optional[bool] = None) -> Dict[str, Any]:
        fields = {'value': value, 'updated_at': _now()}
        if is_secret is not None:
            fields['is_secret'] = bool(is_secret)
        assignments = ', '.join(f"{column} = ?" for column in fields)
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                self._q(f"UPDATE env_vars SET {assignments} WHERE app_id = ? AND key = ?"),
                tuple(fields.values()) + (app_id, key)
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Environment variable {key} not found")
        return self.get_env_var(app_id, key)

    def delete_env_var(self, app_id: str, key: str) -> bool:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(self._q('DELETE FROM env_vars WHERE app_id = ? AND key = ?'), (app_id, key))
            return cursor.rowcount > 0

    def replace_env_vars(self, app_id: str, items: List[Dict[str, Any]]) -> None:
        """Swap the whole set in one transaction; items carry key/value/is_secret"""
        now = _now()
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(self._q('DELETE FROM env_vars WHERE app_id = ?'), (app_id,))
            for item in items:
                cursor.execute(
                    self._q('INSERT INTO env_vars (app_id, key, value, is_secret, created_at, updated_at) '
                            'VALUES (?, ?, ?, ?, ?, ?)'),
                    (app_id, item['key'], item['value'], bool(item.get('is_secret')), now, now)
                )

    def close(self):
        """Close database connections"""
        if self.connection_pool:
            self.connection_pool.closeall()
            logger.info("✅ PostgreSQL connection pool closed")
