"""
SQLite Activity Store Backend

File-based activity store using SQLite with:
- Thread-safe operations
- Persistent storage
- ACID transactions
- Automatic schema migration
"""

import sqlite3
import json
import threading
from pathlib import Path
from typing import List, Optional
from datetime import datetime, timedelta, timezone
from contextlib import contextmanager

from qbt_reconciler.activity import ActivityRecord, ActivityStore
from qbt_reconciler.logging import get_logger

logger = get_logger(__name__)

MAX_LIST_LIMIT = 500


class SQLiteActivityStore(ActivityStore):
    """
    SQLite-based activity store

    One table, activity, indexed by instance and creation time.
    Thread safety via connection-per-thread pattern.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: str = '/config/qbt-reconciler.db'):
        """
        Initialize SQLite store

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.local = threading.local()
        self._connections = []
        self._conn_lock = threading.Lock()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

        logger.info(f"SQLite activity store initialized: {self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get thread-local database connection

        Returns:
            SQLite connection for current thread
        """
        if not hasattr(self.local, 'conn'):
            conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                isolation_level=None  # Autocommit mode
            )
            conn.row_factory = sqlite3.Row
            conn.execute('PRAGMA journal_mode=WAL')

            with self._conn_lock:
                self._connections.append(conn)

            self.local.conn = conn

        return self.local.conn

    @contextmanager
    def _transaction(self):
        """
        Context manager for database transactions

        Usage:
            with self._transaction() as conn:
                conn.execute(...)
        """
        conn = self._get_connection()
        try:
            conn.execute('BEGIN')
            yield conn
            conn.execute('COMMIT')
        except Exception:
            conn.execute('ROLLBACK')
            raise

    def _init_database(self):
        """Initialize database schema and run migrations"""
        conn = self._get_connection()

        conn.execute('''
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor = conn.execute('SELECT MAX(version) FROM schema_version')
        current_version = cursor.fetchone()[0]

        if current_version is None:
            self._create_schema_v1(conn)
            conn.execute('INSERT INTO schema_version (version) VALUES (?)', (self.SCHEMA_VERSION,))
            logger.info(f"Created activity schema v{self.SCHEMA_VERSION}")
        elif current_version < self.SCHEMA_VERSION:
            self._migrate_schema(conn, current_version)

    def _create_schema_v1(self, conn: sqlite3.Connection):
        """Create initial database schema (version 1)"""
        conn.execute('''
            CREATE TABLE IF NOT EXISTS activity (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                instance TEXT NOT NULL,
                hash TEXT,
                torrent_name TEXT,
                tracker_domain TEXT,
                action TEXT NOT NULL,
                rule_id INTEGER,
                rule_name TEXT,
                outcome TEXT NOT NULL,
                reason TEXT,
                details TEXT,
                created_at TIMESTAMP NOT NULL
            )
        ''')

        conn.execute('CREATE INDEX IF NOT EXISTS idx_activity_instance ON activity(instance, created_at)')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_activity_created_at ON activity(created_at)')

    def _migrate_schema(self, conn: sqlite3.Connection, from_version: int):
        """
        Run schema migrations

        Args:
            conn: Database connection
            from_version: Current schema version
        """
        logger.info(f"Schema migration from v{from_version} to v{self.SCHEMA_VERSION} completed")

    def create(self, record: ActivityRecord) -> int:
        """Store a record"""
        with self._transaction() as conn:
            cursor = conn.execute('''
                INSERT INTO activity (instance, hash, torrent_name, tracker_domain, action,
                                      rule_id, rule_name, outcome, reason, details, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                record.instance, record.hash, record.torrent_name, record.tracker_domain, record.action,
                record.rule_id, record.rule_name, record.outcome, record.reason,
                json.dumps(record.details) if record.details else None,
                record.created_at.isoformat(),
            ))
            activity_id = cursor.lastrowid

        logger.debug(f"Recorded activity {activity_id}: {record.action} ({record.outcome}) on {record.instance}")
        return activity_id

    def list(self, instance: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[ActivityRecord]:
        """List records newest first"""
        limit = min(limit, MAX_LIST_LIMIT)

        conn = self._get_connection()
        query = 'SELECT * FROM activity WHERE 1=1'
        params = []

        if instance:
            query += ' AND instance = ?'
            params.append(instance)

        query += ' ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?'
        params.extend([limit, offset])

        cursor = conn.execute(query, params)
        return [self._row_to_record(row) for row in cursor.fetchall()]

    def get(self, activity_id: int) -> Optional[ActivityRecord]:
        """Get record by id"""
        conn = self._get_connection()
        cursor = conn.execute('SELECT * FROM activity WHERE id = ?', (activity_id,))
        row = cursor.fetchone()
        return self._row_to_record(row) if row else None

    def prune(self, retention_days: int) -> int:
        """Remove records older than the retention period"""
        cutoff_date = datetime.now(timezone.utc) - timedelta(days=retention_days)

        conn = self._get_connection()
        cursor = conn.execute('DELETE FROM activity WHERE created_at < ?', (cutoff_date.isoformat(),))

        deleted = cursor.rowcount
        if deleted > 0:
            logger.info(f"Pruned {deleted} activity records older than {cutoff_date}")

        return deleted

    def health_check(self) -> bool:
        """Check if database is accessible"""
        try:
            conn = self._get_connection()
            conn.execute('SELECT 1')
            return True
        except sqlite3.Error as e:
            logger.error(f"Activity store health check failed: {e}")
            return False

    def _row_to_record(self, row: sqlite3.Row) -> ActivityRecord:
        """
        Convert SQLite row to ActivityRecord

        Args:
            row: SQLite Row object

        Returns:
            ActivityRecord with parsed details
        """
        return ActivityRecord(
            id=row['id'],
            instance=row['instance'],
            hash=row['hash'] or '',
            torrent_name=row['torrent_name'] or '',
            tracker_domain=row['tracker_domain'] or '',
            action=row['action'],
            rule_id=row['rule_id'],
            rule_name=row['rule_name'] or '',
            outcome=row['outcome'],
            reason=row['reason'] or '',
            details=json.loads(row['details']) if row['details'] else {},
            created_at=datetime.fromisoformat(row['created_at']),
        )

    def close(self):
        """Close all database connections across all threads"""
        with self._conn_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error:
                    logger.debug("Connection already closed")
            self._connections.clear()

        if hasattr(self.local, 'conn'):
            delattr(self.local, 'conn')

    def __del__(self):
        """Cleanup on deletion"""
        self.close()
