"""
Database Manager Module - HRMS QR Check-in Service

This module handles the SQLite database that backs the QR check-in service.
It owns connection management, schema creation and the small set of query
helpers the attendance store, replay cache and audit log are built on.

Features:
- Thread-local SQLite connections
- Idempotent schema creation
- Transaction support with automatic rollback
- Optional sample reference data (employees, locations, documents)
"""

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager


class DatabaseManager:
    """
    SQLite connection and schema manager.
    Each thread gets its own connection to the same database file, so an
    in-memory path (':memory:') is only usable from a single thread.
    """

    def __init__(self, db_path, seed_sample_data=False, timeout=30.0):
        """
        Initialize the database manager with the specified database path.

        Args:
            db_path (str): Path to the SQLite database file
            seed_sample_data (bool): Insert sample reference rows when tables are empty
            timeout (float): Seconds to wait on a locked database
        """
        self.db_path = str(db_path)
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)
        self._local = threading.local()

        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        self.initialize_database(seed_sample_data=seed_sample_data)

    @contextmanager
    def get_connection(self):
        """
        Context manager yielding this thread's connection.

        Yields:
            sqlite3.Connection: Database connection object
        """
        if not hasattr(self._local, 'connection'):
            self._local.connection = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                timeout=self.timeout
            )
            self._local.connection.row_factory = sqlite3.Row
            self._local.connection.execute("PRAGMA foreign_keys = ON")

        try:
            yield self._local.connection
        except Exception as e:
            self._local.connection.rollback()
            self.logger.error(f"Database operation failed: {str(e)}")
            raise

    def initialize_database(self, seed_sample_data=False):
        """
        Create all tables used by the service. Safe to call repeatedly.
        """
        with self.get_connection() as conn:
            # WAL is persistent in the database file
            conn.execute("PRAGMA journal_mode = WAL")
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS employees (
                    id VARCHAR(64) PRIMARY KEY,
                    full_name VARCHAR(100) NOT NULL,
                    department VARCHAR(100),
                    is_active BOOLEAN DEFAULT 1,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS locations (
                    id VARCHAR(64) PRIMARY KEY,
                    name VARCHAR(100) NOT NULL,
                    address TEXT,
                    is_active BOOLEAN DEFAULT 1,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    id VARCHAR(64) PRIMARY KEY,
                    title VARCHAR(200) NOT NULL,
                    access_level VARCHAR(20) DEFAULT 'private',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # check_in / check_out are ms since epoch
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS attendance (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    employee_id VARCHAR(64) NOT NULL,
                    date DATE NOT NULL,
                    check_in INTEGER,
                    check_out INTEGER,
                    status VARCHAR(20) DEFAULT 'present',
                    notes TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (employee_id) REFERENCES employees(id),
                    UNIQUE(employee_id, date)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS location_checkins (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    employee_id VARCHAR(64) NOT NULL,
                    location_id VARCHAR(64) NOT NULL,
                    checked_in_at INTEGER NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (employee_id) REFERENCES employees(id),
                    FOREIGN KEY (location_id) REFERENCES locations(id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS access_grants (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    document_id VARCHAR(64) NOT NULL,
                    grantee_id VARCHAR(64) NOT NULL,
                    access_level VARCHAR(20) NOT NULL,
                    granted_at INTEGER NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (document_id) REFERENCES documents(id),
                    FOREIGN KEY (grantee_id) REFERENCES employees(id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS processed_payloads (
                    content_hash CHAR(64) PRIMARY KEY,
                    state VARCHAR(10) NOT NULL,
                    recorded_at INTEGER NOT NULL,
                    purge_after INTEGER NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS audit_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id VARCHAR(64),
                    action VARCHAR(50) NOT NULL,
                    table_name VARCHAR(50),
                    record_id VARCHAR(64),
                    new_values TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_attendance_date ON attendance(date)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_location_checkins_employee ON location_checkins(employee_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_processed_payloads_purge ON processed_payloads(purge_after)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_logs_action ON audit_logs(action)")

            if seed_sample_data:
                self._insert_default_data(cursor)
            conn.commit()

        self.logger.info(f"Database initialized at {self.db_path}")

    def _insert_default_data(self, cursor):
        """
        Insert sample employees, locations and documents into empty tables.

        Args:
            cursor: Database cursor object
        """
        cursor.execute("SELECT COUNT(*) FROM employees")
        if cursor.fetchone()[0] == 0:
            cursor.executemany("""
                INSERT INTO employees (id, full_name, department)
                VALUES (?, ?, ?)
            """, [
                ('emp-1', 'Kim Minjun', 'Engineering'),
                ('emp-2', 'Lee Seoyeon', 'Human Resources'),
                ('emp-3', 'Park Jiho', 'Marketing'),
                ('emp-4', 'Choi Yuna', 'Finance'),
                ('emp-5', 'Jung Hyunwoo', 'Operations'),
            ])

        cursor.execute("SELECT COUNT(*) FROM locations")
        if cursor.fetchone()[0] == 0:
            cursor.executemany("""
                INSERT INTO locations (id, name, address)
                VALUES (?, ?, ?)
            """, [
                ('loc-1', 'Main Office', '123 Business Street, Seoul'),
                ('loc-2', 'Branch Office', '456 Corporate Ave, Busan'),
                ('loc-3', 'Remote Work', 'Work from home'),
            ])

        cursor.execute("SELECT COUNT(*) FROM documents")
        if cursor.fetchone()[0] == 0:
            cursor.executemany("""
                INSERT INTO documents (id, title, access_level)
                VALUES (?, ?, ?)
            """, [
                ('doc-1', 'Employee Handbook', 'public'),
                ('doc-2', 'Leave Policy', 'private'),
            ])

        self.logger.info("Sample reference data inserted")

    def execute_query(self, query, params=None, fetch_all=True):
        """
        Execute a SELECT query and return results.

        Args:
            query (str): SQL query string
            params (tuple): Query parameters
            fetch_all (bool): Whether to fetch all results or just one

        Returns:
            list or dict: Query results
        """
        with self.get_connection() as conn:
            cursor = conn.execute(query, params or ())
            if fetch_all:
                return [dict(row) for row in cursor.fetchall()]
            result = cursor.fetchone()
            return dict(result) if result else None

    def execute_update(self, query, params=None):
        """
        Execute an INSERT, UPDATE, or DELETE query and commit it.

        Returns:
            int: Last inserted row ID for INSERT statements, affected rows otherwise
        """
        with self.transaction() as conn:
            cursor = conn.execute(query, params or ())
            if query.strip().upper().startswith('INSERT'):
                return cursor.lastrowid
            return cursor.rowcount

    @contextmanager
    def transaction(self):
        """
        Context manager for database transactions with automatic rollback on error.
        The write lock is taken up front so concurrent writers queue on the
        busy timeout instead of failing on a lock upgrade.

        Yields:
            sqlite3.Connection: Database connection within transaction
        """
        with self.get_connection() as conn:
            if not conn.in_transaction:
                conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.commit()
            except Exception as e:
                conn.rollback()
                self.logger.error(f"Transaction rolled back: {str(e)}")
                raise

    def close_all_connections(self):
        """Close the calling thread's connection."""
        if hasattr(self._local, 'connection'):
            self._local.connection.close()
            del self._local.connection
