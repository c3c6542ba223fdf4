"""
Database Manager Module - QR Classroom Attendance Tracker

This module handles all database operations for the attendance tracker.
It owns the SQLite schema (students, classes, attendance_records), keeps
one connection per thread, and translates sqlite3 failures into the
tracker's error taxonomy so callers can tell a uniqueness conflict apart
from a missing parent row or an unreachable store.

Features:
- SQLite connection management with foreign keys enforced
- Schema creation with uniqueness constraints and cascade deletes
- Timestamp triggers for updated_at columns
- Generic select/insert/update/delete helpers over whitelisted tables
- Bounded retry with exponential backoff for reads (never for writes)
- Change events published after every successful write
"""

import sqlite3
import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from qr_attendance.modules.exceptions import (
    AttendanceError,
    ConflictError,
    MissingReferenceError,
    StoreUnavailableError,
    ValidationError,
)

LOCAL_NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%S', 'now', 'localtime')"

TABLE_COLUMNS = {
    'students': (
        'id', 'student_id', 'first_name', 'last_name', 'email', 'qr_code',
        'created_at', 'updated_at'
    ),
    'classes': (
        'id', 'name', 'date', 'time', 'max_attendees', 'qr_code',
        'created_at', 'updated_at'
    ),
    'attendance_records': (
        'id', 'student_id', 'class_id', 'status', 'marked_at', 'created_at'
    ),
}

# OperationalError messages that mark a retryable condition
TRANSIENT_MARKERS = ('locked', 'busy')

# Parent tables whose deletion removes attendance rows through ON DELETE CASCADE
CASCADE_CHILDREN = {
    'students': ('attendance_records', 'student_id'),
    'classes': ('attendance_records', 'class_id'),
}


class DatabaseManager:
    """
    Database access layer for the attendance tracker.
    Handles connection management, schema creation, constraint translation
    and change notification for the three attendance tables.
    """

    def __init__(self, db_path, timeout: float = 30.0, read_retries: int = 3,
                 retry_backoff: float = 0.1, notifier=None):
        """
        Initialize the database manager with the specified database path.

        Args:
            db_path (str): Path to the SQLite database file
            timeout (float): Seconds to wait on a locked database
            read_retries (int): Extra attempts for reads that fail transiently
            retry_backoff (float): Base delay in seconds, doubled per attempt
            notifier: Object with a ``publish_change(table, event, row_id)`` method
        """
        self.db_path = str(db_path)
        self.timeout = timeout
        self.read_retries = read_retries
        self.retry_backoff = retry_backoff
        self.notifier = notifier
        self.logger = logging.getLogger(__name__)
        self._local = threading.local()

        directory = os.path.dirname(self.db_path)
        if directory and self.db_path != ':memory:':
            try:
                os.makedirs(directory, exist_ok=True)
            except OSError as e:
                self.logger.error(f"Could not create database directory {directory}: {str(e)}")
                raise StoreUnavailableError(str(e)) from e

        self.initialize_database()

    @contextmanager
    def get_connection(self):
        """
        Context manager for database connections.
        Provides thread-local connections with foreign keys switched on.

        Yields:
            sqlite3.Connection: Database connection object
        """
        if not hasattr(self._local, 'connection'):
            try:
                connection = sqlite3.connect(
                    self.db_path,
                    check_same_thread=False,
                    timeout=self.timeout
                )
                connection.row_factory = sqlite3.Row
                connection.execute("PRAGMA foreign_keys = ON")
            except sqlite3.Error as e:
                self.logger.error(f"Could not open database {self.db_path}: {str(e)}")
                raise self._translate_error(e) from e
            self._local.connection = connection

        try:
            yield self._local.connection
        except sqlite3.Error as e:
            self._rollback()
            raise self._translate_error(e) from e
        except Exception:
            self._rollback()
            raise

    def _rollback(self):
        try:
            self._local.connection.rollback()
        except sqlite3.Error as e:
            self.logger.error(f"Rollback failed: {str(e)}")

    def _translate_error(self, error):
        """
        Map a sqlite3 error onto the tracker's exception classes.

        Args:
            error (sqlite3.Error): Original database error

        Returns:
            AttendanceError: Translated exception
        """
        message = str(error)

        if isinstance(error, sqlite3.IntegrityError):
            if message.startswith('UNIQUE constraint failed'):
                return ConflictError(message, constraint=message.split(':', 1)[1].strip())
            if 'FOREIGN KEY constraint failed' in message:
                return MissingReferenceError(message)
            # NOT NULL and CHECK violations
            return ValidationError(message)

        if isinstance(error, sqlite3.OperationalError):
            transient = any(marker in message.lower() for marker in TRANSIENT_MARKERS)
            return StoreUnavailableError(message, transient=transient)

        return StoreUnavailableError(message)

    def initialize_database(self):
        """
        Create all tables, triggers and indexes used by the tracker.
        This method is idempotent and can be called multiple times safely.
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()

                cursor.execute(f"""
                    CREATE TABLE IF NOT EXISTS students (
                        id TEXT PRIMARY KEY,
                        student_id TEXT UNIQUE NOT NULL,
                        first_name TEXT NOT NULL,
                        last_name TEXT NOT NULL,
                        email TEXT UNIQUE,
                        qr_code TEXT UNIQUE NOT NULL,
                        created_at TEXT NOT NULL DEFAULT ({LOCAL_NOW_SQL}),
                        updated_at TEXT NOT NULL DEFAULT ({LOCAL_NOW_SQL})
                    )
                """)

                cursor.execute(f"""
                    CREATE TABLE IF NOT EXISTS classes (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        date TEXT NOT NULL,
                        time TEXT NOT NULL,
                        max_attendees INTEGER NOT NULL DEFAULT 50 CHECK (max_attendees > 0),
                        qr_code TEXT UNIQUE NOT NULL,
                        created_at TEXT NOT NULL DEFAULT ({LOCAL_NOW_SQL}),
                        updated_at TEXT NOT NULL DEFAULT ({LOCAL_NOW_SQL})
                    )
                """)

                cursor.execute(f"""
                    CREATE TABLE IF NOT EXISTS attendance_records (
                        id TEXT PRIMARY KEY,
                        student_id TEXT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
                        class_id TEXT NOT NULL REFERENCES classes(id) ON DELETE CASCADE,
                        status TEXT NOT NULL CHECK (status IN ('present', 'late', 'absent')),
                        marked_at TEXT NOT NULL DEFAULT ({LOCAL_NOW_SQL}),
                        created_at TEXT NOT NULL DEFAULT ({LOCAL_NOW_SQL}),
                        UNIQUE(student_id, class_id)
                    )
                """)

                for table in ('students', 'classes'):
                    cursor.execute(f"""
                        CREATE TRIGGER IF NOT EXISTS update_{table}_updated_at
                        AFTER UPDATE ON {table}
                        FOR EACH ROW
                        BEGIN
                            UPDATE {table} SET updated_at = {LOCAL_NOW_SQL} WHERE id = NEW.id;
                        END
                    """)

                cursor.execute("CREATE INDEX IF NOT EXISTS idx_attendance_class ON attendance_records(class_id)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_attendance_student ON attendance_records(student_id)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_classes_created ON classes(created_at)")

                conn.commit()
                self.logger.info("Database initialized successfully")

        except AttendanceError as e:
            self.logger.error(f"Failed to initialize database: {str(e)}")
            raise

    def _run_query(self, query, params, fetch_all):
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params or ())

            if fetch_all:
                return [dict(row) for row in cursor.fetchall()]
            result = cursor.fetchone()
            return dict(result) if result else None

    def execute_query(self, query, params=None, fetch_all=True):
        """
        Execute a SELECT query and return results.
        Transient failures are retried with exponential backoff.

        Args:
            query (str): SQL query string
            params (tuple): Query parameters
            fetch_all (bool): Whether to fetch all results or just one

        Returns:
            list or dict: Query results
        """
        attempt = 0
        while True:
            try:
                return self._run_query(query, params, fetch_all)
            except StoreUnavailableError as e:
                if not e.transient or attempt >= self.read_retries:
                    self.logger.error(f"Query execution failed: {str(e)}")
                    raise
                delay = self.retry_backoff * (2 ** attempt)
                attempt += 1
                self.logger.warning(
                    f"Transient read failure ({attempt}/{self.read_retries}), "
                    f"retrying in {delay:.2f}s: {str(e)}"
                )
                time.sleep(delay)

    def execute_update(self, query, params=None, change=None):
        """
        Execute an INSERT, UPDATE, or DELETE query exactly once.

        Args:
            query (str): SQL query string
            params (tuple): Query parameters
            change (tuple): Optional (table, event, row_id) to publish on success

        Returns:
            int: Number of affected rows
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(query, params or ())
                conn.commit()
                affected = cursor.rowcount
        except (ConflictError, MissingReferenceError, ValidationError) as e:
            self.logger.warning(f"Update rejected by constraint: {str(e)}")
            raise
        except StoreUnavailableError as e:
            self.logger.error(f"Update execution failed: {str(e)}")
            raise

        if change and affected:
            self._publish(*change)
        return affected

    @contextmanager
    def transaction(self):
        """
        Context manager for database transactions with automatic rollback on error.

        Yields:
            sqlite3.Connection: Database connection within transaction
        """
        with self.get_connection() as conn:
            try:
                yield conn
                conn.commit()
            except Exception as e:
                conn.rollback()
                self.logger.error(f"Transaction rolled back: {str(e)}")
                raise

    def _check_table(self, table, columns=()):
        if table not in TABLE_COLUMNS:
            raise ValidationError(f"Unknown table: {table}")
        for column in columns:
            if column not in TABLE_COLUMNS[table]:
                raise ValidationError(f"Unknown column {column} for table {table}")

    def select_rows(self, table: str, filters: Optional[Dict[str, Any]] = None,
                    order_by: Optional[str] = None, descending: bool = False,
                    limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Select rows from a table with equality filters, ordering and a limit.

        Args:
            table (str): Table name
            filters (dict): Column -> value equality filters
            order_by (str): Column to order by
            descending (bool): Sort descending when True
            limit (int): Maximum number of rows

        Returns:
            List[Dict[str, Any]]: Matching rows
        """
        filters = filters or {}
        self._check_table(table, list(filters) + ([order_by] if order_by else []))

        query = f"SELECT * FROM {table}"
        params = []
        if filters:
            query += " WHERE " + " AND ".join(f"{column} = ?" for column in filters)
            params.extend(filters.values())
        if order_by:
            query += f" ORDER BY {order_by} {'DESC' if descending else 'ASC'}"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))

        return self.execute_query(query, tuple(params))

    def get_row(self, table: str, **filters) -> Optional[Dict[str, Any]]:
        """Return the first row matching the equality filters, or None."""
        rows = self.select_rows(table, filters, limit=1)
        return rows[0] if rows else None

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """
        Count rows in a table.

        Args:
            table (str): Table name
            filters (dict): Column -> value equality filters

        Returns:
            int: Row count
        """
        filters = filters or {}
        self._check_table(table, filters)

        query = f"SELECT COUNT(*) AS row_count FROM {table}"
        if filters:
            query += " WHERE " + " AND ".join(f"{column} = ?" for column in filters)
        result = self.execute_query(query, tuple(filters.values()), fetch_all=False)
        return result['row_count'] if result else 0

    def insert_row(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert a row and return it as stored, defaults included.
        If the row cannot be read back after the commit, the inserted values are returned.

        Args:
            table (str): Table name
            values (dict): Column -> value mapping, must contain ``id``

        Returns:
            Dict[str, Any]: The created row
        """
        if not values.get('id'):
            raise ValidationError("Missing required field: id")
        self._check_table(table, values)

        columns = ', '.join(values)
        placeholders = ', '.join('?' for _ in values)
        self.execute_update(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
            tuple(values.values()),
            change=(table, 'insert', values['id'])
        )

        # Committed; a failed re-read still reports the insert
        try:
            return self.get_row(table, id=values['id']) or dict(values)
        except StoreUnavailableError as e:
            self.logger.warning(f"Inserted {table} row {values['id']} but could not read it back: {str(e)}")
            return dict(values)

    def update_row(self, table: str, row_id: str, values: Dict[str, Any]) -> int:
        """
        Update columns of one row by primary key.

        Args:
            table (str): Table name
            row_id (str): Primary key
            values (dict): Column -> new value mapping

        Returns:
            int: Number of affected rows
        """
        if not values:
            return 0
        self._check_table(table, values)

        assignments = ', '.join(f"{column} = ?" for column in values)
        return self.execute_update(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            tuple(values.values()) + (row_id,),
            change=(table, 'update', row_id)
        )

    def delete_row(self, table: str, row_id: str) -> int:
        """
        Delete one row by primary key. Dependent attendance rows go with it.

        Args:
            table (str): Table name
            row_id (str): Primary key

        Returns:
            int: Number of deleted rows (0 or 1)
        """
        self._check_table(table)

        cascaded = 0
        child = CASCADE_CHILDREN.get(table)
        if child:
            cascaded = self.count(child[0], {child[1]: row_id})

        affected = self.execute_update(
            f"DELETE FROM {table} WHERE id = ?",
            (row_id,),
            change=(table, 'delete', row_id)
        )

        if affected and cascaded:
            self.logger.info(f"Deleting {table} row {row_id} removed {cascaded} {child[0]} rows")
            self._publish(child[0], 'delete', None)
        return affected

    def _publish(self, table, event, row_id):
        if self.notifier is not None:
            self.notifier.publish_change(table, event, row_id)

    def close_all_connections(self):
        """Close the connection owned by the calling thread."""
        if hasattr(self._local, 'connection'):
            try:
                self._local.connection.close()
            except sqlite3.Error as e:
                self.logger.error(f"Error closing connections: {str(e)}")
            del self._local.connection
