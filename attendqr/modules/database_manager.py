"""
Database Manager Module - QR Check-in Attendance Service

This module handles all database operations for the attendance service.
It provides the SQLite-backed store behind courses, class sessions,
enrollments, attendance records, QR issuance logs and notifications,
with thread-local connections and transaction support.

Features:
- SQLite database connection management
- Table schema creation
- Generic query/update helpers
- Transaction support
- System settings storage
- Optional demo data seeding
"""

import sqlite3
import logging
import os
import threading
from contextlib import contextmanager
from datetime import timedelta
from werkzeug.security import generate_password_hash

from attendqr.modules.token_security import utc_now


class DatabaseManager:
    """
    Database management class for the QR check-in attendance service.
    Handles connection management, schema creation, and data manipulation
    with proper error handling and transaction support.
    """

    def __init__(self, db_path, seed_demo_data=False):
        """
        Initialize the database manager with the specified database path.

        Args:
            db_path (str): Path to the SQLite database file
            seed_demo_data (bool): Insert demo users, course and session
        """
        self.db_path = str(db_path)
        self.seed_demo_data = seed_demo_data
        self.logger = logging.getLogger(__name__)
        self._local = threading.local()

        # Ensure database directory exists
        db_dir = os.path.dirname(self.db_path)
        if db_dir and self.db_path != ':memory:':
            os.makedirs(db_dir, exist_ok=True)

        self.initialize_database()

    @contextmanager
    def get_connection(self):
        """
        Context manager for database connections.
        Provides thread-local connections for thread safety.

        Yields:
            sqlite3.Connection: Database connection object
        """
        if not hasattr(self._local, 'connection'):
            self._local.connection = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                timeout=30.0
            )
            self._local.connection.row_factory = sqlite3.Row
            self._local.connection.execute("PRAGMA foreign_keys = ON")

        try:
            yield self._local.connection
        except Exception as e:
            self._local.connection.rollback()
            self.logger.error(f"Database operation failed: {str(e)}")
            raise

    def initialize_database(self):
        """
        Create all necessary tables and initial data.
        This method is idempotent and can be called multiple times safely.
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()

                # Users (students, instructors, administrators)
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS users (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        username VARCHAR(50) UNIQUE NOT NULL,
                        password_hash VARCHAR(255) NOT NULL,
                        full_name VARCHAR(100) NOT NULL,
                        email VARCHAR(100) UNIQUE,
                        user_type VARCHAR(20) DEFAULT 'student',
                        is_active BOOLEAN DEFAULT 1,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                # Courses, with optional classroom coordinates for geofencing
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS courses (
                        id VARCHAR(64) PRIMARY KEY,
                        code VARCHAR(20) UNIQUE NOT NULL,
                        name VARCHAR(100) NOT NULL,
                        description TEXT,
                        instructor_id INTEGER,
                        room VARCHAR(50),
                        latitude REAL,
                        longitude REAL,
                        address TEXT,
                        approval_required BOOLEAN DEFAULT 1,
                        is_active BOOLEAN DEFAULT 1,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (instructor_id) REFERENCES users(id)
                    )
                """)

                # Scheduled meeting instances of a course
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS class_sessions (
                        id VARCHAR(64) PRIMARY KEY,
                        course_id VARCHAR(64) NOT NULL,
                        instructor_id INTEGER,
                        session_date DATE NOT NULL,
                        start_time TIME NOT NULL,
                        end_time TIME NOT NULL,
                        attendance_window_start TIMESTAMP,
                        attendance_window_end TIMESTAMP,
                        qr_code_active BOOLEAN DEFAULT 0,
                        beacon_enabled BOOLEAN DEFAULT 0,
                        session_type VARCHAR(20) DEFAULT 'regular',
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (course_id) REFERENCES courses(id),
                        FOREIGN KEY (instructor_id) REFERENCES users(id)
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS course_enrollments (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        student_id INTEGER NOT NULL,
                        course_id VARCHAR(64) NOT NULL,
                        status VARCHAR(20) DEFAULT 'pending',
                        requested_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        reviewed_by INTEGER,
                        reviewed_at TIMESTAMP,
                        FOREIGN KEY (student_id) REFERENCES users(id),
                        FOREIGN KEY (course_id) REFERENCES courses(id),
                        UNIQUE(student_id, course_id)
                    )
                """)

                # One record per (session, student)
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS attendance_records (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        session_id VARCHAR(64) NOT NULL,
                        student_id INTEGER NOT NULL,
                        course_id VARCHAR(64),
                        method VARCHAR(10) NOT NULL,
                        status VARCHAR(20) DEFAULT 'pending',
                        check_in_time TIMESTAMP NOT NULL,
                        latitude REAL,
                        longitude REAL,
                        location_accuracy REAL,
                        verified_by INTEGER,
                        verified_at TIMESTAMP,
                        notes TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (session_id) REFERENCES class_sessions(id),
                        FOREIGN KEY (student_id) REFERENCES users(id),
                        FOREIGN KEY (verified_by) REFERENCES users(id),
                        UNIQUE(session_id, student_id)
                    )
                """)

                # Issuance metadata only; tokens themselves are never stored
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS qr_issuances (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        course_id VARCHAR(64) NOT NULL,
                        session_id VARCHAR(64) NOT NULL,
                        instructor_id INTEGER,
                        issued_at INTEGER NOT NULL,
                        expires_at INTEGER NOT NULL,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS notifications (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        user_id INTEGER,
                        title VARCHAR(100) NOT NULL,
                        message TEXT NOT NULL,
                        type VARCHAR(50) DEFAULT 'info',
                        is_read BOOLEAN DEFAULT 0,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (user_id) REFERENCES users(id)
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS system_settings (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        setting_key VARCHAR(100) UNIQUE NOT NULL,
                        setting_value TEXT,
                        description TEXT,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                # Indexes for common lookups
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_attendance_student ON attendance_records(student_id)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_attendance_session ON attendance_records(session_id)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_attendance_status ON attendance_records(status)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_course_date ON class_sessions(course_id, session_date)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_qr_issuances_course ON qr_issuances(course_id, expires_at)")

                conn.commit()

                self._insert_default_data(cursor)
                conn.commit()

                self.logger.info("Database initialized successfully")

        except Exception as e:
            self.logger.error(f"Failed to initialize database: {str(e)}")
            raise

    def _insert_default_data(self, cursor):
        """
        Insert default system settings and, when enabled, demo data.

        Args:
            cursor: Database cursor object
        """
        try:
            cursor.execute("SELECT COUNT(*) FROM system_settings")
            if cursor.fetchone()[0] == 0:
                default_settings = [
                    ('system_name', 'QR Check-in Attendance', 'Name of the attendance service'),
                    ('default_attendance_status', 'pending', 'Status given to new check-ins'),
                    ('export_formats', 'excel,csv', 'Supported export formats')
                ]

                cursor.executemany("""
                    INSERT INTO system_settings (setting_key, setting_value, description)
                    VALUES (?, ?, ?)
                """, default_settings)

            if not self.seed_demo_data:
                return

            cursor.execute("SELECT COUNT(*) FROM users")
            if cursor.fetchone()[0] > 0:
                return

            demo_users = [
                ('admin', generate_password_hash('admin123'), 'System Administrator', 'admin@school.edu', 'admin'),
                ('instructor1', generate_password_hash('teach123'), 'Dr. Ada Lovelace', 'ada@school.edu', 'instructor'),
                ('student1', generate_password_hash('student123'), 'Alan Turing', 'alan@student.edu', 'student')
            ]
            cursor.executemany("""
                INSERT INTO users (username, password_hash, full_name, email, user_type)
                VALUES (?, ?, ?, ?, ?)
            """, demo_users)

            cursor.execute("SELECT id FROM users WHERE username = 'instructor1'")
            instructor_id = cursor.fetchone()[0]
            cursor.execute("SELECT id FROM users WHERE username = 'student1'")
            student_id = cursor.fetchone()[0]

            cursor.execute("""
                INSERT INTO courses (id, code, name, description, instructor_id, room, latitude, longitude, address)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, ('CS101', 'CS101', 'Introduction to Computer Science', 'Foundations of programming',
                  instructor_id, 'Hall A', 40.7128, -74.0060, 'Main Building, Hall A'))

            today = utc_now().date().isoformat()
            window_start = utc_now().replace(hour=0, minute=0, second=0, microsecond=0)
            window_end = window_start + timedelta(days=1) - timedelta(seconds=1)
            cursor.execute("""
                INSERT INTO class_sessions (id, course_id, instructor_id, session_date, start_time, end_time,
                                            attendance_window_start, attendance_window_end, qr_code_active)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1)
            """, ('CS101-demo', 'CS101', instructor_id, today, '00:00:00', '23:59:59',
                  window_start.isoformat(), window_end.isoformat()))

            cursor.execute("""
                INSERT INTO course_enrollments (student_id, course_id, status)
                VALUES (?, ?, 'approved')
            """, (student_id, 'CS101'))

            self.logger.info("Demo data inserted successfully")

        except Exception as e:
            self.logger.error(f"Failed to insert default data: {str(e)}")
            raise

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
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()

                if params:
                    cursor.execute(query, params)
                else:
                    cursor.execute(query)

                if fetch_all:
                    return [dict(row) for row in cursor.fetchall()]

                result = cursor.fetchone()
                return dict(result) if result else None

        except Exception as e:
            self.logger.error(f"Query execution failed: {str(e)}")
            raise

    def execute_update(self, query, params=None):
        """
        Execute an INSERT, UPDATE, or DELETE query.

        Args:
            query (str): SQL query string
            params (tuple): Query parameters

        Returns:
            int: Number of affected rows or last inserted row ID
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()

                if params:
                    cursor.execute(query, params)
                else:
                    cursor.execute(query)

                conn.commit()

                # Return last inserted row ID for INSERT statements
                if query.strip().upper().startswith('INSERT'):
                    return cursor.lastrowid
                return cursor.rowcount

        except Exception as e:
            self.logger.error(f"Update execution failed: {str(e)}")
            raise

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

    def get_system_setting(self, key, default_value=None):
        """
        Get a system setting value by key.

        Args:
            key (str): Setting key
            default_value: Default value if setting not found

        Returns:
            str: Setting value
        """
        try:
            result = self.execute_query(
                "SELECT setting_value FROM system_settings WHERE setting_key = ?",
                (key,),
                fetch_all=False
            )
            return result['setting_value'] if result else default_value

        except Exception as e:
            self.logger.error(f"Failed to get system setting {key}: {str(e)}")
            return default_value

    def update_system_setting(self, key, value, description=None):
        """
        Update or insert a system setting.

        Args:
            key (str): Setting key
            value (str): Setting value
            description (str): Setting description

        Returns:
            bool: Success status
        """
        try:
            with self.transaction() as conn:
                conn.execute("""
                    INSERT INTO system_settings (setting_key, setting_value, description)
                    VALUES (?, ?, ?)
                    ON CONFLICT(setting_key) DO UPDATE SET
                        setting_value = excluded.setting_value,
                        description = COALESCE(excluded.description, system_settings.description),
                        updated_at = CURRENT_TIMESTAMP
                """, (key, value, description))
                return True

        except Exception as e:
            self.logger.error(f"Failed to update system setting {key}: {str(e)}")
            return False

    def close_all_connections(self):
        """Close the current thread's database connection."""
        if hasattr(self._local, 'connection'):
            self._local.connection.close()
            del self._local.connection
