"""
Authentication Manager Module - QR Check-in Attendance Service

This module handles user authentication and role-based authorization for the
attendance service. Students scan QR codes, instructors generate them and
review check-ins, administrators can do everything.

Features:
- User authentication with hashed passwords
- Role-based permissions
- User account creation and lookup
- Password policy validation
- Login attempt tracking and lockout
"""

from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime, timedelta
from typing import Dict, List, Any, Optional
import logging
import re


class AuthManager:
    """
    Authentication and authorization for students, instructors and administrators.
    """

    def __init__(self, database_manager):
        """
        Initialize the authentication manager with database connection.

        Args:
            database_manager: Database manager instance
        """
        self.db = database_manager
        self.logger = logging.getLogger(__name__)

        self.PERMISSIONS = {
            'admin': [
                'manage_users', 'manage_courses', 'generate_qr_codes',
                'approve_attendance', 'view_all_attendance', 'generate_reports'
            ],
            'instructor': [
                'manage_courses', 'generate_qr_codes', 'approve_attendance',
                'view_all_attendance', 'generate_reports'
            ],
            'student': [
                'scan_qr_codes', 'view_own_attendance', 'request_manual_attendance'
            ]
        }

        self.security_config = {
            'password_min_length': 8,
            'password_require_uppercase': True,
            'password_require_lowercase': True,
            'password_require_numbers': True,
            'max_login_attempts': 5,
            'lockout_duration_minutes': 30,
            'max_tracked_usernames': 10000
        }

        # Failed login attempts tracking
        self.failed_attempts = {}

    def authenticate_user(self, username: str, password: str,
                          ip_address: str = None) -> Optional[Dict[str, Any]]:
        """
        Authenticate user with username and password.

        Args:
            username (str): Username
            password (str): Password
            ip_address (str): Client IP address

        Returns:
            Dict[str, Any]: User information if authenticated, None otherwise
        """
        try:
            if self._is_account_locked(username):
                self.logger.warning(f"Authentication attempt for locked account: {username}")
                return None

            user = self.db.execute_query(
                "SELECT * FROM users WHERE username = ? AND is_active = 1",
                (username,),
                fetch_all=False
            )

            if not user or not check_password_hash(user['password_hash'], password or ''):
                self._record_failed_attempt(username, ip_address)
                self.logger.warning(f"Authentication failed for {username}")
                return None

            self._clear_failed_attempts(username)
            self.logger.info(f"User authenticated successfully: {username}")

            return {
                'id': user['id'],
                'username': user['username'],
                'full_name': user['full_name'],
                'email': user['email'],
                'user_type': user['user_type'],
                'permissions': self.get_user_permissions(user['user_type'])
            }

        except Exception as e:
            self.logger.error(f"Authentication error for user {username}: {str(e)}")
            return None

    def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        """Get an active user by ID, without the password hash."""
        try:
            return self.db.execute_query(
                """SELECT id, username, full_name, email, user_type, is_active, created_at
                   FROM users WHERE id = ? AND is_active = 1""",
                (user_id,),
                fetch_all=False
            )
        except Exception as e:
            self.logger.error(f"Failed to get user {user_id}: {str(e)}")
            return None

    def create_user(self, username: str, password: str, full_name: str,
                    email: str = None, user_type: str = 'student') -> Dict[str, Any]:
        """
        Create a new user account.

        Args:
            username (str): Username
            password (str): Password
            full_name (str): Full name
            email (str): Email address
            user_type (str): admin, instructor or student

        Returns:
            Dict[str, Any]: Creation result
        """
        try:
            if user_type not in self.PERMISSIONS:
                return {
                    'success': False,
                    'error': f'Invalid user type: {user_type}'
                }

            validation_result = self._validate_user_data(username, password, email)
            if not validation_result['valid']:
                return {
                    'success': False,
                    'error': validation_result['error']
                }

            existing_user = self.db.execute_query(
                "SELECT id FROM users WHERE username = ?",
                (username,),
                fetch_all=False
            )
            if existing_user:
                return {
                    'success': False,
                    'error': 'Username already exists'
                }

            if email:
                existing_email = self.db.execute_query(
                    "SELECT id FROM users WHERE email = ?",
                    (email,),
                    fetch_all=False
                )
                if existing_email:
                    return {
                        'success': False,
                        'error': 'Email address already exists'
                    }

            user_id = self.db.execute_update(
                """INSERT INTO users (username, password_hash, full_name, email, user_type)
                   VALUES (?, ?, ?, ?, ?)""",
                (username, generate_password_hash(password), full_name, email, user_type)
            )

            self.logger.info(f"User created successfully: {username} (ID: {user_id})")
            return {
                'success': True,
                'user_id': user_id,
                'username': username,
                'message': 'User account created successfully'
            }

        except Exception as e:
            self.logger.error(f"User creation failed for {username}: {str(e)}")
            return {
                'success': False,
                'error': 'Failed to create user account'
            }

    def get_user_permissions(self, user_type: str) -> List[str]:
        """Permissions for a user type; unknown types get student permissions."""
        return self.PERMISSIONS.get(user_type, self.PERMISSIONS['student'])

    def has_permission(self, user_type: str, permission: str) -> bool:
        return permission in self.get_user_permissions(user_type)

    def _validate_user_data(self, username: str, password: str, email: str = None) -> Dict[str, Any]:
        """
        Validate user registration data.

        Returns:
            Dict[str, Any]: Validation result
        """
        if not username or len(username) < 3:
            return {'valid': False, 'error': 'Username must be at least 3 characters long'}

        if not re.match(r'^[a-zA-Z0-9_-]+$', username):
            return {'valid': False, 'error': 'Username can only contain letters, numbers, hyphens, and underscores'}

        password_validation = self._validate_password(password)
        if not password_validation['valid']:
            return password_validation

        if email:
            email_pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
            if not re.match(email_pattern, email):
                return {'valid': False, 'error': 'Invalid email address format'}

        return {'valid': True}

    def _validate_password(self, password: str) -> Dict[str, Any]:
        if not password:
            return {'valid': False, 'error': 'Password is required'}

        min_length = self.security_config['password_min_length']
        if len(password) < min_length:
            return {'valid': False, 'error': f'Password must be at least {min_length} characters long'}

        if self.security_config['password_require_uppercase'] and not re.search(r'[A-Z]', password):
            return {'valid': False, 'error': 'Password must contain at least one uppercase letter'}

        if self.security_config['password_require_lowercase'] and not re.search(r'[a-z]', password):
            return {'valid': False, 'error': 'Password must contain at least one lowercase letter'}

        if self.security_config['password_require_numbers'] and not re.search(r'\d', password):
            return {'valid': False, 'error': 'Password must contain at least one number'}

        return {'valid': True}

    def _is_account_locked(self, username: str) -> bool:
        """
        Check if account is locked due to failed login attempts.

        Args:
            username (str): Username to check

        Returns:
            bool: True if account is locked
        """
        if username not in self.failed_attempts:
            return False

        attempt_data = self.failed_attempts[username]
        lockout = timedelta(minutes=self.security_config['lockout_duration_minutes'])
        if datetime.now() - attempt_data['last_attempt'] > lockout:
            del self.failed_attempts[username]
            return False

        return attempt_data['count'] >= self.security_config['max_login_attempts']

    def _prune_failed_attempts(self, now: datetime) -> None:
        """Drop expired entries, then the oldest ones beyond the tracking limit."""
        lockout = timedelta(minutes=self.security_config['lockout_duration_minutes'])
        for username in [name for name, data in self.failed_attempts.items()
                         if now - data['last_attempt'] > lockout]:
            del self.failed_attempts[username]

        overflow = len(self.failed_attempts) - self.security_config['max_tracked_usernames']
        if overflow > 0:
            oldest = sorted(self.failed_attempts,
                            key=lambda name: self.failed_attempts[name]['last_attempt'])
            for username in oldest[:overflow]:
                del self.failed_attempts[username]

    def _record_failed_attempt(self, username: str, ip_address: str = None) -> None:
        now = datetime.now()
        if username not in self.failed_attempts:
            self.failed_attempts[username] = {'count': 0, 'last_attempt': now}
            self._prune_failed_attempts(now)

        self.failed_attempts[username]['count'] += 1
        self.failed_attempts[username]['last_attempt'] = now

        self.logger.warning(
            f"Failed login attempt {self.failed_attempts[username]['count']} "
            f"for {username} from {ip_address}"
        )

    def _clear_failed_attempts(self, username: str) -> None:
        self.failed_attempts.pop(username, None)
