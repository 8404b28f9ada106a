from datetime import datetime, timedelta

import pytest

from attendqr.modules.auth_manager import AuthManager

from conftest import add_user


@pytest.fixture
def auth(db):
    return AuthManager(db)


def test_authenticate_user(db, auth):
    add_user(db, 'student')

    user = auth.authenticate_user('student', 'Password1')
    assert user['username'] == 'student'
    assert 'scan_qr_codes' in user['permissions']
    assert 'password_hash' not in user

    assert auth.authenticate_user('student', 'wrong') is None
    assert auth.authenticate_user('nobody', 'Password1') is None


def test_lockout_after_repeated_failures(db, auth):
    add_user(db, 'student')
    for _ in range(5):
        auth.authenticate_user('student', 'wrong')

    assert auth.authenticate_user('student', 'Password1') is None


def test_successful_login_clears_failures(db, auth):
    add_user(db, 'student')
    for _ in range(4):
        auth.authenticate_user('student', 'wrong')

    assert auth.authenticate_user('student', 'Password1') is not None
    assert 'student' not in auth.failed_attempts


def test_create_user(auth):
    result = auth.create_user('grace', 'Compiler1', 'Grace Hopper',
                              email='grace@school.edu', user_type='instructor')

    assert result['success']
    user = auth.get_user(result['user_id'])
    assert user['full_name'] == 'Grace Hopper'
    assert user['user_type'] == 'instructor'
    assert 'password_hash' not in user


@pytest.mark.parametrize('username, password, email, user_type, error', [
    ('gr', 'Compiler1', None, 'student', 'Username must be at least 3 characters long'),
    ('grace!', 'Compiler1', None, 'student',
     'Username can only contain letters, numbers, hyphens, and underscores'),
    ('grace', 'compiler1', None, 'student', 'Password must contain at least one uppercase letter'),
    ('grace', 'Compiler', None, 'student', 'Password must contain at least one number'),
    ('grace', 'Compiler1', 'not-an-email', 'student', 'Invalid email address format'),
    ('grace', 'Compiler1', None, 'janitor', 'Invalid user type: janitor'),
])
def test_create_user_validation(auth, username, password, email, user_type, error):
    result = auth.create_user(username, password, 'Grace Hopper', email=email, user_type=user_type)
    assert not result['success']
    assert result['error'] == error


def test_duplicate_username_and_email(auth):
    auth.create_user('grace', 'Compiler1', 'Grace Hopper', email='grace@school.edu')

    assert auth.create_user('grace', 'Compiler1', 'Other')['error'] == 'Username already exists'
    result = auth.create_user('hopper', 'Compiler1', 'Other', email='grace@school.edu')
    assert result['error'] == 'Email address already exists'


def test_permissions(auth):
    assert auth.has_permission('admin', 'manage_users')
    assert not auth.has_permission('instructor', 'manage_users')
    assert auth.has_permission('instructor', 'generate_qr_codes')
    assert not auth.has_permission('student', 'generate_qr_codes')
    assert auth.get_user_permissions('unknown') == auth.get_user_permissions('student')


def test_expired_failures_are_forgotten(db, auth):
    stale = datetime.now() - timedelta(hours=1)
    auth.failed_attempts['ghost'] = {'count': 2, 'last_attempt': stale}

    auth.authenticate_user('someone-else', 'wrong')

    assert 'ghost' not in auth.failed_attempts
    assert auth.failed_attempts['someone-else']['count'] == 1


def test_failure_tracking_is_bounded(db, auth):
    auth.security_config['max_tracked_usernames'] = 3
    for number in range(10):
        auth.authenticate_user(f'sprayed{number}', 'wrong')

    assert len(auth.failed_attempts) == 3
    assert 'sprayed9' in auth.failed_attempts
