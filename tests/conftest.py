import math

import pytest
from werkzeug.security import generate_password_hash

from attendqr.modules.attendance_manager import AttendanceManager
from attendqr.modules.course_manager import CourseManager
from attendqr.modules.database_manager import DatabaseManager
from attendqr.modules.qr_generator import QRGenerator
from attendqr.modules.qr_validator import QRValidator

SECRET = 'test-signing-secret'

# 2025-01-15 10:00:00 UTC
NOW_MS = 1736935200000

CLASSROOM = (40.7128, -74.0060)


def meters_north(lat, lon, meters):
    """A point `meters` due north of (lat, lon)."""
    return lat + math.degrees(meters / 6371000.0), lon


@pytest.fixture
def db(tmp_path):
    manager = DatabaseManager(tmp_path / 'attendance.db')
    yield manager
    manager.close_all_connections()


@pytest.fixture
def courses(db):
    return CourseManager(db)


@pytest.fixture
def validator():
    return QRValidator(SECRET)


@pytest.fixture
def generator(db):
    return QRGenerator(SECRET, database_manager=db)


@pytest.fixture
def attendance(db, courses, validator):
    return AttendanceManager(db, courses, validator)


def add_user(db, username, user_type='student', full_name=None):
    return db.execute_update(
        """INSERT INTO users (username, password_hash, full_name, email, user_type)
           VALUES (?, ?, ?, ?, ?)""",
        (username, generate_password_hash('Password1'), full_name or username.title(),
         f'{username}@school.edu', user_type)
    )


@pytest.fixture
def classroom(db, courses):
    """An instructor, an enrolled student and a CS101 course with one session."""
    instructor_id = add_user(db, 'instructor', 'instructor', 'Dr. Grace Hopper')
    student_id = add_user(db, 'student', 'student', 'Alan Turing')
    courses.create_course('CS101', 'Introduction to Computer Science',
                          instructor_id=instructor_id, course_id='CS101',
                          latitude=CLASSROOM[0], longitude=CLASSROOM[1])
    courses.create_session('CS101', '2025-01-15', '09:00:00', '11:00:00',
                           instructor_id=instructor_id, session_id='CS101-s1')
    courses.enroll_student(student_id, 'CS101')
    return {
        'instructor_id': instructor_id,
        'student_id': student_id,
        'course_id': 'CS101',
        'session_id': 'CS101-s1'
    }
