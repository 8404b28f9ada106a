from datetime import datetime

from conftest import add_user


def test_create_course_generates_id(courses):
    result = courses.create_course('PHY150', 'Physics I')

    assert result['success']
    assert len(result['course_id']) == 32
    assert courses.get_course(result['course_id'])['code'] == 'PHY150'


def test_duplicate_course_code_rejected(courses):
    courses.create_course('PHY150', 'Physics I')
    result = courses.create_course('PHY150', 'Physics I again')

    assert not result['success']
    assert result['error'] == 'Course code already exists'


def test_course_requires_code_and_name(courses):
    assert not courses.create_course('', 'Nameless')['success']


def test_course_includes_instructor_and_coordinates(classroom, courses):
    course = courses.get_course('CS101')

    assert course['instructor_name'] == 'Dr. Grace Hopper'
    assert course['latitude'] == 40.7128
    assert course['longitude'] == -74.0060


def test_set_classroom_location(classroom, courses):
    assert courses.set_classroom_location('CS101', 51.5, -0.12, 'Room 4')
    course = courses.get_course('CS101')
    assert (course['latitude'], course['longitude'], course['address']) == (51.5, -0.12, 'Room 4')

    assert courses.set_classroom_location('CS101', None, None)
    assert courses.get_course('CS101')['latitude'] is None

    assert not courses.set_classroom_location('NOPE', 1.0, 1.0)


def test_courses_for_student_only_lists_approved_enrollments(db, classroom, courses):
    courses.create_course('MATH200', 'Linear Algebra', course_id='MATH200')
    courses.enroll_student(classroom['student_id'], 'MATH200', status='pending')

    listed = [course['id'] for course in courses.get_courses_for_student(classroom['student_id'])]
    assert listed == ['CS101']

    courses.enroll_student(classroom['student_id'], 'MATH200', status='approved',
                           reviewed_by=classroom['instructor_id'])
    listed = [course['id'] for course in courses.get_courses_for_student(classroom['student_id'])]
    assert listed == ['CS101', 'MATH200']
    assert courses.is_enrolled(classroom['student_id'], 'MATH200')


def test_invalid_enrollment_status(classroom, courses):
    assert not courses.enroll_student(classroom['student_id'], 'CS101', status='maybe')['success']


def test_courses_by_instructor(db, classroom, courses):
    other = add_user(db, 'other', 'instructor')
    courses.create_course('MATH200', 'Linear Algebra', instructor_id=other)

    taught = courses.get_courses_by_instructor(classroom['instructor_id'])
    assert [course['code'] for course in taught] == ['CS101']
    assert len(courses.get_all_courses()) == 2


def test_session_validation(classroom, courses):
    assert not courses.create_session('NOPE', '2025-01-15', '09:00:00', '10:00:00')['success']
    assert not courses.create_session('CS101', '2025-01-15', '10:00:00', '09:00:00')['success']

    session = courses.get_session('CS101-s1')
    assert session['course_code'] == 'CS101'
    assert session['course_name'] == 'Introduction to Computer Science'


def test_find_active_session_prefers_attendance_window(classroom, courses):
    courses.create_session('CS101', '2025-01-15', '13:00:00', '15:00:00', session_id='CS101-s2',
                           attendance_window_start='2025-01-15T09:30:00',
                           attendance_window_end='2025-01-15T10:30:00')

    active = courses.find_active_session('CS101', now=datetime(2025, 1, 15, 10, 0))
    assert active['id'] == 'CS101-s2'


def test_find_active_session_by_schedule(classroom, courses):
    courses.create_session('CS101', '2025-01-15', '13:00:00', '15:00:00', session_id='CS101-s2')

    assert courses.find_active_session('CS101', now=datetime(2025, 1, 15, 14, 0))['id'] == 'CS101-s2'
    assert courses.find_active_session('CS101', now=datetime(2025, 1, 15, 10, 0))['id'] == 'CS101-s1'


def test_find_active_session_falls_back_to_first_session_today(classroom, courses):
    assert courses.find_active_session('CS101', now=datetime(2025, 1, 15, 20, 0))['id'] == 'CS101-s1'
    assert courses.find_active_session('CS101', now=datetime(2025, 1, 16, 10, 0)) is None


def test_today_sessions(classroom, courses):
    sessions = courses.get_today_sessions('CS101', now=datetime(2025, 1, 15, 8, 0))
    assert [session['id'] for session in sessions] == ['CS101-s1']
    assert courses.get_today_sessions('CS101', now=datetime(2025, 1, 14, 8, 0)) == []


def test_attendance_window(classroom, courses):
    courses.create_session('CS101', '2025-01-16', '09:00:00', '11:00:00', session_id='CS101-s2',
                           attendance_window_start='2025-01-16T08:50:00',
                           attendance_window_end='2025-01-16T09:15:00')
    courses.create_session('CS101', '2025-01-17', '09:00:00', '11:00:00', session_id='CS101-s3',
                           qr_code_active=False)

    assert courses.is_attendance_open('CS101-s2', now=datetime(2025, 1, 16, 9, 0))
    assert not courses.is_attendance_open('CS101-s2', now=datetime(2025, 1, 16, 9, 30))
    assert not courses.is_attendance_open('CS101-s2', now=datetime(2025, 1, 16, 8, 0))
    assert not courses.is_attendance_open('CS101-s3', now=datetime(2025, 1, 17, 9, 30))
    assert not courses.is_attendance_open('missing')
