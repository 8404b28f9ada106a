import pytest

from attendqr.modules.notification_system import NotificationSystem


@pytest.fixture
def notifications(db):
    return NotificationSystem(db)


def test_check_in_notification(classroom, notifications):
    record = {'student_id': classroom['student_id'], 'status': 'pending'}
    notification_id = notifications.send_attendance_notification(record, course_name='Intro to CS')

    assert notification_id is not None
    stored = notifications.get_notifications(classroom['student_id'])
    assert len(stored) == 1
    assert stored[0]['type'] == 'attendance_recorded'
    assert stored[0]['title'] == 'Check-in recorded - Intro to CS'
    assert stored[0]['message'] == 'Your check-in for Intro to CS was recorded. It is awaiting approval.'


def test_check_in_notification_with_status_and_date(classroom, notifications):
    record = {'student_id': classroom['student_id'], 'status': 'verified',
              'session_date': '2025-01-15'}
    notifications.send_attendance_notification(record, course_name='Intro to CS')

    message = notifications.get_notifications(classroom['student_id'])[0]['message']
    assert message == ('Your check-in for Intro to CS was recorded for the session on 2025-01-15. '
                       'Status: verified.')


def test_rejection_includes_reason(classroom, notifications):
    record = {'student_id': classroom['student_id'], 'session_date': '2025-01-15',
              'notes': 'Not in class'}
    notifications.send_approval_notification(record, approved=False, course_name='Intro to CS')

    stored = notifications.get_notifications(classroom['student_id'])[0]
    assert stored['type'] == 'attendance_rejected'
    assert stored['message'] == ('Your attendance for Intro to CS on 2025-01-15 was rejected. '
                                 'Reason: Not in class')


def test_approval(classroom, notifications):
    notifications.send_approval_notification({'student_id': classroom['student_id']}, approved=True)

    stored = notifications.get_notifications(classroom['student_id'])[0]
    assert stored['type'] == 'attendance_approved'
    assert stored['message'] == 'Your attendance for your course was approved.'


def test_unread_count_and_mark_read(classroom, notifications):
    student = classroom['student_id']
    first = notifications.send_attendance_notification({'student_id': student, 'status': 'pending'})
    notifications.send_approval_notification({'student_id': student}, approved=True)
    assert notifications.get_unread_count(student) == 2

    assert notifications.mark_notification_read(first, student)
    assert notifications.get_unread_count(student) == 1
    assert len(notifications.get_notifications(student, unread_only=True)) == 1

    # Another user cannot mark someone else's notification
    assert not notifications.mark_notification_read(first, classroom['instructor_id'])


def test_broadcast_alerts_reach_everyone(classroom, notifications):
    notifications.send_system_alert('Maintenance', 'Check-in is offline at 18:00.')

    for user_id in (classroom['student_id'], classroom['instructor_id']):
        stored = notifications.get_notifications(user_id)
        assert [n['title'] for n in stored] == ['Maintenance']
        assert stored[0]['message'] == 'Check-in is offline at 18:00.'
