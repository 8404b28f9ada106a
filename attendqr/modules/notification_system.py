"""
Notification System Module - QR Check-in Attendance Service

This module handles in-app notifications for the attendance service. Messages
are rendered from jinja2 templates and persisted per user, so students learn
when a check-in was recorded and when it was approved or rejected.

Features:
- Check-in recorded notifications
- Approval and rejection notifications
- Customizable notification templates
- Notification history, unread counts and read tracking
"""

from dataclasses import dataclass
from typing import Dict, List, Any, Optional
import logging

from jinja2 import Template


@dataclass
class NotificationData:
    """Data structure for notification information."""
    user_id: Optional[int]
    type: str
    title: str
    message: str


class NotificationSystem:
    """
    Templated, database-backed notifications for attendance events.
    """

    def __init__(self, database_manager):
        """
        Initialize the notification system.

        Args:
            database_manager: Database manager instance
        """
        self.db = database_manager
        self.logger = logging.getLogger(__name__)

        self.NOTIFICATION_TYPES = {
            'ATTENDANCE_RECORDED': 'attendance_recorded',
            'ATTENDANCE_APPROVED': 'attendance_approved',
            'ATTENDANCE_REJECTED': 'attendance_rejected',
            'SYSTEM_ALERT': 'system_alert'
        }

        self.templates = {
            'attendance_recorded': Template(
                "Your check-in for {{ course_name }} was recorded"
                "{% if session_date %} for the session on {{ session_date }}{% endif %}. "
                "{% if status == 'pending' %}It is awaiting approval."
                "{% else %}Status: {{ status }}.{% endif %}"
            ),
            'attendance_approved': Template(
                "Your attendance for {{ course_name }}"
                "{% if session_date %} on {{ session_date }}{% endif %} was approved."
            ),
            'attendance_rejected': Template(
                "Your attendance for {{ course_name }}"
                "{% if session_date %} on {{ session_date }}{% endif %} was rejected."
                "{% if notes %} Reason: {{ notes }}{% endif %}"
            ),
            'system_alert': Template("{{ message }}")
        }

    def render(self, notification_type: str, **context) -> str:
        """Render the message template for a notification type."""
        template = self.templates.get(notification_type, self.templates['system_alert'])
        return template.render(**context).strip()

    def send_attendance_notification(self, attendance: Dict[str, Any],
                                     course_name: str = None) -> Optional[int]:
        """
        Notify a student that their check-in was recorded.

        Args:
            attendance (Dict[str, Any]): Stored attendance record
            course_name (str): Course name for the message

        Returns:
            int: Notification ID, or None on failure
        """
        context = self._attendance_context(attendance, course_name)
        notification = NotificationData(
            user_id=attendance.get('student_id'),
            type=self.NOTIFICATION_TYPES['ATTENDANCE_RECORDED'],
            title=f"Check-in recorded - {context['course_name']}",
            message=self.render('attendance_recorded', **context)
        )
        return self._store_notification(notification)

    def send_approval_notification(self, attendance: Dict[str, Any], approved: bool,
                                   course_name: str = None) -> Optional[int]:
        """
        Notify a student about the review of their attendance record.

        Args:
            attendance (Dict[str, Any]): Reviewed attendance record
            approved (bool): True when verified, False when rejected
            course_name (str): Course name for the message

        Returns:
            int: Notification ID, or None on failure
        """
        context = self._attendance_context(attendance, course_name)
        notification_type = (self.NOTIFICATION_TYPES['ATTENDANCE_APPROVED'] if approved
                             else self.NOTIFICATION_TYPES['ATTENDANCE_REJECTED'])
        notification = NotificationData(
            user_id=attendance.get('student_id'),
            type=notification_type,
            title=f"Attendance {'approved' if approved else 'rejected'} - {context['course_name']}",
            message=self.render(notification_type, **context)
        )
        return self._store_notification(notification)

    def send_system_alert(self, title: str, message: str, user_id: int = None) -> Optional[int]:
        """Store a free-form alert, broadcast when user_id is None."""
        notification = NotificationData(
            user_id=user_id,
            type=self.NOTIFICATION_TYPES['SYSTEM_ALERT'],
            title=title,
            message=self.render('system_alert', message=message)
        )
        return self._store_notification(notification)

    def _attendance_context(self, attendance: Dict[str, Any],
                            course_name: str = None) -> Dict[str, Any]:
        return {
            'course_name': course_name or attendance.get('course_name') or 'your course',
            'session_date': attendance.get('session_date') or attendance.get('date'),
            'status': attendance.get('status'),
            'notes': attendance.get('notes')
        }

    def _store_notification(self, notification: NotificationData) -> Optional[int]:
        try:
            notification_id = self.db.execute_update(
                """INSERT INTO notifications (user_id, title, message, type)
                   VALUES (?, ?, ?, ?)""",
                (notification.user_id, notification.title, notification.message, notification.type)
            )
            self.logger.info(f"Notification {notification.type} stored for user {notification.user_id}")
            return notification_id

        except Exception as e:
            self.logger.error(f"Failed to store notification: {str(e)}")
            return None

    def get_notifications(self, user_id: int, limit: int = 20,
                          unread_only: bool = False) -> List[Dict[str, Any]]:
        """
        Get notifications for a user, including broadcasts, newest first.

        Args:
            user_id (int): Recipient user ID
            limit (int): Number of notifications to retrieve
            unread_only (bool): Only return unread notifications

        Returns:
            List[Dict[str, Any]]: Notifications
        """
        try:
            query = "SELECT * FROM notifications WHERE (user_id = ? OR user_id IS NULL)"
            if unread_only:
                query += " AND is_read = 0"
            query += " ORDER BY created_at DESC, id DESC LIMIT ?"
            return self.db.execute_query(query, (user_id, limit))

        except Exception as e:
            self.logger.error(f"Failed to get notifications for user {user_id}: {str(e)}")
            return []

    def mark_notification_read(self, notification_id: int, user_id: int) -> bool:
        """
        Mark one of a user's notifications as read.

        Returns:
            bool: True when a notification was updated
        """
        try:
            affected_rows = self.db.execute_update(
                "UPDATE notifications SET is_read = 1 WHERE id = ? AND user_id = ?",
                (notification_id, user_id)
            )
            return affected_rows > 0

        except Exception as e:
            self.logger.error(f"Failed to mark notification as read: {str(e)}")
            return False

    def get_unread_count(self, user_id: int) -> int:
        try:
            result = self.db.execute_query(
                "SELECT COUNT(*) AS count FROM notifications WHERE user_id = ? AND is_read = 0",
                (user_id,),
                fetch_all=False
            )
            return result['count'] if result else 0

        except Exception as e:
            self.logger.error(f"Failed to count notifications for user {user_id}: {str(e)}")
            return 0
