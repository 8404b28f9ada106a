"""
Course Manager Module - QR Check-in Attendance Service

This module handles courses, their scheduled class sessions and student
enrollments. It supplies the course list the QR validator checks scanned
tokens against, including each course's registered classroom coordinates,
and resolves which session a check-in belongs to.

Features:
- Course creation and classroom location management
- Class session scheduling
- Active session resolution for a point in time
- Attendance window checks
- Student enrollment management
"""

from datetime import datetime
from typing import Dict, List, Any, Optional
import logging
import uuid

from attendqr.modules.token_security import utc_now


class CourseManager:
    """
    Course, session and enrollment management for the attendance service.
    """

    def __init__(self, database_manager):
        """
        Initialize the course manager with database connection.

        Args:
            database_manager: Database manager instance
        """
        self.db = database_manager
        self.logger = logging.getLogger(__name__)

        self.SESSION_TYPES = ('regular', 'makeup', 'exam', 'lab')
        self.ENROLLMENT_STATUSES = ('pending', 'approved', 'rejected')

    def create_course(self, code: str, name: str, instructor_id: int = None,
                      course_id: str = None, description: str = None,
                      room: str = None, latitude: float = None,
                      longitude: float = None, address: str = None) -> Dict[str, Any]:
        """
        Create a new course.

        Args:
            code (str): Unique course code
            name (str): Course name
            instructor_id (int): Owning instructor
            course_id (str): Explicit identifier, generated when omitted
            description (str): Course description
            room (str): Room label
            latitude (float): Classroom latitude
            longitude (float): Classroom longitude
            address (str): Classroom address

        Returns:
            Dict[str, Any]: Creation result
        """
        try:
            if not code or not name:
                return {
                    'success': False,
                    'error': 'Course code and name are required'
                }

            existing = self.db.execute_query(
                "SELECT id FROM courses WHERE code = ?",
                (code,),
                fetch_all=False
            )
            if existing:
                return {
                    'success': False,
                    'error': 'Course code already exists'
                }

            course_id = course_id or uuid.uuid4().hex
            self.db.execute_update(
                """INSERT INTO courses (id, code, name, description, instructor_id, room,
                                        latitude, longitude, address)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (course_id, code, name, description, instructor_id, room,
                 latitude, longitude, address)
            )

            self.logger.info(f"Course created successfully: {code} (ID: {course_id})")
            return {
                'success': True,
                'course_id': course_id,
                'code': code,
                'message': 'Course created successfully'
            }

        except Exception as e:
            self.logger.error(f"Course creation failed for {code}: {str(e)}")
            return {
                'success': False,
                'error': 'Failed to create course'
            }

    def set_classroom_location(self, course_id: str, latitude: Optional[float],
                               longitude: Optional[float], address: str = None) -> bool:
        """
        Register (or clear, with None) the classroom coordinates of a course.

        Returns:
            bool: Success status
        """
        try:
            affected_rows = self.db.execute_update(
                """UPDATE courses
                   SET latitude = ?, longitude = ?, address = COALESCE(?, address),
                       updated_at = CURRENT_TIMESTAMP
                   WHERE id = ?""",
                (latitude, longitude, address, course_id)
            )
            if affected_rows > 0:
                self.logger.info(f"Classroom location updated for course {course_id}")
                return True

            self.logger.warning(f"No course found with ID: {course_id}")
            return False

        except Exception as e:
            self.logger.error(f"Failed to set classroom location for {course_id}: {str(e)}")
            return False

    def get_course(self, course_id: str) -> Optional[Dict[str, Any]]:
        """
        Get course by ID, including instructor name and classroom coordinates.

        Args:
            course_id (str): Course ID

        Returns:
            Dict[str, Any]: Course information or None
        """
        try:
            return self.db.execute_query(
                """SELECT c.*, u.full_name AS instructor_name
                   FROM courses c
                   LEFT JOIN users u ON c.instructor_id = u.id
                   WHERE c.id = ? AND c.is_active = 1""",
                (course_id,),
                fetch_all=False
            )

        except Exception as e:
            self.logger.error(f"Failed to get course {course_id}: {str(e)}")
            return None

    def get_all_courses(self, include_inactive: bool = False) -> List[Dict[str, Any]]:
        """Get all courses ordered by code."""
        try:
            where_clause = "" if include_inactive else "WHERE c.is_active = 1"
            return self.db.execute_query(f"""
                SELECT c.*, u.full_name AS instructor_name
                FROM courses c
                LEFT JOIN users u ON c.instructor_id = u.id
                {where_clause}
                ORDER BY c.code
            """)

        except Exception as e:
            self.logger.error(f"Failed to get courses: {str(e)}")
            return []

    def get_courses_for_student(self, student_id: int) -> List[Dict[str, Any]]:
        """
        Get the courses a student is actively enrolled in.
        This is the cached course list used to validate scanned QR codes.

        Args:
            student_id (int): Student user ID

        Returns:
            List[Dict[str, Any]]: Enrolled courses
        """
        try:
            return self.db.execute_query(
                """SELECT c.*, u.full_name AS instructor_name
                   FROM courses c
                   JOIN course_enrollments e ON e.course_id = c.id
                   LEFT JOIN users u ON c.instructor_id = u.id
                   WHERE e.student_id = ? AND e.status = 'approved' AND c.is_active = 1
                   ORDER BY c.code""",
                (student_id,)
            )

        except Exception as e:
            self.logger.error(f"Failed to get courses for student {student_id}: {str(e)}")
            return []

    def get_courses_by_instructor(self, instructor_id: int) -> List[Dict[str, Any]]:
        """Get courses taught by an instructor."""
        try:
            return self.db.execute_query(
                "SELECT * FROM courses WHERE instructor_id = ? AND is_active = 1 ORDER BY code",
                (instructor_id,)
            )

        except Exception as e:
            self.logger.error(f"Failed to get courses for instructor {instructor_id}: {str(e)}")
            return []

    def create_session(self, course_id: str, session_date: str, start_time: str,
                       end_time: str, instructor_id: int = None,
                       attendance_window_start: str = None,
                       attendance_window_end: str = None,
                       qr_code_active: bool = True, beacon_enabled: bool = False,
                       session_type: str = 'regular',
                       session_id: str = None) -> Dict[str, Any]:
        """
        Schedule a class session for a course.

        Args:
            course_id (str): Course ID
            session_date (str): Date (YYYY-MM-DD)
            start_time (str): Start time (HH:MM:SS)
            end_time (str): End time (HH:MM:SS)
            instructor_id (int): Instructor running the session
            attendance_window_start (str): ISO timestamp check-in opens
            attendance_window_end (str): ISO timestamp check-in closes
            qr_code_active (bool): Whether QR check-in is enabled
            beacon_enabled (bool): Whether BLE check-in is enabled
            session_type (str): regular, makeup, exam or lab
            session_id (str): Explicit identifier, generated when omitted

        Returns:
            Dict[str, Any]: Creation result
        """
        try:
            if not self.get_course(course_id):
                return {
                    'success': False,
                    'error': 'Course not found'
                }

            if start_time >= end_time:
                return {
                    'success': False,
                    'error': 'Start time must be before end time'
                }

            if session_type not in self.SESSION_TYPES:
                session_type = 'regular'

            session_id = session_id or uuid.uuid4().hex
            self.db.execute_update(
                """INSERT INTO class_sessions
                   (id, course_id, instructor_id, session_date, start_time, end_time,
                    attendance_window_start, attendance_window_end, qr_code_active,
                    beacon_enabled, session_type)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (session_id, course_id, instructor_id, session_date, start_time, end_time,
                 attendance_window_start, attendance_window_end, int(qr_code_active),
                 int(beacon_enabled), session_type)
            )

            self.logger.info(f"Session {session_id} scheduled for course {course_id} on {session_date}")
            return {
                'success': True,
                'session_id': session_id,
                'message': 'Session created successfully'
            }

        except Exception as e:
            self.logger.error(f"Session creation failed for course {course_id}: {str(e)}")
            return {
                'success': False,
                'error': 'Failed to create session'
            }

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Get a class session joined with its course code and name."""
        try:
            return self.db.execute_query(
                """SELECT s.*, c.code AS course_code, c.name AS course_name
                   FROM class_sessions s
                   JOIN courses c ON s.course_id = c.id
                   WHERE s.id = ?""",
                (session_id,),
                fetch_all=False
            )

        except Exception as e:
            self.logger.error(f"Failed to get session {session_id}: {str(e)}")
            return None

    def get_today_sessions(self, course_id: str, now: datetime = None) -> List[Dict[str, Any]]:
        """Get a course's sessions scheduled for today (UTC)."""
        now = now or utc_now()
        try:
            return self.db.execute_query(
                """SELECT s.*, c.code AS course_code, c.name AS course_name
                   FROM class_sessions s
                   JOIN courses c ON s.course_id = c.id
                   WHERE s.course_id = ? AND s.session_date = ?
                   ORDER BY s.start_time""",
                (course_id, now.date().isoformat())
            )

        except Exception as e:
            self.logger.error(f"Failed to get today's sessions for {course_id}: {str(e)}")
            return []

    def find_active_session(self, course_id: str, now: datetime = None) -> Optional[Dict[str, Any]]:
        """
        Resolve the session a check-in at `now` belongs to.

        Tries the explicit attendance window first, then the scheduled
        start/end time, then falls back to any session of the course today.

        Args:
            course_id (str): Course ID
            now (datetime): Point in time (UTC), defaults to now

        Returns:
            Dict[str, Any]: Session or None
        """
        now = now or utc_now()
        sessions = self.get_today_sessions(course_id, now)
        if not sessions:
            self.logger.info(f"No sessions today for course {course_id}")
            return None

        now_iso = now.isoformat()
        for session in sessions:
            window_start = session.get('attendance_window_start')
            window_end = session.get('attendance_window_end')
            if window_start and window_end and window_start <= now_iso <= window_end:
                return session

        current_time = now.strftime('%H:%M:%S')
        for session in sessions:
            if session['start_time'] <= current_time <= session['end_time']:
                return session

        self.logger.warning(
            f"Using session {sessions[0]['id']} outside its scheduled time for course {course_id}"
        )
        return sessions[0]

    def is_attendance_open(self, session_id: str, now: datetime = None) -> bool:
        """
        Check whether check-in is currently open for a session.

        A session is open only when QR or beacon check-in is enabled; any
        attendance window bounds that are set must contain `now`.
        """
        now = now or utc_now()
        session = self.get_session(session_id)
        if not session:
            return False

        if not session['qr_code_active'] and not session['beacon_enabled']:
            return False

        now_iso = now.isoformat()
        open_time = session.get('attendance_window_start')
        close_time = session.get('attendance_window_end')

        if open_time and now_iso < open_time:
            return False
        if close_time and now_iso > close_time:
            return False
        return True

    def enroll_student(self, student_id: int, course_id: str,
                       status: str = 'approved', reviewed_by: int = None) -> Dict[str, Any]:
        """
        Enroll a student in a course, or update an existing enrollment status.

        Returns:
            Dict[str, Any]: Enrollment result
        """
        try:
            if status not in self.ENROLLMENT_STATUSES:
                return {
                    'success': False,
                    'error': f'Invalid enrollment status: {status}'
                }

            self.db.execute_update(
                """INSERT INTO course_enrollments (student_id, course_id, status, reviewed_by, reviewed_at)
                   VALUES (?, ?, ?, ?, CASE WHEN ? IS NULL THEN NULL ELSE CURRENT_TIMESTAMP END)
                   ON CONFLICT(student_id, course_id) DO UPDATE SET
                       status = excluded.status,
                       reviewed_by = excluded.reviewed_by,
                       reviewed_at = excluded.reviewed_at""",
                (student_id, course_id, status, reviewed_by, reviewed_by)
            )

            self.logger.info(f"Student {student_id} enrollment in {course_id} set to {status}")
            return {
                'success': True,
                'message': f'Enrollment {status}'
            }

        except Exception as e:
            self.logger.error(f"Enrollment failed for student {student_id} in {course_id}: {str(e)}")
            return {
                'success': False,
                'error': 'Failed to enroll student'
            }

    def is_enrolled(self, student_id: int, course_id: str) -> bool:
        """True when the student has an approved enrollment in the course."""
        try:
            result = self.db.execute_query(
                """SELECT id FROM course_enrollments
                   WHERE student_id = ? AND course_id = ? AND status = 'approved'""",
                (student_id, course_id),
                fetch_all=False
            )
            return result is not None

        except Exception as e:
            self.logger.error(f"Failed to check enrollment for student {student_id}: {str(e)}")
            return False
