"""
Attendance Manager Module - QR Check-in Attendance Service

This module handles all attendance-related operations for the service.
It is the persistent-store side of a check-in: it records attendance for
the QR, BLE and manual channels, enforces one record per session and
student, and supports the administrator review flow.

Features:
- QR check-in processing (validation pipeline + record write)
- Manual and BLE attendance entry
- Duplicate check-in prevention
- Attendance history and statistics per student
- Pending approval queue, approve and reject
"""

import logging
import sqlite3
from typing import Dict, List, Optional, Any

from attendqr.modules.qr_validator import QRValidator
from attendqr.modules.token_security import AttendanceToken, Location, utc_now


class AttendanceStoreError(Exception):
    """Attendance could not be persisted."""

    error_type = 'store_error'


class DuplicateAttendanceError(AttendanceStoreError):
    """Attendance already exists for this session and student."""

    error_type = 'already_checked_in'


class UnknownSessionError(Exception):
    """The QR code names a class session that is missing or belongs to another course."""

    error_type = 'session_not_found'


class AttendanceManager:
    """
    Attendance recording and review for QR/BLE/manual check-ins.
    """

    METHOD_QR = 'QR'
    METHOD_BLE = 'BLE'
    METHOD_MANUAL = 'manual'

    STATUS_PENDING = 'pending'
    STATUS_VERIFIED = 'verified'
    STATUS_LATE = 'late'
    STATUS_REJECTED = 'rejected'

    def __init__(self, database_manager, course_manager, validator: QRValidator = None):
        """
        Initialize the attendance manager.

        Args:
            database_manager: Database manager instance
            course_manager: Course manager used for course and session lookups
            validator (QRValidator): Validator for scanned QR codes
        """
        self.db = database_manager
        self.courses = course_manager
        self.validator = validator
        self.logger = logging.getLogger(__name__)

        self.valid_methods = (self.METHOD_QR, self.METHOD_BLE, self.METHOD_MANUAL)
        self.default_status = self.db.get_system_setting(
            'default_attendance_status', self.STATUS_PENDING
        )

    def has_attendance(self, session_id: str, student_id: int) -> bool:
        """
        Check whether attendance already exists for a session and student.

        Raises:
            AttendanceStoreError: The store could not be queried
        """
        try:
            existing = self.db.execute_query(
                "SELECT id FROM attendance_records WHERE session_id = ? AND student_id = ?",
                (session_id, student_id),
                fetch_all=False
            )
            return existing is not None

        except sqlite3.Error as e:
            raise AttendanceStoreError(f"Failed to check existing attendance: {e}") from e

    def record_attendance(self, session_id: str, student_id: int, method: str,
                          course_id: str = None, latitude: float = None,
                          longitude: float = None, accuracy: float = None,
                          status: str = None, notes: str = None) -> Dict[str, Any]:
        """
        Insert an attendance record.

        Args:
            session_id (str): Class session ID
            student_id (int): Student user ID
            method (str): QR, BLE or manual
            course_id (str): Course ID, resolved from the session when omitted
            latitude (float): Captured device latitude
            longitude (float): Captured device longitude
            accuracy (float): Location accuracy in meters
            status (str): Initial status, defaults to the configured status
            notes (str): Optional notes

        Returns:
            Dict[str, Any]: The stored record

        Raises:
            DuplicateAttendanceError: Attendance already recorded for the session
            AttendanceStoreError: Record could not be written
        """
        if method not in self.valid_methods:
            raise ValueError(f"Invalid attendance method: {method}")

        if self.has_attendance(session_id, student_id):
            raise DuplicateAttendanceError('Attendance already recorded for this session')

        if course_id is None:
            session = self.courses.get_session(session_id)
            course_id = session['course_id'] if session else None

        check_in_time = utc_now().isoformat()
        status = status or self.default_status

        try:
            record_id = self.db.execute_update(
                """INSERT INTO attendance_records
                   (session_id, student_id, course_id, method, status, check_in_time,
                    latitude, longitude, location_accuracy, notes)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (session_id, student_id, course_id, method, status, check_in_time,
                 latitude, longitude, accuracy, notes)
            )
        except sqlite3.IntegrityError as e:
            # Lost a race with another writer for the same (session, student)
            if 'UNIQUE' in str(e):
                raise DuplicateAttendanceError('Attendance already recorded for this session') from e
            raise AttendanceStoreError(f"Failed to record attendance: {e}") from e
        except sqlite3.Error as e:
            raise AttendanceStoreError(f"Failed to record attendance: {e}") from e

        self.logger.info(
            f"Attendance recorded: student {student_id}, session {session_id}, method {method}"
        )
        return {
            'id': record_id,
            'session_id': session_id,
            'student_id': student_id,
            'course_id': course_id,
            'method': method,
            'status': status,
            'check_in_time': check_in_time,
            'latitude': latitude,
            'longitude': longitude,
            'location_accuracy': accuracy
        }

    def process_qr_check_in(self, qr_data: str, student_id: int,
                            location: Optional[Location] = None,
                            location_error: Optional[str] = None,
                            now: Optional[int] = None) -> Dict[str, Any]:
        """
        Validate a scanned QR code and record attendance on success.

        Args:
            qr_data (str): Raw QR code payload
            student_id (int): Student user ID
            location (Location): Device location, if available
            location_error (str): Upstream location-service error, if any
            now (int): Current time in epoch milliseconds

        Returns:
            Dict[str, Any]: Check-in result
        """
        if self.validator is None:
            raise RuntimeError('No QR validator configured')

        courses = self.courses.get_courses_for_student(student_id)
        validation = self.validator.validate(
            qr_data, courses,
            current_location=location,
            location_error=location_error,
            now=now
        )
        result = validation.to_dict()

        if not validation.success:
            self.logger.info(
                f"QR check-in rejected for student {student_id}: {validation.error_type}"
            )
            return result

        try:
            record = self.record_qr_check_in(validation.token, student_id, location)
        except UnknownSessionError as e:
            result.update({
                'success': False,
                'message': str(e),
                'error_type': e.error_type
            })
            return result
        except AttendanceStoreError as e:
            self.logger.warning(f"QR check-in valid but not stored for student {student_id}: {str(e)}")
            result.update({
                'success': False,
                'token_valid': True,
                'message': str(e) if isinstance(e, DuplicateAttendanceError)
                           else 'Your QR code was valid but attendance could not be saved. Please try again.',
                'error_type': e.error_type
            })
            return result

        result['attendance'] = record
        result['course_name'] = validation.course.get('name') if validation.course else None
        return result

    def record_qr_check_in(self, token: AttendanceToken, student_id: int,
                           location: Optional[Location] = None) -> Dict[str, Any]:
        """
        Store the check-in for an already validated token.

        Returns:
            Dict[str, Any]: The stored record

        Raises:
            UnknownSessionError: The token's session is missing or not part of its course
            DuplicateAttendanceError: Attendance already recorded for the session
            AttendanceStoreError: Record could not be written
        """
        session = self.courses.get_session(token.session_id)
        if not session or session['course_id'] != token.course_id:
            self.logger.warning(
                f"QR code for course {token.course_id} names unknown session {token.session_id}"
            )
            raise UnknownSessionError('No matching class session found for this QR code. '
                                      'Please contact your instructor.')

        return self.record_attendance(
            token.session_id, student_id, self.METHOD_QR,
            course_id=token.course_id,
            latitude=location.latitude if location else None,
            longitude=location.longitude if location else None,
            accuracy=location.accuracy if location else None
        )

    def record_manual_attendance(self, session_id: str, student_id: int,
                                 notes: str = None) -> Dict[str, Any]:
        """
        Record a manual check-in, pending administrator approval.

        Returns:
            Dict[str, Any]: Result with the stored record or an error message
        """
        session = self.courses.get_session(session_id)
        if not session:
            return {
                'success': False,
                'message': 'Class session not found',
                'error_type': 'session_not_found'
            }

        try:
            record = self.record_attendance(
                session_id, student_id, self.METHOD_MANUAL,
                course_id=session['course_id'],
                status=self.STATUS_PENDING,
                notes=notes
            )
        except AttendanceStoreError as e:
            return {
                'success': False,
                'message': str(e),
                'error_type': e.error_type
            }

        return {
            'success': True,
            'message': 'Manual check-in submitted for approval',
            'attendance': record
        }

    def get_student_attendance(self, student_id: int, limit: int = 50,
                               offset: int = 0) -> List[Dict[str, Any]]:
        """
        Get a student's attendance history, newest first.

        Args:
            student_id (int): Student user ID
            limit (int): Page size
            offset (int): Page offset

        Returns:
            List[Dict[str, Any]]: Attendance records with course and session info
        """
        try:
            return self.db.execute_query(
                """SELECT a.*,
                          COALESCE(c.name, 'Unknown Course') AS course_name,
                          COALESCE(c.code, 'UNKNOWN') AS course_code,
                          s.session_date AS date
                   FROM attendance_records a
                   LEFT JOIN class_sessions s ON a.session_id = s.id
                   LEFT JOIN courses c ON COALESCE(a.course_id, s.course_id) = c.id
                   WHERE a.student_id = ?
                   ORDER BY a.created_at DESC, a.id DESC
                   LIMIT ? OFFSET ?""",
                (student_id, limit, offset)
            )

        except Exception as e:
            self.logger.error(f"Failed to get attendance for student {student_id}: {str(e)}")
            return []

    def get_student_attendance_stats(self, student_id: int,
                                     today: str = None) -> Dict[str, Any]:
        """
        Attendance statistics for a student across enrolled courses.

        Attended sessions count verified and late records; the rate is over
        sessions held up to today.

        Returns:
            Dict[str, Any]: total_sessions, attended_sessions, attendance_rate,
            pending_verifications
        """
        today = today or utc_now().date().isoformat()
        try:
            total = self.db.execute_query(
                """SELECT COUNT(*) AS count
                   FROM class_sessions s
                   JOIN course_enrollments e ON e.course_id = s.course_id
                   WHERE e.student_id = ? AND e.status = 'approved' AND s.session_date <= ?""",
                (student_id, today),
                fetch_all=False
            )['count']

            counts = self.db.execute_query(
                """SELECT
                       SUM(CASE WHEN status IN ('verified', 'late') THEN 1 ELSE 0 END) AS attended,
                       SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) AS pending
                   FROM attendance_records
                   WHERE student_id = ?""",
                (student_id,),
                fetch_all=False
            )
            attended = counts['attended'] or 0
            pending = counts['pending'] or 0

            return {
                'total_sessions': total,
                'attended_sessions': attended,
                'attendance_rate': round(attended / total * 100, 2) if total > 0 else 0,
                'pending_verifications': pending
            }

        except Exception as e:
            self.logger.error(f"Failed to get attendance stats for student {student_id}: {str(e)}")
            return {
                'total_sessions': 0,
                'attended_sessions': 0,
                'attendance_rate': 0,
                'pending_verifications': 0
            }

    def get_pending_approvals(self, course_id: str = None) -> List[Dict[str, Any]]:
        """Get attendance records awaiting administrator review."""
        try:
            query = """SELECT a.*, u.full_name AS student_name,
                              c.code AS course_code, c.name AS course_name,
                              s.session_date
                       FROM attendance_records a
                       JOIN users u ON a.student_id = u.id
                       LEFT JOIN class_sessions s ON a.session_id = s.id
                       LEFT JOIN courses c ON a.course_id = c.id
                       WHERE a.status = 'pending'"""
            params = []
            if course_id:
                query += " AND a.course_id = ?"
                params.append(course_id)
            query += " ORDER BY a.check_in_time"

            return self.db.execute_query(query, tuple(params))

        except Exception as e:
            self.logger.error(f"Failed to get pending approvals: {str(e)}")
            return []

    def get_attendance_record(self, record_id: int) -> Optional[Dict[str, Any]]:
        try:
            return self.db.execute_query(
                "SELECT * FROM attendance_records WHERE id = ?",
                (record_id,),
                fetch_all=False
            )
        except Exception as e:
            self.logger.error(f"Failed to get attendance record {record_id}: {str(e)}")
            return None

    def approve_attendance(self, record_id: int, reviewer_id: int) -> Dict[str, Any]:
        """Mark a pending record as verified."""
        return self._review_attendance(record_id, self.STATUS_VERIFIED, reviewer_id)

    def reject_attendance(self, record_id: int, reviewer_id: int,
                          notes: str = None) -> Dict[str, Any]:
        """Mark a pending record as rejected, optionally with a reason."""
        return self._review_attendance(record_id, self.STATUS_REJECTED, reviewer_id, notes)

    def _review_attendance(self, record_id: int, new_status: str, reviewer_id: int,
                           notes: str = None) -> Dict[str, Any]:
        """
        Move a pending record to its reviewed status.

        Args:
            record_id (int): Attendance record ID
            new_status (str): verified or rejected
            reviewer_id (int): Reviewing administrator
            notes (str): Optional notes

        Returns:
            Dict[str, Any]: Review result
        """
        try:
            affected_rows = self.db.execute_update(
                """UPDATE attendance_records
                   SET status = ?, verified_by = ?, verified_at = ?,
                       notes = COALESCE(?, notes)
                   WHERE id = ? AND status = 'pending'""",
                (new_status, reviewer_id, utc_now().isoformat(), notes, record_id)
            )

            if affected_rows > 0:
                self.logger.info(f"Attendance record {record_id} {new_status} by user {reviewer_id}")
                return {
                    'success': True,
                    'message': f'Attendance {new_status}',
                    'record': self.get_attendance_record(record_id)
                }

            existing = self.get_attendance_record(record_id)
            if not existing:
                return {
                    'success': False,
                    'message': 'Attendance record not found',
                    'error_type': 'not_found'
                }
            return {
                'success': False,
                'message': f"Attendance record is already {existing['status']}",
                'error_type': 'not_pending'
            }

        except Exception as e:
            self.logger.error(f"Failed to review attendance record {record_id}: {str(e)}")
            return {
                'success': False,
                'message': 'Failed to update attendance record',
                'error_type': 'store_error'
            }
