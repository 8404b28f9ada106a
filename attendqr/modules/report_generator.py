"""
Report Generator Module - QR Check-in Attendance Service

This module exports course attendance for instructors and administrators.
Records are loaded from the store into pandas DataFrames and written as CSV
or Excel workbooks, together with per-course summary statistics.

Features:
- Course attendance export (CSV, Excel)
- Date and status filters
- Per-course summary (records, students, status and method counts)
- Per-student attendance rates
"""

import pandas as pd
from datetime import datetime
from typing import Dict, List, Any
import logging
import os

ATTENDED_STATUSES = ('verified', 'late')


class ReportGenerator:
    """
    Attendance report generation for courses.
    """

    def __init__(self, database_manager, output_dir: str = 'exports'):
        """
        Initialize the report generator with database connection.

        Args:
            database_manager: Database manager instance
            output_dir (str): Directory report files are written to
        """
        self.db = database_manager
        self.logger = logging.getLogger(__name__)

        self.output_dir = str(output_dir)
        self.supported_formats = ['excel', 'csv']
        self.max_records_per_report = 10000

        os.makedirs(self.output_dir, exist_ok=True)

    def generate_course_report(self, course_id: str, output_format: str = 'csv',
                               filters: Dict[str, Any] = None) -> Dict[str, Any]:
        """
        Export the attendance records of a course.

        Args:
            course_id (str): Course ID
            output_format (str): Output format (csv, excel)
            filters (Dict[str, Any]): start_date, end_date and status filters

        Returns:
            Dict[str, Any]: Report generation result
        """
        filters = filters or {}
        try:
            if output_format not in self.supported_formats:
                return {
                    'success': False,
                    'error': f'Unsupported output format: {output_format}'
                }

            course = self.db.execute_query(
                "SELECT id, code, name FROM courses WHERE id = ?",
                (course_id,),
                fetch_all=False
            )
            if not course:
                return {
                    'success': False,
                    'error': 'Course not found'
                }

            records = self._get_course_attendance_data(course_id, filters)
            if not records:
                return {
                    'success': False,
                    'error': 'No data found for the specified criteria'
                }

            df = pd.DataFrame(records)
            summary = self._summarize(df)

            if output_format == 'excel':
                result = self._generate_excel_report(course, df, summary, filters)
            else:
                result = self._generate_csv_report(course, df)

            if result['success']:
                result['summary'] = summary
                self.logger.info(f"Report generated successfully: {result['filename']}")
            return result

        except Exception as e:
            self.logger.error(f"Report generation failed for course {course_id}: {str(e)}")
            return {
                'success': False,
                'error': str(e)
            }

    def _get_course_attendance_data(self, course_id: str,
                                    filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Attendance records of a course with student and session columns.

        Args:
            course_id (str): Course ID
            filters (Dict[str, Any]): Data filters

        Returns:
            List[Dict[str, Any]]: Records ordered by session date and check-in time
        """
        where_conditions = ["a.course_id = ?"]
        params = [course_id]

        if filters.get('start_date'):
            where_conditions.append("s.session_date >= ?")
            params.append(filters['start_date'])

        if filters.get('end_date'):
            where_conditions.append("s.session_date <= ?")
            params.append(filters['end_date'])

        if filters.get('status'):
            where_conditions.append("a.status = ?")
            params.append(filters['status'])

        params.append(self.max_records_per_report)
        return self.db.execute_query(f"""
            SELECT a.id AS record_id, s.session_date, s.start_time, s.end_time,
                   u.username, u.full_name AS student_name,
                   a.method, a.status, a.check_in_time,
                   a.latitude, a.longitude, a.location_accuracy,
                   r.full_name AS verified_by_name, a.verified_at, a.notes
            FROM attendance_records a
            JOIN users u ON a.student_id = u.id
            LEFT JOIN class_sessions s ON a.session_id = s.id
            LEFT JOIN users r ON a.verified_by = r.id
            WHERE {" AND ".join(where_conditions)}
            ORDER BY s.session_date, a.check_in_time
            LIMIT ?
        """, tuple(params))

    def _summarize(self, df: pd.DataFrame) -> Dict[str, Any]:
        status_counts = df['status'].value_counts()
        method_counts = df['method'].value_counts()
        return {
            'total_records': int(len(df)),
            'unique_students': int(df['username'].nunique()),
            'sessions': int(df['session_date'].nunique()),
            'status_counts': {k: int(v) for k, v in status_counts.items()},
            'method_counts': {k: int(v) for k, v in method_counts.items()}
        }

    def get_course_summary(self, course_id: str) -> Dict[str, Any]:
        """
        Summary statistics for a course without writing a file.

        Returns:
            Dict[str, Any]: total_records, unique_students, sessions, status_counts,
            method_counts (all zero/empty when the course has no records)
        """
        try:
            records = self._get_course_attendance_data(course_id, {})
        except Exception as e:
            self.logger.error(f"Failed to summarize course {course_id}: {str(e)}")
            records = []

        if not records:
            return {
                'total_records': 0,
                'unique_students': 0,
                'sessions': 0,
                'status_counts': {},
                'method_counts': {}
            }
        return self._summarize(pd.DataFrame(records))

    def get_student_rates(self, course_id: str) -> List[Dict[str, Any]]:
        """
        Attendance rate per student over the sessions held for a course.

        Returns:
            List[Dict[str, Any]]: username, student_name, attended, sessions_held, rate
        """
        try:
            records = self._get_course_attendance_data(course_id, {})
            held = self.db.execute_query(
                """SELECT COUNT(*) AS count FROM class_sessions
                   WHERE course_id = ? AND session_date <= ?""",
                (course_id, datetime.now().date().isoformat()),
                fetch_all=False
            )['count']
        except Exception as e:
            self.logger.error(f"Failed to compute attendance rates for course {course_id}: {str(e)}")
            return []

        if not records:
            return []

        df = pd.DataFrame(records)
        df['attended'] = df['status'].isin(ATTENDED_STATUSES)
        rates = (df.groupby(['username', 'student_name'], as_index=False)['attended']
                   .sum()
                   .sort_values('username'))
        rates['attended'] = rates['attended'].astype(int)
        rates['sessions_held'] = held
        rates['rate'] = (rates['attended'] / held * 100).round(2) if held else 0.0
        return rates.to_dict(orient='records')

    def _generate_excel_report(self, course: Dict[str, Any], df: pd.DataFrame,
                               summary: Dict[str, Any], filters: Dict[str, Any]) -> Dict[str, Any]:
        """
        Generate Excel report from data.

        Returns:
            Dict[str, Any]: Excel generation result
        """
        try:
            filename = f"attendance_{course['code']}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.xlsx"
            filepath = os.path.join(self.output_dir, filename)

            with pd.ExcelWriter(filepath, engine='openpyxl') as writer:
                df.to_excel(writer, sheet_name='Attendance', index=False)

                stats = [
                    {'Metric': 'Total records', 'Value': summary['total_records']},
                    {'Metric': 'Unique students', 'Value': summary['unique_students']},
                    {'Metric': 'Sessions', 'Value': summary['sessions']}
                ]
                stats += [{'Metric': f'Status: {k}', 'Value': v}
                          for k, v in summary['status_counts'].items()]
                pd.DataFrame(stats).to_excel(writer, sheet_name='Summary', index=False)

                filters_data = [{'Filter': k, 'Value': v} for k, v in filters.items() if v]
                if filters_data:
                    pd.DataFrame(filters_data).to_excel(writer, sheet_name='Applied Filters', index=False)

            return {
                'success': True,
                'filename': filename,
                'filepath': filepath,
                'format': 'excel',
                'size': os.path.getsize(filepath)
            }

        except Exception as e:
            self.logger.error(f"Excel report generation failed: {str(e)}")
            return {
                'success': False,
                'error': str(e)
            }

    def _generate_csv_report(self, course: Dict[str, Any], df: pd.DataFrame) -> Dict[str, Any]:
        try:
            filename = f"attendance_{course['code']}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"
            filepath = os.path.join(self.output_dir, filename)
            df.to_csv(filepath, index=False, encoding='utf-8')

            return {
                'success': True,
                'filename': filename,
                'filepath': filepath,
                'format': 'csv',
                'size': os.path.getsize(filepath)
            }

        except Exception as e:
            self.logger.error(f"CSV report generation failed: {str(e)}")
            return {
                'success': False,
                'error': str(e)
            }
