"""
QR Check-in Attendance Service - Main Application

This module serves as the main entry point for the QR check-in attendance
service. It builds the Flask application, wires the managers together and
exposes the JSON API used by the instructor display and the student scanner.

Features:
- Signed, expiring QR code generation for class sessions
- QR check-in validation with geofencing
- Manual check-in with administrator approval
- Attendance history, statistics and notifications
- Course attendance export to Excel/CSV
"""

from flask import Flask, current_app, request, jsonify, session, send_file
from functools import wraps
import logging
import os

import click

from config import init_config
from attendqr.modules.database_manager import DatabaseManager
from attendqr.modules.course_manager import CourseManager
from attendqr.modules.qr_generator import QRGenerator
from attendqr.modules.qr_validator import QRValidator
from attendqr.modules.attendance_manager import AttendanceManager
from attendqr.modules.report_generator import ReportGenerator
from attendqr.modules.notification_system import NotificationSystem
from attendqr.modules.auth_manager import AuthManager
from attendqr.modules.token_security import Location

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
)
logger = logging.getLogger(__name__)


def login_required(f):
    """Decorator to require login for protected routes"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({
                'success': False,
                'message': 'Please log in to continue.'
            }), 401
        return f(*args, **kwargs)
    return decorated_function


def permission_required(permission):
    """Decorator to require a role permission for protected routes"""
    def decorator(f):
        @wraps(f)
        @login_required
        def decorated_function(*args, **kwargs):
            auth_manager = get_services()['auth_manager']
            if not auth_manager.has_permission(session.get('user_type'), permission):
                logger.warning(f"User {session.get('username')} denied {permission}")
                return jsonify({
                    'success': False,
                    'message': 'You do not have permission to perform this action.'
                }), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def get_services():
    return current_app.extensions['attendqr']


def create_app(config_name=None, overrides=None):
    """
    Build the Flask application.

    Args:
        config_name (str): development, testing or production
        overrides (dict): Values applied on top of the configuration class

    Returns:
        Flask: Configured application
    """
    app = Flask(__name__)
    init_config(app, config_name)
    if overrides:
        app.config.update(overrides)

    # Initialize system components
    db_manager = DatabaseManager(app.config['DATABASE_PATH'],
                                 seed_demo_data=app.config['SEED_DEMO_DATA'])
    course_manager = CourseManager(db_manager)
    qr_generator = QRGenerator(app.config['QR_SIGNING_SECRET'],
                               validity_minutes=app.config['QR_TOKEN_VALIDITY_MINUTES'],
                               database_manager=db_manager,
                               box_size=app.config['QR_CODE_SIZE'],
                               border=app.config['QR_CODE_BORDER'])
    qr_validator = QRValidator(app.config['QR_SIGNING_SECRET'],
                               geofence_radius_meters=app.config['GEOFENCE_RADIUS_METERS'])
    attendance_manager = AttendanceManager(db_manager, course_manager, qr_validator)

    app.extensions['attendqr'] = {
        'db_manager': db_manager,
        'course_manager': course_manager,
        'qr_generator': qr_generator,
        'qr_validator': qr_validator,
        'attendance_manager': attendance_manager,
        'report_generator': ReportGenerator(db_manager, app.config['REPORTS_FOLDER']),
        'notification_system': NotificationSystem(db_manager),
        'auth_manager': AuthManager(db_manager)
    }

    register_routes(app)
    register_commands(app)
    return app


def register_routes(app):
    services = app.extensions['attendqr']
    db_manager = services['db_manager']
    course_manager = services['course_manager']
    qr_generator = services['qr_generator']
    attendance_manager = services['attendance_manager']
    report_generator = services['report_generator']
    notification_system = services['notification_system']
    auth_manager = services['auth_manager']

    @app.route('/login', methods=['POST'])
    def login():
        """User authentication"""
        try:
            data = request.get_json(silent=True) or request.form
            username = (data.get('username') or '').strip()
            password = data.get('password') or ''

            if not username or not password:
                return jsonify({
                    'success': False,
                    'message': 'Please provide both username and password.'
                }), 400

            user = auth_manager.authenticate_user(username, password, request.remote_addr)
            if not user:
                return jsonify({
                    'success': False,
                    'message': 'Invalid username or password.'
                }), 401

            session.clear()
            session['user_id'] = user['id']
            session['username'] = user['username']
            session['user_type'] = user['user_type']
            session['full_name'] = user['full_name']

            logger.info(f"User {username} logged in successfully")
            return jsonify({
                'success': True,
                'message': f'Welcome back, {user["full_name"]}!',
                'user': user
            })

        except Exception as e:
            logger.error(f"Login error: {str(e)}")
            return jsonify({
                'success': False,
                'message': 'An error occurred during login. Please try again.'
            }), 500

    @app.route('/logout', methods=['POST'])
    @login_required
    def logout():
        """User logout"""
        username = session.get('username', 'Unknown')
        session.clear()
        logger.info(f"User {username} logged out")
        return jsonify({
            'success': True,
            'message': 'You have been logged out successfully.'
        })

    @app.route('/api/courses')
    @login_required
    def list_courses():
        """Courses visible to the current user"""
        user_type = session.get('user_type')
        if user_type == 'student':
            courses = course_manager.get_courses_for_student(session['user_id'])
        elif user_type == 'instructor':
            courses = course_manager.get_courses_by_instructor(session['user_id'])
        else:
            courses = course_manager.get_all_courses()
        return jsonify({'success': True, 'courses': courses})

    @app.route('/api/courses/<course_id>/sessions/today')
    @login_required
    def today_sessions(course_id):
        if not course_manager.get_course(course_id):
            return jsonify({'success': False, 'message': 'Course not found'}), 404
        sessions = course_manager.get_today_sessions(course_id)
        for class_session in sessions:
            class_session['attendance_open'] = course_manager.is_attendance_open(class_session['id'])
        return jsonify({'success': True, 'sessions': sessions})

    @app.route('/api/qr/generate', methods=['POST'])
    @permission_required('generate_qr_codes')
    def generate_qr():
        """Generate a signed attendance QR code for a class session"""
        try:
            data = request.get_json(silent=True) or {}
            course_id = data.get('course_id')
            if not course_id:
                return jsonify({
                    'success': False,
                    'message': 'Please select a course first.'
                }), 400

            course = course_manager.get_course(course_id)
            if not course:
                return jsonify({'success': False, 'message': 'Course not found'}), 404

            if (session.get('user_type') == 'instructor'
                    and course['instructor_id'] != session['user_id']):
                return jsonify({
                    'success': False,
                    'message': 'You can only generate QR codes for your own courses.'
                }), 403

            session_id = data.get('session_id')
            if session_id:
                class_session = course_manager.get_session(session_id)
                if not class_session or class_session['course_id'] != course_id:
                    return jsonify({'success': False, 'message': 'Class session not found'}), 404
            else:
                class_session = course_manager.find_active_session(course_id)
                if not class_session:
                    return jsonify({
                        'success': False,
                        'message': 'No class session scheduled today for this course.'
                    }), 404
                session_id = class_session['id']

            location = None
            if course.get('latitude') is not None and course.get('longitude') is not None:
                location = Location(course['latitude'], course['longitude'])

            token = qr_generator.generate_attendance_token(
                course_id, session_id,
                instructor_id=session['user_id'],
                location=location
            )

            if data.get('include_image', True):
                result = qr_generator.generate_qr_code(token, course)
                if not result['success']:
                    return jsonify({
                        'success': False,
                        'message': 'Failed to render QR code'
                    }), 500
            else:
                result = {'success': True, 'token': token.to_dict()}

            result.update({
                'course_id': course_id,
                'session_id': session_id,
                'expires_at': token.expires_at
            })
            return jsonify(result)

        except Exception as e:
            logger.error(f"QR generation error: {str(e)}")
            return jsonify({
                'success': False,
                'message': 'An error occurred while generating the QR code'
            }), 500

    @app.route('/api/qr/active/<course_id>')
    @login_required
    def active_qr(course_id):
        """Whether a course currently has an unexpired QR code"""
        active = qr_generator.get_active_qr_code(course_id)
        if not active:
            return jsonify({'success': True, 'active': False, 'qr_code': None})
        return jsonify({'success': True, 'active': True, 'qr_code': active})

    @app.route('/api/scanner/config')
    @login_required
    def scanner_config():
        """Settings the scanning client runs its check-in flow with"""
        return jsonify({
            'success': True,
            'config': {
                'geofence_radius_meters': app.config['GEOFENCE_RADIUS_METERS'],
                'location_max_retries': app.config['LOCATION_MAX_RETRIES'],
                'location_retry_delay_seconds': app.config['LOCATION_RETRY_DELAY_SECONDS'],
                'success_navigation_delay_seconds': app.config['SUCCESS_NAVIGATION_DELAY_SECONDS'],
                'token_validity_minutes': app.config['QR_TOKEN_VALIDITY_MINUTES']
            }
        })

    @app.route('/api/qr/validate', methods=['POST'])
    @permission_required('scan_qr_codes')
    def validate_qr():
        """Validate a scanned QR code and record attendance"""
        try:
            data = request.get_json(silent=True) or {}
            qr_data = data.get('qr_data')
            if not qr_data:
                return jsonify({
                    'success': False,
                    'message': 'No QR code data provided'
                }), 400

            location = Location.from_dict(data.get('location'))
            result = attendance_manager.process_qr_check_in(
                qr_data, session['user_id'],
                location=location,
                location_error=data.get('location_error')
            )

            if result['success']:
                notification_system.send_attendance_notification(
                    result['attendance'], course_name=result.get('course_name')
                )
                return jsonify(result)

            status_code = 409 if result.get('error_type') == 'already_checked_in' else 400
            if result.get('error_type') == 'store_error':
                status_code = 503
            return jsonify(result), status_code

        except Exception as e:
            logger.error(f"Scan processing error: {str(e)}")
            return jsonify({
                'success': False,
                'message': 'An error occurred while processing the scan'
            }), 500

    @app.route('/api/attendance/manual', methods=['POST'])
    @permission_required('request_manual_attendance')
    def manual_attendance():
        """Manual check-in, pending approval"""
        data = request.get_json(silent=True) or {}
        session_id = data.get('session_id')
        if not session_id:
            return jsonify({'success': False, 'message': 'No class session specified'}), 400

        class_session = course_manager.get_session(session_id)
        if class_session and not course_manager.is_enrolled(session['user_id'],
                                                             class_session['course_id']):
            return jsonify({
                'success': False,
                'message': 'You are not enrolled in this course.',
                'error_type': 'not_enrolled'
            }), 403

        result = attendance_manager.record_manual_attendance(
            session_id, session['user_id'], notes=data.get('notes')
        )
        if result['success']:
            return jsonify(result), 201

        status_code = 404 if result.get('error_type') == 'session_not_found' else 409
        if result.get('error_type') == 'store_error':
            status_code = 503
        return jsonify(result), status_code

    @app.route('/api/attendance/history')
    @login_required
    def attendance_history():
        limit = request.args.get('limit', 50, type=int)
        offset = request.args.get('offset', 0, type=int)
        return jsonify({
            'success': True,
            'records': attendance_manager.get_student_attendance(
                session['user_id'], limit=min(max(limit, 1), 200), offset=max(offset, 0)
            )
        })

    @app.route('/api/attendance/stats')
    @login_required
    def attendance_stats():
        return jsonify({
            'success': True,
            'stats': attendance_manager.get_student_attendance_stats(session['user_id'])
        })

    @app.route('/api/admin/approvals')
    @permission_required('approve_attendance')
    def pending_approvals():
        return jsonify({
            'success': True,
            'records': attendance_manager.get_pending_approvals(request.args.get('course_id'))
        })

    @app.route('/api/admin/attendance/<int:record_id>/approve', methods=['POST'])
    @permission_required('approve_attendance')
    def approve_attendance(record_id):
        result = attendance_manager.approve_attendance(record_id, session['user_id'])
        return _review_response(result, approved=True)

    @app.route('/api/admin/attendance/<int:record_id>/reject', methods=['POST'])
    @permission_required('approve_attendance')
    def reject_attendance(record_id):
        data = request.get_json(silent=True) or {}
        result = attendance_manager.reject_attendance(
            record_id, session['user_id'], notes=data.get('notes')
        )
        return _review_response(result, approved=False)

    def _review_response(result, approved):
        if not result['success']:
            status_code = {'not_found': 404, 'not_pending': 409}.get(result.get('error_type'), 500)
            return jsonify(result), status_code

        record = result['record']
        course = course_manager.get_course(record['course_id']) if record.get('course_id') else None
        class_session = course_manager.get_session(record['session_id'])
        notification_system.send_approval_notification(
            dict(record, session_date=class_session['session_date'] if class_session else None),
            approved,
            course_name=course['name'] if course else None
        )
        return jsonify(result)

    @app.route('/api/reports/course/<course_id>')
    @permission_required('generate_reports')
    def course_report(course_id):
        """Export a course's attendance as CSV or Excel"""
        output_format = request.args.get('format', 'csv')
        filters = {
            'start_date': request.args.get('start_date'),
            'end_date': request.args.get('end_date'),
            'status': request.args.get('status')
        }
        result = report_generator.generate_course_report(course_id, output_format, filters)
        if not result['success']:
            status_code = 404 if result['error'] in ('Course not found',
                                                     'No data found for the specified criteria') else 400
            return jsonify({'success': False, 'message': result['error']}), status_code

        return send_file(os.path.abspath(result['filepath']),
                         as_attachment=True,
                         download_name=result['filename'])

    @app.route('/api/notifications')
    @login_required
    def notifications():
        user_id = session['user_id']
        unread_only = request.args.get('unread', 'false').lower() in ['true', '1']
        return jsonify({
            'success': True,
            'notifications': notification_system.get_notifications(user_id, unread_only=unread_only),
            'unread_count': notification_system.get_unread_count(user_id)
        })

    @app.route('/api/notifications/<int:notification_id>/read', methods=['POST'])
    @login_required
    def mark_notification_read(notification_id):
        if not notification_system.mark_notification_read(notification_id, session['user_id']):
            return jsonify({'success': False, 'message': 'Notification not found'}), 404
        return jsonify({'success': True})

    @app.teardown_appcontext
    def close_connection(exception=None):
        db_manager.close_all_connections()


def register_commands(app):
    services = app.extensions['attendqr']

    @app.cli.command('init-db')
    def init_db():
        """Create the database schema (and demo data when enabled)."""
        services['db_manager'].initialize_database()
        click.echo(f"Database initialized at {app.config['DATABASE_PATH']}")

    @app.cli.command('create-user')
    @click.argument('username')
    @click.argument('full_name')
    @click.option('--role', type=click.Choice(['admin', 'instructor', 'student']),
                  default='student', show_default=True)
    @click.option('--email')
    @click.password_option()
    def create_user(username, full_name, role, email, password):
        """Create a user account."""
        result = services['auth_manager'].create_user(username, password, full_name,
                                                      email=email, user_type=role)
        if not result['success']:
            raise click.ClickException(result['error'])
        click.echo(f"Created {role} {username} (ID: {result['user_id']})")

    @app.cli.command('generate-qr')
    @click.argument('course_id')
    @click.option('--session-id', help='Class session; defaults to the active session today.')
    @click.option('--save', is_flag=True, help='Save the QR code image.')
    @click.option('--output', type=click.Path(), help='Directory for the saved image.')
    def generate_qr(course_id, session_id, save, output):
        """Print a signed attendance token for a course and optionally save its QR image."""
        course_manager = services['course_manager']
        qr_generator = services['qr_generator']

        course = course_manager.get_course(course_id)
        if not course:
            raise click.ClickException(f"Course not found: {course_id}")

        if session_id:
            class_session = course_manager.get_session(session_id)
            if not class_session or class_session['course_id'] != course_id:
                raise click.ClickException(f"Class session {session_id} not found for {course_id}")
        else:
            class_session = course_manager.find_active_session(course_id)
            if not class_session:
                raise click.ClickException('No class session scheduled today for this course')
            session_id = class_session['id']

        location = None
        if course.get('latitude') is not None and course.get('longitude') is not None:
            location = Location(course['latitude'], course['longitude'])

        token = qr_generator.generate_attendance_token(
            course_id, session_id, instructor_id=course.get('instructor_id'), location=location
        )
        result = qr_generator.generate_qr_code(token, course)
        if not result['success']:
            raise click.ClickException(f"QR code rendering failed: {result['error']}")

        click.echo(result['qr_data'])
        if save or output:
            output = output or app.config['QR_CODES_FOLDER']
            if not qr_generator.save_qr_code_image(result['image_base64'], result['filename'], output):
                raise click.ClickException(f"Could not save QR code image to {output}")
            click.echo(f"Saved {os.path.join(output, result['filename'])}")


if __name__ == '__main__':
    app = create_app()
    app.run(debug=app.config.get('DEBUG', False), host='0.0.0.0', port=5000)
