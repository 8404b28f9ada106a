# QR Check-in Attendance Service - Modules Package
"""
Core business logic modules for the QR check-in attendance service.
"""

__version__ = "1.0.0"
__description__ = "Core modules for QR check-in attendance"

# Module descriptions
MODULES = {
    'token_security': 'Attendance token wire format and HMAC signatures',
    'location_utils': 'Haversine distance and geofence checks',
    'database_manager': 'Database operations and schema management',
    'course_manager': 'Courses, class sessions and enrollments',
    'qr_generator': 'QR code generation and issuance log',
    'qr_validator': 'Ordered validation pipeline for scanned QR codes',
    'attendance_manager': 'Attendance recording and review',
    'scan_controller': 'Student-side scan orchestration',
    'report_generator': 'Report generation and data export',
    'notification_system': 'Templated in-app notifications',
    'auth_manager': 'Authentication and authorization'
}


def get_module_info():
    """Get information about available modules"""
    return MODULES
