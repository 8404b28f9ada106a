# QR Check-in Attendance Service - App Package
"""
Main application package for the QR check-in attendance service.
This package contains the managers behind the Flask application and the
student-side scanning controller.
"""

__version__ = "1.0.0"
__description__ = "Signed, expiring, geofenced QR code check-in for class attendance"

# Import core components for easy access
from .modules.database_manager import DatabaseManager
from .modules.course_manager import CourseManager
from .modules.qr_generator import QRGenerator
from .modules.qr_validator import QRValidator, ValidationResult, ValidationDetails
from .modules.attendance_manager import AttendanceManager
from .modules.scan_controller import ScanController, ScanState
from .modules.report_generator import ReportGenerator
from .modules.notification_system import NotificationSystem
from .modules.auth_manager import AuthManager

__all__ = [
    'DatabaseManager',
    'CourseManager',
    'QRGenerator',
    'QRValidator',
    'ValidationResult',
    'ValidationDetails',
    'AttendanceManager',
    'ScanController',
    'ScanState',
    'ReportGenerator',
    'NotificationSystem',
    'AuthManager'
]
