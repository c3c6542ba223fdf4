# QR Classroom Attendance Tracker - App Package
"""
Main application package for the QR Classroom Attendance Tracker.
This package contains the Flask application factory and the core modules.
"""

__version__ = "1.0.0"
__author__ = "QR Attendance Team"
__description__ = "Classroom attendance tracking with per-student QR codes and per-class analytics"

# Import core components for easy access
from .modules.database_manager import DatabaseManager
from .modules.qr_generator import QRGenerator
from .modules.student_manager import StudentManager
from .modules.class_manager import ClassManager
from .modules.attendance_manager import AttendanceManager
from .modules.report_generator import ReportGenerator
from .modules.notification_system import NotificationSystem
from .modules.view_cache import ViewCache

__all__ = [
    'DatabaseManager',
    'QRGenerator',
    'StudentManager',
    'ClassManager',
    'AttendanceManager',
    'ReportGenerator',
    'NotificationSystem',
    'ViewCache'
]
