# QR Classroom Attendance Tracker - Modules Package
"""
Core business logic modules for the QR Classroom Attendance Tracker.
Contains the store, the managers, analytics and the scanner.
"""

__version__ = "1.0.0"
__description__ = "Core modules for QR classroom attendance tracking"

# Module descriptions
MODULES = {
    'exceptions': 'Error taxonomy shared by the store and the managers',
    'database_manager': 'Database operations, schema and constraint translation',
    'notification_system': 'Change feed and scan notifications',
    'view_cache': 'Read-through view cache invalidated by changes',
    'qr_generator': 'Student codes, scan payloads and QR code images',
    'student_manager': 'Student registration and management',
    'class_manager': 'Class session management',
    'attendance_manager': 'Scan processing and attendance recording',
    'report_generator': 'Attendance analytics and report export',
    'qr_scanner': 'Camera and image QR code decoding'
}


def get_module_info():
    """Get information about available modules"""
    return MODULES
