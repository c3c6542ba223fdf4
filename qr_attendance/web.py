"""
Flask QR Classroom Attendance Tracker - HTTP Interface

This module builds the Flask application: it wires the store, the managers,
the change feed and the view cache together and exposes them as a JSON API.
Manager results are translated into HTTP status codes by ``error_type``.

Features:
- Student and class session administration
- Attendance scan endpoint for the door scanner
- Per-class analytics, summary and dashboard counters
- Analytics export to CSV/Excel/HTML
- Recent change feed
- Operator-key gate for write endpoints
"""

import logging
import os
from dataclasses import dataclass
from datetime import date
from functools import wraps
from typing import Optional

from flask import Blueprint, Flask, current_app, jsonify, request, send_file
from werkzeug.security import check_password_hash

from config import get_config, validate_config
from qr_attendance.modules.attendance_manager import AttendanceManager
from qr_attendance.modules.class_manager import ClassManager
from qr_attendance.modules.database_manager import DatabaseManager
from qr_attendance.modules.exceptions import AttendanceError, StoreUnavailableError
from qr_attendance.modules.notification_system import NotificationSystem
from qr_attendance.modules.qr_generator import QRGenerator
from qr_attendance.modules.report_generator import ReportGenerator
from qr_attendance.modules.student_manager import StudentManager
from qr_attendance.modules.view_cache import ViewCache

# Image scanning needs OpenCV and the zbar shared library
try:
    from qr_attendance.modules.qr_scanner import QRScanner
    SCANNER_AVAILABLE = True
except ImportError:
    SCANNER_AVAILABLE = False

logger = logging.getLogger(__name__)

OPERATOR_KEY_HEADER = 'X-Operator-Key'

ERROR_STATUS = {
    'validation_error': 400,
    'invalid_payload': 400,
    'not_found': 404,
    'student_not_found': 404,
    'class_not_found': 404,
    'duplicate': 409,
    'duplicate_scan': 409,
    'transport_error': 503,
}

api = Blueprint('api', __name__, url_prefix='/api')


@dataclass
class AttendanceServices:
    """System components shared by the request handlers."""
    db_manager: DatabaseManager
    notification_system: NotificationSystem
    view_cache: ViewCache
    qr_generator: QRGenerator
    student_manager: StudentManager
    class_manager: ClassManager
    attendance_manager: AttendanceManager
    report_generator: ReportGenerator
    scanner: Optional[object] = None


def services() -> AttendanceServices:
    return current_app.extensions['qr_attendance']


def create_app(config_name=None, config_overrides=None, clock=None):
    """
    Create and configure the Flask application.

    Args:
        config_name (str): Key of the configuration class, defaults to FLASK_ENV
        config_overrides (dict): Settings applied on top of the configuration class
        clock (callable): Time source injected into the managers

    Returns:
        Flask: Configured application
    """
    app = Flask(__name__)
    config_class = get_config(config_name)
    app.config.from_object(config_class)
    if config_overrides:
        app.config.update(config_overrides)

    errors = validate_config(app.config)
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        raise RuntimeError("Configuration validation failed")

    config_class.init_app(app)

    # Initialize system components
    notification_system = NotificationSystem()
    db_manager = DatabaseManager(
        app.config['DATABASE_PATH'],
        timeout=app.config['DATABASE_TIMEOUT'],
        read_retries=app.config['DATABASE_READ_RETRIES'],
        retry_backoff=app.config['DATABASE_RETRY_BACKOFF_SECONDS'],
        notifier=notification_system
    )
    qr_generator = QRGenerator(
        student_code_prefix=app.config['STUDENT_CODE_PREFIX'],
        default_settings={
            'size': app.config['QR_CODE_SIZE'],
            'margin': app.config['QR_CODE_MARGIN'],
            'dark_color': app.config['QR_CODE_DARK_COLOR'],
            'light_color': app.config['QR_CODE_LIGHT_COLOR'],
        }
    )
    late_threshold = app.config['ATTENDANCE_LATE_THRESHOLD_MINUTES']

    student_manager = StudentManager(db_manager, qr_generator, clock=clock)
    class_manager = ClassManager(
        db_manager, qr_generator,
        default_capacity=app.config['CLASS_DEFAULT_CAPACITY'],
        clock=clock
    )
    attendance_manager = AttendanceManager(db_manager, qr_generator, late_threshold, clock=clock)
    report_generator = ReportGenerator(
        db_manager, late_threshold,
        output_dir=str(app.config['EXPORTS_FOLDER']),
        clock=clock
    )

    view_cache = ViewCache(notification_system)
    view_cache.register('students', ['students'], student_manager.get_all_students)
    view_cache.register('classes', ['classes', 'attendance_records'], class_manager.get_all_classes)

    app.extensions['qr_attendance'] = AttendanceServices(
        db_manager=db_manager,
        notification_system=notification_system,
        view_cache=view_cache,
        qr_generator=qr_generator,
        student_manager=student_manager,
        class_manager=class_manager,
        attendance_manager=attendance_manager,
        report_generator=report_generator,
        scanner=QRScanner() if SCANNER_AVAILABLE else None
    )

    app.register_blueprint(api)
    register_error_handlers(app)

    @app.teardown_appcontext
    def close_connection(exception=None):
        db_manager.close_all_connections()

    if not app.config['OPERATOR_KEY_HASH']:
        logger.warning("OPERATOR_KEY_HASH is not set, write endpoints are open")
    if not SCANNER_AVAILABLE:
        logger.warning("QR scanner libraries not installed, image scans are disabled")

    logger.info(f"Application created with {config_class.__name__}")
    return app


def register_error_handlers(app):
    @app.errorhandler(StoreUnavailableError)
    def store_unavailable(error):
        logger.error(f"Store unavailable: {str(error)}")
        return jsonify({
            'success': False,
            'error': 'The attendance store is unavailable, please try again',
            'error_type': 'transport_error'
        }), 503

    @app.errorhandler(AttendanceError)
    def attendance_error(error):
        logger.warning(f"Request rejected: {str(error)}")
        return jsonify({
            'success': False,
            'error': str(error),
            'error_type': 'validation_error'
        }), 400

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'success': False, 'error': 'Resource not found', 'error_type': 'not_found'}), 404


def operator_required(f):
    """Decorator to require the operator key for write endpoints"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        key_hash = current_app.config.get('OPERATOR_KEY_HASH')
        if key_hash:
            supplied = request.headers.get(OPERATOR_KEY_HEADER, '')
            if not supplied or not check_password_hash(key_hash, supplied):
                logger.warning(f"Rejected {request.method} {request.path}: missing or wrong operator key")
                return jsonify({
                    'success': False,
                    'error': 'Operator key required',
                    'error_type': 'unauthorized'
                }), 401
        return f(*args, **kwargs)
    return decorated_function


def respond(result, success_status=200):
    """Turn a manager result dictionary into a JSON response."""
    if result.get('success'):
        return jsonify(result), success_status
    return jsonify(result), ERROR_STATUS.get(result.get('error_type'), 400)


def request_data():
    """JSON object body of the request; anything else reads as empty."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def limit_arg(default=None):
    limit = request.args.get('limit', type=int)
    if limit is None:
        return default
    return max(limit, 1)


# Students

@api.route('/students', methods=['GET'])
def list_students():
    """List registered students, newest first"""
    query = request.args.get('q', '').strip()
    if query:
        students = services().student_manager.search_students(query, limit=limit_arg(10))
    else:
        students = services().view_cache.get('students')
    return jsonify({'success': True, 'students': students, 'count': len(students)})


@api.route('/students', methods=['POST'])
@operator_required
def create_student():
    """Register a student"""
    return respond(services().student_manager.create_student(request_data()), 201)


@api.route('/students/<student_id>', methods=['GET'])
def get_student(student_id):
    student = services().student_manager.get_student_by_id(student_id)
    if not student:
        return respond({'success': False, 'error': 'Student not found', 'error_type': 'not_found'})
    return jsonify({
        'success': True,
        'student': student,
        'attendance': services().attendance_manager.get_student_attendance_history(student_id)
    })


@api.route('/students/<student_id>', methods=['PATCH'])
@operator_required
def update_student(student_id):
    return respond(services().student_manager.update_student(student_id, request_data()))


@api.route('/students/<student_id>', methods=['DELETE'])
@operator_required
def delete_student(student_id):
    return respond(services().student_manager.delete_student(student_id))


@api.route('/students/<student_id>/qr', methods=['GET'])
def student_qr(student_id):
    """Render the student's scan code"""
    result = services().student_manager.get_student_qr_image(student_id, **qr_settings())
    return respond(save_if_requested(result))


# Classes

@api.route('/classes', methods=['GET'])
def list_classes():
    """List class sessions with attendance counts"""
    day = request.args.get('date')
    if day:
        try:
            classes = services().class_manager.get_classes_on(date.fromisoformat(day))
        except ValueError:
            return respond({
                'success': False,
                'error': 'Date must be YYYY-MM-DD',
                'error_type': 'validation_error'
            })
    else:
        classes = services().view_cache.get('classes')
    return jsonify({'success': True, 'classes': classes, 'count': len(classes)})


@api.route('/classes', methods=['POST'])
@operator_required
def create_class():
    """Create a class session"""
    return respond(services().class_manager.create_class(request_data()), 201)


@api.route('/classes/<class_id>', methods=['GET'])
def get_class(class_id):
    class_row = services().class_manager.get_class_by_id(class_id)
    if not class_row:
        return respond({'success': False, 'error': 'Class not found', 'error_type': 'not_found'})
    return jsonify({
        'success': True,
        'class': class_row,
        'attendance': services().attendance_manager.get_class_attendance(class_id)
    })


@api.route('/classes/<class_id>', methods=['DELETE'])
@operator_required
def delete_class(class_id):
    return respond(services().class_manager.delete_class(class_id))


@api.route('/classes/<class_id>/qr', methods=['GET'])
def class_qr(class_id):
    """Render the class session's scan code"""
    result = services().class_manager.get_class_qr_image(class_id, **qr_settings())
    return respond(save_if_requested(result))


def qr_settings():
    settings = {}
    size = request.args.get('size', type=int)
    if size:
        settings['size'] = min(max(size, 64), 1024)
    return settings


def save_if_requested(result):
    if result.get('success') and request.args.get('save', '').lower() in ('1', 'true', 'yes'):
        result['path'] = services().qr_generator.save_qr_code_image(
            result['image_base64'],
            result['filename'],
            output_dir=str(current_app.config['QR_CODES_FOLDER'])
        )
    return result


# Attendance

@api.route('/scan', methods=['POST'])
@operator_required
def process_scan():
    """Process QR code scan and record attendance"""
    data = request_data()
    qr_code = data.get('qr_code')
    qr_code = qr_code.strip() if isinstance(qr_code, str) else ''
    class_id = data.get('class_id')
    if not isinstance(class_id, str):
        class_id = None

    # The session may also be selected by scanning its class code
    if not class_id and data.get('class_qr'):
        class_row = services().class_manager.get_class_by_payload(data['class_qr'])
        if not class_row:
            return respond({
                'success': False,
                'message': 'Class code not recognized',
                'error_type': 'class_not_found'
            })
        class_id = class_row['id']

    # A camera snapshot may be posted instead of the decoded text
    if not qr_code and data.get('image'):
        scanner = services().scanner
        if scanner is None:
            return respond({
                'success': False,
                'message': 'Image scanning is not available on this server',
                'error_type': 'transport_error'
            })
        payloads = scanner.decode_image(data['image']) if isinstance(data['image'], str) else []
        if not payloads:
            return respond({
                'success': False,
                'message': 'No QR code found in image',
                'error_type': 'invalid_payload'
            })
        qr_code = payloads[0]

    if not qr_code:
        return respond({
            'success': False,
            'message': 'No QR code data provided',
            'error_type': 'validation_error'
        })

    result = services().attendance_manager.process_attendance_scan(qr_code, class_id)
    services().notification_system.send_attendance_notification(result)
    return respond(result, 201)


@api.route('/attendance', methods=['GET'])
def list_attendance():
    """Attendance of one class session, or the most recent scans"""
    class_id = request.args.get('class_id')
    if class_id:
        records = services().attendance_manager.get_class_attendance(class_id)
    else:
        records = services().attendance_manager.get_recent_attendance(limit=limit_arg(10))
    return jsonify({'success': True, 'attendance': records, 'count': len(records)})


# Analytics

@api.route('/analytics', methods=['GET'])
def analytics():
    return jsonify({'success': True, 'classes': services().report_generator.get_class_analytics()})


@api.route('/analytics/summary', methods=['GET'])
def analytics_summary():
    return jsonify({'success': True, 'summary': services().report_generator.get_summary()})


@api.route('/analytics/<class_id>', methods=['GET'])
def class_analytics(class_id):
    results = services().report_generator.get_class_analytics(class_id)
    if not results:
        return respond({'success': False, 'error': 'Class not found', 'error_type': 'not_found'})
    return jsonify({'success': True, 'analytics': results[0]})


@api.route('/dashboard', methods=['GET'])
def dashboard():
    """Overview counters"""
    return jsonify({
        'success': True,
        'stats': services().report_generator.get_dashboard_stats(),
        'recent_activity': services().attendance_manager.get_recent_attendance(limit=10)
    })


@api.route('/reports/export', methods=['GET'])
@operator_required
def export_report():
    """Export per-class analytics"""
    result = services().report_generator.export_analytics(
        request.args.get('format', 'csv'),
        class_id=request.args.get('class_id')
    )
    if result.get('success') and request.args.get('download', '').lower() in ('1', 'true', 'yes'):
        return send_file(
            os.path.abspath(result['filepath']),
            as_attachment=True,
            download_name=result['filename']
        )
    return respond(result)


@api.route('/changes', methods=['GET'])
def recent_changes():
    """Recent change events and scan notifications"""
    events = services().notification_system.get_recent_notifications(
        limit=limit_arg(20),
        table=request.args.get('table')
    )
    return jsonify({'success': True, 'events': events})
