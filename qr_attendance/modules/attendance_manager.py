"""
Attendance Manager Module - QR Classroom Attendance Tracker

This module records attendance from scanned student codes. A scan is
accepted only against a pre-selected class session; each student can be
recorded at most once per session, as present or late depending on how
long after the session start the scan happened.

Recording rule:
- unrecorded -> recorded(present) when the scan is at most
  ``late_threshold_minutes`` after the class start (the boundary is present)
- unrecorded -> recorded(late) otherwise
- recorded -> no transition; repeated scans are rejected as duplicates

The UNIQUE(student_id, class_id) constraint is the final arbiter: a
concurrent scan that slips past the duplicate lookup is rejected by the
store and reported as a duplicate. Inserts are never retried.

Features:
- QR payload scan processing and validation
- Duplicate scan prevention
- Present/late classification with a configurable threshold
- Class, student and recent attendance listings
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from qr_attendance.modules.class_manager import class_start_datetime
from qr_attendance.modules.exceptions import (
    ConflictError,
    MissingReferenceError,
    StoreUnavailableError,
    ValidationError,
)
from qr_attendance.modules.qr_generator import QRGenerator

STATUS_PRESENT = 'present'
STATUS_LATE = 'late'
STATUS_ABSENT = 'absent'


def minutes_after_start(class_start: datetime, marked_at: datetime) -> float:
    """Minutes between the class start and an arrival; negative when early."""
    return (marked_at - class_start).total_seconds() / 60


def classify_arrival(class_start: datetime, marked_at: datetime, late_threshold_minutes: int) -> str:
    """
    Classify an arrival as present or late.

    Args:
        class_start (datetime): Scheduled class start
        marked_at (datetime): Arrival time
        late_threshold_minutes (int): Minutes after start still counted as present

    Returns:
        str: ``'late'`` when the arrival is strictly after the threshold, else ``'present'``
    """
    if marked_at - class_start > timedelta(minutes=late_threshold_minutes):
        return STATUS_LATE
    return STATUS_PRESENT


class AttendanceManager:
    """
    Attendance recording and lookup for class sessions.
    """

    def __init__(self, database_manager, qr_generator: QRGenerator = None,
                 late_threshold_minutes: int = 15, clock: Callable[[], datetime] = None):
        """
        Initialize the attendance manager with database connection.

        Args:
            database_manager: Database manager instance
            qr_generator (QRGenerator): Payload decoder
            late_threshold_minutes (int): Minutes after class start to mark as late
            clock (callable): Returns the current time, defaults to datetime.now
        """
        self.db = database_manager
        self.qr_generator = qr_generator or QRGenerator()
        self.late_threshold_minutes = int(late_threshold_minutes)
        self.clock = clock or datetime.now
        self.logger = logging.getLogger(__name__)

    def process_attendance_scan(self, qr_data: str, class_id: Optional[str],
                                now: datetime = None) -> Dict[str, Any]:
        """
        Process a scanned student code for the selected class session.

        Args:
            qr_data (str): Scanned text, a student payload or a bare student code
            class_id (str): Pre-selected class session id
            now (datetime): Scan time, defaults to the manager's clock

        Returns:
            Dict[str, Any]: Scan processing result
        """
        if not class_id:
            return self._failure('Select a class session before scanning', 'validation_error')

        student_code = self._extract_student_code(qr_data)
        if student_code is None:
            return self._failure('QR code not recognized as a student code', 'invalid_payload')

        try:
            class_row = self.db.get_row('classes', id=class_id)
            if not class_row:
                return self._failure('Class session not found', 'class_not_found')

            student = self.db.get_row('students', student_id=student_code)
            if not student:
                return self._failure(f'Student {student_code} not found', 'student_not_found')

            student_name = f"{student['first_name']} {student['last_name']}"

            existing = self.db.get_row('attendance_records', student_id=student['id'], class_id=class_id)
            if existing:
                return self._duplicate(student_name, class_row, existing)

        except StoreUnavailableError as e:
            self.logger.error(f"Attendance lookup failed for {student_code}: {str(e)}")
            return self._failure('Could not reach the attendance store, please try again', 'transport_error')

        now = now or self.clock()
        class_start = class_start_datetime(class_row)
        status = classify_arrival(class_start, now, self.late_threshold_minutes)
        marked_at = now.isoformat(timespec='seconds')

        record = {
            'id': str(uuid.uuid4()),
            'student_id': student['id'],
            'class_id': class_id,
            'status': status,
            'marked_at': marked_at,
            'created_at': marked_at,
        }

        try:
            self.db.insert_row('attendance_records', record)
        except ConflictError as e:
            if e.involves('attendance_records.student_id', 'attendance_records.class_id'):
                self.logger.info(f"Concurrent scan for {student_code} in class {class_id} rejected by store")
                return self._duplicate(student_name, class_row, None)
            self.logger.error(f"Unexpected conflict recording attendance: {str(e)}")
            return self._failure('Failed to record attendance', 'transport_error')
        except MissingReferenceError:
            # A parent row disappeared between lookup and insert
            return self._missing_parent(class_id, student_code)
        except ValidationError as e:
            return self._failure(str(e), 'validation_error')
        except StoreUnavailableError as e:
            self.logger.error(f"Failed to record attendance for {student_code}: {str(e)}")
            return self._failure('Could not reach the attendance store, attendance not recorded', 'transport_error')

        self.logger.info(f"Attendance recorded: Student {student_code}, Class {class_row['name']}, Status: {status}")

        return {
            'success': True,
            'message': f"{student_name} marked as {status}",
            'student': {
                'id': student['id'],
                'student_id': student['student_id'],
                'name': student_name
            },
            'class': {
                'id': class_row['id'],
                'name': class_row['name'],
                'date': class_row['date'],
                'time': class_row['time']
            },
            'attendance': {
                'id': record['id'],
                'status': status,
                'marked_at': marked_at,
                'minutes_after_start': round(minutes_after_start(class_start, now), 1)
            }
        }

    def _extract_student_code(self, qr_data: str) -> Optional[str]:
        decoded = self.qr_generator.decode_payload(qr_data)
        if decoded['valid']:
            return decoded['student_id'] if decoded['type'] == 'student' else None

        raw = qr_data.strip() if isinstance(qr_data, str) else ''
        if self.qr_generator.validate_code_field(raw) is None:
            return raw
        return None

    def _missing_parent(self, class_id: str, student_code: str) -> Dict[str, Any]:
        try:
            class_exists = self.db.get_row('classes', id=class_id) is not None
        except StoreUnavailableError as e:
            self.logger.error(f"Attendance lookup failed for {student_code}: {str(e)}")
            return self._failure('Could not reach the attendance store, please try again', 'transport_error')

        if not class_exists:
            return self._failure('Class session not found', 'class_not_found')
        return self._failure(f'Student {student_code} not found', 'student_not_found')

    def _failure(self, message: str, error_type: str) -> Dict[str, Any]:
        return {
            'success': False,
            'message': message,
            'error_type': error_type
        }

    def _duplicate(self, student_name, class_row, existing) -> Dict[str, Any]:
        result = self._failure(
            f"Attendance already recorded for {student_name} in {class_row['name']}",
            'duplicate_scan'
        )
        if existing:
            result['existing_record'] = existing
        return result

    def get_class_attendance(self, class_id: str) -> List[Dict[str, Any]]:
        """
        Get the attendance records of a class session in arrival order.

        Args:
            class_id (str): Class surrogate id

        Returns:
            List[Dict[str, Any]]: Records with student details
        """
        return self.db.execute_query(
            """SELECT a.*, s.student_id AS student_code, s.first_name, s.last_name
               FROM attendance_records a
               JOIN students s ON a.student_id = s.id
               WHERE a.class_id = ?
               ORDER BY a.marked_at""",
            (class_id,)
        )

    def get_recent_attendance(self, limit: int = 10) -> List[Dict[str, Any]]:
        """
        Get recent attendance records across all classes.

        Args:
            limit (int): Number of records to retrieve

        Returns:
            List[Dict[str, Any]]: Recent attendance records
        """
        return self.db.execute_query(
            """SELECT a.*, s.student_id AS student_code, s.first_name, s.last_name,
                      c.name AS class_name, c.date AS class_date, c.time AS class_time
               FROM attendance_records a
               JOIN students s ON a.student_id = s.id
               JOIN classes c ON a.class_id = c.id
               ORDER BY a.marked_at DESC
               LIMIT ?""",
            (limit,)
        )

    def get_student_attendance_history(self, student_id: str) -> List[Dict[str, Any]]:
        """
        Get the attendance history of one student, newest first.

        Args:
            student_id (str): Student surrogate id

        Returns:
            List[Dict[str, Any]]: Records with class details
        """
        return self.db.execute_query(
            """SELECT a.*, c.name AS class_name, c.date AS class_date, c.time AS class_time
               FROM attendance_records a
               JOIN classes c ON a.class_id = c.id
               WHERE a.student_id = ?
               ORDER BY a.marked_at DESC""",
            (student_id,)
        )

    def count_for_class(self, class_id: str) -> int:
        """Get the number of attendance records of a class session."""
        return self.db.count('attendance_records', {'class_id': class_id})
