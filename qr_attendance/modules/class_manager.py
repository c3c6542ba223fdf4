"""
Class Manager Module - QR Classroom Attendance Tracker

This module handles class session administration: creating sessions with
their scan payloads, listing them with live attendance counts, and deleting
them together with their attendance records.

Features:
- Class session creation with date/time validation
- Class scan payload generation keyed by the session id
- Session listing with attendance counts and capacity labels
- Session lookup by id or by scanned payload
- Hard delete with cascade to attendance records
- QR code image rendering for a session
"""

import logging
import uuid
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from qr_attendance.modules.exceptions import (
    ConflictError,
    StoreUnavailableError,
    ValidationError,
)
from qr_attendance.modules.qr_generator import QRGenerator

TIME_FORMATS = ('%H:%M', '%H:%M:%S')


def parse_class_time(value: str):
    """Parse a class start time in HH:MM or HH:MM:SS form, or raise ValueError."""
    for time_format in TIME_FORMATS:
        try:
            return datetime.strptime(value, time_format).time()
        except (TypeError, ValueError):
            continue
    raise ValueError(f"Invalid time: {value!r}")


def class_start_datetime(class_row: Dict[str, Any]) -> datetime:
    """Combine a class row's date and time into its start datetime."""
    class_date = datetime.strptime(class_row['date'], '%Y-%m-%d').date()
    return datetime.combine(class_date, parse_class_time(class_row['time']))


class ClassManager:
    """
    Class session management for the attendance tracker.
    """

    def __init__(self, database_manager, qr_generator: QRGenerator = None,
                 default_capacity: int = 50, clock: Callable[[], datetime] = None):
        """
        Initialize the class manager with database connection.

        Args:
            database_manager: Database manager instance
            qr_generator (QRGenerator): Payload builder and image renderer
            default_capacity (int): Capacity used when none is given
            clock (callable): Returns the current time, defaults to datetime.now
        """
        self.db = database_manager
        self.qr_generator = qr_generator or QRGenerator()
        self.default_capacity = default_capacity
        self.clock = clock or datetime.now
        self.logger = logging.getLogger(__name__)

        self.logger.info("Class manager initialized")

    def create_class(self, class_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a class session and its scan payload.

        Args:
            class_data (Dict[str, Any]): name, date (YYYY-MM-DD), time (HH:MM),
                optional max_attendees

        Returns:
            Dict[str, Any]: Creation result
        """
        if not isinstance(class_data, dict):
            class_data = {}
        name, class_date, class_time = (
            value.strip() if isinstance(value, str) else ''
            for value in (class_data.get('name'), class_data.get('date'), class_data.get('time'))
        )

        if not name or not class_date or not class_time:
            return {
                'success': False,
                'error': 'All fields are required',
                'error_type': 'validation_error'
            }

        try:
            datetime.strptime(class_date, '%Y-%m-%d')
            parse_class_time(class_time)
        except ValueError:
            return {
                'success': False,
                'error': 'Date must be YYYY-MM-DD and time HH:MM',
                'error_type': 'validation_error'
            }

        max_attendees = class_data.get('max_attendees')
        if max_attendees in (None, ''):
            max_attendees = self.default_capacity
        try:
            max_attendees = int(max_attendees)
        except (TypeError, ValueError):
            max_attendees = 0
        if max_attendees <= 0:
            return {
                'success': False,
                'error': 'Maximum attendees must be a positive number',
                'error_type': 'validation_error'
            }

        now = self.clock()
        class_id = str(uuid.uuid4())
        values = {
            'id': class_id,
            'name': name,
            'date': class_date,
            'time': class_time,
            'max_attendees': max_attendees,
            'qr_code': self.qr_generator.build_class_payload(class_id, name, class_date, class_time, now),
            'created_at': now.isoformat(timespec='seconds'),
            'updated_at': now.isoformat(timespec='seconds'),
        }

        try:
            class_row = self.db.insert_row('classes', values)
        except ConflictError as e:
            self.logger.warning(f"Class creation rejected for {name}: {str(e)}")
            return {
                'success': False,
                'error': 'Class already exists, please try again',
                'error_type': 'duplicate'
            }
        except ValidationError as e:
            return {
                'success': False,
                'error': str(e),
                'error_type': 'validation_error'
            }
        except StoreUnavailableError as e:
            self.logger.error(f"Class creation failed for {name}: {str(e)}")
            return {
                'success': False,
                'error': 'Failed to create class',
                'error_type': 'transport_error'
            }

        self.logger.info(f"Class created successfully: {name} on {class_date} {class_time} (ID: {class_id})")
        return {
            'success': True,
            'class': class_row,
            'message': 'Class created successfully'
        }

    def delete_class(self, class_id: str) -> Dict[str, Any]:
        """
        Delete a class session. Its attendance records are deleted with it.

        Args:
            class_id (str): Class surrogate id

        Returns:
            Dict[str, Any]: Deletion result
        """
        try:
            affected_rows = self.db.delete_row('classes', class_id)
        except StoreUnavailableError as e:
            self.logger.error(f"Failed to delete class {class_id}: {str(e)}")
            return {
                'success': False,
                'error': 'Failed to delete class',
                'error_type': 'transport_error'
            }

        if not affected_rows:
            return {
                'success': False,
                'error': 'Class not found',
                'error_type': 'not_found'
            }

        self.logger.info(f"Class {class_id} deleted")
        return {'success': True, 'message': 'Class deleted successfully'}

    def get_all_classes(self, limit: int = None) -> List[Dict[str, Any]]:
        """
        Get all class sessions, newest first, with attendance counts.

        Args:
            limit (int): Maximum number of classes

        Returns:
            List[Dict[str, Any]]: Class rows with ``current_attendees`` and ``is_full``
        """
        query = """SELECT c.*, COUNT(a.id) AS current_attendees
                   FROM classes c
                   LEFT JOIN attendance_records a ON a.class_id = c.id
                   GROUP BY c.id
                   ORDER BY c.created_at DESC"""
        params = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (int(limit),)

        classes = self.db.execute_query(query, params)
        for class_row in classes:
            class_row['is_full'] = class_row['current_attendees'] >= class_row['max_attendees']
        return classes

    def get_class_by_id(self, class_id: str) -> Optional[Dict[str, Any]]:
        """Get a class session by surrogate id."""
        return self.db.get_row('classes', id=class_id)

    def get_class_by_payload(self, qr_data: str) -> Optional[Dict[str, Any]]:
        """
        Resolve a scanned class payload to its session.

        Args:
            qr_data (str): Raw text from the scanner

        Returns:
            Dict[str, Any]: Class row, or None when the payload is not a known class
        """
        decoded = self.qr_generator.decode_payload(qr_data)
        if not decoded['valid'] or decoded['type'] != 'class':
            return None
        return self.get_class_by_id(decoded['class_id'])

    def get_class_count(self) -> int:
        """Get the number of class sessions."""
        return self.db.count('classes')

    def get_classes_on(self, day: date = None) -> List[Dict[str, Any]]:
        """
        Get the sessions scheduled on a day, earliest first.

        Args:
            day (date): Day to list, defaults to today

        Returns:
            List[Dict[str, Any]]: Class rows
        """
        day = day or self.clock().date()
        return self.db.select_rows('classes', {'date': day.isoformat()}, order_by='time')

    def get_class_qr_image(self, class_id: str, **settings) -> Dict[str, Any]:
        """
        Render a class session's scan payload as a captioned QR code.

        Args:
            class_id (str): Class surrogate id
            **settings: Rendering overrides passed to the QR generator

        Returns:
            Dict[str, Any]: Image result from the QR generator
        """
        class_row = self.get_class_by_id(class_id)
        if not class_row:
            return {
                'success': False,
                'error': 'Class not found',
                'error_type': 'not_found'
            }

        return self.qr_generator.generate_qr_image(
            class_row['qr_code'],
            label_lines=[class_row['name'], f"{class_row['date']} at {class_row['time']}"],
            filename=f"qr_class_{class_row['id']}.png",
            **settings
        )
