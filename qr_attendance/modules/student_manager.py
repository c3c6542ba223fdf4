"""
Student Manager Module - QR Classroom Attendance Tracker

This module handles student registration and administration. It assigns
student codes, builds each student's scan payload, and maps store
failures onto user-facing messages.

Features:
- Student registration with optional auto-generated student code
- Scan payload generation at registration time
- Name and email updates (student code and payload are immutable)
- Student lookup by surrogate id or student code
- Student search and counting
- Hard delete with cascade to attendance records
- QR code image rendering for a student
"""

import logging
import re
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from qr_attendance.modules.exceptions import (
    ConflictError,
    StoreUnavailableError,
    ValidationError,
)
from qr_attendance.modules.qr_generator import QRGenerator

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

# Uniqueness violations reported by the store, keyed by column
CONFLICT_MESSAGES = {
    'students.student_id': 'Student ID already exists',
    'students.email': 'Email address already exists',
    'students.qr_code': 'QR code already exists, please try again',
}


class StudentManager:
    """
    Student registry for the attendance tracker.
    """

    def __init__(self, database_manager, qr_generator: QRGenerator = None,
                 clock: Callable[[], datetime] = None):
        """
        Initialize the student manager with database connection.

        Args:
            database_manager: Database manager instance
            qr_generator (QRGenerator): Payload builder and image renderer
            clock (callable): Returns the current time, defaults to datetime.now
        """
        self.db = database_manager
        self.qr_generator = qr_generator or QRGenerator()
        self.clock = clock or datetime.now
        self.logger = logging.getLogger(__name__)

        self.UPDATABLE_FIELDS = ('first_name', 'last_name', 'email')

        self.logger.info("Student manager initialized")

    def create_student(self, student_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Register a new student and build the student's scan payload.

        Args:
            student_data (Dict[str, Any]): first_name, last_name, optional
                student_id and email

        Returns:
            Dict[str, Any]: Creation result
        """
        validation = self._validate_student_data(student_data)
        if validation:
            return {
                'success': False,
                'error': validation,
                'error_type': 'validation_error'
            }

        now = self.clock()
        student_code = (student_data.get('student_id') or '').strip() or self.qr_generator.generate_student_code(now)
        error = self.qr_generator.validate_code_field(student_code)
        if error:
            return {
                'success': False,
                'error': error,
                'error_type': 'validation_error'
            }

        values = {
            'id': str(uuid.uuid4()),
            'student_id': student_code,
            'first_name': student_data['first_name'].strip(),
            'last_name': student_data['last_name'].strip(),
            'email': (student_data.get('email') or '').strip() or None,
            'qr_code': self.qr_generator.build_student_payload(student_code, now),
            'created_at': now.isoformat(timespec='seconds'),
            'updated_at': now.isoformat(timespec='seconds'),
        }

        try:
            student = self.db.insert_row('students', values)
        except ConflictError as e:
            message = self._conflict_message(e)
            self.logger.warning(f"Student registration rejected for {student_code}: {message}")
            return {
                'success': False,
                'error': message,
                'error_type': 'duplicate'
            }
        except ValidationError as e:
            return {
                'success': False,
                'error': str(e),
                'error_type': 'validation_error'
            }
        except StoreUnavailableError as e:
            self.logger.error(f"Student creation failed for {student_code}: {str(e)}")
            return {
                'success': False,
                'error': 'Failed to create student record',
                'error_type': 'transport_error'
            }

        self.logger.info(f"Student created successfully: {student_code} (ID: {student['id']})")
        return {
            'success': True,
            'student': student,
            'message': 'Student created successfully'
        }

    def _conflict_message(self, error: ConflictError) -> str:
        for column, message in CONFLICT_MESSAGES.items():
            if error.involves(column):
                return message
        return 'Student already exists'

    def _validate_student_data(self, student_data: Dict[str, Any], partial: bool = False) -> Optional[str]:
        """
        Validate student fields before any store call.

        Args:
            student_data (Dict[str, Any]): Student data to validate
            partial (bool): Only check the fields that are present

        Returns:
            str: Error message, or None when the data is valid
        """
        if not isinstance(student_data, dict):
            return 'Student data must be an object'

        for field in ('first_name', 'last_name'):
            if partial and field not in student_data:
                continue
            value = student_data.get(field)
            if not isinstance(value, str) or not value.strip():
                return 'First name and last name are required'

        code = student_data.get('student_id')
        if code is not None and not isinstance(code, str):
            return 'Student ID must be text'

        email = student_data.get('email')
        if email is not None and not isinstance(email, str):
            return 'Invalid email address'
        if email and not EMAIL_PATTERN.match(email.strip()):
            return 'Invalid email address'

        return None

    def update_student(self, student_id: str, update_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Update a student's name or email. The student code and payload never change.

        Args:
            student_id (str): Student surrogate id
            update_data (Dict[str, Any]): Fields to change

        Returns:
            Dict[str, Any]: Update result
        """
        if not isinstance(update_data, dict):
            return {
                'success': False,
                'error': 'Student data must be an object',
                'error_type': 'validation_error'
            }

        immutable = [field for field in ('student_id', 'qr_code') if field in update_data]
        if immutable:
            return {
                'success': False,
                'error': f"Field cannot be changed: {', '.join(immutable)}",
                'error_type': 'validation_error'
            }

        values = {field: update_data[field] for field in self.UPDATABLE_FIELDS if field in update_data}
        if not values:
            return {
                'success': False,
                'error': 'No valid fields to update',
                'error_type': 'validation_error'
            }

        validation = self._validate_student_data(values, partial=True)
        if validation:
            return {
                'success': False,
                'error': validation,
                'error_type': 'validation_error'
            }
        values = {field: (value.strip() if isinstance(value, str) else value) or None
                  for field, value in values.items()}

        try:
            affected_rows = self.db.update_row('students', student_id, values)
        except ConflictError as e:
            return {
                'success': False,
                'error': self._conflict_message(e),
                'error_type': 'duplicate'
            }
        except StoreUnavailableError as e:
            self.logger.error(f"Student update failed for ID {student_id}: {str(e)}")
            return {
                'success': False,
                'error': 'Failed to update student information',
                'error_type': 'transport_error'
            }

        if not affected_rows:
            return {
                'success': False,
                'error': 'Student not found',
                'error_type': 'not_found'
            }

        self.logger.info(f"Student {student_id} updated successfully")
        return {
            'success': True,
            'student': self.db.get_row('students', id=student_id),
            'message': 'Student information updated successfully'
        }

    def delete_student(self, student_id: str) -> Dict[str, Any]:
        """
        Delete a student. The student's attendance records are deleted with it.

        Args:
            student_id (str): Student surrogate id

        Returns:
            Dict[str, Any]: Deletion result
        """
        try:
            affected_rows = self.db.delete_row('students', student_id)
        except StoreUnavailableError as e:
            self.logger.error(f"Failed to delete student {student_id}: {str(e)}")
            return {
                'success': False,
                'error': 'Failed to delete student',
                'error_type': 'transport_error'
            }

        if not affected_rows:
            return {
                'success': False,
                'error': 'Student not found',
                'error_type': 'not_found'
            }

        self.logger.info(f"Student {student_id} deleted")
        return {'success': True, 'message': 'Student deleted successfully'}

    def get_all_students(self, limit: int = None) -> List[Dict[str, Any]]:
        """
        Get all students, newest first.

        Args:
            limit (int): Maximum number of students

        Returns:
            List[Dict[str, Any]]: Student rows
        """
        return self.db.select_rows('students', order_by='created_at', descending=True, limit=limit)

    def get_student_by_id(self, student_id: str) -> Optional[Dict[str, Any]]:
        """Get a student by surrogate id."""
        return self.db.get_row('students', id=student_id)

    def get_student_by_code(self, student_code: str) -> Optional[Dict[str, Any]]:
        """Get a student by student code."""
        return self.db.get_row('students', student_id=student_code)

    def get_student_count(self) -> int:
        """Get the number of registered students."""
        return self.db.count('students')

    def search_students(self, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        """
        Search students by code, name, or email.

        Args:
            query (str): Search text
            limit (int): Maximum number of results

        Returns:
            List[Dict[str, Any]]: Matching students
        """
        if not query or not query.strip():
            return []

        pattern = f"%{query.strip()}%"
        return self.db.execute_query(
            """SELECT * FROM students
               WHERE student_id LIKE ? OR first_name LIKE ? OR last_name LIKE ?
                     OR (first_name || ' ' || last_name) LIKE ? OR email LIKE ?
               ORDER BY last_name, first_name
               LIMIT ?""",
            (pattern, pattern, pattern, pattern, pattern, limit)
        )

    def get_student_qr_image(self, student_id: str, **settings) -> Dict[str, Any]:
        """
        Render a student's scan payload as a captioned QR code.

        Args:
            student_id (str): Student surrogate id
            **settings: Rendering overrides passed to the QR generator

        Returns:
            Dict[str, Any]: Image result from the QR generator
        """
        student = self.get_student_by_id(student_id)
        if not student:
            return {
                'success': False,
                'error': 'Student not found',
                'error_type': 'not_found'
            }

        return self.qr_generator.generate_qr_image(
            student['qr_code'],
            label_lines=[f"{student['first_name']} {student['last_name']}", student['student_id']],
            filename=f"qr_{student['student_id']}.png",
            **settings
        )
