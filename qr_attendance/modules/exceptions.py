"""
Exceptions Module - QR Classroom Attendance Tracker

Error taxonomy shared by the store layer and the managers. The database
manager translates sqlite3 errors into these classes; the managers catch them
and turn them into result dictionaries with a distinct ``error_type``.
"""


class AttendanceError(Exception):
    """Base exception for attendance tracker failures."""


class ValidationError(AttendanceError):
    """Raised when input data is missing, ill-formed or violates a CHECK rule."""


class ConflictError(AttendanceError):
    """Raised when an insert or update violates a uniqueness constraint."""

    def __init__(self, message, constraint=None):
        super().__init__(message)
        self.constraint = constraint or ''

    def involves(self, *columns):
        """Return True when every given column is part of the violated constraint."""
        return all(column in self.constraint for column in columns)


class MissingReferenceError(AttendanceError):
    """Raised when a foreign key points at a row that does not exist."""


class StoreUnavailableError(AttendanceError):
    """Raised when the store cannot be reached or fails for infrastructure reasons."""

    def __init__(self, message, transient=False):
        super().__init__(message)
        # Transient failures (locked or busy database) may be retried by readers
        self.transient = transient
