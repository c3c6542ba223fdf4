from datetime import datetime

import pytest

from qr_attendance.modules.attendance_manager import AttendanceManager
from qr_attendance.modules.class_manager import ClassManager
from qr_attendance.modules.database_manager import DatabaseManager
from qr_attendance.modules.notification_system import NotificationSystem
from qr_attendance.modules.qr_generator import QRGenerator
from qr_attendance.modules.report_generator import ReportGenerator
from qr_attendance.modules.student_manager import StudentManager


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, *args):
        self.now = datetime(*args)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 4, 8, 30))


@pytest.fixture
def notifications():
    return NotificationSystem()


@pytest.fixture
def db(tmp_path, notifications):
    manager = DatabaseManager(
        tmp_path / "attendance.db",
        read_retries=1,
        retry_backoff=0,
        notifier=notifications,
    )
    yield manager
    manager.close_all_connections()


@pytest.fixture
def qr_generator():
    return QRGenerator()


@pytest.fixture
def students(db, qr_generator, clock):
    return StudentManager(db, qr_generator, clock=clock)


@pytest.fixture
def classes(db, qr_generator, clock):
    return ClassManager(db, qr_generator, clock=clock)


@pytest.fixture
def attendance(db, qr_generator, clock):
    return AttendanceManager(db, qr_generator, late_threshold_minutes=15, clock=clock)


@pytest.fixture
def reports(db, clock, tmp_path):
    return ReportGenerator(db, late_threshold_minutes=15, output_dir=tmp_path / "exports", clock=clock)


@pytest.fixture
def make_student(students):
    def _make(code, first_name="Ada", last_name="Lovelace", email=None):
        result = students.create_student(
            {"student_id": code, "first_name": first_name, "last_name": last_name, "email": email}
        )
        assert result["success"], result
        return result["student"]

    return _make


@pytest.fixture
def make_class(classes):
    def _make(name="Lab A", date="2024-03-04", time="09:00", max_attendees=None):
        result = classes.create_class(
            {"name": name, "date": date, "time": time, "max_attendees": max_attendees}
        )
        assert result["success"], result
        return result["class"]

    return _make
