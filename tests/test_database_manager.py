import sqlite3

import pytest

from qr_attendance.modules.database_manager import DatabaseManager
from qr_attendance.modules.exceptions import (
    ConflictError,
    MissingReferenceError,
    StoreUnavailableError,
    ValidationError,
)


def student_row(row_id, code, qr_code=None):
    return {
        "id": row_id,
        "student_id": code,
        "first_name": "Ada",
        "last_name": "Lovelace",
        "qr_code": qr_code or f"STUDENT:{code}:1700000000000",
    }


def class_row(row_id, capacity=50):
    return {
        "id": row_id,
        "name": "Lab A",
        "date": "2024-03-04",
        "time": "09:00",
        "max_attendees": capacity,
        "qr_code": f"CLASS:{row_id}:Lab%20A:2024-03-04:09%3A00:1700000000000",
    }


def test_initialize_is_idempotent(db):
    db.initialize_database()

    assert db.count("students") == 0


def test_insert_returns_stored_row_with_defaults(db):
    row = db.insert_row("students", student_row("s-1", "STU1"))

    assert row["id"] == "s-1"
    assert row["email"] is None
    assert row["created_at"]


def test_unique_violation_names_the_column(db):
    db.insert_row("students", student_row("s-1", "STU1"))

    with pytest.raises(ConflictError) as excinfo:
        db.insert_row("students", student_row("s-2", "STU1", qr_code="other"))

    assert excinfo.value.involves("students.student_id")
    assert not excinfo.value.involves("students.email")


def test_attendance_pair_is_unique(db):
    db.insert_row("students", student_row("s-1", "STU1"))
    db.insert_row("classes", class_row("c-1"))
    record = {"student_id": "s-1", "class_id": "c-1", "status": "present"}
    db.insert_row("attendance_records", dict(record, id="a-1"))

    with pytest.raises(ConflictError) as excinfo:
        db.insert_row("attendance_records", dict(record, id="a-2"))

    assert excinfo.value.involves("attendance_records.student_id", "attendance_records.class_id")
    assert db.count("attendance_records") == 1


def test_foreign_keys_are_enforced(db):
    with pytest.raises(MissingReferenceError):
        db.insert_row("attendance_records", {"id": "a-1", "student_id": "nope", "class_id": "nope", "status": "present"})


@pytest.mark.parametrize(
    "table, values",
    [
        ("classes", class_row("c-1", capacity=0)),
        ("students", {"id": "s-1", "student_id": "STU1", "qr_code": "x"}),
    ],
)
def test_check_and_not_null_violations_are_validation_errors(db, table, values):
    with pytest.raises(ValidationError):
        db.insert_row(table, values)


def test_status_must_be_known(db):
    db.insert_row("students", student_row("s-1", "STU1"))
    db.insert_row("classes", class_row("c-1"))

    with pytest.raises(ValidationError):
        db.insert_row("attendance_records", {"id": "a-1", "student_id": "s-1", "class_id": "c-1", "status": "excused"})


def test_unknown_tables_and_columns_are_rejected(db):
    with pytest.raises(ValidationError):
        db.select_rows("users")
    with pytest.raises(ValidationError):
        db.select_rows("students", {"password": "x"})
    with pytest.raises(ValidationError):
        db.insert_row("students", {"first_name": "no id"})


def test_update_refreshes_updated_at(db):
    db.insert_row("students", dict(student_row("s-1", "STU1"), updated_at="2000-01-01T00:00:00"))

    assert db.update_row("students", "s-1", {"first_name": "Augusta"}) == 1
    assert db.get_row("students", id="s-1")["updated_at"] != "2000-01-01T00:00:00"
    assert db.update_row("students", "missing", {"first_name": "x"}) == 0


def test_delete_cascades_to_attendance(db):
    db.insert_row("students", student_row("s-1", "STU1"))
    db.insert_row("classes", class_row("c-1"))
    db.insert_row("attendance_records", {"id": "a-1", "student_id": "s-1", "class_id": "c-1", "status": "late"})

    assert db.delete_row("classes", "c-1") == 1
    assert db.count("attendance_records") == 0
    assert db.delete_row("classes", "c-1") == 0


def test_select_rows_orders_and_limits(db):
    for index in range(3):
        db.insert_row("students", dict(student_row(f"s-{index}", f"STU{index}"), created_at=f"2024-01-0{index + 1}"))

    rows = db.select_rows("students", order_by="created_at", descending=True, limit=2)

    assert [r["student_id"] for r in rows] == ["STU2", "STU1"]


def test_transient_read_failures_are_retried(db, monkeypatch):
    real_run = db._run_query
    attempts = []

    def flaky(query, params, fetch_all):
        attempts.append(query)
        if len(attempts) == 1:
            raise StoreUnavailableError("database is locked", transient=True)
        return real_run(query, params, fetch_all)

    monkeypatch.setattr(db, "_run_query", flaky)

    assert db.count("students") == 0
    assert len(attempts) == 2


def test_reads_give_up_after_the_retry_budget(db, monkeypatch):
    attempts = []

    def locked(query, params, fetch_all):
        attempts.append(query)
        raise StoreUnavailableError("database is locked", transient=True)

    monkeypatch.setattr(db, "_run_query", locked)

    with pytest.raises(StoreUnavailableError):
        db.count("students")
    assert len(attempts) == 2


def test_permanent_read_failures_are_not_retried(db, monkeypatch):
    attempts = []

    def broken(query, params, fetch_all):
        attempts.append(query)
        raise StoreUnavailableError("file is not a database")

    monkeypatch.setattr(db, "_run_query", broken)

    with pytest.raises(StoreUnavailableError):
        db.count("students")
    assert len(attempts) == 1


def test_unreachable_database_is_store_unavailable(tmp_path):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("")

    with pytest.raises(StoreUnavailableError):
        DatabaseManager(blocker / "attendance.db")


def test_insert_survives_a_failed_read_back(db, monkeypatch):
    def locked(table, **filters):
        raise StoreUnavailableError("database is locked", transient=True)

    monkeypatch.setattr(db, "get_row", locked)

    row = db.insert_row("students", student_row("s-1", "STU1"))

    assert row["student_id"] == "STU1"
    assert db.count("students") == 1


@pytest.mark.parametrize(
    "message, transient",
    [
        ("database is locked", True),
        ("database table is locked: students", True),
        ("database is busy", True),
        ("no such table: students", False),
        ('near "SELEC": syntax error', False),
    ],
)
def test_only_lock_contention_is_transient(db, message, transient):
    error = db._translate_error(sqlite3.OperationalError(message))

    assert isinstance(error, StoreUnavailableError)
    assert error.transient is transient


def test_missing_table_is_not_retried(db, monkeypatch):
    calls = []
    real_run = db._run_query

    def counting(query, params, fetch_all):
        calls.append(query)
        return real_run(query, params, fetch_all)

    monkeypatch.setattr(db, "_run_query", counting)

    with pytest.raises(StoreUnavailableError):
        db.execute_query("SELECT * FROM no_such_table")
    assert len(calls) == 1
