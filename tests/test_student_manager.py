import re

import pytest

from qr_attendance.modules.exceptions import StoreUnavailableError


def test_create_student_builds_payload_from_code(students):
    result = students.create_student({"student_id": "STU20240001", "first_name": "Ada", "last_name": "Lovelace"})

    assert result["success"] is True
    student = result["student"]
    assert student["student_id"] == "STU20240001"
    assert student["qr_code"].startswith("STUDENT:STU20240001:")
    assert student["email"] is None
    assert student["created_at"] == "2024-03-04T08:30:00"


def test_create_student_generates_code_when_missing(students):
    result = students.create_student({"first_name": "Grace", "last_name": "Hopper"})

    assert result["success"] is True
    assert re.fullmatch(r"STU2024\d{4}", result["student"]["student_id"])


def test_delimiter_in_student_code_is_rejected_before_the_store(students):
    result = students.create_student({"student_id": "STU:1", "first_name": "Ada", "last_name": "Lovelace"})

    assert result["success"] is False
    assert result["error_type"] == "validation_error"
    assert students.get_student_count() == 0


def test_names_are_required(students):
    result = students.create_student({"student_id": "STU1", "first_name": " ", "last_name": "Lovelace"})

    assert result["error_type"] == "validation_error"
    assert result["error"] == "First name and last name are required"


def test_invalid_email_is_rejected(students):
    result = students.create_student(
        {"student_id": "STU1", "first_name": "Ada", "last_name": "Lovelace", "email": "not-an-email"}
    )

    assert result["error_type"] == "validation_error"


def test_duplicate_student_code_is_reported_as_duplicate(students, make_student):
    make_student("STU20240001")

    result = students.create_student({"student_id": "STU20240001", "first_name": "Other", "last_name": "Person"})

    assert result["success"] is False
    assert result["error_type"] == "duplicate"
    assert result["error"] == "Student ID already exists"
    assert students.get_student_count() == 1


def test_duplicate_email_is_reported_with_its_own_message(students, make_student):
    make_student("STU1", email="ada@example.com")

    result = students.create_student(
        {"student_id": "STU2", "first_name": "Ada", "last_name": "Byron", "email": "ada@example.com"}
    )

    assert result["error_type"] == "duplicate"
    assert result["error"] == "Email address already exists"


def test_update_changes_name_but_not_code(students, make_student):
    student = make_student("STU1")

    result = students.update_student(student["id"], {"first_name": "Augusta"})

    assert result["success"] is True
    assert result["student"]["first_name"] == "Augusta"
    assert result["student"]["student_id"] == "STU1"
    assert result["student"]["qr_code"] == student["qr_code"]


def test_update_rejects_code_and_payload_changes(students, make_student):
    student = make_student("STU1")

    result = students.update_student(student["id"], {"student_id": "STU2"})

    assert result["error_type"] == "validation_error"
    assert students.get_student_by_id(student["id"])["student_id"] == "STU1"


def test_update_unknown_student_is_not_found(students):
    result = students.update_student("missing", {"first_name": "Nobody"})

    assert result["error_type"] == "not_found"


def test_delete_student(students, make_student):
    student = make_student("STU1")

    assert students.delete_student(student["id"])["success"] is True
    assert students.get_student_by_id(student["id"]) is None
    assert students.delete_student(student["id"])["error_type"] == "not_found"


def test_lookup_and_search(students, make_student):
    make_student("STU1", "Ada", "Lovelace", "ada@example.com")
    make_student("STU2", "Grace", "Hopper")

    assert students.get_student_by_code("STU2")["first_name"] == "Grace"
    assert [s["student_id"] for s in students.search_students("hopper")] == ["STU2"]
    assert [s["student_id"] for s in students.search_students("Ada Love")] == ["STU1"]
    assert students.search_students("   ") == []
    assert len(students.get_all_students()) == 2


def test_store_failure_is_reported_as_transport_error(students, db, monkeypatch):
    def unavailable(*args, **kwargs):
        raise StoreUnavailableError("disk I/O error")

    monkeypatch.setattr(db, "insert_row", unavailable)

    result = students.create_student({"student_id": "STU1", "first_name": "Ada", "last_name": "Lovelace"})

    assert result["error_type"] == "transport_error"


def test_student_qr_image_has_caption(students, make_student):
    student = make_student("STU1")

    result = students.get_student_qr_image(student["id"])

    assert result["success"] is True
    assert result["qr_data"] == student["qr_code"]
    assert result["filename"] == "qr_STU1.png"
    assert students.get_student_qr_image("missing")["error_type"] == "not_found"


@pytest.mark.parametrize(
    "data",
    [
        {"first_name": "Ada", "last_name": "Lovelace", "email": 42},
        {"first_name": "Ada", "last_name": "Lovelace", "student_id": 20240001},
        ["first_name", "Ada"],
        None,
    ],
)
def test_malformed_student_data_is_a_validation_error(students, data):
    result = students.create_student(data)

    assert result["success"] is False
    assert result["error_type"] == "validation_error"
    assert students.get_student_count() == 0


@pytest.mark.parametrize("data", [{"email": 42}, {"first_name": 7}, ["email"]])
def test_malformed_update_is_a_validation_error(students, make_student, data):
    student = make_student("STU1")

    result = students.update_student(student["id"], data)

    assert result["error_type"] == "validation_error"
    assert students.get_student_by_id(student["id"])["first_name"] == "Ada"
