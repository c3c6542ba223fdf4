import pytest
from werkzeug.security import generate_password_hash

from qr_attendance.modules.exceptions import StoreUnavailableError
from qr_attendance.modules.qr_generator import QRGenerator
from qr_attendance.web import create_app


def build_app(tmp_path, clock, **overrides):
    settings = {
        "DATABASE_PATH": tmp_path / "web.db",
        "EXPORTS_FOLDER": tmp_path / "exports",
        "QR_CODES_FOLDER": tmp_path / "exports" / "qr_codes",
        "OPERATOR_KEY_HASH": None,
    }
    settings.update(overrides)
    return create_app("testing", config_overrides=settings, clock=clock)


@pytest.fixture
def app(tmp_path, clock):
    return build_app(tmp_path, clock)


@pytest.fixture
def client(app):
    return app.test_client()


def add_student(client, code, first_name="Ada", last_name="Lovelace"):
    response = client.post("/api/students", json={"student_id": code, "first_name": first_name, "last_name": last_name})
    assert response.status_code == 201, response.get_json()
    return response.get_json()["student"]


def add_class(client, name="Lab A", day="2024-03-04", time="09:00"):
    response = client.post("/api/classes", json={"name": name, "date": day, "time": time})
    assert response.status_code == 201, response.get_json()
    return response.get_json()["class"]


def test_student_lifecycle(client):
    assert client.get("/api/students").get_json()["count"] == 0

    student = add_student(client, "STU20240001")

    listed = client.get("/api/students").get_json()
    assert [s["student_id"] for s in listed["students"]] == ["STU20240001"]

    response = client.patch(f"/api/students/{student['id']}", json={"last_name": "King"})
    assert response.status_code == 200
    assert client.get(f"/api/students/{student['id']}").get_json()["student"]["last_name"] == "King"

    assert client.delete(f"/api/students/{student['id']}").status_code == 200
    assert client.get(f"/api/students/{student['id']}").status_code == 404


def test_student_errors_map_to_status_codes(client):
    add_student(client, "STU1")

    duplicate = client.post("/api/students", json={"student_id": "STU1", "first_name": "A", "last_name": "B"})
    invalid = client.post("/api/students", json={"student_id": "STU:2", "first_name": "A", "last_name": "B"})

    assert duplicate.status_code == 409
    assert duplicate.get_json()["error"] == "Student ID already exists"
    assert invalid.status_code == 400
    assert client.patch("/api/students/missing", json={"first_name": "x"}).status_code == 404


def test_student_search(client):
    add_student(client, "STU1", "Ada", "Lovelace")
    add_student(client, "STU2", "Grace", "Hopper")

    found = client.get("/api/students?q=grace").get_json()

    assert [s["student_id"] for s in found["students"]] == ["STU2"]


def test_scan_flow(client, clock):
    add_student(client, "STU20240001", "Ada", "Lovelace")
    add_student(client, "STU20240002", "Grace", "Hopper")
    lab = add_class(client)

    clock.set(2024, 3, 4, 9, 5)
    first = client.post("/api/scan", json={"qr_code": "STU20240001", "class_id": lab["id"]})
    repeat = client.post("/api/scan", json={"qr_code": "STU20240001", "class_id": lab["id"]})
    clock.set(2024, 3, 4, 9, 20)
    late = client.post("/api/scan", json={"qr_code": "STU20240002", "class_qr": lab["qr_code"]})

    assert first.status_code == 201
    assert first.get_json()["attendance"]["status"] == "present"
    assert repeat.status_code == 409
    assert late.status_code == 201
    assert late.get_json()["attendance"]["status"] == "late"

    classes = client.get("/api/classes").get_json()["classes"]
    assert classes[0]["current_attendees"] == 2

    records = client.get(f"/api/attendance?class_id={lab['id']}").get_json()
    assert [r["student_code"] for r in records["attendance"]] == ["STU20240001", "STU20240002"]

    stats = client.get(f"/api/analytics/{lab['id']}").get_json()["analytics"]
    assert (stats["attendance_count"], stats["on_time_arrivals"], stats["late_arrivals"]) == (2, 1, 1)

    summary = client.get("/api/analytics/summary").get_json()["summary"]
    assert summary["total_late_arrivals"] == 1

    dashboard = client.get("/api/dashboard").get_json()
    assert dashboard["stats"]["active_classes"] == 1
    assert len(dashboard["recent_activity"]) == 2

    events = client.get("/api/changes?limit=50").get_json()["events"]
    assert {"late_arrival", "duplicate_scan", "attendance_scan"} <= {e["type"] for e in events}


def test_scan_errors(client):
    lab = add_class(client)

    assert client.post("/api/scan", json={"qr_code": "STU404", "class_id": lab["id"]}).status_code == 404
    assert client.post("/api/scan", json={"qr_code": "STU404", "class_id": "missing"}).status_code == 404
    assert client.post("/api/scan", json={"qr_code": "STU404"}).status_code == 400
    assert client.post("/api/scan", json={"class_id": lab["id"]}).status_code == 400
    assert client.post("/api/scan", json={"qr_code": "A:B", "class_id": lab["id"]}).status_code == 400
    assert client.post("/api/scan", json={"qr_code": "STU1", "class_qr": "garbage"}).status_code == 404


def test_classes_by_date_and_errors(client):
    add_class(client, "Morning", time="08:00")
    add_class(client, "Next day", day="2024-03-05")

    assert [c["name"] for c in client.get("/api/classes?date=2024-03-04").get_json()["classes"]] == ["Morning"]
    assert client.get("/api/classes?date=tomorrow").status_code == 400
    assert client.post("/api/classes", json={"name": "Lab"}).status_code == 400
    assert client.get("/api/classes/missing").status_code == 404
    assert client.get("/api/analytics/missing").status_code == 404


def test_deleting_class_refreshes_listing(client):
    lab = add_class(client)
    assert client.get("/api/classes").get_json()["count"] == 1

    assert client.delete(f"/api/classes/{lab['id']}").status_code == 200

    assert client.get("/api/classes").get_json()["count"] == 0
    assert client.delete(f"/api/classes/{lab['id']}").status_code == 404


def test_qr_images_can_be_saved(client, tmp_path):
    student = add_student(client, "STU1")
    lab = add_class(client)

    student_qr = client.get(f"/api/students/{student['id']}/qr?save=1").get_json()
    class_qr = client.get(f"/api/classes/{lab['id']}/qr?size=120").get_json()

    assert student_qr["success"] is True
    assert student_qr["path"].startswith(str(tmp_path / "exports" / "qr_codes"))
    assert class_qr["image_size"][0] == 120
    assert client.get("/api/students/missing/qr").status_code == 404


def test_report_export(client, clock):
    add_student(client, "STU1")
    lab = add_class(client)
    client.post("/api/scan", json={"qr_code": "STU1", "class_id": lab["id"]})

    exported = client.get("/api/reports/export?format=csv")
    download = client.get("/api/reports/export?format=html&download=1")

    assert exported.status_code == 200
    assert exported.get_json()["filename"].endswith(".csv")
    assert download.status_code == 200
    assert b"Lab A" in download.data
    assert client.get("/api/reports/export?format=pdf").status_code == 400


def test_store_outage_is_503(app, client, monkeypatch):
    def unavailable(*args, **kwargs):
        raise StoreUnavailableError("database is locked", transient=True)

    monkeypatch.setattr(app.extensions["qr_attendance"].db_manager, "select_rows", unavailable)

    response = client.get("/api/students")

    assert response.status_code == 503
    assert response.get_json()["error_type"] == "transport_error"


def test_scan_during_outage_is_503_not_409(app, client, monkeypatch):
    add_student(client, "STU1")
    lab = add_class(client)

    def unavailable(*args, **kwargs):
        raise StoreUnavailableError("database is locked", transient=True)

    monkeypatch.setattr(app.extensions["qr_attendance"].db_manager, "insert_row", unavailable)

    response = client.post("/api/scan", json={"qr_code": "STU1", "class_id": lab["id"]})

    assert response.status_code == 503


def test_operator_key_guards_writes(tmp_path, clock):
    app = build_app(tmp_path, clock, OPERATOR_KEY_HASH=generate_password_hash("front-desk"))
    client = app.test_client()
    body = {"student_id": "STU1", "first_name": "Ada", "last_name": "Lovelace"}

    assert client.post("/api/students", json=body).status_code == 401
    assert client.post("/api/students", json=body, headers={"X-Operator-Key": "wrong"}).status_code == 401
    assert client.post("/api/students", json=body, headers={"X-Operator-Key": "front-desk"}).status_code == 201
    assert client.get("/api/students").status_code == 200


def test_invalid_configuration_is_rejected(tmp_path, clock):
    with pytest.raises(RuntimeError):
        build_app(tmp_path, clock, CLASS_DEFAULT_CAPACITY=0)


def test_unknown_route_is_json_404(client):
    response = client.get("/api/nothing-here")

    assert response.status_code == 404
    assert response.get_json()["error_type"] == "not_found"


def test_malformed_bodies_are_rejected_not_crashed(client):
    lab = add_class(client)
    student = add_student(client, "STU1")

    assert client.post("/api/students", json=["x"]).status_code == 400
    assert client.post("/api/students", json={"first_name": "A", "last_name": "B", "email": 42}).status_code == 400
    assert client.patch(f"/api/students/{student['id']}", json={"email": 42}).status_code == 400
    assert client.post("/api/classes", json=["Lab"]).status_code == 400
    assert client.post("/api/scan", json={"qr_code": 42, "class_id": lab["id"]}).status_code == 400
    assert client.post("/api/scan", json=["STU1"]).status_code == 400


def test_scan_from_camera_snapshot(client, clock):
    pytest.importorskip("cv2")
    pytest.importorskip("pyzbar.pyzbar")
    student = add_student(client, "STU20240001")
    lab = add_class(client)
    snapshot = QRGenerator().generate_qr_image(student["qr_code"], size=300)["image_base64"]

    clock.set(2024, 3, 4, 9, 5)
    response = client.post("/api/scan", json={"image": "data:image/png;base64," + snapshot, "class_id": lab["id"]})
    blank = client.post("/api/scan", json={"image": "bm90IGFuIGltYWdl", "class_id": lab["id"]})

    assert response.status_code == 201
    assert response.get_json()["student"]["student_id"] == "STU20240001"
    assert blank.status_code == 400
    assert blank.get_json()["error_type"] == "invalid_payload"


def test_snapshot_scan_without_scanner_is_503(app, client):
    lab = add_class(client)
    app.extensions["qr_attendance"].scanner = None

    response = client.post("/api/scan", json={"image": "bm90IGFuIGltYWdl", "class_id": lab["id"]})

    assert response.status_code == 503


def test_export_requires_operator_key(tmp_path, clock):
    app = build_app(tmp_path, clock, OPERATOR_KEY_HASH=generate_password_hash("front-desk"))
    client = app.test_client()
    client.post("/api/classes", json={"name": "Lab A", "date": "2024-03-04", "time": "09:00"},
                headers={"X-Operator-Key": "front-desk"})

    assert client.get("/api/reports/export?format=csv").status_code == 401
    assert list((tmp_path / "exports").glob("*.csv")) == []
    assert client.get("/api/reports/export?format=csv", headers={"X-Operator-Key": "front-desk"}).status_code == 200
