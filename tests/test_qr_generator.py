import base64
import re
from datetime import datetime

import pytest

from qr_attendance.modules.qr_generator import QRGenerator


def test_generated_student_code_has_prefix_year_and_four_digits():
    gen = QRGenerator()

    code = gen.generate_student_code(datetime(2024, 9, 1))

    assert re.fullmatch(r"STU2024\d{4}", code)


def test_custom_prefix_is_used_for_generated_codes():
    gen = QRGenerator(student_code_prefix="ENG")

    assert gen.generate_student_code(datetime(2025, 1, 1)).startswith("ENG2025")


def test_student_payload_decodes_to_the_same_code():
    gen = QRGenerator()
    created = datetime(2024, 3, 4, 8, 0, 0)

    payload = gen.build_student_payload("STU20240001", created)
    decoded = gen.decode_payload(payload)

    assert payload.startswith("STUDENT:STU20240001:")
    assert decoded["valid"] is True
    assert decoded["type"] == "student"
    assert decoded["student_id"] == "STU20240001"
    assert decoded["generated_at"] == "2024-03-04T08:00:00"


def test_student_code_with_delimiter_cannot_be_encoded():
    gen = QRGenerator()

    with pytest.raises(ValueError):
        gen.build_student_payload("STU:1")


@pytest.mark.parametrize("value", ["", "   ", "A:B", " STU1", "STU1 "])
def test_validate_code_field_rejects_unencodable_values(value):
    assert QRGenerator.validate_code_field(value) is not None


def test_validate_code_field_accepts_plain_code():
    assert QRGenerator.validate_code_field("STU20240001") is None


def test_class_payload_round_trips_fields_containing_the_delimiter():
    gen = QRGenerator()

    payload = gen.build_class_payload("c-1", "Lab: Chemistry", "2024-03-04", "09:00", datetime(2024, 3, 1))
    decoded = gen.decode_payload(payload)

    assert payload.startswith("CLASS:")
    assert len(payload.split(":")) == 6
    assert decoded["valid"] is True
    assert decoded["type"] == "class"
    assert decoded["class_id"] == "c-1"
    assert decoded["name"] == "Lab: Chemistry"
    assert decoded["date"] == "2024-03-04"
    assert decoded["time"] == "09:00"


@pytest.mark.parametrize(
    "raw",
    [
        "",
        None,
        "hello",
        "STUDENT:STU1",
        "STUDENT:STU1:notanumber",
        "STUDENT::1700000000000",
        "CLASS:a:b:c",
        "student:STU1:1700000000000",
    ],
)
def test_unrecognized_payloads_are_reported_not_raised(raw):
    decoded = QRGenerator().decode_payload(raw)

    assert decoded["valid"] is False
    assert decoded["error_type"] == "unrecognized_payload"


def test_decode_strips_surrounding_whitespace():
    decoded = QRGenerator().decode_payload("  STUDENT:STU1:1700000000000\n")

    assert decoded["valid"] is True
    assert decoded["student_id"] == "STU1"


def test_generate_qr_image_returns_png_of_configured_size():
    gen = QRGenerator()

    result = gen.generate_qr_image("STUDENT:STU1:1700000000000")

    assert result["success"] is True
    assert result["image_size"] == (200, 200)
    assert base64.b64decode(result["image_base64"]).startswith(b"\x89PNG")


def test_caption_extends_the_image_below_the_code():
    gen = QRGenerator()

    result = gen.generate_qr_image("STUDENT:STU1:1700000000000", label_lines=["Ada Lovelace", "STU1"], size=150)

    width, height = result["image_size"]
    assert width == 150
    assert height > 150


def test_empty_payload_is_not_rendered():
    result = QRGenerator().generate_qr_image("")

    assert result == {"success": False, "error": "Nothing to encode"}


def test_save_qr_code_image_writes_png(tmp_path):
    gen = QRGenerator()
    image = gen.generate_qr_image("STUDENT:STU1:1700000000000", filename="qr_STU1.png")

    path = gen.save_qr_code_image(image["image_base64"], image["filename"], output_dir=str(tmp_path / "qr"))

    assert path is not None
    with open(path, "rb") as f:
        assert f.read(4) == b"\x89PNG"
