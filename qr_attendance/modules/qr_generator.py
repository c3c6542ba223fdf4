"""
QR Code Generator Module - QR Classroom Attendance Tracker

This module builds the identifiers and scan payloads for students and class
sessions, decodes scanned strings back into them, and renders payloads as
QR code images.

Payload formats (fields joined by ``:``):
- ``STUDENT:<student code>:<epoch millis>``
- ``CLASS:<class id>:<name>:<date>:<time>:<epoch millis>``

Every variable field of a class payload is percent-encoded so names and
times containing the delimiter decode unambiguously. Student codes may not
contain the delimiter at all; that is rejected when the student is created.

Features:
- Student code generation (prefix + year + random suffix)
- Student and class payload encoding
- Payload classification and decoding
- QR code image rendering with optional caption
- QR code image export
"""

import base64
import io
import logging
import os
import random
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote, unquote

import qrcode
from qrcode.exceptions import DataOverflowError
from PIL import Image, ImageDraw, ImageFont

PAYLOAD_DELIMITER = ':'
STUDENT_TAG = 'STUDENT'
CLASS_TAG = 'CLASS'


class QRGenerator:
    """
    Builds, parses and renders attendance scan payloads.
    """

    def __init__(self, student_code_prefix: str = 'STU', suffix_width: int = 4,
                 default_settings: Optional[Dict[str, Any]] = None):
        """
        Initialize the QR code generator.

        Args:
            student_code_prefix (str): Prefix for auto-generated student codes
            suffix_width (int): Digits in the random student code suffix
            default_settings (dict): Overrides for the rendering defaults
        """
        self.logger = logging.getLogger(__name__)
        self.student_code_prefix = student_code_prefix
        self.suffix_width = suffix_width

        self.default_settings = {
            'error_correction': qrcode.constants.ERROR_CORRECT_M,  # ~15% error correction
            'size': 200,     # Output width in pixels
            'margin': 2,     # Quiet zone in modules
            'dark_color': '#1e293b',
            'light_color': '#ffffff'
        }
        if default_settings:
            self.default_settings.update(default_settings)

    def generate_student_code(self, now: datetime = None) -> str:
        """
        Generate a student code such as ``STU20240042``.
        Collisions are possible; the store rejects them and the caller retries.

        Args:
            now (datetime): Clock reading used for the year

        Returns:
            str: Generated student code
        """
        now = now or datetime.now()
        suffix = random.randrange(10 ** self.suffix_width)
        return f"{self.student_code_prefix}{now.year}{suffix:0{self.suffix_width}d}"

    @staticmethod
    def validate_code_field(value: str, label: str = 'Student ID') -> Optional[str]:
        """
        Check a value that is embedded verbatim in a payload.

        Args:
            value (str): Value to check
            label (str): Field name used in the error message

        Returns:
            str: Error message, or None when the value is acceptable
        """
        if not value or not value.strip():
            return f'{label} is required'
        if PAYLOAD_DELIMITER in value:
            return f'{label} may not contain "{PAYLOAD_DELIMITER}"'
        if value != value.strip():
            return f'{label} may not start or end with whitespace'
        return None

    @staticmethod
    def _millis(moment: datetime) -> int:
        return int(moment.timestamp() * 1000)

    def build_student_payload(self, student_code: str, created_at: datetime = None) -> str:
        """
        Build the scan payload for a student.

        Args:
            student_code (str): Student code, free of the delimiter
            created_at (datetime): Creation time embedded in the payload

        Returns:
            str: Student payload
        """
        error = self.validate_code_field(student_code)
        if error:
            raise ValueError(error)

        created_at = created_at or datetime.now()
        return PAYLOAD_DELIMITER.join([STUDENT_TAG, student_code, str(self._millis(created_at))])

    def build_class_payload(self, class_id: str, name: str, date: str, time: str,
                            created_at: datetime = None) -> str:
        """
        Build the scan payload for a class session.

        Args:
            class_id (str): Surrogate id of the class
            name (str): Class name, may contain any character
            date (str): Class date (YYYY-MM-DD)
            time (str): Class start time (HH:MM)
            created_at (datetime): Creation time embedded in the payload

        Returns:
            str: Class payload
        """
        created_at = created_at or datetime.now()
        fields = [class_id, name, date, time]
        return PAYLOAD_DELIMITER.join(
            [CLASS_TAG] + [quote(str(value), safe='') for value in fields]
            + [str(self._millis(created_at))]
        )

    def decode_payload(self, qr_data: str) -> Dict[str, Any]:
        """
        Classify and decode a scanned string.

        Args:
            qr_data (str): Raw text from the scanner

        Returns:
            dict: Decoding result; ``valid`` is False for unrecognized input
        """
        raw = qr_data.strip() if isinstance(qr_data, str) else ''
        parts = raw.split(PAYLOAD_DELIMITER)
        tag = parts[0]

        if tag == STUDENT_TAG and len(parts) == 3 and parts[1]:
            generated_at = self._parse_millis(parts[2])
            if generated_at is not None:
                return {
                    'valid': True,
                    'type': 'student',
                    'student_id': parts[1],
                    'generated_at': generated_at
                }

        if tag == CLASS_TAG and len(parts) == 6 and parts[1]:
            generated_at = self._parse_millis(parts[5])
            if generated_at is not None:
                class_id, name, date, time = (unquote(value) for value in parts[1:5])
                return {
                    'valid': True,
                    'type': 'class',
                    'class_id': class_id,
                    'name': name,
                    'date': date,
                    'time': time,
                    'generated_at': generated_at
                }

        self.logger.debug(f"Unrecognized payload: {raw[:40]!r}")
        return {
            'valid': False,
            'error': 'QR code not recognized',
            'error_type': 'unrecognized_payload'
        }

    @staticmethod
    def _parse_millis(value: str) -> Optional[str]:
        if not value.isdigit():
            return None
        try:
            return datetime.fromtimestamp(int(value) / 1000).isoformat(timespec='seconds')
        except (OverflowError, OSError, ValueError):
            return None

    def generate_qr_image(self, payload: str, label_lines: List[str] = None,
                          filename: str = None, **settings) -> Dict[str, Any]:
        """
        Render a payload as a PNG QR code.

        Args:
            payload (str): Text to encode
            label_lines (List[str]): Caption lines drawn under the code
            filename (str): Suggested file name for saving
            **settings: Overrides for size, margin, dark_color, light_color

        Returns:
            dict: Result with base64 PNG data and image size
        """
        if not payload:
            return {'success': False, 'error': 'Nothing to encode'}

        options = dict(self.default_settings)
        options.update(settings)

        try:
            qr = qrcode.QRCode(
                version=None,
                error_correction=options['error_correction'],
                box_size=10,
                border=options['margin']
            )
            qr.add_data(payload)
            qr.make(fit=True)

            img = qr.make_image(
                fill_color=options['dark_color'],
                back_color=options['light_color']
            ).convert('RGB')
            img = img.resize((options['size'], options['size']), Image.NEAREST)

            if label_lines:
                img = self._add_caption(img, label_lines, options)

            buffer = io.BytesIO()
            img.save(buffer, format='PNG')
            img_base64 = base64.b64encode(buffer.getvalue()).decode()

        except (ValueError, DataOverflowError) as e:
            self.logger.error(f"QR code generation failed: {str(e)}")
            return {'success': False, 'error': str(e)}

        return {
            'success': True,
            'qr_data': payload,
            'image_base64': img_base64,
            'image_size': img.size,
            'filename': filename or f"qr_{datetime.now().strftime('%Y%m%d_%H%M%S')}.png",
            'generated_at': datetime.now().isoformat(timespec='seconds')
        }

    def _add_caption(self, qr_img: Image.Image, lines: List[str], options: Dict[str, Any]) -> Image.Image:
        """
        Add caption lines under a QR code image.

        Args:
            qr_img (Image.Image): QR code image
            lines (List[str]): Caption lines, first one drawn larger

        Returns:
            Image.Image: QR code with caption
        """
        width, height = qr_img.size
        line_height = 20
        canvas = Image.new('RGB', (width, height + 10 + line_height * len(lines)), options['light_color'])
        canvas.paste(qr_img, (0, 0))
        draw = ImageDraw.Draw(canvas)

        try:
            font_large = ImageFont.truetype("arial.ttf", 16)
            font_small = ImageFont.truetype("arial.ttf", 12)
        except (IOError, OSError):
            font_large = ImageFont.load_default()
            font_small = ImageFont.load_default()

        text_y = height + 5
        for index, line in enumerate(lines):
            font = font_large if index == 0 else font_small
            bbox = draw.textbbox((0, 0), line, font=font)
            text_width = bbox[2] - bbox[0]
            draw.text(((width - text_width) // 2, text_y), line, fill=options['dark_color'], font=font)
            text_y += line_height

        return canvas

    def save_qr_code_image(self, image_base64: str, filename: str,
                           output_dir: str = 'exports/qr_codes') -> Optional[str]:
        """
        Save QR code image to file system.

        Args:
            image_base64 (str): Base64 encoded image
            filename (str): Output filename
            output_dir (str): Output directory

        Returns:
            str: Path of the written file, None on failure
        """
        try:
            os.makedirs(output_dir, exist_ok=True)
            file_path = os.path.join(output_dir, os.path.basename(filename))
            with open(file_path, 'wb') as f:
                f.write(base64.b64decode(image_base64))
        except (OSError, ValueError) as e:
            self.logger.error(f"Failed to save QR code image: {str(e)}")
            return None

        self.logger.info(f"QR code image saved to {file_path}")
        return file_path
