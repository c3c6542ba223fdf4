"""
QR Scanner Module - QR Classroom Attendance Tracker

This module wraps the camera and the barcode decoder used at the door.
Frames are read with OpenCV and decoded with pyzbar. A scan delivers at
most one payload and then stops; ``stop()`` cancels a running scan before
its next frame is decoded.

Features:
- Decoding of still images (PIL, numpy frames, raw bytes, base64 data URIs)
- Cancellable camera scan loop
- Background scanning thread
- Camera failures reported through a callback, never retried
"""

import base64
import binascii
import io
import logging
import threading
from typing import Any, Callable, List, Optional

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError
from pyzbar.pyzbar import decode as pyzbar_decode

CAMERA_UNAVAILABLE_MESSAGE = (
    'Camera not available. Check that camera access is allowed '
    'and that a camera is connected.'
)


class QRScanner:
    """
    Camera and image scanner for attendance payloads.
    """

    def __init__(self, decoder: Callable[[Any], list] = None,
                 capture_factory: Callable[[int], Any] = None):
        """
        Initialize the scanner.

        Args:
            decoder (callable): Barcode decoder, defaults to pyzbar's ``decode``
            capture_factory (callable): Opens a camera by index, defaults to ``cv2.VideoCapture``
        """
        self.decoder = decoder or pyzbar_decode
        self.capture_factory = capture_factory or cv2.VideoCapture
        self.logger = logging.getLogger(__name__)
        self._stop = threading.Event()
        self._thread = None

    def decode_image(self, image: Any) -> List[str]:
        """
        Decode every QR code found in an image.

        Args:
            image: PIL image, numpy frame, encoded image bytes, or a base64
                string optionally prefixed with ``data:image/...;base64,``

        Returns:
            List[str]: Decoded payloads in the order the decoder found them
        """
        try:
            image = self._load_image(image)
        except (ValueError, binascii.Error, UnidentifiedImageError) as e:
            self.logger.debug(f"QR decode error: {e}")
            return []

        payloads = []
        for symbol in self.decoder(image):
            try:
                payloads.append(symbol.data.decode('utf-8'))
            except UnicodeDecodeError:
                self.logger.warning("Skipping QR code with non UTF-8 content")
        return payloads

    @staticmethod
    def _load_image(image: Any) -> Any:
        if isinstance(image, str):
            if ',' in image:
                image = image.split(',', 1)[1]
            image = base64.b64decode(image, validate=True)

        if isinstance(image, (bytes, bytearray)):
            img = Image.open(io.BytesIO(image)).convert('RGB')
            return np.array(img)[:, :, ::-1]  # RGB -> BGR

        return image

    def scan_camera(self, on_scan: Callable[[str], None], on_error: Callable[[str], None],
                    camera_index: int = 0, max_frames: int = None) -> Optional[str]:
        """
        Read camera frames until a payload decodes, the scan is stopped,
        or the frame budget runs out.

        Args:
            on_scan (callable): Called once with the first decoded payload
            on_error (callable): Called with a message when the camera fails
            camera_index (int): OpenCV camera index
            max_frames (int): Frame budget, unlimited when None

        Returns:
            str: The delivered payload, or None when nothing was delivered
        """
        self._stop.clear()
        return self._scan(on_scan, on_error, camera_index, max_frames)

    def _scan(self, on_scan, on_error, camera_index, max_frames=None):
        capture = self.capture_factory(camera_index)

        if not capture.isOpened():
            capture.release()
            self.logger.error(f"Could not open camera {camera_index}")
            on_error(CAMERA_UNAVAILABLE_MESSAGE)
            return None

        frames = 0
        try:
            while not self._stop.is_set():
                if max_frames is not None and frames >= max_frames:
                    break

                ok, frame = capture.read()
                frames += 1
                if not ok:
                    self.logger.error(f"Camera {camera_index} stopped delivering frames")
                    on_error('Camera stopped delivering frames')
                    return None

                payloads = self.decode_image(frame)
                if payloads and not self._stop.is_set():
                    self._stop.set()
                    self.logger.info(f"QR code scanned after {frames} frames")
                    on_scan(payloads[0])
                    return payloads[0]
        finally:
            capture.release()

        self.logger.debug(f"Scan ended without a payload after {frames} frames")
        return None

    def start(self, on_scan: Callable[[str], None], on_error: Callable[[str], None],
              camera_index: int = 0) -> threading.Thread:
        """Run ``scan_camera`` on a background thread and return the thread."""
        if self.is_scanning():
            raise RuntimeError('A scan is already running')

        self._stop.clear()
        self._thread = threading.Thread(
            target=self._scan,
            args=(on_scan, on_error, camera_index),
            daemon=True
        )
        self._thread.start()
        return self._thread

    def stop(self, timeout: float = None) -> None:
        """Cancel the running scan and wait for its thread to finish."""
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
            self._thread = None

    def is_scanning(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
