"""
Flask QR Classroom Attendance Tracker - Main Application

This module serves as the main entry point for the attendance tracker.
It configures logging, builds the application for the environment named
by FLASK_ENV and runs the development server.

Features:
- Student registration with printable QR codes
- Class sessions with their own QR codes
- QR code scanning with duplicate prevention and late detection
- Per-class attendance analytics
- Analytics export to Excel/CSV/HTML
"""

import logging
import os

from config import get_config
from qr_attendance.web import create_app

# Configure logging
logging.basicConfig(
    level=getattr(logging, str(get_config().LOG_LEVEL).upper(), logging.INFO),
    format='%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
)
logger = logging.getLogger(__name__)

app = create_app()

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    logger.info(f"Starting attendance tracker on port {port}")

    # Run the application
    app.run(debug=app.config['DEBUG'], host='0.0.0.0', port=port)
