"""
Report Generator Module - QR Classroom Attendance Tracker

This module computes attendance analytics from the persisted records and
exports them. Every call recomputes from the store; nothing is cached here.

Per class session:
- attendance count and rate against the number of registered students
- on-time and late arrivals, using the same threshold as the recorder
- absent count (registered students without a record)
- average arrival offset from the class start

Across sessions: mean attendance rate, total late arrivals, total attendance.

Features:
- Per-class and summary analytics
- Dashboard counters
- CSV, Excel and HTML export
"""

import logging
import math
import os
from collections import defaultdict
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

import pandas as pd
from jinja2 import Template

from qr_attendance.modules.attendance_manager import (
    STATUS_LATE,
    classify_arrival,
    minutes_after_start,
)
from qr_attendance.modules.class_manager import class_start_datetime


def percent(part: float, whole: float) -> float:
    """Percentage rounded to one decimal; 0 when the whole is 0."""
    if not whole:
        return 0
    return round(part / whole * 100, 1)


def format_average_arrival(mean_minutes: float) -> str:
    """Format a mean arrival offset as ``+Nm``, or ``On time`` when not positive."""
    if mean_minutes > 0:
        return f"+{int(math.floor(mean_minutes + 0.5))}m"
    return 'On time'


class ReportGenerator:
    """
    Attendance analytics and report export.
    """

    def __init__(self, database_manager, late_threshold_minutes: int = 15,
                 output_dir: str = 'exports', clock: Callable[[], datetime] = None):
        """
        Initialize the report generator with database connection.

        Args:
            database_manager: Database manager instance
            late_threshold_minutes (int): Minutes after class start to count as late
            output_dir (str): Directory for exported reports
            clock (callable): Returns the current time, defaults to datetime.now
        """
        self.db = database_manager
        self.late_threshold_minutes = int(late_threshold_minutes)
        self.output_dir = str(output_dir)
        self.clock = clock or datetime.now
        self.logger = logging.getLogger(__name__)

        self.supported_formats = ['csv', 'excel', 'html']

    def get_class_analytics(self, class_id: str = None) -> List[Dict[str, Any]]:
        """
        Compute analytics for every class session, or for one.

        Args:
            class_id (str): Restrict to this class when given

        Returns:
            List[Dict[str, Any]]: One entry per class, newest class first
        """
        if class_id:
            classes = self.db.select_rows('classes', {'id': class_id})
            records = self.db.select_rows('attendance_records', {'class_id': class_id})
        else:
            classes = self.db.select_rows('classes', order_by='created_at', descending=True)
            records = self.db.select_rows('attendance_records')

        total_students = self.db.count('students')

        records_by_class = defaultdict(list)
        for record in records:
            records_by_class[record['class_id']].append(record)

        return [
            self._analyze_class(class_row, records_by_class[class_row['id']], total_students)
            for class_row in classes
        ]

    def _analyze_class(self, class_row: Dict[str, Any], records: List[Dict[str, Any]],
                       total_students: int) -> Dict[str, Any]:
        class_start = class_start_datetime(class_row)
        attendance_count = len(records)

        late_arrivals = 0
        total_offset = 0.0
        for record in records:
            marked_at = datetime.fromisoformat(record['marked_at'])
            if classify_arrival(class_start, marked_at, self.late_threshold_minutes) == STATUS_LATE:
                late_arrivals += 1
            total_offset += minutes_after_start(class_start, marked_at)

        on_time_arrivals = attendance_count - late_arrivals
        mean_offset = total_offset / attendance_count if attendance_count else 0
        attendance_rate = percent(attendance_count, total_students)

        return {
            'class_id': class_row['id'],
            'class_name': class_row['name'],
            'class_date': class_row['date'],
            'class_time': class_row['time'],
            'max_attendees': class_row['max_attendees'],
            'total_students': total_students,
            'attendance_count': attendance_count,
            'attendance_rate': attendance_rate,
            'on_time_arrivals': on_time_arrivals,
            'late_arrivals': late_arrivals,
            'absent_count': max(total_students - attendance_count, 0),
            'punctuality_rate': percent(on_time_arrivals, attendance_count),
            'late_rate': percent(late_arrivals, attendance_count),
            'average_arrival': format_average_arrival(mean_offset),
            'insights': self._insights(attendance_rate, late_arrivals)
        }

    @staticmethod
    def _insights(attendance_rate: float, late_arrivals: int) -> Dict[str, str]:
        if attendance_rate >= 90:
            attendance = 'Excellent attendance rate'
        elif attendance_rate >= 70:
            attendance = 'Good attendance, room for improvement'
        else:
            attendance = 'Low attendance - consider engagement strategies'

        if late_arrivals <= 2:
            punctuality = 'Great punctuality'
        elif late_arrivals <= 5:
            punctuality = 'Some late arrivals'
        else:
            punctuality = 'High number of late arrivals'

        return {'attendance': attendance, 'punctuality': punctuality}

    def get_summary(self, analytics: List[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Summarize analytics across class sessions.

        Args:
            analytics (List[Dict[str, Any]]): Precomputed per-class analytics

        Returns:
            Dict[str, Any]: Cross-class summary
        """
        if analytics is None:
            analytics = self.get_class_analytics()

        total_sessions = len(analytics)
        total_late = sum(item['late_arrivals'] for item in analytics)
        total_attendance = sum(item['attendance_count'] for item in analytics)
        average_rate = (
            round(sum(item['attendance_rate'] for item in analytics) / total_sessions, 1)
            if total_sessions else 0
        )

        return {
            'total_sessions': total_sessions,
            'average_attendance_rate': average_rate,
            'total_late_arrivals': total_late,
            'total_attendance': total_attendance,
            'late_share': percent(total_late, total_attendance)
        }

    def get_dashboard_stats(self, today: date = None) -> Dict[str, Any]:
        """
        Counters for the overview dashboard.

        Args:
            today (date): Day used for active classes, defaults to the clock's date

        Returns:
            Dict[str, Any]: Dashboard counters
        """
        today = today or self.clock().date()
        summary = self.get_summary()

        return {
            'total_classes': summary['total_sessions'],
            'total_students': self.db.count('students'),
            'attendance_rate': summary['average_attendance_rate'],
            'active_classes': self.db.count('classes', {'date': today.isoformat()})
        }

    def export_analytics(self, output_format: str = 'csv', class_id: str = None) -> Dict[str, Any]:
        """
        Export per-class analytics to a file.

        Args:
            output_format (str): csv, excel or html
            class_id (str): Restrict to this class when given

        Returns:
            Dict[str, Any]: Export result with the written file
        """
        if output_format not in self.supported_formats:
            return {
                'success': False,
                'error': f'Unsupported output format: {output_format}',
                'error_type': 'validation_error'
            }

        analytics = self.get_class_analytics(class_id)
        if not analytics:
            return {
                'success': False,
                'error': 'No data found for the specified criteria',
                'error_type': 'not_found'
            }

        rows = [self._flatten(item) for item in analytics]
        summary = self.get_summary(analytics)
        extension = {'csv': 'csv', 'excel': 'xlsx', 'html': 'html'}[output_format]
        filename = f"class_analytics_{self.clock().strftime('%Y%m%d_%H%M%S')}.{extension}"
        filepath = os.path.join(self.output_dir, filename)

        try:
            os.makedirs(self.output_dir, exist_ok=True)
            df = pd.DataFrame(rows)

            if output_format == 'csv':
                df.to_csv(filepath, index=False, encoding='utf-8')
            elif output_format == 'excel':
                with pd.ExcelWriter(filepath, engine='openpyxl') as writer:
                    df.to_excel(writer, sheet_name='Classes', index=False)
                    pd.DataFrame([summary]).to_excel(writer, sheet_name='Summary', index=False)
            else:
                html = Template(self._get_analytics_template()).render(
                    generated_at=self.clock().strftime('%Y-%m-%d %H:%M'),
                    columns=list(df.columns),
                    rows=rows,
                    summary=summary,
                    late_threshold_minutes=self.late_threshold_minutes
                )
                with open(filepath, 'w', encoding='utf-8') as f:
                    f.write(html)

        except OSError as e:
            self.logger.error(f"Analytics export failed: {str(e)}")
            return {
                'success': False,
                'error': str(e),
                'error_type': 'transport_error'
            }

        self.logger.info(f"Report generated successfully: {filename}")
        return {
            'success': True,
            'filename': filename,
            'filepath': filepath,
            'format': output_format,
            'size': os.path.getsize(filepath)
        }

    @staticmethod
    def _flatten(item: Dict[str, Any]) -> Dict[str, Any]:
        row = {key: value for key, value in item.items() if key != 'insights'}
        row['attendance_insight'] = item['insights']['attendance']
        row['punctuality_insight'] = item['insights']['punctuality']
        return row

    def _get_analytics_template(self) -> str:
        return """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>Class Analytics</title>
    <style>
        body { font-family: Arial, sans-serif; margin: 20px; }
        table { border-collapse: collapse; width: 100%; }
        th, td { border: 1px solid #ddd; padding: 6px; text-align: left; }
        th { background-color: #f2f2f2; }
        .summary { margin-bottom: 20px; }
    </style>
</head>
<body>
    <h1>Class Analytics</h1>
    <p>Generated {{ generated_at }}, late after {{ late_threshold_minutes }} minutes</p>
    <div class="summary">
        <p>Sessions: {{ summary.total_sessions }}</p>
        <p>Average attendance rate: {{ summary.average_attendance_rate }}%</p>
        <p>Late arrivals: {{ summary.total_late_arrivals }} of {{ summary.total_attendance }}</p>
    </div>
    <table>
        <tr>{% for column in columns %}<th>{{ column }}</th>{% endfor %}</tr>
        {% for row in rows %}
        <tr>{% for column in columns %}<td>{{ row[column] }}</td>{% endfor %}</tr>
        {% endfor %}
    </table>
</body>
</html>
"""
