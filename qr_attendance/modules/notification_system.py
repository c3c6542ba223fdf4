"""
Notification System Module - QR Classroom Attendance Tracker

This module carries change notifications between the store and the view
layer. Every successful write publishes a per-table change event; views
subscribe to the tables they display and refetch when one arrives. Scan
outcomes are also published as attendance notifications so an operator
console can show them as they happen.

Features:
- Per-table change subscriptions
- Scan outcome notifications (recorded, late, duplicate)
- Bounded history of recent events
- Subscriber failures isolated from the writer
"""

import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass, asdict, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

ALL_TABLES = '*'


@dataclass
class NotificationData:
    """Data structure for a published event."""
    id: int
    type: str
    table: Optional[str]
    event: str
    row_id: Optional[str]
    message: str
    severity: str
    created_at: str
    data: Dict[str, Any] = field(default_factory=dict)


class NotificationSystem:
    """
    In-process change feed for the attendance tracker.
    Subscribers are called synchronously, in subscription order, on the
    thread that performed the write.
    """

    def __init__(self, history_size: int = 200):
        """
        Initialize the notification system.

        Args:
            history_size (int): Number of recent events kept for inspection
        """
        self.logger = logging.getLogger(__name__)

        self.NOTIFICATION_TYPES = {
            'CHANGE': 'change',
            'ATTENDANCE_SCAN': 'attendance_scan',
            'LATE_ARRIVAL': 'late_arrival',
            'DUPLICATE_SCAN': 'duplicate_scan',
        }

        self.SEVERITY_LEVELS = {
            'INFO': 'info',
            'WARNING': 'warning',
            'ERROR': 'error',
            'SUCCESS': 'success'
        }

        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._subscribers: Dict[int, tuple] = {}
        self.history = deque(maxlen=history_size)

        self.logger.info("Notification system initialized")

    def subscribe(self, table: str, callback: Callable[[NotificationData], None]) -> int:
        """
        Register a callback for change events on a table.

        Args:
            table (str): Table name, or ``'*'`` for every table
            callback (callable): Called with the NotificationData

        Returns:
            int: Subscription id for ``unsubscribe``
        """
        with self._lock:
            subscription_id = next(self._ids)
            self._subscribers[subscription_id] = (table, callback)
        self.logger.debug(f"Subscription {subscription_id} registered for {table}")
        return subscription_id

    def unsubscribe(self, subscription_id: int) -> bool:
        """Remove a subscription. Returns False when it was not registered."""
        with self._lock:
            return self._subscribers.pop(subscription_id, None) is not None

    def publish_change(self, table: str, event: str, row_id: Optional[str]) -> NotificationData:
        """
        Publish a change event for a table.

        Args:
            table (str): Table that changed
            event (str): insert, update or delete
            row_id (str): Primary key of the changed row, None for bulk changes

        Returns:
            NotificationData: The published event
        """
        notification = self._build(
            self.NOTIFICATION_TYPES['CHANGE'],
            table=table,
            event=event,
            row_id=row_id,
            message=f"{table} {event}",
            severity=self.SEVERITY_LEVELS['INFO']
        )
        self._dispatch(notification)
        return notification

    def send_attendance_notification(self, scan_result: Dict[str, Any]) -> NotificationData:
        """
        Publish the outcome of an attendance scan.

        Args:
            scan_result (Dict[str, Any]): Result returned by the attendance manager

        Returns:
            NotificationData: The published notification
        """
        if scan_result.get('success'):
            status = scan_result['attendance']['status']
            student_name = scan_result['student']['name']
            if status == 'late':
                notification_type = self.NOTIFICATION_TYPES['LATE_ARRIVAL']
                severity = self.SEVERITY_LEVELS['WARNING']
            else:
                notification_type = self.NOTIFICATION_TYPES['ATTENDANCE_SCAN']
                severity = self.SEVERITY_LEVELS['SUCCESS']
            message = f"{student_name} marked as {status} in {scan_result['class']['name']}"
        elif scan_result.get('error_type') == 'duplicate_scan':
            notification_type = self.NOTIFICATION_TYPES['DUPLICATE_SCAN']
            severity = self.SEVERITY_LEVELS['WARNING']
            message = scan_result.get('message', 'Attendance already recorded')
        else:
            notification_type = self.NOTIFICATION_TYPES['ATTENDANCE_SCAN']
            severity = self.SEVERITY_LEVELS['ERROR']
            message = scan_result.get('message', 'Scan failed')

        notification = self._build(
            notification_type,
            table=None,
            event='scan',
            row_id=(scan_result.get('attendance') or {}).get('id'),
            message=message,
            severity=severity,
            data=scan_result
        )
        with self._lock:
            self.history.append(notification)
        self.logger.info(f"Scan notification: {message}")
        return notification

    def _build(self, notification_type, table, event, row_id, message, severity, data=None):
        return NotificationData(
            id=next(self._ids),
            type=notification_type,
            table=table,
            event=event,
            row_id=row_id,
            message=message,
            severity=severity,
            created_at=datetime.now().isoformat(timespec='seconds'),
            data=data or {}
        )

    def _dispatch(self, notification: NotificationData) -> None:
        with self._lock:
            self.history.append(notification)
            targets = [
                (subscription_id, callback)
                for subscription_id, (table, callback) in self._subscribers.items()
                if table in (notification.table, ALL_TABLES)
            ]

        for subscription_id, callback in targets:
            try:
                callback(notification)
            except Exception as e:
                # A failing view must not undo or block the write that triggered it
                self.logger.error(f"Subscriber {subscription_id} failed on {notification.message}: {str(e)}")

    def get_recent_notifications(self, limit: int = 20, table: str = None) -> List[Dict[str, Any]]:
        """
        Get the most recent events, newest first.

        Args:
            limit (int): Maximum number of events
            table (str): Only events for this table when given

        Returns:
            List[Dict[str, Any]]: Events as dictionaries
        """
        with self._lock:
            events = list(self.history)
        if table:
            events = [event for event in events if event.table == table]
        events.reverse()
        return [asdict(event) for event in events[:limit]]
