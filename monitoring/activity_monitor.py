"""
activity_monitor.py
--------------------
Suspicious-activity monitoring around bill creation and scanning.

Implements two sliding-window checks:
    1. Rapid bill creation: too many bills created within the window.
    2. Excessive scan failures: too many failed extractions within the window.

Each check raises an ActivityAlert once its count reaches the threshold.
Severity is "medium" at the threshold and "high" at a multiple of it.
Alerts are logged and returned to the caller; forwarding them to an
external security service is the host's job.

All thresholds and window sizes come from config.yaml.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Deque, List, Optional

from config.config_loader import get_activity_monitor_config

logger = logging.getLogger(__name__)


@dataclass
class ActivityAlert:
    """A single suspicious-activity alert."""
    activity_type: str               # "rapid_bill_creation" | "excessive_scan_failures" | "suspicious_payment"
    severity: str                    # "medium" | "high"
    details: str
    metadata: dict = field(default_factory=dict)
    detected_at: str = ""            # ISO timestamp


@dataclass
class ActivityReport:
    """All alerts raised by one monitor instance so far."""
    alerts: List[ActivityAlert] = field(default_factory=list)
    summary: dict = field(default_factory=dict)


class ActivityMonitor:
    """
    Usage:
        monitor = ActivityMonitor()
        alert = monitor.track_bill_creation()
        alert = monitor.track_failed_scan("parse_error")
        report = monitor.report()
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.config = get_activity_monitor_config()
        self.clock = clock
        self.creation_threshold = self.config["bill_creation_threshold"]
        self.creation_window = self.config["bill_creation_window_minutes"] * 60
        self.failure_threshold = self.config["scan_failure_threshold"]
        self.failure_window = self.config["scan_failure_window_minutes"] * 60
        self.high_multiplier = self.config["high_severity_multiplier"]

        self._creations: Deque[float] = deque()
        self._failures: Deque[float] = deque()
        self._alerts: List[ActivityAlert] = []

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def track_bill_creation(self) -> Optional[ActivityAlert]:
        count = self._record(self._creations, self.creation_window)
        if count < self.creation_threshold:
            return None
        return self._raise(
            "rapid_bill_creation",
            self._severity(count, self.creation_threshold),
            f"{count} bills created in the last {self.creation_window // 60} minutes",
            {"count": count, "window_seconds": self.creation_window},
        )

    def track_failed_scan(self, error_type: str) -> Optional[ActivityAlert]:
        count = self._record(self._failures, self.failure_window)
        if count < self.failure_threshold:
            return None
        minutes = self.failure_window // 60
        return self._raise(
            "excessive_scan_failures",
            self._severity(count, self.failure_threshold),
            f"{count} scan failures in {minutes} minutes ({error_type})",
            {"count": count, "error_type": error_type, "window_seconds": self.failure_window},
        )

    def track_suspicious_payment(self, bill_id: str, details: str) -> ActivityAlert:
        return self._raise("suspicious_payment", "medium", details, {"bill_id": bill_id})

    def report(self) -> ActivityReport:
        return ActivityReport(
            alerts=list(self._alerts),
            summary={
                "total_alerts": len(self._alerts),
                "high_alerts": sum(1 for a in self._alerts if a.severity == "high"),
                "medium_alerts": sum(1 for a in self._alerts if a.severity == "medium"),
            },
        )

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    def _record(self, timestamps: Deque[float], window: float) -> int:
        """Appends now, drops entries older than the window, returns count."""
        now = self.clock()
        timestamps.append(now)
        cutoff = now - window
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()
        return len(timestamps)

    def _severity(self, count: int, threshold: int) -> str:
        return "high" if count >= threshold * self.high_multiplier else "medium"

    def _raise(self, activity_type: str, severity: str, details: str, metadata: dict) -> ActivityAlert:
        alert = ActivityAlert(
            activity_type=activity_type,
            severity=severity,
            details=details,
            metadata=metadata,
            detected_at=datetime.fromtimestamp(self.clock()).isoformat(),
        )
        self._alerts.append(alert)
        logger.warning(f"[{activity_type}] {severity}: {details}")
        return alert
