"""
Health and poll counters for the usage monitor.
"""
from __future__ import annotations

import threading
import time
from datetime import datetime
from typing import Any, Dict, Optional


class Metrics:
    """Counters for one monitor instance."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.start_time = time.time()
        self.fetches_total = 0
        self.fetches_success = 0
        self.fetches_error = 0
        self.ticks_skipped = 0
        self.last_success_time: Optional[str] = None
        self.last_error_time: Optional[str] = None

    def record_success(self) -> None:
        with self._lock:
            self.fetches_total += 1
            self.fetches_success += 1
            self.last_success_time = datetime.now().isoformat()

    def record_error(self) -> None:
        with self._lock:
            self.fetches_total += 1
            self.fetches_error += 1
            self.last_error_time = datetime.now().isoformat()

    def record_skipped_tick(self) -> None:
        with self._lock:
            self.ticks_skipped += 1

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            uptime = time.time() - self.start_time
            return {
                'uptime_seconds': int(uptime),
                'uptime_human': format_uptime(uptime),
                'fetches': {
                    'total': self.fetches_total,
                    'success': self.fetches_success,
                    'error': self.fetches_error,
                    'success_rate': (
                        self.fetches_success / self.fetches_total * 100
                        if self.fetches_total > 0 else 0
                    ),
                },
                'ticks_skipped': self.ticks_skipped,
                'last_success': self.last_success_time,
                'last_error': self.last_error_time,
            }


def format_uptime(seconds: float) -> str:
    """Render as ``HH:MM:SS``, prefixed with whole days once there are any."""
    minutes, secs = divmod(max(0, int(seconds)), 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    clock = f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{days}d {clock}" if days else clock


def health_payload(metrics: Metrics, poller_status: str, last_error: Optional[str]) -> Dict[str, Any]:
    return {
        'status': 'degraded' if last_error else 'healthy',
        'timestamp': datetime.now().isoformat(),
        'poller': poller_status,
        'last_error': last_error,
        'metrics': metrics.snapshot(),
    }
