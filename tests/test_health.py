"""Tests for poll counters and the health payload."""

from __future__ import annotations

import pytest

from usagemonitor.health import Metrics, format_uptime, health_payload


@pytest.mark.parametrize(
    "seconds,expected",
    [
        (0, "00:00:00"),
        (59.9, "00:00:59"),
        (3723, "01:02:03"),
        (90061, "1d 01:01:01"),
    ],
)
def test_format_uptime(seconds, expected):
    assert format_uptime(seconds) == expected


def test_counters_and_status():
    metrics = Metrics()
    metrics.record_success()
    metrics.record_error()
    metrics.record_skipped_tick()

    payload = health_payload(metrics, "idle", "Request failed: offline")

    assert payload["status"] == "degraded"
    assert payload["poller"] == "idle"
    fetches = payload["metrics"]["fetches"]
    assert fetches == {"total": 2, "success": 1, "error": 1, "success_rate": 50.0}
    assert payload["metrics"]["ticks_skipped"] == 1
    assert health_payload(Metrics(), "stopped", None)["status"] == "healthy"
