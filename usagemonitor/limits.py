from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional, Tuple

from .errors import ParseFailure

FIVE_HOUR = "five_hour"
SEVEN_DAY = "seven_day"
SEVEN_DAY_SONNET = "seven_day_sonnet"
SEVEN_DAY_OPUS = "seven_day_opus"

KNOWN_WINDOWS = (FIVE_HOUR, SEVEN_DAY, SEVEN_DAY_SONNET, SEVEN_DAY_OPUS)
_EXTRA_USAGE = "extra_usage"

# Nominal window lengths, used to render how much of a window has elapsed.
WINDOW_HOURS: Dict[str, int] = {
    FIVE_HOUR: 5,
    SEVEN_DAY: 168,
    SEVEN_DAY_SONNET: 168,
    SEVEN_DAY_OPUS: 168,
}


@dataclass(frozen=True)
class UsageWindow:
    utilization: Optional[float] = None
    resets_at: Optional[str] = None

    def reset_datetime(self) -> Optional[datetime]:
        return _parse_datetime(self.resets_at)


@dataclass(frozen=True)
class ExtraUsage:
    is_enabled: Optional[bool] = None
    monthly_limit: Optional[int] = None
    used_credits: Optional[int] = None
    utilization: Optional[float] = None


@dataclass(frozen=True)
class UsageSnapshot:
    windows: Dict[str, UsageWindow] = field(default_factory=dict)
    extra_usage: Optional[ExtraUsage] = None

    def window(self, name: str) -> Optional[UsageWindow]:
        return self.windows.get(name)

    def iter_windows(self) -> Iterator[Tuple[str, UsageWindow]]:
        """Known windows first in their canonical order, then any others."""
        for name in KNOWN_WINDOWS:
            if name in self.windows:
                yield name, self.windows[name]
        for name, window in self.windows.items():
            if name not in KNOWN_WINDOWS:
                yield name, window

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for name, window in self.iter_windows():
            out[name] = {"utilization": window.utilization, "resets_at": window.resets_at}
        if self.extra_usage is not None:
            out[_EXTRA_USAGE] = {
                "is_enabled": self.extra_usage.is_enabled,
                "monthly_limit": self.extra_usage.monthly_limit,
                "used_credits": self.extra_usage.used_credits,
                "utilization": self.extra_usage.utilization,
            }
        return out


def _parse_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if not (parsed == parsed and parsed not in (float("inf"), float("-inf"))):
        return None
    return parsed


def _parse_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value == value and abs(value) != float("inf") else None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _dict_to_window(value: Dict[str, Any]) -> UsageWindow:
    resets_at = value.get("resets_at")
    return UsageWindow(
        utilization=_parse_float(value.get("utilization")),
        resets_at=resets_at if isinstance(resets_at, str) else None,
    )


def _dict_to_extra_usage(value: Dict[str, Any]) -> ExtraUsage:
    enabled = value.get("is_enabled")
    return ExtraUsage(
        is_enabled=enabled if isinstance(enabled, bool) else None,
        monthly_limit=_parse_int(value.get("monthly_limit")),
        used_credits=_parse_int(value.get("used_credits")),
        utilization=_parse_float(value.get("utilization")),
    )


def parse_usage_payload(payload: Any) -> UsageSnapshot:
    """Build a snapshot from the usage endpoint's JSON body.

    Windows the API reports as null are left out. Object-valued keys other
    than the known windows are kept as windows so new limits show up without
    a code change.
    """
    if not isinstance(payload, dict):
        raise ParseFailure("Failed to parse response: usage payload is not an object")
    windows: Dict[str, UsageWindow] = {}
    extra: Optional[ExtraUsage] = None
    for key, value in payload.items():
        if not isinstance(value, dict):
            continue
        if key == _EXTRA_USAGE:
            extra = _dict_to_extra_usage(value)
        elif key in KNOWN_WINDOWS or "utilization" in value or "resets_at" in value:
            windows[key] = _dict_to_window(value)
    return UsageSnapshot(windows=windows, extra_usage=extra)


def seconds_until_reset(window: UsageWindow, now: Optional[datetime] = None) -> Optional[int]:
    reset_at = window.reset_datetime()
    if reset_at is None:
        return None
    current = now or datetime.now(timezone.utc)
    return max(0, int((reset_at - current).total_seconds()))


def remaining_window_percent(name: str, window: UsageWindow, now: Optional[datetime] = None) -> Optional[float]:
    hours = WINDOW_HOURS.get(name)
    remaining = seconds_until_reset(window, now)
    if hours is None or remaining is None:
        return None
    return min(100.0, remaining / (hours * 3600) * 100.0)
