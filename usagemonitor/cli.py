from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import datetime
from typing import Any, Dict, Optional

from .config import OAUTH_RECORD_KEY, POLL_INTERVAL_SECONDS, STORE_BACKEND
from .errors import UsageMonitorError
from .fetch import UsageApi
from .keychain import open_store, token_from_record
from .limits import UsageSnapshot, UsageWindow, remaining_window_percent, seconds_until_reset
from .models import format_subscription
from .monitor import UsageMonitor
from .utils import configure_logging, eprint, format_epoch_ms


_BAR_WIDTH = 30
_RESET = "\033[0m"

_WINDOW_LABELS = {
    "five_hour": ("⚡", "5 hour limit"),
    "seven_day": ("📅", "Weekly limit"),
    "seven_day_sonnet": ("📅", "Weekly limit (Sonnet)"),
    "seven_day_opus": ("📅", "Weekly limit (Opus)"),
}


def _clamp_percent(value: float) -> float:
    if value != value:  # NaN
        return 0.0
    return min(100.0, max(0.0, float(value)))


def _render_progress_bar(percent_used: float) -> str:
    filled = round(_BAR_WIDTH * _clamp_percent(percent_used) / 100.0)
    return "[" + "█" * filled + "░" * (_BAR_WIDTH - filled) + "]"


def _usage_color(percent_used: float) -> str:
    # red from 80%, amber from 50%
    if percent_used >= 80:
        return "\033[91m"
    if percent_used >= 50:
        return "\033[93m"
    return "\033[92m"


def _format_reset_duration(seconds: Optional[int]) -> Optional[str]:
    if seconds is None:
        return None
    seconds = max(0, int(seconds))
    if 0 < seconds < 60:
        return "under 1m"
    days, minutes = divmod(seconds // 60, 24 * 60)
    hours, minutes = divmod(minutes, 60)
    parts = [f"{n}{unit}" for n, unit in ((days, "d"), (hours, "h"), (minutes, "m")) if n]
    return " ".join(parts) or "0m"


def _format_local_datetime(dt: datetime) -> str:
    local = dt.astimezone()
    tz_name = local.tzname() or "local"
    return f"{local.strftime('%b %d, %Y %H:%M')} {tz_name}"


def _window_label(name: str) -> tuple[str, str]:
    return _WINDOW_LABELS.get(name, ("•", name.replace("_", " ").capitalize()))


def _print_window(name: str, window: UsageWindow) -> None:
    icon_label, desc = _window_label(name)
    print(f"{icon_label} {desc}")
    if window.utilization is None:
        print("    No data reported for this window.")
        return

    percent_used = _clamp_percent(window.utilization)
    remaining = max(0.0, 100.0 - percent_used)
    color = _usage_color(percent_used)
    progress = _render_progress_bar(percent_used)
    print(f"{color}{progress} {percent_used:5.1f}% used{_RESET} | {remaining:5.1f}% left")

    reset_in = _format_reset_duration(seconds_until_reset(window))
    reset_at = window.reset_datetime()
    if reset_in and reset_at:
        print(f"    ⏳ Resets in: {reset_in} at {_format_local_datetime(reset_at)}")
    window_left = remaining_window_percent(name, window)
    if window_left is not None:
        print(f"    {window_left:4.0f}% of the window remaining")


def _print_usage_block(usage: UsageSnapshot) -> None:
    print("📊 Usage Limits")
    windows = list(usage.iter_windows())
    if not windows:
        print("  The API returned no limit windows.")
        print()
        return
    for i, (name, window) in enumerate(windows):
        if i > 0:
            print()
        _print_window(name, window)

    extra = usage.extra_usage
    if extra is not None and extra.is_enabled:
        print()
        print("💳 Extra usage")
        used = extra.used_credits if extra.used_credits is not None else 0
        limit = extra.monthly_limit if extra.monthly_limit is not None else "?"
        print(f"    {used} of {limit} credits used this month")
    print()


def _redact(record: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(record)
    oauth = out.get(OAUTH_RECORD_KEY)
    if isinstance(oauth, dict):
        oauth = dict(oauth)
        for key in ("accessToken", "refreshToken"):
            value = oauth.get(key)
            if isinstance(value, str) and value:
                oauth[key] = value[:12] + "…"
        out[OAUTH_RECORD_KEY] = oauth
    return out


def cmd_serve(host: str, port: int, interval: float, store_backend: Optional[str], verbose: bool) -> int:
    from .app import create_app

    monitor = UsageMonitor(store=open_store(store_backend), interval=interval)
    app = create_app(monitor, verbose=verbose)
    monitor.start()
    try:
        app.run(host=host, debug=False, use_reloader=False, port=port, threaded=True)
    finally:
        monitor.stop()
    return 0


def cmd_status(store_backend: Optional[str], as_json: bool) -> int:
    store = open_store(store_backend)
    api = UsageApi(store)
    try:
        usage = api.fetch_usage()
    except UsageMonitorError as exc:
        eprint(f"ERROR: {exc}")
        return 1
    if as_json:
        print(json.dumps(usage.to_dict(), indent=2))
        return 0
    try:
        account = api.fetch_account()
    except UsageMonitorError as exc:
        eprint(f"Account profile unavailable: {exc}")
        account = None
    if account is not None:
        print("👤 Account")
        print(f"  • Login: {account.email or '<unknown>'}")
        print(f"  • Plan: {account.subscription or 'Unknown'}")
        print("")
    _print_usage_block(usage)
    return 0


def cmd_info(store_backend: Optional[str], as_json: bool) -> int:
    store = open_store(store_backend)
    try:
        record = store.read_record()
    except UsageMonitorError as exc:
        eprint(f"ERROR: {exc}")
        return 1
    if as_json:
        print(json.dumps(_redact(record), indent=2))
        return 0
    try:
        token = token_from_record(record)
    except UsageMonitorError as exc:
        print("👤 Account")
        print(f"  • Not signed in ({exc})")
        return 0
    expiry = format_epoch_ms(token.expires_at) or "unknown"
    print("👤 Account")
    print(f"  • Plan: {format_subscription(token.subscription_type, token.rate_limit_tier)}")
    print(f"  • Access token expires: {expiry}" + (" (expired)" if token.is_expired() else ""))
    print(f"  • Refresh token: {'present' if token.refresh_token else 'missing'}")
    if token.scopes:
        print(f"  • Scopes: {', '.join(token.scopes)}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Usage monitor: keep OAuth usage status fresh")
    parser.add_argument(
        "--store",
        choices=["keychain", "file"],
        default=STORE_BACKEND,
        help="Credential store backend (default: keychain on macOS, file elsewhere)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p_serve = sub.add_parser("serve", help="Poll usage in the background and serve it over local HTTP")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=int(os.getenv("USAGE_MONITOR_PORT", "8765")))
    p_serve.add_argument(
        "--interval",
        type=float,
        default=POLL_INTERVAL_SECONDS,
        help=f"Seconds between usage polls (default: {POLL_INTERVAL_SECONDS:g})",
    )

    p_status = sub.add_parser("status", help="Fetch usage once and print it")
    p_status.add_argument("--json", action="store_true", help="Print the usage snapshot as JSON")

    p_info = sub.add_parser("info", help="Print stored credential details")
    p_info.add_argument("--json", action="store_true", help="Print the stored record with tokens redacted")

    args = parser.parse_args()
    configure_logging(args.verbose)

    if args.command == "serve":
        sys.exit(cmd_serve(args.host, args.port, args.interval, args.store, args.verbose))
    elif args.command == "status":
        sys.exit(cmd_status(args.store, args.json))
    elif args.command == "info":
        sys.exit(cmd_info(args.store, args.json))
    else:
        parser.error("Unknown command")


if __name__ == "__main__":
    main()
