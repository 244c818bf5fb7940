from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Tuple

from .config import POLL_INTERVAL_SECONDS
from .errors import UsageMonitorError
from .fetch import UsageApi
from .health import Metrics
from .state import SharedState

LOGGER = logging.getLogger(__name__)

IDLE = "idle"
FETCHING = "fetching"
STOPPED = "stopped"

ProfileMatcher = Callable[[str], None]


class Poller:
    """Fixed-interval usage polling on a daemon thread.

    The thread performs ``initial_fetch`` once and then calls ``tick`` every
    ``interval`` seconds until ``stop``. Ticks are single-flight: one that
    finds a fetch still running is dropped. Failures are written to the
    shared state and never end the loop.
    """

    def __init__(
        self,
        api: UsageApi,
        state: SharedState,
        interval: float = POLL_INTERVAL_SECONDS,
        profile_matcher: Optional[ProfileMatcher] = None,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self.api = api
        self.state = state
        self.interval = interval
        self.profile_matcher = profile_matcher
        self.metrics = metrics or Metrics()
        self.status = STOPPED
        self._inflight = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set():
            return
        # Each run owns its stop event; a previous thread still finishing a
        # fetch keeps its own (already set) event and exits on its own.
        stop_event = threading.Event()
        self._stop_event = stop_event
        self.status = IDLE
        self._thread = threading.Thread(target=self._run, args=(stop_event,), daemon=True, name="UsagePoller")
        self._thread.start()
        LOGGER.info("Usage poller started (every %ss)", self.interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)
            if thread.is_alive():
                LOGGER.warning("Usage poller still finishing a fetch; it will exit afterwards")
            else:
                self._thread = None
        self.status = STOPPED
        LOGGER.info("Usage poller stopped")

    def _run(self, stop_event: threading.Event) -> None:
        try:
            self.initial_fetch()
        except Exception:
            LOGGER.exception("Initial fetch failed")
        while not stop_event.wait(self.interval):
            self.tick()

    def tick(self) -> bool:
        """Run one scheduled fetch. Returns False if the tick was skipped."""
        if not self._inflight.acquire(blocking=False):
            LOGGER.info("Previous usage fetch still running; skipping tick")
            self.metrics.record_skipped_tick()
            return False
        try:
            self.status = FETCHING
            self._update_usage()
        finally:
            self.status = IDLE if not self._stop_event.is_set() else STOPPED
            self._inflight.release()
        return True

    def initial_fetch(self) -> None:
        with self._inflight:
            self.status = FETCHING
            try:
                self._update_account()
                self._update_usage()
            finally:
                self.status = IDLE

    def refresh_usage(self) -> Tuple[bool, Optional[str]]:
        """On-demand fetch for a caller outside the schedule."""
        error = self._update_usage()
        return error is None, error

    def _update_account(self) -> None:
        try:
            account = self.api.fetch_account()
        except UsageMonitorError as exc:
            LOGGER.warning("Unable to fetch account profile: %s", exc)
            return
        except Exception:
            LOGGER.exception("Unexpected failure while fetching account profile")
            return
        if account.email and self.profile_matcher is not None:
            try:
                self.profile_matcher(account.email)
            except Exception:
                LOGGER.exception("Profile matcher failed for %s", account.email)
        self.state.set_account(account)

    def _update_usage(self) -> Optional[str]:
        try:
            usage = self.api.fetch_usage()
        except UsageMonitorError as exc:
            message = str(exc)
        except Exception as exc:
            LOGGER.exception("Unexpected failure while fetching usage")
            message = f"Unexpected error: {exc}"
        else:
            self.state.set_usage(usage)
            self.metrics.record_success()
            return None
        LOGGER.warning("Usage fetch failed: %s", message)
        self.state.set_error(message)
        self.metrics.record_error()
        return message
