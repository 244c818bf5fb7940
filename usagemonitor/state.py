from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from .limits import UsageSnapshot
from .models import AccountProfile

LOGGER = logging.getLogger(__name__)

USAGE_UPDATED = "usage-updated"
USAGE_ERROR = "usage-error"
ACCOUNT_UPDATED = "account-updated"

TOPICS = (USAGE_UPDATED, USAGE_ERROR, ACCOUNT_UPDATED)

Listener = Callable[[Any], None]


class EventBus:
    """Fire-and-forget broadcast to listeners.

    Nothing is queued for listeners that subscribe later, but the most recent
    payload of each topic is kept and available through ``last``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: Dict[str, List[Listener]] = {}
        self._last: Dict[str, Any] = {}

    def subscribe(self, topic: str, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.setdefault(topic, []).append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(topic, [])
                if listener in listeners:
                    listeners.remove(listener)

        return _unsubscribe

    def emit(self, topic: str, payload: Any) -> None:
        with self._lock:
            self._last[topic] = payload
            listeners = list(self._listeners.get(topic, ()))
        for listener in listeners:
            try:
                listener(payload)
            except Exception:
                LOGGER.exception("Listener for %s failed", topic)

    def last(self, topic: str) -> Any:
        with self._lock:
            return self._last.get(topic)


class SharedState:
    """Last known usage, account and error for one running monitor.

    Each field has its own lock so a slow writer of one never delays readers
    of another. Lock order is usage, account, error wherever more than one is
    held. Writes replace a field wholesale; reads return copies.

    Events are emitted while the written field's lock is still held, so the
    broadcast order always matches the order of writes. The locks are
    reentrant; a listener may read state but must not block on another
    thread that writes it.
    """

    def __init__(self, events: Optional[EventBus] = None) -> None:
        self.events = events or EventBus()
        self._usage_lock = threading.RLock()
        self._account_lock = threading.RLock()
        self._error_lock = threading.RLock()
        self._usage: Optional[UsageSnapshot] = None
        self._account: Optional[AccountProfile] = None
        self._error: Optional[str] = None

    def get_usage(self) -> Optional[UsageSnapshot]:
        with self._usage_lock:
            return copy.deepcopy(self._usage)

    def get_account(self) -> Optional[AccountProfile]:
        with self._account_lock:
            return self._account

    def get_last_error(self) -> Optional[str]:
        with self._error_lock:
            return self._error

    def set_usage(self, usage: UsageSnapshot) -> None:
        """Store a fresh snapshot and clear the error in the same step."""
        with self._usage_lock, self._error_lock:
            self._usage = usage
            self._error = None
            self.events.emit(USAGE_UPDATED, copy.deepcopy(usage))

    def set_account(self, account: AccountProfile) -> None:
        with self._account_lock:
            self._account = account
            self.events.emit(ACCOUNT_UPDATED, account)

    def set_error(self, message: str) -> None:
        """Record a failure. Usage and account keep their last good values."""
        with self._error_lock:
            self._error = message
            self.events.emit(USAGE_ERROR, message)
