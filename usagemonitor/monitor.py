from __future__ import annotations

from typing import Callable, Optional, Tuple

from .config import POLL_INTERVAL_SECONDS
from .fetch import UsageApi
from .health import Metrics, health_payload
from .keychain import CredentialStore, open_store
from .limits import UsageSnapshot
from .models import AccountProfile
from .poller import Poller, ProfileMatcher
from .refresh import TokenRefresher
from .state import Listener, SharedState


class UsageMonitor:
    """Everything one running agent owns, and the commands the UI may issue.

    ``get_usage``, ``get_account`` and ``get_last_error`` only read cached
    state. ``refresh_usage`` runs one fetch cycle and reports its outcome.
    """

    def __init__(
        self,
        store: Optional[CredentialStore] = None,
        interval: float = POLL_INTERVAL_SECONDS,
        profile_matcher: Optional[ProfileMatcher] = None,
        api: Optional[UsageApi] = None,
    ) -> None:
        self.store = store or open_store()
        self.api = api or UsageApi(self.store, TokenRefresher(self.store))
        self.state = SharedState()
        self.metrics = Metrics()
        self.poller = Poller(
            self.api,
            self.state,
            interval=interval,
            profile_matcher=profile_matcher,
            metrics=self.metrics,
        )

    def start(self) -> None:
        self.poller.start()

    def stop(self) -> None:
        self.poller.stop()

    def subscribe(self, topic: str, listener: Listener) -> Callable[[], None]:
        return self.state.events.subscribe(topic, listener)

    def get_usage(self) -> Optional[UsageSnapshot]:
        return self.state.get_usage()

    def get_account(self) -> Optional[AccountProfile]:
        return self.state.get_account()

    def get_last_error(self) -> Optional[str]:
        return self.state.get_last_error()

    def refresh_usage(self) -> Tuple[bool, Optional[str]]:
        return self.poller.refresh_usage()

    def health(self) -> dict:
        return health_payload(self.metrics, self.poller.status, self.get_last_error())
