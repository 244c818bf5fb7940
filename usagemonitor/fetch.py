from __future__ import annotations

import dataclasses
import logging
import threading
from typing import Any, Callable, Dict, Optional, TypeVar

import requests

from .config import HTTP_TIMEOUT_SECONDS, OAUTH_BETA_HEADER, PROFILE_URL, USAGE_URL
from .errors import ApiError, NoRefreshToken, ParseFailure, UsageMonitorError
from .keychain import CredentialStore
from .limits import UsageSnapshot, parse_usage_payload
from .models import AccountProfile, format_subscription
from .refresh import TokenRefresher

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class AuthenticatedFetcher:
    """Runs a bearer-authenticated operation, refreshing the token at most once.

    ``op`` receives an access token and either returns a result or raises.
    An ``ApiError`` with ``is_auth_error`` set triggers one refresh and one
    retry; anything else propagates untouched. When recovery is impossible
    the caller sees the original 401, never the refresh failure.
    """

    def __init__(self, store: CredentialStore, refresher: Optional[TokenRefresher] = None) -> None:
        self.store = store
        self.refresher = refresher or TokenRefresher(store)
        self._refresh_lock = threading.Lock()

    def call(self, op: Callable[[str], T]) -> T:
        token = self.store.read_token()
        try:
            return op(token.access_token)
        except ApiError as exc:
            if not exc.is_auth_error:
                raise
            fresh = self._recover(token.access_token)
            if fresh is None:
                raise
        return op(fresh)

    def _recover(self, rejected: str) -> Optional[str]:
        # Serialized so the poller and an on-demand caller that both hit a
        # 401 spend the refresh token only once between them.
        with self._refresh_lock:
            try:
                current = self.store.read_token()
            except UsageMonitorError as exc:
                LOGGER.warning("Cannot re-read credentials after auth error: %s", exc)
                return None
            if current.access_token and current.access_token != rejected:
                LOGGER.info("Access token was rotated by another caller; retrying with it")
                return current.access_token
            try:
                if not current.refresh_token:
                    raise NoRefreshToken("No refresh token found")
                refreshed = self.refresher.refresh(current.refresh_token)
            except UsageMonitorError as exc:
                LOGGER.warning("Unable to recover from auth error: %s", exc)
                return None
            LOGGER.debug("Retrying request with refreshed token")
            return refreshed.access_token


def bearer_headers(access_token: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {access_token}",
        "anthropic-beta": OAUTH_BETA_HEADER,
    }


class UsageApi:
    def __init__(
        self,
        store: CredentialStore,
        refresher: Optional[TokenRefresher] = None,
        usage_url: str = USAGE_URL,
        profile_url: str = PROFILE_URL,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ) -> None:
        self.store = store
        self.fetcher = AuthenticatedFetcher(store, refresher)
        self.usage_url = usage_url
        self.profile_url = profile_url
        self.timeout = timeout

    def _get_json(self, url: str, access_token: str) -> Any:
        try:
            resp = requests.get(url, headers=bearer_headers(access_token), timeout=self.timeout)
        except requests.RequestException as exc:
            raise ApiError(f"Request failed: {exc}") from exc
        if not 200 <= resp.status_code < 300:
            status = f"{resp.status_code} {resp.reason or ''}".strip()
            raise ApiError(f"API returned status: {status}", status=resp.status_code)
        try:
            return resp.json()
        except ValueError as exc:
            raise ParseFailure(f"Failed to parse response: {exc}") from exc

    def fetch_usage(self) -> UsageSnapshot:
        return self.fetcher.call(lambda token: parse_usage_payload(self._get_json(self.usage_url, token)))

    def fetch_profile(self) -> AccountProfile:
        return self.fetcher.call(lambda token: AccountProfile.from_payload(self._get_json(self.profile_url, token)))

    def fetch_account(self) -> AccountProfile:
        """Profile from the API plus the plan label from the stored token."""
        profile = self.fetch_profile()
        try:
            token = self.store.read_token()
        except UsageMonitorError as exc:
            LOGGER.debug("Subscription label unavailable: %s", exc)
            return profile
        return dataclasses.replace(
            profile,
            subscription=format_subscription(token.subscription_type, token.rate_limit_tier),
        )
