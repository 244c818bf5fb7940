from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Tuple

import requests

from .config import HTTP_TIMEOUT_SECONDS, OAUTH_TOKEN_URL
from .errors import CredentialStoreError, NoCredentials, ParseFailure, RefreshError
from .keychain import CredentialStore, token_from_record
from .models import OAuthToken, now_ms

LOGGER = logging.getLogger(__name__)


class TokenRefresher:
    """Exchanges a refresh token for a new token pair and stores the result.

    The token endpoint only returns the new pair and its lifetime. Scopes,
    subscription type, rate-limit tier and any unknown token keys are carried
    over from whatever the store holds at the time of the refresh.
    """

    def __init__(
        self,
        store: CredentialStore,
        token_url: str = OAUTH_TOKEN_URL,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.token_url = token_url
        self.timeout = timeout
        self._clock = clock

    def refresh(self, refresh_token: str) -> OAuthToken:
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        try:
            resp = requests.post(
                self.token_url,
                data=payload,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise RefreshError(None, str(exc)) from exc

        if not 200 <= resp.status_code < 300:
            raise RefreshError(resp.status_code, resp.text or "")

        access_token, new_refresh_token, expires_in = _parse_token_response(resp)

        record, current = self._current_token()
        token = OAuthToken(
            access_token=access_token,
            refresh_token=new_refresh_token,
            expires_at=self._clock() + expires_in * 1000,
            scopes=list(current.scopes) if current.scopes is not None else None,
            subscription_type=current.subscription_type,
            rate_limit_tier=current.rate_limit_tier,
            extra=dict(current.extra),
        )

        if record is None:
            LOGGER.warning("Refreshed token kept in memory only; the stored record could not be read")
            return token
        try:
            self.store.write_token(token, record)
        except CredentialStoreError as exc:
            LOGGER.error("Unable to persist refreshed token: %s", exc)
        else:
            LOGGER.info("OAuth token refreshed; expires in %ss", expires_in)
        return token

    def _current_token(self) -> Tuple[Optional[Dict[str, Any]], OAuthToken]:
        """Return the stored record and its token.

        The record is None when the store could not be read at all, which
        tells the caller not to write anything back over it.
        """
        try:
            record = self.store.read_record()
        except NoCredentials:
            return {}, OAuthToken.empty()
        except (CredentialStoreError, ParseFailure) as exc:
            LOGGER.warning("Unable to read stored credentials during refresh: %s", exc)
            return None, OAuthToken.empty()
        try:
            return record, token_from_record(record)
        except (NoCredentials, ParseFailure):
            return record, OAuthToken.empty()


def _parse_token_response(resp: requests.Response) -> Tuple[str, str, int]:
    try:
        data = resp.json()
    except ValueError as exc:
        raise ParseFailure(f"Failed to parse token response: {exc}") from exc
    if not isinstance(data, dict):
        raise ParseFailure("Failed to parse token response: body is not an object")
    access_token = data.get("access_token")
    refresh_token = data.get("refresh_token")
    expires_in = data.get("expires_in")
    if not isinstance(access_token, str) or not access_token:
        raise ParseFailure("Failed to parse token response: missing access_token")
    if not isinstance(refresh_token, str) or not refresh_token:
        raise ParseFailure("Failed to parse token response: missing refresh_token")
    if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)):
        raise ParseFailure("Failed to parse token response: missing expires_in")
    return access_token, refresh_token, int(expires_in)
