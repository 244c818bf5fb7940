"""Tests for the authenticated fetch protocol and the usage/profile API."""

from __future__ import annotations

import logging
import threading
from unittest.mock import MagicMock, patch

import pytest
import requests

from usagemonitor.errors import ApiError, NoCredentials, ParseFailure, RefreshError
from usagemonitor.fetch import AuthenticatedFetcher, UsageApi
from usagemonitor.models import OAuthToken
from usagemonitor.poller import Poller
from usagemonitor.refresh import TokenRefresher
from usagemonitor.state import SharedState

USAGE_URL = "https://api.example.test/api/oauth/usage"
PROFILE_URL = "https://api.example.test/api/oauth/profile"


def _record(access="A1", refresh="R1", **extra):
    oauth = {"accessToken": access}
    if refresh is not None:
        oauth["refreshToken"] = refresh
    oauth.update(extra)
    return {"claudeAiOauth": oauth}


def _auth_error():
    return ApiError("API returned status: 401 Unauthorized", status=401)


class RotatingRefresher:
    """Refresher double that writes a new access token to the store."""

    def __init__(self, store, new_access="A2", error=None):
        self.store = store
        self.new_access = new_access
        self.error = error
        self.calls = []

    def refresh(self, refresh_token):
        self.calls.append(refresh_token)
        if self.error is not None:
            raise self.error
        token = OAuthToken(access_token=self.new_access, refresh_token="R2")
        self.store.write_token(token)
        return token


class TestAuthenticatedFetcher:
    def test_success_needs_no_refresh(self, make_store):
        store = make_store(_record())
        refresher = RotatingRefresher(store)
        fetcher = AuthenticatedFetcher(store, refresher)

        assert fetcher.call(lambda token: f"ok:{token}") == "ok:A1"
        assert refresher.calls == []

    def test_no_credentials(self, make_store):
        fetcher = AuthenticatedFetcher(make_store(None), MagicMock())
        with pytest.raises(NoCredentials):
            fetcher.call(lambda token: token)

    def test_401_refreshes_once_and_returns_retry(self, make_store):
        store = make_store(_record())
        refresher = RotatingRefresher(store)
        seen = []

        def op(token):
            seen.append(token)
            if token == "A1":
                raise _auth_error()
            return {"five_hour": {"utilization": 42.0}}

        result = AuthenticatedFetcher(store, refresher).call(op)

        assert result == {"five_hour": {"utilization": 42.0}}
        assert seen == ["A1", "A2"]
        assert refresher.calls == ["R1"]

    def test_missing_refresh_token_surfaces_original_error(self, make_store, caplog):
        store = make_store(_record(refresh=None))
        refresher = RotatingRefresher(store)
        original = _auth_error()

        def op(token):
            raise original

        with caplog.at_level(logging.WARNING, logger="usagemonitor.fetch"):
            with pytest.raises(ApiError) as excinfo:
                AuthenticatedFetcher(store, refresher).call(op)

        assert excinfo.value is original
        assert refresher.calls == []
        assert "No refresh token found" in caplog.text

    def test_failed_refresh_surfaces_original_error(self, make_store):
        store = make_store(_record())
        refresher = RotatingRefresher(store, error=RefreshError(400, "invalid_grant"))
        original = _auth_error()

        def op(token):
            raise original

        with pytest.raises(ApiError) as excinfo:
            AuthenticatedFetcher(store, refresher).call(op)

        assert excinfo.value is original
        assert refresher.calls == ["R1"]

    def test_second_401_is_final(self, make_store):
        store = make_store(_record())
        refresher = RotatingRefresher(store)
        calls = []

        def op(token):
            calls.append(token)
            raise ApiError("API returned status: 401 Unauthorized", status=401)

        with pytest.raises(ApiError) as excinfo:
            AuthenticatedFetcher(store, refresher).call(op)

        assert excinfo.value.is_auth_error
        assert calls == ["A1", "A2"]
        assert refresher.calls == ["R1"]

    @pytest.mark.parametrize("error", [ApiError("API returned status: 500", status=500), ApiError("Request failed: timeout"), ParseFailure("bad body")])
    def test_other_errors_are_not_retried(self, make_store, error):
        store = make_store(_record())
        refresher = RotatingRefresher(store)
        calls = []

        def op(token):
            calls.append(token)
            raise error

        with pytest.raises(type(error)):
            AuthenticatedFetcher(store, refresher).call(op)

        assert calls == ["A1"]
        assert refresher.calls == []

    def test_token_rotated_elsewhere_is_reused(self, make_store):
        store = make_store(_record())
        refresher = RotatingRefresher(store)

        def op(token):
            if token == "A1":
                # another caller finished a refresh while this request was in flight
                store.write_token(OAuthToken(access_token="A9", refresh_token="R9"))
                raise _auth_error()
            return token

        assert AuthenticatedFetcher(store, refresher).call(op) == "A9"
        assert refresher.calls == []

    def test_concurrent_auth_failures_refresh_once(self, make_store):
        store = make_store(_record())
        refresher = RotatingRefresher(store)
        fetcher = AuthenticatedFetcher(store, refresher)
        barrier = threading.Barrier(2)
        results = []

        def op(token):
            if token == "A1":
                barrier.wait(timeout=5)
                raise _auth_error()
            return token

        threads = [threading.Thread(target=lambda: results.append(fetcher.call(op))) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert results == ["A2", "A2"]
        assert refresher.calls == ["R1"]


class TestUsageApi:
    def _api(self, store, refresher=None):
        return UsageApi(store, refresher, usage_url=USAGE_URL, profile_url=PROFILE_URL, timeout=7)

    @patch("usagemonitor.fetch.requests.get")
    def test_usage_request_headers(self, mock_get, make_store, make_response):
        mock_get.return_value = make_response(200, {"five_hour": {"utilization": 10.0, "resets_at": "2030-01-01T00:00:00Z"}})
        usage = self._api(make_store(_record())).fetch_usage()

        mock_get.assert_called_once_with(
            USAGE_URL,
            headers={"Authorization": "Bearer A1", "anthropic-beta": "oauth-2025-04-20"},
            timeout=7,
        )
        assert usage.window("five_hour").utilization == 10.0
        assert usage.window("five_hour").resets_at == "2030-01-01T00:00:00Z"

    @patch("usagemonitor.fetch.requests.get")
    def test_non_auth_status(self, mock_get, make_store, make_response):
        mock_get.return_value = make_response(500, {"error": "boom"})
        with pytest.raises(ApiError, match="500 Internal Server Error") as excinfo:
            self._api(make_store(_record())).fetch_usage()
        assert excinfo.value.status == 500
        assert not excinfo.value.is_auth_error

    @patch("usagemonitor.fetch.requests.get")
    def test_transport_failure(self, mock_get, make_store):
        mock_get.side_effect = requests.Timeout("read timed out")
        with pytest.raises(ApiError, match="Request failed"):
            self._api(make_store(_record())).fetch_usage()

    @patch("usagemonitor.fetch.requests.get")
    def test_unparseable_body(self, mock_get, make_store, make_response):
        mock_get.return_value = make_response(200, None, text="<html>")
        with pytest.raises(ParseFailure):
            self._api(make_store(_record())).fetch_usage()

    @patch("usagemonitor.fetch.requests.get")
    def test_account_gets_subscription_from_credentials(self, mock_get, make_store, make_response):
        mock_get.return_value = make_response(
            200,
            {"account": {"email": "dev@example.com", "display_name": "Dev", "full_name": "Dev Eloper"}},
        )
        store = make_store(_record(subscriptionType="max", rateLimitTier="default_claude_max_5x"))

        account = self._api(store).fetch_account()

        assert account.email == "dev@example.com"
        assert account.display_name == "Dev"
        assert account.full_name == "Dev Eloper"
        assert account.subscription == "Max 5x"

    @patch("usagemonitor.fetch.requests.get")
    def test_profile_without_account(self, mock_get, make_store, make_response):
        mock_get.return_value = make_response(200, {"organization": {}})
        with pytest.raises(ParseFailure):
            self._api(make_store(_record())).fetch_profile()


@patch("usagemonitor.refresh.requests.post")
@patch("usagemonitor.fetch.requests.get")
def test_expired_token_refresh_scenario(mock_get, mock_post, make_store, make_response):
    store = make_store({"claudeAiOauth": {"accessToken": "A1", "refreshToken": "R1"}})

    def fake_get(url, headers, timeout):
        if headers["Authorization"] == "Bearer A1":
            return make_response(401, {"error": "expired"})
        return make_response(200, {"five_hour": {"utilization": 42.0}})

    mock_get.side_effect = fake_get
    mock_post.return_value = make_response(200, {"access_token": "A2", "refresh_token": "R2", "expires_in": 3600})

    api = UsageApi(store, TokenRefresher(store, token_url="https://auth.example.test/token"))
    state = SharedState()
    state.set_error("API returned status: 401 Unauthorized")

    assert Poller(api, state).tick()

    usage = state.get_usage()
    assert usage.to_dict() == {"five_hour": {"utilization": 42.0, "resets_at": None}}
    assert state.get_last_error() is None
    assert mock_post.call_count == 1
    oauth = store.record["claudeAiOauth"]
    assert oauth["accessToken"] == "A2"
    assert oauth["refreshToken"] == "R2"
