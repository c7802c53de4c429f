"""Tests for the Gmail REST client and the Google token exchange.

HTTP is mocked at the requests.Session level; retry sleeps are patched out.
"""

from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import requests

from jobtracker.auth.google_oauth import GoogleAuth
from jobtracker.config_schema import AppConfig
from jobtracker.core.errors import AuthenticationError, MailTransportError, RateLimitExceeded
from jobtracker.mail.client import GmailClient

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _response(
    status_code: int = 200,
    payload: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload if payload is not None else {}
    response.headers = headers or {}
    response.text = ""
    return response


def _gmail_error(status_code: int, reason: str, message: str = "error") -> MagicMock:
    return _response(
        status_code,
        {"error": {"code": status_code, "message": message, "errors": [{"reason": reason}]}},
    )


@pytest.fixture
def auth() -> MagicMock:
    mock_auth = MagicMock(spec=GoogleAuth)
    mock_auth.get_access_token.return_value = "access-token"
    return mock_auth


@pytest.fixture
def session() -> MagicMock:
    return MagicMock(spec=requests.Session)


@pytest.fixture
def client(auth: MagicMock, session: MagicMock) -> GmailClient:
    return GmailClient(auth, session=session, retry_delays=[0.0, 0.0, 0.0])


@pytest.fixture(autouse=True)
def no_sleep():
    # Both modules call time.sleep through the shared time module
    with patch("time.sleep") as mock_sleep:
        yield mock_sleep


# ---------------------------------------------------------------------------
# GmailClient
# ---------------------------------------------------------------------------


class TestGmailClient:
    def test_list_message_ids(self, client: GmailClient, session: MagicMock) -> None:
        session.request.return_value = _response(
            200, {"messages": [{"id": "a", "threadId": "t"}, {"id": "b", "threadId": "t"}]}
        )

        assert client.list_message_ids("subject:(offer)", max_results=50) == ["a", "b"]

        kwargs = session.request.call_args.kwargs
        assert kwargs["method"] == "GET"
        assert kwargs["url"].endswith("/gmail/v1/users/me/messages")
        assert kwargs["params"] == {"q": "subject:(offer)", "maxResults": 50}
        assert kwargs["headers"]["Authorization"] == "Bearer access-token"

    def test_list_with_no_results(self, client: GmailClient, session: MagicMock) -> None:
        session.request.return_value = _response(200, {"resultSizeEstimate": 0})
        assert client.list_message_ids("q") == []

    def test_get_message_requests_full_format(
        self, client: GmailClient, session: MagicMock
    ) -> None:
        session.request.return_value = _response(200, {"id": "abc"})

        assert client.get_message("abc") == {"id": "abc"}
        kwargs = session.request.call_args.kwargs
        assert kwargs["url"].endswith("/messages/abc")
        assert kwargs["params"] == {"format": "full"}

    def test_retries_server_errors(self, client: GmailClient, session: MagicMock) -> None:
        session.request.side_effect = [
            _response(503),
            _response(500),
            _response(200, {"messages": []}),
        ]

        assert client.list_message_ids("q") == []
        assert session.request.call_count == 3

    def test_persistent_server_error_raises_transport_error(
        self, client: GmailClient, session: MagicMock
    ) -> None:
        session.request.return_value = _gmail_error(500, "backendError")

        with pytest.raises(MailTransportError) as exc_info:
            client.list_message_ids("q")

        assert exc_info.value.status_code == 500
        assert exc_info.value.error_code == "backendError"
        assert session.request.call_count == client.max_retries + 1

    def test_honors_retry_after(
        self, client: GmailClient, session: MagicMock, no_sleep: MagicMock
    ) -> None:
        session.request.side_effect = [
            _response(429, headers={"Retry-After": "10"}),
            _response(200, {"messages": []}),
        ]

        client.list_message_ids("q")

        delay = no_sleep.call_args.args[0]
        assert 8.0 <= delay <= 12.0

    def test_persistent_429_raises_rate_limit(
        self, client: GmailClient, session: MagicMock
    ) -> None:
        session.request.return_value = _gmail_error(429, "rateLimitExceeded")

        with pytest.raises(RateLimitExceeded):
            client.get_message("abc")

    def test_401_refreshes_token_once(
        self, client: GmailClient, session: MagicMock, auth: MagicMock
    ) -> None:
        session.request.side_effect = [_response(401), _response(200, {"id": "abc"})]

        assert client.get_message("abc") == {"id": "abc"}
        auth.invalidate.assert_called_once()

    def test_repeated_401_raises_authentication_error(
        self, client: GmailClient, session: MagicMock, auth: MagicMock
    ) -> None:
        session.request.return_value = _gmail_error(401, "authError", "Invalid Credentials")

        with pytest.raises(AuthenticationError):
            client.get_message("abc")
        assert session.request.call_count == 2

    def test_403_is_authentication_error(self, client: GmailClient, session: MagicMock) -> None:
        session.request.return_value = _gmail_error(403, "insufficientPermissions")

        with pytest.raises(AuthenticationError, match="403"):
            client.list_message_ids("q")
        assert session.request.call_count == 1

    def test_404_is_not_retried(self, client: GmailClient, session: MagicMock) -> None:
        session.request.return_value = _gmail_error(404, "notFound")

        with pytest.raises(MailTransportError) as exc_info:
            client.get_message("gone")
        assert exc_info.value.status_code == 404
        assert session.request.call_count == 1

    def test_connection_errors_retry_then_raise(
        self, client: GmailClient, session: MagicMock
    ) -> None:
        session.request.side_effect = requests.exceptions.ConnectionError("no route")

        with pytest.raises(MailTransportError, match="Connection to Gmail failed"):
            client.list_message_ids("q")
        assert session.request.call_count == client.max_retries + 1

    def test_timeout_then_success(self, client: GmailClient, session: MagicMock) -> None:
        session.request.side_effect = [
            requests.exceptions.Timeout(),
            _response(200, {"messages": [{"id": "a"}]}),
        ]

        assert client.list_message_ids("q") == ["a"]


# ---------------------------------------------------------------------------
# GoogleAuth
# ---------------------------------------------------------------------------


class TestGoogleAuth:
    def _auth(self, session: MagicMock) -> GoogleAuth:
        return GoogleAuth("client-id", "client-secret", "refresh-token", session=session)

    def test_requires_secret_and_token(self) -> None:
        with pytest.raises(AuthenticationError, match="client secret"):
            GoogleAuth("client-id", "", "refresh-token")
        with pytest.raises(AuthenticationError, match="refresh token"):
            GoogleAuth("client-id", "secret", "")

    def test_from_config_reads_secret_from_env(
        self, sample_config: AppConfig, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "from-env")
        auth = GoogleAuth.from_config(sample_config.google, refresh_token="rt")
        assert auth.client_id == sample_config.google.client_id
        assert auth.token_uri == "https://oauth2.googleapis.com/token"

    def test_from_config_without_secret_fails(
        self, sample_config: AppConfig, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("GOOGLE_CLIENT_SECRET", raising=False)
        with pytest.raises(AuthenticationError):
            GoogleAuth.from_config(sample_config.google, refresh_token="rt")

    def test_exchanges_and_caches_token(self, session: MagicMock) -> None:
        session.post.return_value = _response(200, {"access_token": "at-1", "expires_in": 3600})
        auth = self._auth(session)

        assert auth.get_access_token() == "at-1"
        assert auth.get_access_token() == "at-1"
        session.post.assert_called_once()

        data = session.post.call_args.kwargs["data"]
        assert data["grant_type"] == "refresh_token"
        assert data["refresh_token"] == "refresh-token"

    def test_invalidate_forces_refresh(self, session: MagicMock) -> None:
        session.post.side_effect = [
            _response(200, {"access_token": "at-1", "expires_in": 3600}),
            _response(200, {"access_token": "at-2", "expires_in": 3600}),
        ]
        auth = self._auth(session)

        auth.get_access_token()
        auth.invalidate()

        assert auth.get_access_token() == "at-2"

    def test_invalid_grant_is_authentication_error(self, session: MagicMock) -> None:
        session.post.return_value = _response(
            400, {"error": "invalid_grant", "error_description": "Token has been revoked."}
        )

        with pytest.raises(AuthenticationError, match="invalid_grant"):
            self._auth(session).get_access_token()
        session.post.assert_called_once()

    def test_server_errors_retry_then_transport_error(self, session: MagicMock) -> None:
        session.post.return_value = _response(503)

        with pytest.raises(MailTransportError):
            self._auth(session).get_access_token()
        assert session.post.call_count == 3

    def test_network_error_then_success(self, session: MagicMock) -> None:
        session.post.side_effect = [
            requests.exceptions.ConnectionError("reset"),
            _response(200, {"access_token": "at-1"}),
        ]

        assert self._auth(session).get_access_token() == "at-1"
