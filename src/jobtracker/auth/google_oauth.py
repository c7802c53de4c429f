"""Google OAuth2 refresh-token exchange for Gmail API access.

The web layer (outside this package) runs the consent flow and stores each
owner's refresh token in the users table. This module only exchanges that
stored refresh token for short-lived access tokens.

Key features:
- One GoogleAuth per owner credential, built per sync run
- Access token cached until shortly before expiry
- Retry with jittered backoff on network errors and 5xx responses
- Revoked or expired refresh tokens surface as AuthenticationError

Usage:
    from jobtracker.auth.google_oauth import GoogleAuth
    from jobtracker.config import get_config

    config = get_config()
    auth = GoogleAuth.from_config(config.google, refresh_token=account.credential)

    token = auth.get_access_token()
"""

import os
import random
import threading
import time

import requests

from jobtracker.config_schema import GoogleConfig
from jobtracker.core.errors import AuthenticationError, MailTransportError
from jobtracker.core.logging import get_logger

logger = get_logger(__name__)

# Retry configuration for token endpoint calls
TOKEN_MAX_RETRIES = 3
TOKEN_RETRY_DELAYS = [1.0, 2.0, 4.0]

# Refresh this many seconds before Google's stated expiry
EXPIRY_SKEW_SECONDS = 60


class GoogleAuth:
    """Exchanges one stored Gmail refresh token for access tokens.

    Attributes:
        client_id: Google OAuth client ID
        token_uri: Google OAuth2 token endpoint

    Security notes:
        - The refresh token and client secret are never logged
        - Access tokens live in memory only, for the lifetime of this object
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        token_uri: str = "https://oauth2.googleapis.com/token",
        session: requests.Session | None = None,
    ):
        """Initialize the token exchanger.

        Args:
            client_id: Google OAuth client ID
            client_secret: Google OAuth client secret
            refresh_token: The owner's stored refresh token
            token_uri: Token endpoint URL
            session: Optional requests session (shared with GmailClient)

        Raises:
            AuthenticationError: If the client secret or refresh token is missing
        """
        if not client_secret:
            raise AuthenticationError(
                "Google client secret is not set. "
                "Add GOOGLE_CLIENT_SECRET to your .env file (or the variable named by "
                "google.client_secret_env in config.yaml)."
            )
        if not refresh_token:
            raise AuthenticationError(
                "No Gmail refresh token stored for this owner. Reconnect Gmail to continue."
            )

        self.client_id = client_id
        self.token_uri = token_uri
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._session = session or requests.Session()
        self._access_token: str | None = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, google: GoogleConfig, refresh_token: str) -> "GoogleAuth":
        """Build from the google config section, reading the secret from the environment."""
        return cls(
            client_id=google.client_id,
            client_secret=os.environ.get(google.client_secret_env, ""),
            refresh_token=refresh_token,
            token_uri=google.token_uri,
        )

    def get_access_token(self) -> str:
        """Return a valid access token, refreshing it when needed.

        Raises:
            AuthenticationError: If Google rejects the refresh token
            MailTransportError: If the token endpoint is unreachable or failing
        """
        with self._lock:
            if self._access_token and time.time() < self._expires_at:
                return self._access_token

            token_data = self._request_token_with_retry()
            self._access_token = token_data["access_token"]
            expires_in = int(token_data.get("expires_in", 3600))
            self._expires_at = time.time() + max(expires_in - EXPIRY_SKEW_SECONDS, 0)

            logger.debug("access_token_refreshed", expires_in=expires_in)
            return self._access_token

    def invalidate(self) -> None:
        """Drop the cached access token so the next call refreshes."""
        with self._lock:
            self._access_token = None
            self._expires_at = 0.0

    def _request_token_with_retry(self) -> dict:
        last_error: Exception | None = None

        for attempt in range(TOKEN_MAX_RETRIES):
            try:
                response = self._session.post(
                    self.token_uri,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self._client_secret,
                        "refresh_token": self._refresh_token,
                        "grant_type": "refresh_token",
                    },
                    timeout=30.0,
                )
            except requests.exceptions.RequestException as e:
                last_error = e
            else:
                if response.status_code < 400:
                    token_data = response.json()
                    if "access_token" not in token_data:
                        raise AuthenticationError(
                            "Google token response did not include an access token. "
                            "Reconnect Gmail to issue a new refresh token."
                        )
                    return token_data

                if response.status_code < 500:
                    self._raise_for_rejection(response)

                last_error = MailTransportError(
                    f"Google token endpoint returned {response.status_code}",
                    status_code=response.status_code,
                )

            if attempt < TOKEN_MAX_RETRIES - 1:
                delay = TOKEN_RETRY_DELAYS[attempt]
                jitter = delay * 0.2 * (2 * random.random() - 1)
                actual_delay = delay + jitter
                logger.warning(
                    "Token refresh failed, retrying",
                    attempt=attempt + 1,
                    max_retries=TOKEN_MAX_RETRIES,
                    delay=actual_delay,
                    error=str(last_error),
                )
                time.sleep(actual_delay)

        logger.error(
            "Token refresh failed after retries",
            max_retries=TOKEN_MAX_RETRIES,
            error=str(last_error),
        )
        raise MailTransportError(
            f"Failed to refresh Gmail access token after {TOKEN_MAX_RETRIES} attempts: "
            f"{last_error}. Check your network connection; the next sync will retry.",
            status_code=getattr(last_error, "status_code", None),
        ) from last_error

    def _raise_for_rejection(self, response: requests.Response) -> None:
        """Map a 4xx token response to AuthenticationError."""
        try:
            payload = response.json()
            error = payload.get("error", "unknown_error")
            description = payload.get("error_description", "")
        except ValueError:
            error = "unknown_error"
            description = response.text[:200]

        logger.error(
            "Token refresh rejected",
            status_code=response.status_code,
            error=error,
            description=description,
        )

        if error == "invalid_grant":
            raise AuthenticationError(
                "Gmail refresh token was revoked or has expired (invalid_grant). "
                "The owner must reconnect Gmail."
            )
        if error == "invalid_client":
            raise AuthenticationError(
                "Google rejected the OAuth client credentials (invalid_client). "
                "Check google.client_id in config.yaml and GOOGLE_CLIENT_SECRET in .env."
            )
        raise AuthenticationError(f"Gmail token refresh failed ({error}): {description}")
