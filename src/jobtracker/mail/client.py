"""Gmail REST API client with retry logic and error handling.

This module provides a blocking HTTP client for the Gmail v1 API, including:
- Automatic retry with exponential backoff for transient errors
- Proper handling of rate limits (429 responses, Retry-After)
- Proactive token-bucket rate limiting
- Mapping of HTTP failures onto the package's error taxonomy

The client is blocking (requests); the sync orchestrator drives it from a
worker thread via asyncio.to_thread.

Usage:
    from jobtracker.auth import GoogleAuth
    from jobtracker.mail.client import GmailClient

    auth = GoogleAuth(client_id, client_secret, refresh_token)
    client = GmailClient(auth)

    ids = client.list_message_ids("subject:(interview invitation)", max_results=100)
    message = client.get_message(ids[0])
"""

import random
import time
from typing import Any

import requests

from jobtracker.auth.google_oauth import GoogleAuth
from jobtracker.core.errors import (
    AuthenticationError,
    MailTransportError,
    RateLimitExceeded,
)
from jobtracker.core.logging import get_logger
from jobtracker.core.rate_limiter import get_bucket

logger = get_logger(__name__)

# Gmail API base URL (the authenticated user is always "me")
GMAIL_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"

# Default retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS = [1.0, 2.0, 4.0]

# Gmail allows 250 quota units per user per second; messages.get costs 5.
# 5 req/sec keeps a full 100-message sync well inside the quota.
GMAIL_RATE = 5.0
GMAIL_CAPACITY = 5


class GmailClient:
    """Gmail API client with retry logic and error handling.

    Attributes:
        auth: GoogleAuth instance for the owner's access token
        base_url: Gmail API base URL
        max_retries: Maximum number of retry attempts
        retry_delays: List of delay times (seconds) for each retry
    """

    def __init__(
        self,
        auth: GoogleAuth,
        base_url: str = GMAIL_BASE_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: list[float] | None = None,
        session: requests.Session | None = None,
    ):
        self.auth = auth
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delays = retry_delays or DEFAULT_RETRY_DELAYS
        self.session = session or requests.Session()

        self._rate_bucket = get_bucket(
            name="gmail_api",
            rate=GMAIL_RATE,
            capacity=GMAIL_CAPACITY,
        )

    def _get_headers(self) -> dict[str, str]:
        token = self.auth.get_access_token()
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }

    def _make_url(self, endpoint: str) -> str:
        if endpoint.startswith("http"):
            return endpoint
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        return self.base_url + endpoint

    def _handle_error_response(self, response: requests.Response, endpoint: str) -> None:
        """Raise the error matching a failed Gmail response.

        Raises:
            AuthenticationError: For 401/403
            RateLimitExceeded: For 429 that survived all retries
            MailTransportError: For everything else
        """
        try:
            error_info = response.json().get("error", {})
            errors = error_info.get("errors") or [{}]
            error_code = errors[0].get("reason") or error_info.get("status", "unknown")
            error_message = error_info.get("message", response.text)
        except (ValueError, AttributeError):
            error_code = "unknown"
            error_message = response.text or f"HTTP {response.status_code}"

        logger.error(
            "Gmail API error",
            endpoint=endpoint,
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message[:200],
        )

        if response.status_code == 401:
            raise AuthenticationError(
                f"Gmail rejected the access token (401): {error_message}. "
                "The owner's refresh token may have been revoked; reconnect Gmail."
            )
        if response.status_code == 403:
            raise AuthenticationError(
                f"Gmail access denied (403): {error_message}. "
                "Check that the gmail.readonly scope was granted when connecting."
            )
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "unknown")
            raise RateLimitExceeded(
                f"Gmail rate limit exceeded (429). Retry after: {retry_after} seconds. "
                "The next sync will pick up where this one stopped."
            )
        raise MailTransportError(
            f"Gmail API error ({response.status_code}) on {endpoint}: {error_message}",
            status_code=response.status_code,
            error_code=error_code,
        )

    def _should_retry(self, response: requests.Response, attempt: int) -> bool:
        if attempt >= self.max_retries:
            return False
        return response.status_code == 429 or 500 <= response.status_code < 600

    def _get_retry_delay(self, response: requests.Response | None, attempt: int) -> float:
        """Get the delay before retrying, with ±20% jitter."""
        if response is not None and response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    base_delay = float(retry_after)
                    jitter = base_delay * 0.2 * (2 * random.random() - 1)
                    return base_delay + jitter
                except ValueError:
                    pass

        base_delay = self.retry_delays[min(attempt, len(self.retry_delays) - 1)]
        jitter = base_delay * 0.2 * (2 * random.random() - 1)
        return base_delay + jitter

    def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        timeout: float = 30.0,
    ) -> dict[str, Any]:
        """Make an HTTP request to the Gmail API with retry logic.

        Args:
            method: HTTP method
            endpoint: API endpoint path relative to users/me
            params: URL query parameters
            timeout: Request timeout in seconds

        Returns:
            Parsed JSON response as a dictionary

        Raises:
            AuthenticationError: When the credential is rejected
            MailTransportError: For network failures and non-auth API errors
        """
        url = self._make_url(endpoint)
        last_response = None
        token_refreshed = False

        for attempt in range(self.max_retries + 1):
            try:
                self._rate_bucket.consume_sync()
                headers = self._get_headers()

                logger.debug(
                    "Gmail API request",
                    method=method,
                    endpoint=endpoint,
                    attempt=attempt + 1,
                )

                response = self.session.request(
                    method=method,
                    url=url,
                    headers=headers,
                    params=params,
                    timeout=timeout,
                )
                last_response = response

                if response.status_code < 400:
                    if response.status_code == 204:
                        return {}
                    return response.json()

                # Cached access token may have expired early; refresh once
                if response.status_code == 401 and not token_refreshed:
                    token_refreshed = True
                    self.auth.invalidate()
                    logger.info("Gmail returned 401, refreshing access token", endpoint=endpoint)
                    continue

                if self._should_retry(response, attempt):
                    delay = self._get_retry_delay(response, attempt)
                    logger.warning(
                        "Retrying Gmail API request",
                        method=method,
                        endpoint=endpoint,
                        status_code=response.status_code,
                        attempt=attempt + 1,
                        max_retries=self.max_retries,
                        delay=delay,
                    )
                    time.sleep(delay)
                    continue

                self._handle_error_response(response, endpoint)

            except requests.exceptions.Timeout:
                if attempt < self.max_retries:
                    delay = self._get_retry_delay(None, attempt)
                    logger.warning(
                        "Gmail API request timed out, retrying",
                        endpoint=endpoint,
                        attempt=attempt + 1,
                        delay=delay,
                    )
                    time.sleep(delay)
                    continue
                raise MailTransportError(
                    f"Request to {endpoint} timed out after {timeout}s and "
                    f"{self.max_retries} retries. Gmail may be experiencing issues.",
                ) from None

            except requests.exceptions.ConnectionError as e:
                if attempt < self.max_retries:
                    delay = self._get_retry_delay(None, attempt)
                    logger.warning(
                        "Gmail API connection error, retrying",
                        endpoint=endpoint,
                        attempt=attempt + 1,
                        error=str(e),
                        delay=delay,
                    )
                    time.sleep(delay)
                    continue
                raise MailTransportError(
                    f"Connection to Gmail failed: {e}. Check your internet connection.",
                ) from e

        if last_response is not None:
            self._handle_error_response(last_response, endpoint)

        raise MailTransportError(f"Request to {endpoint} failed after {self.max_retries} retries")

    def get(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        timeout: float = 30.0,
    ) -> dict[str, Any]:
        """Make a GET request to the Gmail API."""
        return self.request("GET", endpoint, params=params, timeout=timeout)

    def list_message_ids(self, query: str, max_results: int = 100) -> list[str]:
        """List ids of messages matching a Gmail search query.

        Only the first page is read; ``max_results`` caps the result.
        """
        data = self.get("/messages", params={"q": query, "maxResults": max_results})
        return [m["id"] for m in data.get("messages") or [] if m.get("id")]

    def get_message(self, message_id: str) -> dict[str, Any]:
        """Fetch one message with headers and the full MIME payload."""
        return self.get(f"/messages/{message_id}", params={"format": "full"})
