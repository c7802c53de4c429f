"""Candidate email retrieval from Gmail.

This module turns an owner's mailbox into a stream of RawEmail values for
the sync orchestrator:
- One recall-oriented subject query covering acknowledgement, interview,
  rejection and offer phrasing (false positives are weeded out by the
  extractor's confidence gate)
- A time bound from the owner's watermark
- Message ids listed once, then each message fetched lazily

Usage:
    from jobtracker.mail.messages import MailSource

    source = MailSource(config.google, config.sync)
    for email in source.fetch_candidate_emails(account.credential, account.last_sync_at):
        print(email.subject)
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from jobtracker.auth.google_oauth import GoogleAuth
from jobtracker.config_schema import GoogleConfig, SyncConfig
from jobtracker.core.logging import get_logger
from jobtracker.mail.body import extract_body, get_header
from jobtracker.mail.client import GmailClient

logger = get_logger(__name__)

SUBJECT_PHRASES = (
    "application received",
    "thank you for applying",
    "we received your application",
    "application confirmed",
    "your application to",
    "application for",
    "we'd like to schedule",
    "interview invitation",
    "moving forward",
    "unfortunately",
    "not moving forward",
    "offer of employment",
)


@dataclass(frozen=True)
class RawEmail:
    """One candidate email as read from the mailbox.

    Attributes:
        sender: Raw From header (e.g. "Sarah <sarah@atlassian.com>")
        to: Raw To header
        subject: Subject header
        date: Raw Date header (RFC 2822)
        body: Decoded, truncated body text
        message_id: Gmail message id
        conversation_id: Gmail thread id
    """

    sender: str
    to: str
    subject: str
    date: str
    body: str
    message_id: str
    conversation_id: str | None = None


def build_search_query(watermark: datetime | None, lookback_days: int = 90) -> str:
    """Build the Gmail search query for candidate emails.

    Args:
        watermark: Last successful sync, or None for a first sync
        lookback_days: Window used when there is no watermark

    Returns:
        Gmail ``q`` string, e.g. ``(subject:(...) OR ...) after:2025/01/31``
    """
    clauses = " OR ".join(f"subject:({phrase})" for phrase in SUBJECT_PHRASES)
    query = f"({clauses})"

    # Gmail's after: operator is day-granular
    if watermark is not None:
        query += f" after:{watermark.strftime('%Y/%m/%d')}"
    else:
        query += f" newer_than:{lookback_days}d"

    return query


def parse_message(message: dict[str, Any], max_chars: int = 2000) -> RawEmail | None:
    """Convert a users.messages.get response into a RawEmail.

    Returns:
        RawEmail, or None if the payload is malformed
    """
    try:
        payload = message["payload"]
        headers = payload.get("headers") or []
        return RawEmail(
            sender=get_header(headers, "From"),
            to=get_header(headers, "To"),
            subject=get_header(headers, "Subject"),
            date=get_header(headers, "Date"),
            body=extract_body(payload, max_chars=max_chars),
            message_id=message["id"],
            conversation_id=message.get("threadId"),
        )
    except (KeyError, TypeError, AttributeError) as e:
        logger.debug("Dropping unparseable message", message_id=message.get("id"), error=str(e))
        return None


class MailSource:
    """Fetches candidate job-application emails for one credential at a time.

    A fresh GoogleAuth and GmailClient are built for every fetch, so no token
    state is shared between owners.
    """

    def __init__(
        self,
        google: GoogleConfig,
        sync: SyncConfig,
        client_factory: Callable[[str], GmailClient] | None = None,
    ):
        """Initialize the mail source.

        Args:
            google: OAuth client configuration
            sync: Sync limits (lookback, max results, body length)
            client_factory: Builds a GmailClient for a refresh token (tests
                inject fakes here)
        """
        self.google = google
        self.sync = sync
        self._client_factory = client_factory or self._default_client

    def _default_client(self, credential: str) -> GmailClient:
        return GmailClient(GoogleAuth.from_config(self.google, refresh_token=credential))

    def fetch_candidate_emails(
        self,
        credential: str,
        since: datetime | None,
    ) -> Iterator[RawEmail]:
        """List candidate messages and return a lazy iterator over them.

        Listing happens before this returns, so credential and transport
        problems surface here. Each message body is fetched when the
        iterator reaches it; a transport failure at that point propagates
        from the iterator. Messages that cannot be parsed are dropped.

        Args:
            credential: The owner's Gmail refresh token
            since: Watermark bounding the search, or None

        Raises:
            AuthenticationError: If the credential is rejected
            MailTransportError: If Gmail cannot be reached
        """
        client = self._client_factory(credential)
        query = build_search_query(since, self.sync.lookback_days)
        message_ids = client.list_message_ids(query, max_results=self.sync.max_results)

        logger.info(
            "candidate_emails_listed",
            count=len(message_ids),
            incremental=since is not None,
        )

        return self._iter_messages(client, message_ids)

    def _iter_messages(self, client: GmailClient, message_ids: list[str]) -> Iterator[RawEmail]:
        for message_id in message_ids:
            message = client.get_message(message_id)
            email = parse_message(message, max_chars=self.sync.body_max_chars)
            if email is not None:
                yield email
