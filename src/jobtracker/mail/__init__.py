"""Gmail mail source module.

Provides everything needed to turn an owner's Gmail refresh token into a
stream of candidate job-application emails:
- Base client with retry logic and error handling
- Search query construction bounded by the sync watermark
- MIME payload decoding and body trimming

Usage:
    from jobtracker.mail import MailSource

    source = MailSource(config.google, config.sync)
    for email in source.fetch_candidate_emails(credential, watermark):
        ...
"""

from jobtracker.mail.body import extract_body, html_to_text
from jobtracker.mail.client import GmailClient
from jobtracker.mail.messages import MailSource, RawEmail, build_search_query, parse_message

__all__ = [
    "GmailClient",
    "MailSource",
    "RawEmail",
    "build_search_query",
    "parse_message",
    "extract_body",
    "html_to_text",
]
