"""Gmail message payload decoding.

Gmail returns message bodies as a tree of MIME parts, each part's data
base64url-encoded. This module walks that tree and produces the plain text
handed to the fact extractor:

1. A top-level body (single-part message) is used directly
2. Otherwise every text/plain part is decoded and concatenated in order
3. If there is no text/plain part, the first text/html part is tag-stripped
4. The result is truncated to ``max_chars``

All regex operations use the `regex` library with a timeout so hostile HTML
cannot stall a sync.

Usage:
    from jobtracker.mail.body import extract_body

    text = extract_body(message["payload"], max_chars=2000)
"""

from __future__ import annotations

import base64
import binascii
import html
from typing import Any

import regex

from jobtracker.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_CHARS = 2000

# Deepest MIME nesting we follow; real mail rarely exceeds 5
MAX_PART_DEPTH = 20

REGEX_TIMEOUT = 1.0

SCRIPT_STYLE_PATTERN = regex.compile(
    r"<(script|style|head)\b[^>]*>.*?</\1\s*>",
    regex.IGNORECASE | regex.DOTALL,
)
BLOCK_TAG_PATTERN = regex.compile(r"<\s*(br|/p|/div|/tr|/li|/h[1-6])\b[^>]*>", regex.IGNORECASE)
HTML_TAG_PATTERN = regex.compile(r"<[^>]+>")
EXCESSIVE_NEWLINES = regex.compile(r"\n{3,}")
EXCESSIVE_SPACES = regex.compile(r"[ \t]{2,}")


def _safe_sub(pattern: regex.Pattern, repl: str, text: str) -> str:
    try:
        return pattern.sub(repl, text, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        logger.warning("Regex timeout during body cleanup", pattern=pattern.pattern[:50])
        return text


def decode_part_data(data: str | None) -> str:
    """Decode a base64url ``body.data`` value to text.

    Gmail omits base64 padding, so it is restored before decoding. Invalid
    bytes are replaced rather than raising.
    """
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        logger.debug("Undecodable body part", length=len(data))
        return ""
    return raw.decode("utf-8", errors="replace")


def html_to_text(content: str) -> str:
    """Strip tags and decode entities from an HTML body."""
    text = _safe_sub(SCRIPT_STYLE_PATTERN, " ", content)
    text = _safe_sub(BLOCK_TAG_PATTERN, "\n", text)
    text = _safe_sub(HTML_TAG_PATTERN, " ", text)
    text = html.unescape(text)
    text = _safe_sub(EXCESSIVE_SPACES, " ", text)
    text = _safe_sub(EXCESSIVE_NEWLINES, "\n\n", text)
    return text.strip()


def _collect_parts(
    parts: list[dict[str, Any]] | None,
    plain: list[str],
    html_parts: list[str],
    depth: int = 0,
) -> None:
    if not parts:
        return
    if depth >= MAX_PART_DEPTH:
        logger.debug("MIME nesting too deep, ignoring remaining parts", depth=depth)
        return

    for part in parts:
        mime_type = (part.get("mimeType") or "").lower()
        data = (part.get("body") or {}).get("data")

        if mime_type == "text/plain" and data:
            plain.append(decode_part_data(data))
        elif mime_type == "text/html" and data:
            html_parts.append(decode_part_data(data))
        elif part.get("parts"):
            _collect_parts(part["parts"], plain, html_parts, depth + 1)


def extract_body(payload: dict[str, Any], max_chars: int = DEFAULT_MAX_CHARS) -> str:
    """Extract readable text from a Gmail ``payload`` object.

    Args:
        payload: The ``payload`` field of a users.messages.get response
        max_chars: Maximum characters returned

    Returns:
        Body text, possibly empty, never longer than max_chars
    """
    top_level = (payload.get("body") or {}).get("data")
    if top_level:
        body = decode_part_data(top_level)
        if (payload.get("mimeType") or "").lower() == "text/html":
            body = html_to_text(body)
        return body[:max_chars]

    plain: list[str] = []
    html_parts: list[str] = []
    _collect_parts(payload.get("parts"), plain, html_parts)

    if plain:
        body = "".join(plain)
    elif html_parts:
        body = html_to_text(html_parts[0])
    else:
        body = ""

    return body[:max_chars]


def get_header(headers: list[dict[str, str]] | None, name: str) -> str:
    """Case-insensitive header lookup; empty string when absent."""
    wanted = name.lower()
    for header in headers or []:
        if (header.get("name") or "").lower() == wanted:
            return header.get("value") or ""
    return ""
