"""Claude fact extractor for job application emails.

Sends one candidate email to Claude and turns the JSON answer into an
ExtractedFact, or None when the email is not (confidently) about a job
application.

Error handling strategy:
- Transient errors (429, 5xx, network): Handled by Anthropic SDK (max_retries=3)
- API errors surviving the SDK retries: raised as OracleError
- Malformed model output (bad JSON, missing company/role, bad confidence):
  soft failure, logged, returns None
- Confidence below the configured threshold: returns None

Usage:
    from jobtracker.extractor.fact_extractor import FactExtractor

    extractor = FactExtractor(
        anthropic_client=anthropic.Anthropic(max_retries=3),
        store=db_store,
        config=app_config,
    )
    fact = await extractor.extract(raw_email)
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from datetime import UTC, date, datetime
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any

import anthropic
import regex

from jobtracker.core.errors import OracleError, RateLimitExceeded
from jobtracker.core.logging import get_logger
from jobtracker.core.rate_limiter import get_bucket
from jobtracker.extractor.prompts import (
    DEFAULT_STATUS,
    EXTRACTABLE_STATUSES,
    EXTRACTION_FIELDS,
    SYSTEM_PROMPT,
    build_user_message,
)

if TYPE_CHECKING:
    from jobtracker.config_schema import AppConfig
    from jobtracker.db.store import DatabaseStore
    from jobtracker.mail.messages import RawEmail

logger = get_logger(__name__)

CODE_FENCE_PATTERN = regex.compile(r"```(?:json)?\n?", regex.IGNORECASE)
REGEX_TIMEOUT = 1.0

_STATUS_LOOKUP = {status.lower(): status for status in EXTRACTABLE_STATUSES}


@dataclass(frozen=True, slots=True)
class ExtractedFact:
    """Structured facts extracted from one email.

    Attributes:
        company: Hiring company name
        role: Job title
        status: One of EXTRACTABLE_STATUSES
        confidence: Model confidence that this is a job-application email
        applied_date: Email date (UTC), or the extraction date
        sender: From header of the originating email
        subject: Subject of the originating email
        recruiter_name: Recruiter name, if mentioned
        recruiter_email: Recruiter email, if found
        action_required: Suggested next step for the candidate, if any
        conversation_id: Gmail thread id
        message_id: Gmail message id
    """

    company: str
    role: str
    status: str
    confidence: float
    applied_date: date
    sender: str
    subject: str
    recruiter_name: str | None = None
    recruiter_email: str | None = None
    action_required: str | None = None
    conversation_id: str | None = None
    message_id: str | None = None


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences the model sometimes wraps JSON in."""
    try:
        return CODE_FENCE_PATTERN.sub("", text, timeout=REGEX_TIMEOUT).strip()
    except TimeoutError:
        logger.warning("Regex timeout stripping code fences")
        return text.strip()


def normalize_status(value: Any) -> str:
    """Map the model's status onto EXTRACTABLE_STATUSES, defaulting to Acknowledged."""
    if isinstance(value, str):
        return _STATUS_LOOKUP.get(value.strip().lower(), DEFAULT_STATUS)
    return DEFAULT_STATUS


def parse_email_date(value: str) -> date:
    """Parse an RFC 2822 Date header to a UTC calendar date, falling back to today."""
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return datetime.now(UTC).date()
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC)
    return parsed.date()


def _optional_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip() and value.strip().lower() != "null":
        return value.strip()
    return None


class FactExtractor:
    """Extracts ExtractedFact values from emails using Claude.

    Attributes:
        _client: Anthropic API client (configured with max_retries=3)
        _store: Database store for LLM request logging (optional)
        _config: Application configuration
    """

    def __init__(
        self,
        anthropic_client: anthropic.Anthropic,
        config: AppConfig,
        store: DatabaseStore | None = None,
    ):
        """Initialize the extractor.

        Args:
            anthropic_client: Anthropic API client (should be configured
                with max_retries=3 for transient error handling)
            config: Application configuration
            store: Database store for LLM logging; logging is skipped when None
        """
        self._client = anthropic_client
        self._config = config
        self._store = store
        self._rate_bucket = get_bucket(
            name="claude_api",
            rate=config.extraction.requests_per_second,
            capacity=max(1, int(config.extraction.requests_per_second)),
        )

    async def extract(self, email: RawEmail) -> ExtractedFact | None:
        """Extract application facts from one email.

        Returns:
            ExtractedFact, or None if the output is unusable or below the
            confidence threshold

        Raises:
            OracleError: If the Claude API call fails after SDK retries
        """
        model = self._config.extraction.model
        messages = [{"role": "user", "content": build_user_message(email)}]

        try:
            await self._rate_bucket.consume()
        except RateLimitExceeded as e:
            raise OracleError(
                f"Extraction for message {email.message_id} throttled locally: {e}",
                message_id=email.message_id,
            ) from e

        start_time = time.monotonic()
        try:
            # The SDK client is blocking; keep the event loop free
            response = await asyncio.to_thread(
                self._client.messages.create,
                model=model,
                max_tokens=self._config.extraction.max_tokens,
                system=SYSTEM_PROMPT,
                messages=messages,
            )
        except anthropic.RateLimitError as e:
            error = f"Rate limited after SDK retries: {e}"
            logger.error("extraction_rate_limited", message_id=email.message_id, error=str(e))
            await self._log_request(model, messages, None, start_time, email.message_id, error)
            raise OracleError(error, message_id=email.message_id) from e
        except anthropic.APIConnectionError as e:
            error = f"API connection error after SDK retries: {e}"
            logger.error("extraction_connection_error", message_id=email.message_id, error=str(e))
            await self._log_request(model, messages, None, start_time, email.message_id, error)
            raise OracleError(error, message_id=email.message_id) from e
        except anthropic.APIStatusError as e:
            error = f"API status error {e.status_code}: {e.message}"
            logger.error(
                "extraction_api_error",
                message_id=email.message_id,
                status_code=e.status_code,
                error=str(e),
            )
            await self._log_request(model, messages, None, start_time, email.message_id, error)
            raise OracleError(error, message_id=email.message_id) from e
        except anthropic.APIError as e:
            error = f"API error: {e}"
            logger.error(
                "extraction_api_error",
                message_id=email.message_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._log_request(model, messages, None, start_time, email.message_id, error)
            raise OracleError(error, message_id=email.message_id) from e

        text = _response_text(response)
        data, problem = _parse_response(text)
        await self._log_request(model, messages, response, start_time, email.message_id, problem)

        if data is None:
            logger.warning(
                "extraction_unusable_response",
                message_id=email.message_id,
                error=problem,
            )
            return None

        confidence = data["confidence"]
        threshold = self._config.extraction.confidence_threshold
        if confidence < threshold:
            logger.info(
                "extraction_below_confidence",
                message_id=email.message_id,
                confidence=confidence,
                threshold=threshold,
            )
            return None

        return ExtractedFact(
            company=data["company"].strip(),
            role=data["role"].strip(),
            status=normalize_status(data.get("status")),
            confidence=float(confidence),
            applied_date=parse_email_date(email.date),
            sender=email.sender,
            subject=email.subject,
            recruiter_name=_optional_str(data.get("recruiter_name")),
            recruiter_email=_optional_str(data.get("recruiter_email")),
            action_required=_optional_str(data.get("action_required")),
            conversation_id=email.conversation_id,
            message_id=email.message_id,
        )

    async def _log_request(
        self,
        model: str,
        messages: list[dict[str, Any]],
        response: anthropic.types.Message | None,
        start_time: float,
        message_id: str,
        error: str | None = None,
    ) -> None:
        """Log an extraction call to the database. Failures are only warned about."""
        if self._store is None or not self._config.llm_logging.enabled:
            return

        duration_ms = int((time.monotonic() - start_time) * 1000)
        try:
            prompt_data: dict[str, Any] | None = None
            if self._config.llm_logging.log_prompts:
                prompt_data = {"system": SYSTEM_PROMPT, "messages": messages}

            input_tokens = output_tokens = None
            if response is not None and getattr(response, "usage", None) is not None:
                input_tokens = response.usage.input_tokens
                output_tokens = response.usage.output_tokens

            await self._store.log_llm_request(
                model=model,
                prompt=prompt_data,
                response_text=_response_text(response) if response is not None else None,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                duration_ms=duration_ms,
                message_id=message_id,
                error=error,
            )
        except Exception as e:
            logger.warning("llm_log_failed", error=str(e), message_id=message_id)


def _response_text(response: anthropic.types.Message) -> str:
    parts = [block.text for block in response.content if getattr(block, "type", None) == "text"]
    return "".join(parts).strip()


def _parse_response(text: str) -> tuple[dict[str, Any] | None, str | None]:
    """Parse and validate the model's JSON answer.

    Returns:
        (data, None) when usable, otherwise (None, reason)
    """
    if not text:
        return None, "Empty response"

    try:
        data = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as e:
        return None, f"Invalid JSON: {e}"

    if not isinstance(data, dict):
        return None, f"Expected a JSON object, got {type(data).__name__}"

    for field in ("company", "role"):
        value = data.get(field)
        if not isinstance(value, str) or not value.strip():
            return None, f"Missing or empty '{field}'"

    confidence = data.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, int | float):
        return None, f"Non-numeric confidence: {confidence!r}"
    if not 0.0 <= confidence <= 1.0:
        return None, f"Confidence out of range: {confidence}"

    # Keys outside the contract are dropped
    return {field: data.get(field) for field in EXTRACTION_FIELDS}, None
