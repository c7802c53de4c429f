"""Merges extracted email facts into an owner's application records.

For each fact the reconciler derives a matching key from the sender
address, looks for an existing record of the same owner whose domain
contains that key, and then:
- creates a record (plus an ``applied`` timeline event) when none matches
- advances the status (plus an ``email`` timeline event) when the fact's
  status ranks strictly higher than the record's
- does nothing otherwise

Status only ever moves forward through reconciliation. Rejected ranks
highest so a rejection always lands, and nothing moves a record out of it.
Manual edits through the record store are not subject to this ratchet.

Usage:
    from jobtracker.engine.reconciler import Reconciler

    reconciler = Reconciler(store)
    outcome = await reconciler.reconcile(owner_id, fact)
    print(outcome.action, outcome.record_id)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Literal

import regex

from jobtracker.core.logging import get_logger

if TYPE_CHECKING:
    from jobtracker.db.store import DatabaseStore
    from jobtracker.extractor.fact_extractor import ExtractedFact

logger = get_logger(__name__)

REGEX_TIMEOUT = 1.0

# Label between "@" and the first following "."
SENDER_DOMAIN_PATTERN = regex.compile(r"@([A-Za-z0-9-]+)\.")

WHITESPACE_PATTERN = regex.compile(r"\s+")

STATUS_ORDER: dict[str, int] = {
    "Applied": 0,
    "Acknowledged": 1,
    "Screening": 2,
    "Interview": 3,
    "Offer": 4,
    "Rejected": 5,
}

EMAIL_SOURCE = "Email"

ReconcileAction = Literal["created", "updated", "skipped"]


@dataclass(frozen=True, slots=True)
class ReconcileOutcome:
    """What reconciling one fact did.

    Attributes:
        action: created, updated or skipped
        record_id: The created or matched record (None only if no record was involved)
        previous_status: Status before an update (None for creates and skips)
    """

    action: ReconcileAction
    record_id: str | None = None
    previous_status: str | None = None


def status_rank(status: str | None) -> int:
    """Rank of a status in the forward order; unknown values rank as Applied."""
    return STATUS_ORDER.get(status or "", 0)


def extract_domain(sender: str | None) -> str | None:
    """Extract the matching key from a From header.

    "Sarah <sarah@atlassian.com>" gives "atlassian". Returns None when the
    header holds no address with a dotted domain.
    """
    if not sender:
        return None
    try:
        match = SENDER_DOMAIN_PATTERN.search(sender, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        logger.warning("Regex timeout extracting sender domain")
        return None
    return match.group(1).lower() if match else None


def company_domain(company: str) -> str:
    """Fallback key: company name lowercased, whitespace removed, plus ".com"."""
    try:
        compact = WHITESPACE_PATTERN.sub("", company, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        compact = company.replace(" ", "")
    return f"{compact.lower()}.com"


def derive_match_domain(fact: ExtractedFact) -> str:
    """Matching key for a fact: sender domain if extractable, else from the company."""
    return extract_domain(fact.sender) or company_domain(fact.company)


class Reconciler:
    """Creates or advances application records from extracted facts."""

    def __init__(self, store: DatabaseStore):
        self._store = store

    async def reconcile(self, owner_id: str, fact: ExtractedFact) -> ReconcileOutcome:
        """Apply one fact to the owner's records.

        Raises:
            RecordValidationError: If a new record would lack company or role
            DatabaseError: If a store operation fails
        """
        domain = derive_match_domain(fact)
        existing = await self._store.find_by_owner_and_domain_like(owner_id, domain)

        if existing is None:
            return await self._create(owner_id, fact, domain)

        if status_rank(fact.status) > status_rank(existing.status):
            await self._store.advance_status_with_event(
                existing.id,
                fact.status,
                "email",
                f'{fact.status}: auto-detected from email "{fact.subject}"',
                event_date=fact.applied_date,
                timestamp=datetime.now(UTC),
            )
            logger.info(
                "record_status_advanced",
                record_id=existing.id,
                from_status=existing.status,
                to_status=fact.status,
                domain=domain,
            )
            return ReconcileOutcome("updated", existing.id, previous_status=existing.status)

        logger.debug(
            "record_unchanged",
            record_id=existing.id,
            stored_status=existing.status,
            fact_status=fact.status,
        )
        return ReconcileOutcome("skipped", existing.id)

    async def _create(self, owner_id: str, fact: ExtractedFact, domain: str) -> ReconcileOutcome:
        record, _ = await self._store.create_record_with_event(
            owner_id,
            fact.company,
            fact.role,
            "applied",
            f'Auto-imported from email: "{fact.subject}"',
            event_date=fact.applied_date,
            status=fact.status,
            domain=domain,
            source=EMAIL_SOURCE,
            notes=fact.action_required,
            recruiter_name=fact.recruiter_name,
            recruiter_email=fact.recruiter_email,
            conversation_id=fact.conversation_id,
            applied_date=fact.applied_date,
        )
        logger.info(
            "record_created",
            record_id=record.id,
            company=record.company,
            status=record.status,
            domain=domain,
        )
        return ReconcileOutcome("created", record.id)
