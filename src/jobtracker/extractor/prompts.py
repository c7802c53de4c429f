"""Prompt contract for Claude fact extraction.

The system prompt is fixed; the user message is assembled per email from
its From, Subject, Date and body. Claude answers with a bare JSON object
(see EXTRACTION_FIELDS).

Usage:
    from jobtracker.extractor.prompts import SYSTEM_PROMPT, build_user_message

    message = build_user_message(email)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from jobtracker.mail.messages import RawEmail

# Statuses the model may return. "Applied" is reserved for records the
# user enters by hand.
EXTRACTABLE_STATUSES: tuple[str, ...] = (
    "Acknowledged",
    "Screening",
    "Interview",
    "Offer",
    "Rejected",
)

DEFAULT_STATUS = "Acknowledged"

EXTRACTION_FIELDS: tuple[str, ...] = (
    "company",
    "role",
    "status",
    "recruiter_name",
    "recruiter_email",
    "action_required",
    "confidence",
)

SYSTEM_PROMPT = """\
You are an expert at parsing job application emails.
You extract structured data from email content and return ONLY valid JSON \
with no markdown, no explanation, no extra text.

Rules:
- Extract only what is clearly present in the email. Do not guess or fabricate.
- company: the company name hiring (not a job board). Extract from sender domain or email body.
- role: the exact job title mentioned.
- status: classify based on email content using EXACTLY one of these values:
    "Acknowledged"  -> application received/confirmed, no further action
    "Screening"     -> recruiter wants to connect, intro call, phone screen
    "Interview"     -> interview scheduled or invitation to interview
    "Offer"         -> job offer extended
    "Rejected"      -> not moving forward, unsuccessful, position filled
  If unclear, return "Acknowledged".
- recruiter_name: full name of the recruiter/sender if mentioned, else null
- recruiter_email: recruiter email if different from sender, else extract from From header, else null
- action_required: one-line string describing what the candidate should do next, or null
- confidence: number 0-1 indicating how confident you are this is a job application \
email (not spam/newsletter)

Return this exact JSON shape:
{
  "company": "string",
  "role": "string",
  "status": "Acknowledged|Screening|Interview|Offer|Rejected",
  "recruiter_name": "string|null",
  "recruiter_email": "string|null",
  "action_required": "string|null",
  "confidence": 0.0
}"""


def build_user_message(email: RawEmail) -> str:
    """Build the per-email user message."""
    return (
        "Parse this email and extract job application data:\n\n"
        f"FROM: {email.sender}\n"
        f"SUBJECT: {email.subject}\n"
        f"DATE: {email.date}\n"
        "BODY:\n"
        f"{email.body}"
    )
