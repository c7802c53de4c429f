"""Claude-backed extraction of job application facts from email.

Usage:
    from jobtracker.extractor import FactExtractor

    extractor = FactExtractor(anthropic_client, config, store)
    fact = await extractor.extract(email)
"""

from jobtracker.extractor.fact_extractor import ExtractedFact, FactExtractor
from jobtracker.extractor.prompts import EXTRACTABLE_STATUSES, SYSTEM_PROMPT

__all__ = [
    "EXTRACTABLE_STATUSES",
    "SYSTEM_PROMPT",
    "ExtractedFact",
    "FactExtractor",
]
