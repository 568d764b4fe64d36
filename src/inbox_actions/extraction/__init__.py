"""Deterministic action extraction.

Usage:
    from inbox_actions.extraction import ActionExtractor, EmailContext

    extractor = ActionExtractor(locale="en", timezone="Europe/Paris")
    drafts = extractor.extract(context)
"""

from inbox_actions.extraction.dates import resolve_due_date
from inbox_actions.extraction.engine import (
    ActionDraft,
    ActionExtractor,
    EmailContext,
    Sentence,
    extract_actions,
    segment_body,
)
from inbox_actions.extraction.rules import ACTION_TYPES, ActionType, RuleSet, get_rules

__all__ = [
    "ACTION_TYPES",
    "ActionDraft",
    "ActionExtractor",
    "ActionType",
    "EmailContext",
    "RuleSet",
    "Sentence",
    "extract_actions",
    "get_rules",
    "resolve_due_date",
    "segment_body",
]
