"""Deterministic action extraction from a message body.

Golden rule: if a request is ambiguous, no action is created. A sentence must
contain an explicit request phrasing, must not be hedged ("if you have time",
"maybe", ...) and must either name what is requested or be concrete enough on
its own (a deadline, a phone number, an invoice, ...).

The engine is pure: no network, no database, no clock. It runs synchronously
in memory on a body that the caller discards afterwards.

Usage:
    from inbox_actions.extraction import ActionExtractor, EmailContext

    extractor = ActionExtractor(locale="en")
    drafts = extractor.extract(
        EmailContext(
            sender="alice@example.com",
            subject="Report",
            body="Hello, can you send me the report before Friday? Thanks.",
            received_at=received_at,
        )
    )
"""

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

import regex

from inbox_actions.core.logging import get_logger
from inbox_actions.core.text import (
    normalize_typography,
    safe_finditer,
    safe_search,
    safe_sub,
    truncate,
)
from inbox_actions.extraction.dates import DEFAULT_DUE_HOUR, resolve_due_date
from inbox_actions.extraction.rules import (
    ACTION_TYPES,
    ActionType,
    RuleSet,
    TriggerRule,
    get_rules,
)

if TYPE_CHECKING:
    from inbox_actions.config_schema import AppConfig

logger = get_logger(__name__)

# Candidate sentences outside these bounds are skipped
MIN_SENTENCE_LENGTH = 10
MAX_SENTENCE_LENGTH = 500

MAX_TITLE_LENGTH = 100
MAX_SOURCE_LENGTH = 200

DEFAULT_DUE_DATE_WINDOW = 200

SENTENCE_BOUNDARY = regex.compile(r"[.!?]+(?:\s+|$)")
CLAUSE_BOUNDARY = regex.compile(r"[;:]+(?:\s+|$)")
LEADING_NOISE = regex.compile(r"^\s*(?:[-•*]\s*)?(?:[\"']\s*)?")
TRAILING_NOISE = regex.compile(r"\s*[\"']?\s*$")

# A line that does not end a sentence is continued by the next one
TERMINAL_END = regex.compile(r"[.!?][\"')\]]*\s*$")
BULLET_START = regex.compile(r"^\s*(?:[-•*]|\d+[.)])\s+")

# Everything below one of these lines is quoted history
REPLY_HEADERS = tuple(
    regex.compile(p, regex.IGNORECASE)
    for p in (
        r"^On\s.+\swrote:$",
        r"^Le\s.+\sa\s+écrit\s*:$",
        r"^-{2,}\s*Original\s+Message\s*-{2,}",
        r"^-{2,}\s*Message\s+d'origine\s*-{2,}",
        r"^-{2,}\s*Forwarded\s+message\s*-{2,}",
        r"^-{2,}\s*Message\s+transféré\s*-{2,}",
        r"^_{10,}$",
        r"^--$",
    )
)
HEADER_BLOCK_START = regex.compile(r"^(?:From|De)\s*:", regex.IGNORECASE)
HEADER_BLOCK_NEXT = regex.compile(r"^(?:Sent|Date|Envoyé|To|À)\s*:", regex.IGNORECASE)


@dataclass(frozen=True, slots=True)
class EmailContext:
    """What the engine knows about one message."""

    sender: str
    subject: str | None
    body: str
    received_at: datetime


@dataclass(frozen=True, slots=True)
class ActionDraft:
    """An action found in a body, not yet persisted."""

    title: str
    action_type: ActionType
    source_sentence: str
    due_date: datetime | None = None


@dataclass(frozen=True, slots=True)
class Sentence:
    """A candidate sentence.

    Attributes:
        text: Typography-normalized text used for matching
        source: The same span exactly as written in the body
        full_sentence: Normalized text of the whole punctuation-bounded
            sentence the candidate belongs to, clauses and wrapped lines
            included; hedging is checked against it
    """

    text: str
    source: str
    full_sentence: str = ""


@dataclass(slots=True)
class _Analysis:
    sentence: Sentence
    hedged: bool
    matches: dict[ActionType, tuple[TriggerRule, str]]


def _is_reply_boundary(line: str, following: list[str]) -> bool:
    if any(safe_search(pattern, line) for pattern in REPLY_HEADERS):
        return True
    if safe_search(HEADER_BLOCK_START, line):
        return any(safe_search(HEADER_BLOCK_NEXT, nxt.strip()) for nxt in following)
    return False


def _visible_lines(body: str) -> list[tuple[str, str]]:
    """(original, normalized) pairs of the lines written by the sender."""
    originals = body.splitlines()
    normalized = normalize_typography(body).splitlines()

    visible = []
    for index, (original, line) in enumerate(zip(originals, normalized, strict=True)):
        stripped = line.strip()
        if stripped.startswith(">"):
            continue
        if _is_reply_boundary(stripped, normalized[index + 1 : index + 3]):
            break
        visible.append((original, line))
    return visible


def _pieces(text: str, boundary: regex.Pattern) -> list[tuple[int, int]]:
    """Offsets of the non-empty spans between boundary matches."""
    spans = []
    start = 0
    for match in safe_finditer(boundary, text):
        if match.start() > start:
            spans.append((start, match.start()))
        start = match.end()
    if start < len(text):
        spans.append((start, len(text)))
    return spans


def _wrapped_runs(lines: list[tuple[str, str]]) -> list[list[tuple[str, str]]]:
    """Group consecutive lines that one sentence runs across.

    A line continues the previous one unless either is blank, the previous
    one ends with sentence punctuation, or the line starts a bullet.
    """
    runs: list[list[tuple[str, str]]] = []
    for original, line in lines:
        previous = runs[-1][-1][1] if runs else ""
        if (
            previous.strip()
            and line.strip()
            and not safe_search(TERMINAL_END, previous)
            and not safe_search(BULLET_START, line)
        ):
            runs[-1].append((original, line))
        else:
            runs.append([(original, line)])
    return runs


def segment_body(body: str) -> list[Sentence]:
    """Split a body into candidate sentences.

    Lines are split on sentence punctuation, then on semicolons and colons.
    Bullets and wrapping quotes are stripped. Quoted history is skipped.
    Each candidate also carries the whole sentence around it, joined across
    hard-wrapped lines.
    """
    sentences = []
    for run in _wrapped_runs(_visible_lines(body)):
        joined = " ".join(line for _, line in run)
        spans = _pieces(joined, SENTENCE_BOUNDARY)
        offset = 0
        for original, line in run:
            for start, end in _pieces(line, SENTENCE_BOUNDARY):
                enclosing = next(
                    (span for span in spans if span[0] <= offset + start < span[1]), None
                )
                if enclosing is None:
                    full_sentence = line[start:end].strip()
                else:
                    full_sentence = joined[enclosing[0] : enclosing[1]].strip()

                for clause_start, clause_end in _pieces(line[start:end], CLAUSE_BOUNDARY):
                    a, b = start + clause_start, start + clause_end
                    piece = line[a:b]

                    lead = safe_search(LEADING_NOISE, piece)
                    trail = safe_search(TRAILING_NOISE, piece)
                    first = a + (lead.end() if lead else 0)
                    last = a + (trail.start() if trail else len(piece))
                    if not MIN_SENTENCE_LENGTH <= last - first <= MAX_SENTENCE_LENGTH:
                        continue

                    sentences.append(
                        Sentence(
                            text=line[first:last],
                            source=original[first:last],
                            full_sentence=full_sentence,
                        )
                    )
            offset += len(line) + 1
    return sentences


class ActionExtractor:
    """Turns a message body into action drafts.

    Families are evaluated in the fixed order SEND, CALL, FOLLOW_UP, PAY,
    VALIDATE; within a family sentences are visited in body order. Each
    sentence yields at most one action per family.
    """

    def __init__(
        self,
        locale: str = "en",
        default_due_hour: int = DEFAULT_DUE_HOUR,
        due_date_window: int = DEFAULT_DUE_DATE_WINDOW,
        timezone: str = "UTC",
    ):
        self.rules: RuleSet = get_rules(locale)
        self.default_due_hour = default_due_hour
        self.due_date_window = due_date_window
        self.tz = ZoneInfo(timezone)

    @classmethod
    def from_config(cls, config: "AppConfig") -> "ActionExtractor":
        return cls(
            locale=config.extraction.locale,
            default_due_hour=config.extraction.default_due_hour,
            due_date_window=config.extraction.due_date_window_chars,
            timezone=config.timezone,
        )

    def is_excluded(self, context: EmailContext) -> bool:
        """True for automated mail (no-reply senders, newsletters, receipts)."""
        sender = context.sender or ""
        if any(safe_search(p, sender) for p in self.rules.sender_exclusions):
            return True

        if context.subject:
            subject = normalize_typography(context.subject)
            if any(safe_search(p, subject) for p in self.rules.subject_exclusions):
                return True

        body = normalize_typography(context.body or "")
        return any(safe_search(p, body) for p in self.rules.body_exclusions)

    def extract(self, context: EmailContext) -> list[ActionDraft]:
        """Extract action drafts from one message.

        Identical input always gives the identical, identically ordered output.
        """
        if not context.body or self.is_excluded(context):
            return []

        analyses = [self._analyze(sentence) for sentence in segment_body(context.body)]
        due_dates: dict[int, datetime | None] = {}

        drafts = []
        for action_type in ACTION_TYPES:
            for index, analysis in enumerate(analyses):
                found = analysis.matches.get(action_type)
                if found is None or analysis.hedged:
                    continue
                rule, obj = found

                if index not in due_dates:
                    due_dates[index] = self._due_date(analyses, index, context.received_at)
                due_date = due_dates[index]

                if not obj and not self._is_concrete(action_type, analysis.sentence, due_date):
                    continue

                title = f"{rule.verb} {obj}" if obj else rule.fallback_title
                drafts.append(
                    ActionDraft(
                        title=truncate(title, MAX_TITLE_LENGTH),
                        action_type=action_type,
                        source_sentence=truncate(analysis.sentence.source, MAX_SOURCE_LENGTH),
                        due_date=due_date,
                    )
                )

        return _deduplicate(drafts)

    def _is_hedged(self, sentence: Sentence) -> bool:
        texts = (sentence.text, sentence.full_sentence or sentence.text)
        return any(
            safe_search(p, text) for text in texts for p in self.rules.conditional_markers
        )

    def _analyze(self, sentence: Sentence) -> _Analysis:
        hedged = self._is_hedged(sentence)
        matches = {}
        for action_type in ACTION_TYPES:
            found = self._first_match(action_type, sentence.text)
            if found is not None:
                matches[action_type] = found
        return _Analysis(sentence=sentence, hedged=hedged, matches=matches)

    def _first_match(self, action_type: ActionType, text: str) -> tuple[TriggerRule, str] | None:
        for rule in self.rules.triggers[action_type]:
            match = safe_search(rule.pattern, text)
            if match is not None:
                return rule, self._clean_object(match.groupdict().get("object"))
        return None

    def _clean_object(self, raw: str | None) -> str:
        if not raw:
            return ""
        obj = safe_sub(self.rules.object_suffix, "", raw.strip())
        obj = obj.strip(" \t,;:-\"'")
        if obj.lower() in self.rules.vague_objects:
            return ""
        return obj

    def _due_date(
        self, analyses: list[_Analysis], index: int, received_at: datetime
    ) -> datetime | None:
        """Deadline from the sentence, else from the start of the next one.

        The next sentence only counts when it isn't a request of its own.
        """
        due_date = resolve_due_date(
            analyses[index].sentence.text,
            received_at,
            self.rules,
            self.default_due_hour,
            self.tz,
        )
        if due_date is not None or not self.due_date_window:
            return due_date

        if index + 1 < len(analyses) and not analyses[index + 1].matches:
            window = analyses[index + 1].sentence.text[: self.due_date_window]
            return resolve_due_date(
                window, received_at, self.rules, self.default_due_hour, self.tz
            )
        return None

    def _is_concrete(
        self, action_type: ActionType, sentence: Sentence, due_date: datetime | None
    ) -> bool:
        """Whether a request without an object is still specific enough."""
        if due_date is not None:
            return True
        markers = self.rules.strong_markers.get(action_type, ())
        return any(safe_search(p, sentence.text) for p in markers)


def _deduplicate(drafts: list[ActionDraft]) -> list[ActionDraft]:
    seen: set[tuple[str, str, str]] = set()
    unique = []
    for draft in drafts:
        key = (draft.action_type, draft.title, draft.source_sentence)
        if key not in seen:
            seen.add(key)
            unique.append(draft)
    return unique


def extract_actions(context: EmailContext, locale: str = "en") -> list[ActionDraft]:
    """One-off extraction with default settings."""
    return ActionExtractor(locale=locale).extract(context)
