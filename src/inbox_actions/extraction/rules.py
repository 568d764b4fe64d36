"""Rule tables for the deterministic action extractor.

A RuleSet bundles everything that depends on the language of the mail:
trigger phrases per action family, hedging markers, strong markers used when a
request names no object, email-level exclusions and deadline expressions.

Trigger patterns expose the requested thing as the named group `object`.
Patterns are matched against typography-normalized text, so they only need to
spell apostrophes and quotes in ASCII.
"""

from dataclasses import dataclass
from typing import Literal

import regex

ActionType = Literal["SEND", "CALL", "FOLLOW_UP", "PAY", "VALIDATE"]

# Fixed evaluation order of the families
ACTION_TYPES: tuple[ActionType, ...] = ("SEND", "CALL", "FOLLOW_UP", "PAY", "VALIDATE")

_FLAGS = regex.IGNORECASE


def compile_all(*patterns: str) -> tuple[regex.Pattern, ...]:
    return tuple(regex.compile(p, _FLAGS) for p in patterns)


@dataclass(frozen=True)
class TriggerRule:
    """One explicit request phrasing.

    Attributes:
        pattern: Compiled pattern; may define an `object` group
        verb: Title prefix used when an object was captured
        fallback_title: Title used when the request names no object
    """

    pattern: regex.Pattern
    verb: str
    fallback_title: str


@dataclass(frozen=True)
class DatePattern:
    """A deadline expression and how to resolve it (see extraction.dates)."""

    pattern: regex.Pattern
    kind: str


@dataclass(frozen=True)
class RuleSet:
    locale: str
    triggers: dict[ActionType, tuple[TriggerRule, ...]]
    conditional_markers: tuple[regex.Pattern, ...]
    strong_markers: dict[ActionType, tuple[regex.Pattern, ...]]
    sender_exclusions: tuple[regex.Pattern, ...]
    subject_exclusions: tuple[regex.Pattern, ...]
    body_exclusions: tuple[regex.Pattern, ...]
    date_patterns: tuple[DatePattern, ...]
    month_names: dict[str, int]
    weekday_names: dict[str, int]
    object_suffix: regex.Pattern
    vague_objects: frozenset[str]


def alternation(names: dict[str, int]) -> str:
    """Regex alternation of dictionary keys, longest first."""
    return "(?:" + "|".join(sorted(names, key=len, reverse=True)) + ")"


# Automated senders never ask the reader for anything (all locales)
SENDER_EXCLUSIONS = compile_all(
    r"no-?reply@",
    r"mailer-daemon@",
    r"bounce[s]?@",
    r"automated@",
    r"do-?not-?reply@",
    r"notifications?@",
    r"newsletters?@",
)

# Numeric dates with slashes are read differently across countries
AMBIGUOUS_DATE = DatePattern(
    regex.compile(r"\b\d{1,2}/\d{1,2}(?:/\d{2,4})?\b"), "ambiguous"
)
ISO_DATE = DatePattern(regex.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b"), "iso")


# =============================================================================
# English
# =============================================================================

EN_MONTHS = {
    "january": 1,
    "jan": 1,
    "february": 2,
    "feb": 2,
    "march": 3,
    "mar": 3,
    "april": 4,
    "apr": 4,
    "may": 5,
    "june": 6,
    "jun": 6,
    "july": 7,
    "jul": 7,
    "august": 8,
    "aug": 8,
    "september": 9,
    "sept": 9,
    "sep": 9,
    "october": 10,
    "oct": 10,
    "november": 11,
    "nov": 11,
    "december": 12,
    "dec": 12,
}

# Python weekday numbers (Monday == 0)
EN_WEEKDAYS = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}

_EN_MONTH = alternation(EN_MONTHS)
_EN_WEEKDAY = alternation(EN_WEEKDAYS)

# Explicit request lead-ins addressed to the reader
_EN_REQUEST = (
    r"(?:\b(?:can|could|would|will)\s+you\s+(?:please\s+|kindly\s+|also\s+)?"
    r"|\bplease\s+(?:do\s+)?"
    r"|\bkindly\s+"
    r"|\b(?:i|we)\s+(?:need|want|would\s+like|'d\s+like)\s+you\s+to\s+(?:please\s+)?"
    r"|\bmake\s+sure\s+(?:to|you)\s+"
    r"|\b(?:don't|do\s+not)\s+forget\s+to\s+"
    r"|\bremember\s+to\s+"
    r"|\byou\s+(?:need|have|will\s+need)\s+to\s+"
    r"|\byou\s+must\s+)"
)
# Request lead-in, or an imperative at the start of the sentence
_EN_LEAD = r"(?:^(?:and\s+|also\s+|then\s+)?(?:please\s+)?|" + _EN_REQUEST + r")"

# Where the requested object stops
_EN_END = (
    r"(?=\s*(?:[,;:?!.)]|$)"
    r"|\s+(?:before|by|until|till|no\s+later\s+than|today|tomorrow|tonight"
    r"|this\s+(?:morning|afternoon|evening|week|month)"
    r"|next\s+(?:week|month|" + _EN_WEEKDAY + r")"
    r"|asap|as\s+soon\s+as|at\s+the\s+latest|within|in\s+\d+\s+(?:days?|weeks?)"
    r"|on\s+" + _EN_WEEKDAY + r"|when|once|so\s+(?:that|i|we)|because"
    r"|thanks?|thank\s+you|please)\b)"
)

_EN_ME = r"(?:(?:to\s+)?(?:me|us)\s+)?"


def _en(body: str, verb: str, fallback: str, lead: str = _EN_LEAD) -> TriggerRule:
    return TriggerRule(regex.compile(lead + body, _FLAGS), verb, fallback)


EN_TRIGGERS: dict[ActionType, tuple[TriggerRule, ...]] = {
    "SEND": (
        _en(
            r"(?:send|forward|share)\s+(?:over\s+)?" + _EN_ME + r"(?P<object>.{1,100}?)" + _EN_END,
            "Send",
            "Send the document",
        ),
        _en(
            r"e-?mail\s+" + _EN_ME + r"(?P<object>.{1,100}?)" + _EN_END,
            "Send",
            "Send the document",
            lead=_EN_REQUEST,
        ),
        _en(
            r"(?:provide|submit)\s+(?:(?:me|us)\s+with\s+)?(?P<object>.{1,100}?)" + _EN_END,
            "Send",
            "Send the document",
        ),
    ),
    "CALL": (
        _en(r"(?:call|phone|ring)\s+(?:me|us)\s+back\b", "Call back", "Call back"),
        _en(
            r"(?:call|phone|ring)\s+(?P<object>.{1,60}?)" + _EN_END,
            "Call",
            "Call",
        ),
        _en(
            r"(?:contact|reach\s+out\s+to|get\s+in\s+touch\s+with)\s+(?P<object>.{1,60}?)"
            + _EN_END,
            "Contact",
            "Call",
        ),
        _en(
            r"(?:set\s+up|schedule|organi[sz]e|arrange|book)\s+(?:a\s+|an\s+)?"
            r"(?:call|meeting|video\s+call|zoom(?:\s+call)?|teams\s+call)"
            r"(?:\s+with\s+(?P<object>.{1,60}?))?" + _EN_END,
            "Schedule a call with",
            "Schedule a call",
        ),
    ),
    "FOLLOW_UP": (
        _en(r"follow\s+up\s+with\s+(?P<object>.{1,60}?)" + _EN_END, "Follow up with", "Follow up"),
        _en(r"follow\s+up\s+on\s+(?P<object>.{1,60}?)" + _EN_END, "Follow up on", "Follow up"),
        _en(
            r"(?:chase|nudge)\s+(?:up\s+)?(?P<object>.{1,60}?)" + _EN_END,
            "Follow up with",
            "Follow up",
        ),
        _en(
            r"(?:check\s+in|touch\s+base)\s+with\s+(?P<object>.{1,60}?)" + _EN_END,
            "Follow up with",
            "Follow up",
        ),
        _en(
            r"remind\s+(?P<object>.{1,60}?)(?=\s+(?:about|of|to)\b)",
            "Remind",
            "Follow up",
        ),
    ),
    "PAY": (
        _en(
            r"(?:pay|settle)\s+(?!attention\b|a\s+visit\b|tribute\b|off\b)(?P<object>.{1,60}?)"
            + _EN_END,
            "Pay",
            "Make the payment",
        ),
        _en(
            r"(?:process|make|proceed\s+with|arrange)\s+(?:the\s+|a\s+)?"
            r"(?:payment|bank\s+transfer|wire\s+transfer)"
            r"(?:\s+(?:for|of|on)\s+(?P<object>.{1,60}?))?" + _EN_END,
            "Pay",
            "Make the payment",
        ),
        _en(
            r"(?:transfer|wire)\s+(?P<object>[$€£\d].{0,59}?)" + _EN_END,
            "Pay",
            "Make the payment",
        ),
    ),
    "VALIDATE": (
        _en(
            r"review\s+and\s+(?:approve|validate|sign)\s+(?P<object>.{1,60}?)" + _EN_END,
            "Approve",
            "Approve",
        ),
        _en(r"validate\s+(?P<object>.{1,60}?)" + _EN_END, "Validate", "Validate"),
        _en(r"approve\s+(?P<object>.{1,60}?)" + _EN_END, "Approve", "Approve"),
        _en(r"sign\s+off\s+on\s+(?P<object>.{1,60}?)" + _EN_END, "Sign off on", "Sign off"),
        _en(
            r"(?:sign|countersign)\s+(?!up\b|in\b|out\b|off\b)(?P<object>.{1,60}?)" + _EN_END,
            "Sign",
            "Sign",
        ),
        _en(r"confirm\s+(?P<object>.{1,60}?)" + _EN_END, "Confirm", "Confirm"),
        _en(
            r"give\s+(?:me\s+|us\s+)?(?:your\s+)?(?:approval|go-ahead|green\s+light|sign-off|ok|okay)"
            r"\s+(?:on|for)\s+(?P<object>.{1,60}?)" + _EN_END,
            "Approve",
            "Approve",
        ),
    ),
}

EN_CONDITIONAL_MARKERS = compile_all(
    r"^\s*if\b",
    r"\bif\s+you\s+(?:have|get|find)\s+(?:the\s+|some\s+)?(?:time|a\s+(?:chance|moment|minute|sec(?:ond)?))\b",
    r"\bwhen(?:ever)?\s+you\s+(?:have|get|find)\s+(?:the\s+|some\s+)?(?:time|a\s+(?:chance|moment|minute))\b",
    r"\bwhen\s+you(?:'re|\s+are)\s+free\b",
    r"\bif\s+you\s+can\b",
    r"\bif\s+(?:possible|needed|necessary|convenient)\b",
    r"\bif\s+you\s+(?:want|wish|like|prefer)\b",
    r"\bpossibly\b",
    r"\bmaybe\b",
    r"\bperhaps\b",
    r"\bno\s+(?:rush|pressure|hurry)\b",
    r"\bnot\s+urgent\b",
    r"\bat\s+some\s+point\b",
    r"\bin\s+case\b",
    r"\bunless\b",
)

EN_STRONG_MARKERS: dict[ActionType, tuple[regex.Pattern, ...]] = {
    "SEND": compile_all(
        r"\bquote\b",
        r"\bestimate\b",
        r"\bcontract\b",
        r"\bdocument",
        r"\battach",
        r"\bfiles?\b",
        r"\bpdf\b",
        r"\breport\b",
        r"\b(?:deck|slides|spreadsheet)\b",
    ),
    "CALL": compile_all(
        r"\+?\d[\d\s().-]{7,}\d",
        r"\bvideo\s*call\b",
        r"\bzoom\b",
        r"\bteams\b",
        r"\bmeet\b",
        r"\bcall\s+(?:me\s+|us\s+)?back\b",
    ),
    "FOLLOW_UP": compile_all(
        r"\bclients?\b",
        r"\bcustomers?\b",
        r"\bquote\b",
        r"\binvoice",
        r"\bfile\b",
        r"\border\b",
        r"\bstatus\b",
    ),
    "PAY": compile_all(
        r"\binvoice",
        r"\binv[-\s]?\d+",
        r"\bpayment\b",
        r"\b(?:wire|bank)\s+transfer\b",
        r"\biban\b",
        r"\bvat\b",
        r"[$€£]\s?\d",
    ),
    "VALIDATE": compile_all(
        r"\bcontract\b",
        r"\bquote\b",
        r"\bversion\b",
        r"\bdraft\b",
        r"\bdocument",
        r"\bmock-?ups?\b",
        r"\bproposal\b",
        r"\bbudget\b",
    ),
}

EN_SUBJECT_EXCLUSIONS = compile_all(
    r"newsletter",
    r"unsubscribe",
    r"\bnotification\b",
    r"(?:order|booking|registration|subscription)\s+confirmation",
    r"your\s+(?:order|receipt)",
    r"payment\s+receipt",
    r"automatic\s+(?:reply|invoice)",
    r"out\s+of\s+(?:the\s+)?office",
)

EN_BODY_EXCLUSIONS = compile_all(
    r"click\s+here\s+to\s+unsubscribe",
    r"to\s+unsubscribe\s+from\s+(?:this|these|our)",
    r"if\s+you\s+no\s+longer\s+wish\s+to\s+receive",
    r"this\s+(?:e-?mail|message)\s+was\s+(?:sent\s+)?automatically",
    r"(?:please\s+)?do\s+not\s+reply\s+to\s+this\s+(?:e-?mail|message)",
)

EN_DATE_PATTERNS: tuple[DatePattern, ...] = (
    AMBIGUOUS_DATE,
    ISO_DATE,
    DatePattern(
        regex.compile(
            r"\b(\d{1,2})(?:st|nd|rd|th)?\s+(?:of\s+)?(" + _EN_MONTH + r")\b", _FLAGS
        ),
        "day_month",
    ),
    DatePattern(
        regex.compile(r"\b(" + _EN_MONTH + r")\.?\s+(\d{1,2})(?:st|nd|rd|th)?\b", _FLAGS),
        "month_day",
    ),
    DatePattern(regex.compile(r"\btomorrow\s+morning\b", _FLAGS), "tomorrow_morning"),
    DatePattern(regex.compile(r"\b(?:before|by)\s+(?:noon|midday|lunch)\b", _FLAGS), "before_noon"),
    DatePattern(regex.compile(r"\bthis\s+morning\b", _FLAGS), "this_morning"),
    DatePattern(regex.compile(r"\bthis\s+afternoon\b", _FLAGS), "this_afternoon"),
    DatePattern(regex.compile(r"\b(?:this\s+evening|tonight)\b", _FLAGS), "this_evening"),
    DatePattern(
        regex.compile(
            r"\b(?:end\s+of\s+(?:the\s+)?day|eod|close\s+of\s+business|cob)\b", _FLAGS
        ),
        "end_of_day",
    ),
    DatePattern(regex.compile(r"\btoday\b", _FLAGS), "today"),
    DatePattern(regex.compile(r"\btomorrow\b", _FLAGS), "tomorrow"),
    DatePattern(regex.compile(r"\b(?:in|within)\s+(\d{1,3})\s+days?\b", _FLAGS), "days"),
    DatePattern(regex.compile(r"\b(?:in|within)\s+(\d{1,2})\s+weeks?\b", _FLAGS), "weeks"),
    DatePattern(
        regex.compile(
            r"\b(?:before|by|on|until|till|for|no\s+later\s+than)\s+(?:this\s+|next\s+)?("
            + _EN_WEEKDAY
            + r")\b",
            _FLAGS,
        ),
        "weekday",
    ),
    DatePattern(
        regex.compile(r"\bend\s+of\s+(?:the\s+|this\s+)?week\b", _FLAGS), "end_of_week"
    ),
    DatePattern(regex.compile(r"\bthis\s+week\b", _FLAGS), "this_week"),
    DatePattern(regex.compile(r"\bnext\s+week\b", _FLAGS), "next_week"),
    DatePattern(
        regex.compile(r"\bend\s+of\s+(?:the\s+|this\s+)?month\b", _FLAGS), "end_of_month"
    ),
    DatePattern(regex.compile(r"\bthis\s+month\b", _FLAGS), "this_month"),
)

EN_RULES = RuleSet(
    locale="en",
    triggers=EN_TRIGGERS,
    conditional_markers=EN_CONDITIONAL_MARKERS,
    strong_markers=EN_STRONG_MARKERS,
    sender_exclusions=SENDER_EXCLUSIONS,
    subject_exclusions=EN_SUBJECT_EXCLUSIONS,
    body_exclusions=EN_BODY_EXCLUSIONS,
    date_patterns=EN_DATE_PATTERNS,
    month_names=EN_MONTHS,
    weekday_names=EN_WEEKDAYS,
    object_suffix=regex.compile(
        r"(?:\s+(?:to|for|with)\s+(?:me|us)|\s+over|\s+please|\s+asap|\s+again)+$", _FLAGS
    ),
    vague_objects=frozenset(
        {
            "it",
            "this",
            "that",
            "them",
            "these",
            "those",
            "me",
            "us",
            "him",
            "her",
            "one",
            "something",
            "anything",
            "everything",
        }
    ),
)


def get_rules(locale: str) -> RuleSet:
    """Rule set for a locale ("en" or "fr")."""
    if locale == "en":
        return EN_RULES
    if locale == "fr":
        from inbox_actions.extraction.rules_fr import FR_RULES

        return FR_RULES
    raise ValueError(f"Unsupported extraction locale '{locale}'. Use 'en' or 'fr'.")
