# -*- coding: utf-8 -*-
"""
Task extraction: turns notification content into a TaskRecord.
Each field has an ordered list of strategies; the first non-empty value wins.
"""

import re
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from typing import Optional

import config_data
import html_utils

ORDER_ID_PATTERN = re.compile(r"\[#(\d+)\]")
AMOUNT_WORDS_PATTERN = re.compile(r"amountWords\s*[:：]?\s*['\"]?([0-9.,]+)", re.I)
# Date, optionally followed by a time on the same line
PLANNED_END_PATTERN = re.compile(
    r"plannedEndDate\s*[:：]?\s*['\"]?"
    r"(\d{1,4}[./-]\d{1,2}[./-]\d{1,4}"
    r"(?:(?:[ \t]+|T)\d{1,2}:\d{2}(?::\d{2})?(?:[ \t]?[AP]M\b)?)?)",
    re.I,
)
ACCEPT_LINK_PATTERN = re.compile(config_data.accept_link_pattern)

_PARENTHETICAL = re.compile(r"\(.*?\)")
_WHITESPACE = re.compile(r"\s+")
_NON_NUMERIC = re.compile(r"[^0-9.]")
_LEADING_NUMBER = re.compile(r"\d+(?:\.\d*)?|\.\d+")

# Day-first numeric dates first, then ISO-like forms.
DATE_FORMATS = [
    "%d.%m.%Y %I:%M %p",
    "%d.%m.%Y %I:%M%p",
    "%d/%m/%Y %I:%M %p",
    "%d-%m-%Y %I:%M %p",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%dT%H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
]

NORMALIZED_DATE_FORMAT = "%Y-%m-%d %H:%M"


@dataclass(frozen=True)
class TaskMetrics:
    amount_words: Optional[float] = None
    planned_end_date: Optional[str] = None


@dataclass(frozen=True)
class TaskRecord:
    order_id: Optional[str] = None
    workflow_name: Optional[str] = None
    metrics: TaskMetrics = field(default_factory=TaskMetrics)
    links: tuple = ()


# ============================================================================
# Strategies
# ============================================================================


class ExtractionInput:
    """Inputs shared by all strategies for one message; markup parsed once."""

    def __init__(self, content, raw_text):
        self.content = content or ""
        self.raw_text = raw_text or ""
        self.tree = html_utils.parse_html(self.content)


class StructuredField:
    """Value of the table cell next to a label cell."""

    def __init__(self, label):
        self.label = label

    def __call__(self, source):
        return html_utils.find_labeled_value(source.tree, self.label)


class RegexField:
    """First group of the first match over raw text (or content)."""

    def __init__(self, pattern, over="raw_text"):
        self.pattern = pattern
        self.over = over

    def __call__(self, source):
        match = self.pattern.search(getattr(source, self.over))
        return match.group(1) if match else None


def first_value(strategies, source):
    """Run strategies in order, return the first non-empty result."""
    for strategy in strategies:
        value = strategy(source)
        if value:
            return value
    return None


ORDER_ID_STRATEGIES = [RegexField(ORDER_ID_PATTERN)]
WORKFLOW_NAME_STRATEGIES = [StructuredField("Workflow name")]
AMOUNT_WORDS_STRATEGIES = [StructuredField("Amounts"), RegexField(AMOUNT_WORDS_PATTERN)]
PLANNED_END_STRATEGIES = [
    StructuredField("Planned end"),
    RegexField(PLANNED_END_PATTERN),
]


# ============================================================================
# Value normalization
# ============================================================================


def parse_amount(text):
    """
    Parse a word count such as "1,234.5 words".

    Everything except digits and dots is dropped, then the leading decimal
    number is read.

    Returns:
        float or None
    """
    if not text:
        return None
    match = _LEADING_NUMBER.match(_NON_NUMERIC.sub("", text))
    return float(match.group()) if match else None


def normalize_date(text):
    """
    Normalize a deadline string to YYYY-MM-DD HH:MM.

    Parenthetical annotations like "(UTC+01:00)" are removed first.

    Args:
        text: Raw date string or None

    Returns:
        Normalized string, or None if no known format matches
    """
    if not text:
        return None

    cleaned = _WHITESPACE.sub(" ", _PARENTHETICAL.sub("", text)).strip()
    for fmt in DATE_FORMATS:
        try:
            parsed = datetime.strptime(cleaned, fmt)
        except ValueError:
            continue
        return parsed.strftime(NORMALIZED_DATE_FORMAT)

    return None


def extract_links(content, pattern=ACCEPT_LINK_PATTERN):
    """All accept links in document order, duplicates kept."""
    return tuple(match.group(0) for match in pattern.finditer(content or ""))


# ============================================================================
# Entry point
# ============================================================================


def extract_task_record(content, raw_text, link_pattern=ACCEPT_LINK_PATTERN):
    """
    Extract a TaskRecord from a notification.

    Args:
        content: Rendered body (html preferred, else text)
        raw_text: Subject, text and html joined
        link_pattern: Compiled accept-link regex

    Returns:
        TaskRecord
    """
    source = ExtractionInput(content, raw_text)

    metrics = TaskMetrics(
        amount_words=parse_amount(first_value(AMOUNT_WORDS_STRATEGIES, source)),
        planned_end_date=normalize_date(first_value(PLANNED_END_STRATEGIES, source)),
    )

    return TaskRecord(
        order_id=first_value(ORDER_ID_STRATEGIES, source),
        workflow_name=first_value(WORKFLOW_NAME_STRATEGIES, source),
        metrics=metrics,
        links=extract_links(source.content, link_pattern),
    )
