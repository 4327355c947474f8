"""
Event category taxonomy.

A single immutable table maps each category to its magnitude prior and
display text, and an ordered rule list classifies headlines. Both are
built once at import and shared by every component.
"""

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional, Pattern, Tuple

from signalcopilot.domain.models import EventCategory
from signalcopilot.utils.errors import InvalidEventCategoryError


@dataclass(frozen=True)
class CategoryInfo:
    default_magnitude: int
    description: str
    plural_label: str


CATEGORY_TABLE: Mapping[EventCategory, CategoryInfo] = MappingProxyType({
    EventCategory.GUIDANCE_CHANGE: CategoryInfo(3, "Guidance Change", "guidance changes"),
    EventCategory.EARNINGS_BEAT_MISS: CategoryInfo(3, "Earnings Beat/Miss", "earnings beats/misses"),
    EventCategory.REGULATORY_LEGAL: CategoryInfo(3, "Regulatory/Legal", "regulatory/legal actions"),
    EventCategory.MERGERS_ACQUISITIONS: CategoryInfo(3, "M&A", "M&A events"),
    EventCategory.PRODUCT_RECALL: CategoryInfo(2, "Product Recall", "product recalls"),
    EventCategory.LEADERSHIP_CHANGE: CategoryInfo(2, "Leadership Change", "leadership changes"),
    EventCategory.LAYOFFS: CategoryInfo(2, "Layoffs", "layoffs/restructuring"),
    EventCategory.MACRO_SECTOR: CategoryInfo(2, "Macro/Sector", "macro/sector shocks"),
    EventCategory.CONTRACT_WIN: CategoryInfo(2, "Contract Win", "contract wins"),
    EventCategory.DIVIDEND_BUYBACK: CategoryInfo(1, "Dividend/Buyback", "dividend/buyback announcements"),
    EventCategory.PRODUCT_LAUNCH: CategoryInfo(1, "Product Launch", "product launches"),
    EventCategory.ANALYST_RATING: CategoryInfo(1, "Analyst Rating", "analyst rating changes"),
    EventCategory.EARNINGS_CALENDAR: CategoryInfo(1, "Earnings Calendar", "earnings announcements"),
    EventCategory.UNKNOWN: CategoryInfo(1, "Unknown", "similar events"),
})


def _words(*alternatives: str) -> Pattern[str]:
    return re.compile(r"\b(?:" + "|".join(alternatives) + r")\b")


_EARNINGS_SUBJECT = _words(r"earnings", r"eps", r"revenues?")


@dataclass(frozen=True)
class ClassificationRule:
    """A headline matches when ``pattern`` hits and, if set, ``qualifier`` hits too."""

    category: EventCategory
    pattern: Pattern[str]
    qualifier: Optional[Pattern[str]] = None

    def matches(self, text: str) -> bool:
        if not self.pattern.search(text):
            return False
        return self.qualifier is None or bool(self.qualifier.search(text))


# Evaluated top to bottom; first match wins.
CLASSIFICATION_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule(
        EventCategory.EARNINGS_BEAT_MISS,
        _EARNINGS_SUBJECT,
        _words(r"beats?", r"miss(?:es|ed)?", r"exceed(?:s|ed)?", r"falls short", r"fell short", r"tops?"),
    ),
    ClassificationRule(
        EventCategory.EARNINGS_CALENDAR,
        _EARNINGS_SUBJECT,
        _words(r"date", r"scheduled", r"call", r"to report", r"preview"),
    ),
    ClassificationRule(
        EventCategory.GUIDANCE_CHANGE,
        _words(r"guidance", r"forecasts?", r"outlook"),
    ),
    ClassificationRule(
        EventCategory.MERGERS_ACQUISITIONS,
        _words(r"mergers?", r"acquisitions?", r"acquires?", r"acquired", r"acquiring",
               r"takeover", r"buyout", r"partnership", r"deal"),
    ),
    ClassificationRule(
        EventCategory.REGULATORY_LEGAL,
        _words(r"sec", r"investigation", r"lawsuits?", r"regulators?", r"regulatory",
               r"antitrust", r"probe", r"subpoena", r"sues", r"sued"),
    ),
    ClassificationRule(
        EventCategory.LEADERSHIP_CHANGE,
        _words(r"ceo", r"cfo", r"coo", r"resigns?", r"resignation", r"appoints?", r"appointed",
               r"steps down", r"executive"),
    ),
    ClassificationRule(
        EventCategory.LAYOFFS,
        _words(r"layoffs?", r"lays off", r"restructuring", r"job cuts", r"workforce reduction"),
    ),
    ClassificationRule(
        EventCategory.PRODUCT_RECALL,
        _words(r"recalls?", r"recalled", r"safety"),
    ),
    ClassificationRule(
        EventCategory.ANALYST_RATING,
        _words(r"upgrades?", r"upgraded", r"downgrades?", r"downgraded", r"analysts?",
               r"rating", r"price target"),
    ),
    ClassificationRule(
        EventCategory.DIVIDEND_BUYBACK,
        _words(r"dividends?", r"buybacks?", r"share repurchase", r"stock repurchase"),
    ),
    ClassificationRule(
        EventCategory.PRODUCT_LAUNCH,
        _words(r"launch(?:es|ed)?", r"unveils?", r"unveiled", r"announces new", r"introduces"),
    ),
    ClassificationRule(
        EventCategory.CONTRACT_WIN,
        _words(r"contracts?", r"wins", r"awarded"),
    ),
    ClassificationRule(
        EventCategory.MACRO_SECTOR,
        _words(r"fed", r"federal reserve", r"interest rates?", r"inflation", r"tariffs?",
               r"recession", r"gdp", r"sanctions", r"sector-wide", r"industry-wide"),
    ),
)


def classify_headline(headline: Optional[str]) -> EventCategory:
    """Classify a headline into the event taxonomy. Empty input is ``UNKNOWN``."""
    text = (headline or "").lower()
    if not text.strip():
        return EventCategory.UNKNOWN
    for rule in CLASSIFICATION_RULES:
        if rule.matches(text):
            return rule.category
    return EventCategory.UNKNOWN


def parse_category(value) -> EventCategory:
    """Coerce a stored string or enum into an ``EventCategory``."""
    if isinstance(value, EventCategory):
        return value
    if value is None or value == "":
        return EventCategory.UNKNOWN
    try:
        return EventCategory(str(value).lower())
    except ValueError:
        raise InvalidEventCategoryError(
            f"Unknown event category: {value}",
            details={"value": value, "allowed": [c.value for c in EventCategory]},
        )


def category_info(category) -> CategoryInfo:
    return CATEGORY_TABLE[parse_category(category)]


def default_magnitude(category) -> int:
    return category_info(category).default_magnitude


def describe(category) -> str:
    return category_info(category).description
